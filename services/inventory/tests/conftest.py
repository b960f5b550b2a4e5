import os
import tempfile

# must be set before inventory.repo builds its engine
_DB_DIR = tempfile.mkdtemp(prefix="inventory-tests-")
os.environ["INVENTORY_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'inventory.db')}"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from inventory.main import app  # noqa: E402
from inventory.repo import Base, InventoryRepo, engine, init_db  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(engine)
    init_db()
    yield


@pytest.fixture
def repo():
    return InventoryRepo()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c
