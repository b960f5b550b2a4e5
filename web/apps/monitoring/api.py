from django.conf import settings
from django.db import connection
from django.http import JsonResponse

from apps.orders.http_adapters import HttpInventoryClient


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    components = {"db": {"ok": db_ok}}
    ok = db_ok
    # the inventory service is only a dependency when HTTP adapters are on
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        inventory_ok = HttpInventoryClient().health()
        components["inventory"] = {"ok": inventory_ok}
        ok = ok and inventory_ok

    return JsonResponse({"ok": ok, "components": components}, status=200 if ok else 503)
