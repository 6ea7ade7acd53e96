# core/urls.py
from __future__ import annotations

from django.http import JsonResponse
from django.urls import include, path
from django.views.decorators.csrf import ensure_csrf_cookie


# Endpoint explícito para setear cookie CSRF (lo consume el frontend antes de los POST)
@ensure_csrf_cookie
def set_csrf_cookie(_request):
    return JsonResponse({"ok": True})


urlpatterns = [
    path("api/auth/csrf/", set_csrf_cookie),

    # =========================
    # API CFDI (preview, timbrar, cancelar, status, complemento de pago, CSD)
    # =========================
    path("api/cfdi/", include("facturacion.urls", namespace="facturacion")),
]
