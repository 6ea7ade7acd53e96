# facturacion/urls.py
"""
Rutas de la API CFDI. En core/urls.py se incluyen bajo /api/cfdi/.
"""
from __future__ import annotations

from django.urls import path

from facturacion.api.views import (
    CancelarView,
    ClientesFinkokView,
    ComplementoPagoView,
    CsdUploadView,
    PreviewView,
    StatusView,
    TimbrarView,
)

app_name = "facturacion"

urlpatterns = [
    path("preview/", PreviewView.as_view(), name="preview"),
    path("timbrar/", TimbrarView.as_view(), name="timbrar"),
    path("cancelar/", CancelarView.as_view(), name="cancelar"),
    path("status/", StatusView.as_view(), name="status"),
    path("complemento-pago/", ComplementoPagoView.as_view(), name="complemento-pago"),
    path("csd/", CsdUploadView.as_view(), name="csd"),
    path("clientes-finkok/", ClientesFinkokView.as_view(), name="clientes-finkok"),
]
