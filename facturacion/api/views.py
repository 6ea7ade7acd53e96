# facturacion/api/views.py
from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from facturacion.api.serializers import (
    CancelacionSerializer,
    ClienteFinkokSerializer,
    ComplementoPagoSerializer,
    CsdUploadSerializer,
    InvoiceDraftSerializer,
    StatusQuerySerializer,
)
from facturacion.services.cfdi.certificates import read_csd_files
from facturacion.services.cfdi.errors import (
    AlreadyStamped,
    CertificateError,
    CFDIError,
    ConfigError,
    InvalidStateTransition,
    TransientNetworkError,
    ValidationError,
)
from facturacion.services.cfdi.workflow import (
    CredencialesCSD,
    emitir_factura,
    generate_payment_complement,
    vista_previa,
)
from facturacion.services.pac.client import FinkokClient
from facturacion.services.pac.results import CancellationPending, Cancelled, CancelRejected

logger = logging.getLogger("facturacion.cfdi")


def error_status(exc: CFDIError) -> int:
    """Código HTTP para cada familia de errores del núcleo."""
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (AlreadyStamped, InvalidStateTransition)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, CertificateError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, (TransientNetworkError, ConfigError)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_502_BAD_GATEWAY


def error_response(exc: CFDIError) -> Response:
    return Response(exc.as_dict(), status=error_status(exc))


class BaseCfdiView(APIView):
    """
    Base de los endpoints CFDI.

    - Requiere autenticación.
    - Convierte los errores del núcleo en respuestas JSON con `remediation`.
    """

    permission_classes = [IsAuthenticated]

    def get_pac(self) -> FinkokClient:
        return FinkokClient()

    def handle_exception(self, exc):
        if isinstance(exc, CFDIError):
            if error_status(exc) >= 500:
                logger.warning("Error CFDI %s: %s", exc.codigo, exc.mensaje)
            return error_response(exc)
        return super().handle_exception(exc)


# =========================
# Vista previa
# =========================


class PreviewView(BaseCfdiView):
    """XML con marcadores + cadena original, sin firmar ni timbrar."""

    def post(self, request, *args, **kwargs):
        serializer = InvoiceDraftSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        draft = serializer.to_draft()

        data = vista_previa(draft)
        data.update(
            {
                "subtotal": str(draft.subtotal),
                "descuento": str(draft.descuento),
                "total_impuestos_trasladados": str(draft.total_impuestos_trasladados or "0.00"),
                "total": str(draft.total),
            }
        )
        return Response(data, status=status.HTTP_200_OK)


# =========================
# Timbrado
# =========================


class TimbrarView(BaseCfdiView):
    def post(self, request, *args, **kwargs):
        serializer = InvoiceDraftSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        draft = serializer.to_draft()

        stamped = emitir_factura(draft, self.get_pac(), firmar_en_pac=serializer.validated_data.get("firmar_en_pac"))
        logger.info("Factura %s%s timbrada UUID=%s", draft.serie or "", draft.folio, stamped.uuid)
        return Response(stamped.as_dict(), status=status.HTTP_201_CREATED)


# =========================
# Cancelación
# =========================


def _cancel_payload(result) -> Dict[str, Any]:
    if isinstance(result, Cancelled):
        return {
            "estado": "CANCELADO",
            "uuid": result.uuid,
            "ya_cancelado": result.already,
            "acuse": result.acuse,
            "fecha": result.fecha,
        }
    if isinstance(result, CancellationPending):
        return {
            "estado": "TIMBRADO",
            "cancelacion_pendiente": True,
            "uuid": result.uuid,
            "estatus_cancelacion": result.estatus_cancelacion,
        }
    return {
        "estado": "ERROR_CANCELACION",
        "uuid": result.uuid,
        "motivo_rechazo": result.kind,
        "codigo": result.codigo,
        "mensaje": result.mensaje,
    }


class CancelarView(BaseCfdiView):
    def post(self, request, *args, **kwargs):
        serializer = CancelacionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = self.get_pac().cancel(
            data["uuid"],
            data["rfc_emisor"],
            data["motivo"],
            data.get("uuid_sustitucion") or None,
        )
        code = status.HTTP_200_OK
        if isinstance(result, CancellationPending):
            code = status.HTTP_202_ACCEPTED
        elif isinstance(result, CancelRejected):
            code = status.HTTP_409_CONFLICT
        return Response(_cancel_payload(result), status=code)


class StatusView(BaseCfdiView):
    def get(self, request, *args, **kwargs):
        serializer = StatusQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        sat_status = self.get_pac().get_status(
            data["uuid"],
            data["rfc_emisor"],
            data["rfc_receptor"],
            data["total"],
        )
        return Response(sat_status.as_dict(), status=status.HTTP_200_OK)


# =========================
# Complemento de pago
# =========================


class ComplementoPagoView(BaseCfdiView):
    def post(self, request, *args, **kwargs):
        serializer = ComplementoPagoSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        stamped = generate_payment_complement(serializer.to_complemento(), self.get_pac())
        return Response(stamped.as_dict(), status=status.HTTP_201_CREATED)


# =========================
# CSD
# =========================


class CsdUploadView(BaseCfdiView):
    """Registra los CSD del emisor en Finkok (necesarios para firmar en PAC y cancelar)."""

    def post(self, request, *args, **kwargs):
        serializer = CsdUploadSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        cer, key = data.get("cer"), data.get("key")
        passphrase = data.get("passphrase")
        if not cer or not key:
            credenciales = CredencialesCSD.from_settings()
            cer, key = read_csd_files(credenciales.cer_path, credenciales.key_path)
            passphrase = passphrase or credenciales.password

        result = self.get_pac().upload_csd(data["rfc"].upper(), cer, key, passphrase or "")
        code = status.HTTP_200_OK if result.success else status.HTTP_502_BAD_GATEWAY
        return Response({"success": result.success, "message": result.message}, status=code)


# =========================
# Clientes Finkok (cuenta de socio)
# =========================


class ClientesFinkokView(BaseCfdiView):
    """
    RFCs registrados en la cuenta Finkok.

    - GET: una página del listado (?page=N, 50 por página)
    - POST: alta del RFC si todavía no está registrado
    """

    def get(self, request, *args, **kwargs):
        try:
            page = max(int(request.query_params.get("page", 1)), 1)
        except (TypeError, ValueError):
            return Response({"page": ["Debe ser un número entero."]}, status=status.HTTP_400_BAD_REQUEST)

        pac = self.get_pac()
        pagina = pac.get_customers(page)
        return Response(
            {
                "success": True,
                "ambiente": pac.config.environment,
                "page": page,
                "users": [asdict(u) for u in pagina.users],
                "message": pagina.message,
            },
            status=status.HTTP_200_OK,
        )

    def post(self, request, *args, **kwargs):
        serializer = ClienteFinkokSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        taxpayer_id = serializer.validated_data["taxpayer_id"].upper()

        pac = self.get_pac()
        existentes = pac.get_client(taxpayer_id)
        if existentes:
            return Response(
                {
                    "success": True,
                    "already_exists": True,
                    "message": "El RFC ya está registrado",
                    "user": asdict(existentes[0]),
                },
                status=status.HTTP_200_OK,
            )

        result = pac.add_client(taxpayer_id, type_user=serializer.validated_data["type_user"])
        logger.info("Alta de RFC %s en Finkok: success=%s", taxpayer_id, result.success)
        code = status.HTTP_201_CREATED if result.success else status.HTTP_502_BAD_GATEWAY
        return Response(
            {"success": result.success, "already_exists": False, "message": result.message},
            status=code,
        )
