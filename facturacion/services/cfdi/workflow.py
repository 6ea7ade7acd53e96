# facturacion/services/cfdi/workflow.py
"""
Orquestación del ciclo de vida de un CFDI.

PENDIENTE -> TIMBRANDO -> {TIMBRADO | ERROR_TIMBRADO}
TIMBRADO -> CANCELANDO -> {CANCELADO | ERROR_CANCELACION}

Una cancelación que espera aceptación del receptor deja el CFDI en TIMBRADO
con cancelacion_pendiente=True. Una falla de transporte regresa el CFDI a
PENDIENTE (o a TIMBRADO durante la cancelación) para reintentarlo después.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from django.conf import settings

from facturacion.services.pac.results import (
    CancellationPending,
    Cancelled,
    CancelRejected,
    CancelResult,
    StampOk,
)

from .cadena_original import build_cadena_original
from .certificates import CertificateStore, load_private_key
from .errors import (
    CertificateError,
    CFDIError,
    ConfigError,
    InvalidStateTransition,
    SigningError,
    TransientNetworkError,
)
from .pago_builder import PaymentComplement, build_payment_xml, validate_payment_complement
from .signer import sign, verify
from .tfd import parse_stamped_xml
from .types import CancellationRequest, EstadoCFDI, FirmaCFDI, InvoiceDraft, StampedInvoice, TaxCertificate
from .validator import validate_cancellation, validate_invoice
from .xml_builder import (
    MODE_FINAL,
    MODE_OMIT_SIGNATURE,
    MODE_PLACEHOLDER,
    NO_CERTIFICADO_PLACEHOLDER,
    build_invoice_xml,
)

logger = logging.getLogger("facturacion.cfdi")

TRANSICIONES: Dict[EstadoCFDI, Tuple[EstadoCFDI, ...]] = {
    EstadoCFDI.PENDIENTE: (EstadoCFDI.TIMBRANDO,),
    EstadoCFDI.TIMBRANDO: (EstadoCFDI.TIMBRADO, EstadoCFDI.ERROR_TIMBRADO, EstadoCFDI.PENDIENTE),
    EstadoCFDI.ERROR_TIMBRADO: (EstadoCFDI.TIMBRANDO,),
    EstadoCFDI.TIMBRADO: (EstadoCFDI.CANCELANDO,),
    EstadoCFDI.CANCELANDO: (EstadoCFDI.CANCELADO, EstadoCFDI.ERROR_CANCELACION, EstadoCFDI.TIMBRADO),
    EstadoCFDI.ERROR_CANCELACION: (EstadoCFDI.CANCELANDO,),
    EstadoCFDI.CANCELADO: (),
}


@dataclass(frozen=True)
class CredencialesCSD:
    """Rutas del CSD del emisor. La contraseña nunca se registra."""

    cer_path: str
    key_path: str
    password: str = ""

    def __repr__(self) -> str:
        return f"CredencialesCSD(cer_path={self.cer_path!r}, key_path={self.key_path!r})"

    @classmethod
    def from_settings(cls) -> "CredencialesCSD":
        cer = getattr(settings, "CFDI_CSD_CER", "") or ""
        key = getattr(settings, "CFDI_CSD_KEY", "") or ""
        if not cer or not key:
            raise ConfigError("Faltan CFDI_CSD_CER / CFDI_CSD_KEY en la configuración")
        return cls(cer_path=cer, key_path=key, password=getattr(settings, "CFDI_CSD_PASSWORD", "") or "")


def default_certificate_store() -> CertificateStore:
    from django.apps import apps

    return apps.get_app_config("facturacion").certificate_store


def _stamped_invoice(documento: Any, result: StampOk, sello_cfd: Optional[str] = None) -> StampedInvoice:
    cadena_tfd = None
    if result.xml:
        info = parse_stamped_xml(result.xml)
        if info.timbre is not None:
            sello_cfd = info.timbre.sello_cfd or sello_cfd
        cadena_tfd = info.cadena_original_tfd

    return StampedInvoice(
        documento=documento,
        uuid=result.uuid,
        fecha_timbrado=result.fecha or "",
        sello_sat=result.sello_sat or "",
        no_certificado_sat=result.no_certificado_sat or "",
        xml=result.xml,
        sello_cfd=sello_cfd,
        cadena_original_tfd=cadena_tfd,
        recuperado=result.recuperado,
    )


def sellar_comprobante(
    draft: InvoiceDraft,
    credenciales: CredencialesCSD,
    store: Optional[CertificateStore] = None,
) -> Tuple[str, str, str]:
    """
    Sella el comprobante localmente con el CSD del emisor.

    Devuelve (xml_sellado, cadena_original, sello). La firma se verifica contra
    el certificado antes de devolverla.
    """
    validate_invoice(draft)

    store = store or default_certificate_store()
    certificate: TaxCertificate = store.get(credenciales.cer_path)
    if certificate.rfc != draft.emisor.rfc.upper():
        raise CertificateError(
            f"El CSD pertenece a {certificate.rfc} y el emisor del comprobante es {draft.emisor.rfc}",
            codigo="RFC_MISMATCH",
        )

    cadena = build_cadena_original(draft, certificate.no_certificado)
    key = load_private_key(credenciales.key_path, credenciales.password)
    sello = sign(cadena, key)
    del key

    if not verify(cadena, sello, certificate):
        raise SigningError("El sello generado no corresponde al certificado del emisor")

    xml = build_invoice_xml(
        draft,
        MODE_FINAL,
        FirmaCFDI(
            sello=sello,
            no_certificado=certificate.no_certificado,
            certificado=certificate.certificado_base64,
        ),
    )
    logger.debug("Comprobante %s%s sellado con CSD %s", draft.serie or "", draft.folio, certificate.no_certificado)
    return xml, cadena, sello


def vista_previa(draft: InvoiceDraft, no_certificado: Optional[str] = None) -> Dict[str, str]:
    """XML con marcadores y cadena original, sin firmar ni timbrar."""
    return {
        "xml": build_invoice_xml(draft, MODE_PLACEHOLDER),
        "cadena_original": build_cadena_original(draft, no_certificado or NO_CERTIFICADO_PLACEHOLDER),
    }


class InvoicePipeline:
    """
    Máquina de estados de un comprobante (una instancia por comprobante).

    Las operaciones de un mismo comprobante son estrictamente secuenciales.
    """

    def __init__(
        self,
        draft: InvoiceDraft,
        pac: Any,
        credenciales: Optional[CredencialesCSD] = None,
        *,
        firmar_en_pac: bool = False,
        store: Optional[CertificateStore] = None,
        estado: EstadoCFDI = EstadoCFDI.PENDIENTE,
    ) -> None:
        if not firmar_en_pac and credenciales is None:
            raise ConfigError("Se requieren los CSD del emisor para sellar localmente")
        self.draft = draft
        self.pac = pac
        self.credenciales = credenciales
        self.firmar_en_pac = firmar_en_pac
        self.store = store
        self.estado = estado
        self.cancelacion_pendiente = False
        self.stamped: Optional[StampedInvoice] = None
        self.ultimo_error: Optional[CFDIError] = None
        self.historial: List[Tuple[EstadoCFDI, EstadoCFDI]] = []

    def _transition(self, nuevo: EstadoCFDI) -> None:
        if nuevo not in TRANSICIONES[self.estado]:
            raise InvalidStateTransition(f"Transición no permitida: {self.estado.value} -> {nuevo.value}")
        logger.info(
            "Comprobante %s%s: %s -> %s",
            self.draft.serie or "",
            self.draft.folio,
            self.estado.value,
            nuevo.value,
        )
        self.historial.append((self.estado, nuevo))
        self.estado = nuevo

    def timbrar(self) -> StampedInvoice:
        """
        Valida, sella y timbra el comprobante.

        Si ya está timbrado devuelve el mismo resultado sin volver a llamar al PAC.
        """
        if self.stamped is not None:
            return self.stamped
        if self.estado not in (EstadoCFDI.PENDIENTE, EstadoCFDI.ERROR_TIMBRADO):
            raise InvalidStateTransition(f"No se puede timbrar un comprobante en estado {self.estado.value}")

        sello = None
        if self.firmar_en_pac:
            xml = build_invoice_xml(self.draft, MODE_OMIT_SIGNATURE)
        else:
            xml, _, sello = sellar_comprobante(self.draft, self.credenciales, self.store)

        self._transition(EstadoCFDI.TIMBRANDO)
        try:
            result = self.pac.sign_stamp(xml) if self.firmar_en_pac else self.pac.stamp(xml)
        except TransientNetworkError as exc:
            self.ultimo_error = exc
            self._transition(EstadoCFDI.PENDIENTE)
            raise
        except CFDIError as exc:
            self.ultimo_error = exc
            self._transition(EstadoCFDI.ERROR_TIMBRADO)
            raise

        self.stamped = _stamped_invoice(self.draft, result, sello_cfd=sello)
        self.ultimo_error = None
        self._transition(EstadoCFDI.TIMBRADO)
        return self.stamped

    def cancelar(self, motivo: str, uuid_sustitucion: Optional[str] = None) -> CancelResult:
        if self.stamped is None or self.estado not in (EstadoCFDI.TIMBRADO, EstadoCFDI.ERROR_CANCELACION):
            raise InvalidStateTransition(f"No se puede cancelar un comprobante en estado {self.estado.value}")

        validate_cancellation(CancellationRequest(self.stamped.uuid, motivo, uuid_sustitucion))

        previo = self.estado
        self._transition(EstadoCFDI.CANCELANDO)
        try:
            result = self.pac.cancel(self.stamped.uuid, self.draft.emisor.rfc, motivo, uuid_sustitucion)
        except TransientNetworkError as exc:
            self.ultimo_error = exc
            self.estado = previo
            logger.warning("Cancelación de %s sin respuesta; estado %s", self.stamped.uuid, previo.value)
            raise
        except CFDIError as exc:
            self.ultimo_error = exc
            self._transition(EstadoCFDI.ERROR_CANCELACION)
            raise

        if isinstance(result, Cancelled):
            self.cancelacion_pendiente = False
            self._transition(EstadoCFDI.CANCELADO)
        elif isinstance(result, CancellationPending):
            self.cancelacion_pendiente = True
            self._transition(EstadoCFDI.TIMBRADO)
        elif isinstance(result, CancelRejected):
            self._transition(EstadoCFDI.ERROR_CANCELACION)
        return result


def emitir_factura(
    draft: InvoiceDraft,
    pac: Any = None,
    credenciales: Optional[CredencialesCSD] = None,
    *,
    firmar_en_pac: Optional[bool] = None,
) -> StampedInvoice:
    """Atajo: valida, sella y timbra un comprobante con la configuración del proyecto."""
    if pac is None:
        from facturacion.services.pac.client import FinkokClient

        pac = FinkokClient()
    if firmar_en_pac is None:
        firmar_en_pac = bool(getattr(settings, "CFDI_FIRMAR_EN_PAC", False))
    if not firmar_en_pac and credenciales is None:
        credenciales = CredencialesCSD.from_settings()

    return InvoicePipeline(draft, pac, credenciales, firmar_en_pac=firmar_en_pac).timbrar()


def generate_payment_complement(complemento: PaymentComplement, pac: Any) -> StampedInvoice:
    """
    Genera y timbra un CFDI tipo P (Pagos 2.0).

    Se timbra con sign_stamp: Finkok sella con los CSD registrados del emisor.
    """
    validate_payment_complement(complemento)
    xml = build_payment_xml(complemento)
    result = pac.sign_stamp(xml)
    logger.info(
        "Complemento de pago timbrado UUID=%s (monto total %s)",
        result.uuid,
        complemento.monto_total_pagos,
    )
    return _stamped_invoice(complemento, result)
