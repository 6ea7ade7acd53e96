# facturacion/services/cfdi/errors.py
"""
Taxonomía de errores CFDI y traductor de códigos Finkok/SAT.

Todas las excepciones del núcleo heredan de CFDIError y llevan:

- codigo: código del proveedor o interno (estable).
- mensaje: texto original (útil para soporte).
- remediation: pista de remediación independiente del idioma
  (la usa el frontend para decidir qué acción ofrecer).
- accion: sugerencia legible en español.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger("facturacion.cfdi")


# Pistas de remediación (no traducibles)
CHECK_CONFIGURATION = "CHECK_CONFIGURATION"
FIX_INVOICE_DATA = "FIX_INVOICE_DATA"
REUPLOAD_CSD = "REUPLOAD_CSD"
RECOVER_EXISTING_UUID = "RECOVER_EXISTING_UUID"
RETRY_LATER = "RETRY_LATER"
CONTACT_SUPPORT = "CONTACT_SUPPORT"


@dataclass(frozen=True)
class FieldError:
    campo: str
    mensaje: str

    def as_dict(self) -> Dict[str, str]:
        return {"campo": self.campo, "mensaje": self.mensaje}


class CFDIError(Exception):
    """Base de todos los errores del núcleo CFDI."""

    remediation = CONTACT_SUPPORT
    accion = "Contactar soporte técnico"
    default_codigo = "CFDI_ERROR"

    def __init__(
        self,
        mensaje: str,
        *,
        codigo: Optional[str] = None,
        accion: Optional[str] = None,
    ) -> None:
        super().__init__(mensaje)
        self.mensaje = mensaje
        self.codigo = codigo or self.default_codigo
        if accion:
            self.accion = accion

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "codigo": self.codigo,
            "mensaje": self.mensaje,
            "remediation": self.remediation,
            "accion": self.accion,
        }


class ConfigError(CFDIError):
    """Configuración incompleta (credenciales PAC, rutas CSD, etc.)."""

    remediation = CHECK_CONFIGURATION
    accion = "Verificar la configuración de Finkok y de los CSD"
    default_codigo = "CONFIG_ERROR"


class ValidationError(CFDIError):
    """Datos del comprobante inválidos; se detecta antes de cualquier llamada de red."""

    remediation = FIX_INVOICE_DATA
    accion = "Corregir los datos señalados y volver a intentar"
    default_codigo = "VALIDATION_ERROR"

    def __init__(
        self,
        fields: Sequence[FieldError],
        *,
        mensaje: Optional[str] = None,
        codigo: Optional[str] = None,
        accion: Optional[str] = None,
    ) -> None:
        self.fields: List[FieldError] = list(fields)
        if mensaje is None:
            mensaje = "; ".join(f"{f.campo}: {f.mensaje}" for f in self.fields) or "Datos inválidos"
        super().__init__(mensaje, codigo=codigo, accion=accion)

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        data["fields"] = [f.as_dict() for f in self.fields]
        return data


class MissingSubstitution(ValidationError):
    """Motivo 01 sin UUID de sustitución."""

    default_codigo = "MISSING_UUID_SUSTITUCION"

    def __init__(self) -> None:
        super().__init__(
            [FieldError("uuid_sustitucion", "El motivo 01 requiere el UUID de la factura que sustituye")]
        )


class CertificateError(CFDIError):
    """Problemas con el CSD (certificado o llave). Requiere acción del operador."""

    remediation = REUPLOAD_CSD
    accion = "Cargar nuevamente los CSD vigentes del emisor"
    default_codigo = "CERTIFICATE_ERROR"


class CertificateNotFound(CertificateError):
    default_codigo = "CERTIFICATE_NOT_FOUND"


class CertificateExpired(CertificateError):
    accion = "Renovar los CSD en el portal del SAT y actualizarlos en la configuración"
    default_codigo = "CERTIFICATE_EXPIRED"


class CertificateParseError(CertificateError):
    default_codigo = "CERTIFICATE_PARSE_ERROR"


class InvalidPassphrase(CertificateError):
    accion = "Verificar la contraseña de la llave privada"
    default_codigo = "INVALID_PASSPHRASE"


class KeyParseError(CertificateError):
    default_codigo = "KEY_PARSE_ERROR"


class SigningError(CertificateError):
    default_codigo = "SIGNING_ERROR"


class AlreadyStamped(CFDIError):
    """El PAC reporta que el comprobante ya fue timbrado (se resuelve con recuperación)."""

    remediation = RECOVER_EXISTING_UUID
    accion = "Recuperar el UUID existente del timbrado anterior"
    default_codigo = "307"


class TransientNetworkError(CFDIError):
    """Timeout / conexión rechazada. El comprobante queda PENDIENTE."""

    remediation = RETRY_LATER
    accion = "Verificar la conexión y reintentar más tarde"
    default_codigo = "NETWORK_ERROR"


class UnknownProviderError(CFDIError):
    """Respuesta del PAC no catalogada o inesperada."""

    default_codigo = "UNKNOWN"


class InvalidStateTransition(CFDIError):
    """Operación no permitida en el estado actual del comprobante."""

    remediation = FIX_INVOICE_DATA
    accion = "Revisar el estado del comprobante antes de repetir la operación"
    default_codigo = "INVALID_STATE"


# =========================
# Catálogo de errores Finkok / SAT
# =========================


@dataclass(frozen=True)
class CfdiErrorInfo:
    titulo: str
    descripcion: str
    accion: str
    campo: Optional[str] = None
    tipo: type = UnknownProviderError


CFDI_ERROR_CATALOG: Dict[str, CfdiErrorInfo] = {
    # Estructura XML
    "301": CfdiErrorInfo(
        "XML mal formado",
        "El documento XML no cumple con la estructura requerida por el SAT",
        "Contactar soporte técnico",
        tipo=ValidationError,
    ),
    "302": CfdiErrorInfo(
        "Sello invalido",
        "La firma digital del comprobante no es válida",
        "Verificar que los CSD estén vigentes y correctamente configurados",
        campo="Sello",
        tipo=CertificateError,
    ),
    "303": CfdiErrorInfo(
        "Sello no corresponde",
        "El sello digital no corresponde con los datos del comprobante",
        "Regenerar el XML y volver a intentar",
        campo="Sello",
        tipo=CertificateError,
    ),
    "304": CfdiErrorInfo(
        "Certificado revocado",
        "El certificado del emisor fue revocado o no es un CSD",
        "Renovar los CSD en el portal del SAT",
        campo="Certificado",
        tipo=CertificateError,
    ),
    "305": CfdiErrorInfo(
        "Certificado revocado o caducado",
        "El Certificado de Sello Digital ha sido revocado o ya expiró",
        "Renovar los CSD en el portal del SAT y actualizarlos en la configuración",
        campo="Certificado",
        tipo=CertificateError,
    ),
    "307": CfdiErrorInfo(
        "CFDI ya timbrado",
        "Este comprobante ya fue timbrado anteriormente con el mismo contenido",
        "Recuperar el UUID existente del timbrado anterior",
        tipo=AlreadyStamped,
    ),
    # CFDI 4.0
    "CFDI40102": CfdiErrorInfo(
        "Fecha fuera de rango",
        "La fecha del comprobante está fuera del rango permitido (72 horas)",
        "Verificar que la fecha del comprobante sea reciente",
        campo="Fecha",
        tipo=ValidationError,
    ),
    "CFDI40138": CfdiErrorInfo(
        "Regimen fiscal incompatible",
        "El régimen fiscal del receptor no es compatible con el uso de CFDI seleccionado",
        "Verificar que el uso de CFDI sea compatible con el régimen fiscal del cliente",
        campo="UsoCFDI",
        tipo=ValidationError,
    ),
    "CFDI40161": CfdiErrorInfo(
        "RFC del receptor invalido",
        "El RFC del receptor no está registrado en la lista del SAT (LRFC)",
        "Verificar que el RFC del cliente sea correcto y esté dado de alta en el SAT",
        campo="Rfc",
        tipo=ValidationError,
    ),
    # CFDI 3.3 (algunos aún aplican)
    "CFDI33101": CfdiErrorInfo(
        "Certificado no vigente",
        "El certificado del emisor no está vigente para la fecha del comprobante",
        "Renovar los CSD del emisor",
        campo="NoCertificado",
        tipo=CertificateError,
    ),
    "CFDI33102": CfdiErrorInfo(
        "RFC del emisor no corresponde",
        "El RFC del emisor no corresponde con el certificado",
        "Verificar que el RFC del emisor coincida con los CSD configurados",
        campo="Emisor.Rfc",
        tipo=CertificateError,
    ),
    "CFDI33103": CfdiErrorInfo(
        "Fecha fuera de vigencia del CSD",
        "La fecha del comprobante no está dentro de la vigencia del certificado",
        "Verificar vigencia de los CSD o actualizar la fecha",
        tipo=CertificateError,
    ),
    "CFDI33105": CfdiErrorInfo(
        "Codigo postal invalido",
        "El código postal del lugar de expedición no existe en el catálogo del SAT",
        "Corregir el código postal del emisor en la configuración",
        campo="LugarExpedicion",
        tipo=ValidationError,
    ),
    "CFDI33106": CfdiErrorInfo(
        "Regimen fiscal invalido",
        "El régimen fiscal del emisor no corresponde con su tipo de RFC",
        "Verificar el régimen fiscal del emisor",
        campo="RegimenFiscal",
        tipo=ValidationError,
    ),
    "CFDI33111": CfdiErrorInfo(
        "Clave de producto invalida",
        "La clave de producto/servicio no existe en el catálogo del SAT",
        "Corregir la clave de producto (ClaveProdServ) en los conceptos",
        campo="ClaveProdServ",
        tipo=ValidationError,
    ),
    "CFDI33112": CfdiErrorInfo(
        "Clave de unidad invalida",
        "La clave de unidad no existe en el catálogo del SAT",
        "Corregir la clave de unidad (ClaveUnidad) en los conceptos",
        campo="ClaveUnidad",
        tipo=ValidationError,
    ),
    # Finkok
    "705": CfdiErrorInfo(
        "Usuario no autorizado",
        "Las credenciales de Finkok no son válidas o el servicio está suspendido",
        "Verificar las credenciales de Finkok en la configuración",
        tipo=ConfigError,
    ),
    "720": CfdiErrorInfo(
        "CSD no registrados en Finkok",
        "No hay Certificados de Sello Digital activos para este RFC en Finkok",
        "Cargar los CSD del emisor en la sección de configuración CFDI",
        campo="CSD",
        tipo=CertificateError,
    ),
    # Complemento de pago
    "PAGO10101": CfdiErrorInfo(
        "UUID de documento invalido",
        "El UUID del documento relacionado no corresponde a un CFDI timbrado",
        "Verificar que la factura asociada esté timbrada correctamente",
        campo="IdDocumento",
        tipo=ValidationError,
    ),
    "PAGO10104": CfdiErrorInfo(
        "Monto excede saldo",
        "El monto del pago excede el saldo pendiente del documento",
        "Verificar el saldo pendiente de la factura",
        campo="ImpPagado",
        tipo=ValidationError,
    ),
}

_RE_CODIGO_CORCHETES = re.compile(r"\[([A-Z0-9]+)\]")
_RE_CODIGO_NUMERICO = re.compile(r"^(\d{3})\s*[-:]?\s*")


@dataclass(frozen=True)
class Incidencia:
    """Incidencia devuelta por Finkok (CodigoError + MensajeIncidencia)."""

    codigo: str
    mensaje: str = ""

    def __str__(self) -> str:
        return f"[{self.codigo}] {self.mensaje}".strip()


def parse_error_code(mensaje: str) -> Optional[str]:
    """
    Extrae el código de un mensaje de error libre.

    Formatos soportados: "[CFDI40161] ..." y "301 - XML mal formado".
    """
    if not mensaje:
        return None

    match = _RE_CODIGO_CORCHETES.search(mensaje)
    if match:
        return match.group(1)

    match = _RE_CODIGO_NUMERICO.match(mensaje)
    if match:
        return match.group(1)

    lowered = mensaje.lower()
    for codigo, info in CFDI_ERROR_CATALOG.items():
        if info.titulo.lower() in lowered:
            return codigo
    return None


def translate_code(codigo: Optional[str], mensaje: str = "") -> CFDIError:
    """Convierte un código del proveedor en una excepción de la taxonomía interna."""
    info = CFDI_ERROR_CATALOG.get(codigo or "")
    texto = mensaje or (info.descripcion if info else "Error no catalogado")

    if info is None:
        return UnknownProviderError(texto, codigo=codigo or UnknownProviderError.default_codigo)

    if issubclass(info.tipo, ValidationError):
        return info.tipo(
            [FieldError(info.campo or "comprobante", info.descripcion)],
            mensaje=texto,
            codigo=codigo,
            accion=info.accion,
        )
    return info.tipo(texto, codigo=codigo, accion=info.accion)


def translate_incidencias(incidencias: Iterable[Incidencia]) -> CFDIError:
    """
    Traduce la lista de incidencias de Finkok en UNA excepción.

    - Si alguna incidencia es 307 → AlreadyStamped (tiene prioridad).
    - Si todas son de validación → ValidationError con todos los campos.
    - En otro caso se usa la primera incidencia catalogada.
    """
    incidencias = list(incidencias)
    if not incidencias:
        return UnknownProviderError("Respuesta del PAC sin incidencias ni UUID")

    for inc in incidencias:
        if inc.codigo == "307":
            return translate_code("307", str(inc))

    traducidas = [translate_code(inc.codigo, str(inc)) for inc in incidencias]

    if all(isinstance(err, ValidationError) for err in traducidas):
        fields: List[FieldError] = []
        for err in traducidas:
            fields.extend(err.fields)  # type: ignore[attr-defined]
        return ValidationError(
            fields,
            mensaje="; ".join(str(inc) for inc in incidencias),
            codigo=traducidas[0].codigo,
            accion=traducidas[0].accion,
        )

    for err in traducidas:
        if not isinstance(err, UnknownProviderError):
            return err

    logger.warning("Incidencias Finkok no catalogadas: %s", [str(i) for i in incidencias])
    return traducidas[0]
