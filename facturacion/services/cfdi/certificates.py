# facturacion/services/cfdi/certificates.py
from __future__ import annotations

import base64
import datetime as dt
import logging
import os
import re
import threading
from typing import Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from django.utils import timezone

from .errors import (
    CertificateExpired,
    CertificateNotFound,
    CertificateParseError,
    InvalidPassphrase,
    KeyParseError,
)
from .types import TaxCertificate

logger = logging.getLogger("facturacion.cfdi")

RFC_RE = re.compile(r"^([A-Z&Ñ]{3,4}[0-9]{6}[A-Z0-9]{3})")


def _read_file(path: str, tipo: str) -> bytes:
    if not path or not os.path.exists(path):
        raise CertificateNotFound(f"No se encuentra el archivo {tipo} en: {path}")
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as exc:
        logger.exception("Error leyendo archivo %s: %s", tipo, exc)
        raise CertificateNotFound(f"Error leyendo archivo {tipo}: {exc}") from exc


def numero_certificado(cert: x509.Certificate) -> str:
    """
    Número de certificado (20 dígitos) a partir del serial.

    Los CSD del SAT codifican los dígitos ASCII del número en el serial
    hexadecimal (0x3330... -> "30..."). Si no es el caso se usa el serial
    hexadecimal sin ceros a la izquierda, ajustado a 20 posiciones.
    """
    serial_hex = format(cert.serial_number, "x")
    if len(serial_hex) % 2:
        serial_hex = "0" + serial_hex

    try:
        decoded = bytes.fromhex(serial_hex).decode("ascii")
    except (ValueError, UnicodeDecodeError):
        decoded = ""

    if decoded.isdigit():
        return decoded[-20:].zfill(20)

    return serial_hex.lstrip("0")[-20:].zfill(20)


def _attr_value(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def extraer_rfc(cert: x509.Certificate) -> str:
    """RFC del titular: x500UniqueIdentifier y, en su defecto, serialNumber."""
    for oid in (NameOID.X500_UNIQUE_IDENTIFIER, NameOID.SERIAL_NUMBER):
        for attr in cert.subject.get_attributes_for_oid(oid):
            match = RFC_RE.match(_attr_value(attr.value).strip().upper())
            if match:
                return match.group(1)
    raise CertificateParseError("No se encontró el RFC en el sujeto del certificado")


def _nombre_titular(cert: x509.Certificate) -> str:
    for oid in (NameOID.COMMON_NAME, NameOID.ORGANIZATION_NAME):
        attrs = cert.subject.get_attributes_for_oid(oid)
        if attrs:
            return _attr_value(attrs[0].value)
    return ""


def _vigencia(cert: x509.Certificate) -> Tuple[dt.datetime, dt.datetime]:
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        return (
            cert.not_valid_before.replace(tzinfo=dt.timezone.utc),
            cert.not_valid_after.replace(tzinfo=dt.timezone.utc),
        )


def parse_certificate(der: bytes, *, check_validity: bool = True) -> TaxCertificate:
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise CertificateParseError(f"El archivo .cer no es un certificado DER válido: {exc}") from exc

    valido_desde, valido_hasta = _vigencia(cert)
    certificate = TaxCertificate(
        no_certificado=numero_certificado(cert),
        rfc=extraer_rfc(cert),
        nombre=_nombre_titular(cert),
        valido_desde=valido_desde,
        valido_hasta=valido_hasta,
        der=der,
    )

    if check_validity and not certificate.vigente():
        logger.warning(
            "CSD %s de %s fuera de vigencia. Válido: %s hasta %s. Ahora: %s",
            certificate.no_certificado,
            certificate.rfc,
            valido_desde,
            valido_hasta,
            timezone.now(),
        )
        raise CertificateExpired(
            f"Certificado fuera de vigencia. Válido desde {valido_desde} hasta {valido_hasta}"
        )

    return certificate


def load_certificate(path: str, *, check_validity: bool = True) -> TaxCertificate:
    """Carga y valida un archivo .cer (DER) del SAT."""
    certificate = parse_certificate(_read_file(path, ".cer"), check_validity=check_validity)
    logger.debug(
        "CSD %s de %s válido hasta %s",
        certificate.no_certificado,
        certificate.rfc,
        certificate.valido_hasta,
    )
    return certificate


def load_private_key(path: str, passphrase: Optional[str]) -> rsa.RSAPrivateKey:
    """
    Carga la llave privada (.key, PKCS#8 DER cifrado).

    Nunca registra la llave ni la contraseña.
    """
    data = _read_file(path, ".key")
    password = passphrase.encode("utf-8") if passphrase else None

    try:
        key = serialization.load_der_private_key(data, password=password)
    except TypeError:
        if password is None:
            raise InvalidPassphrase("La llave privada está cifrada y no se configuró contraseña") from None
        # Llave sin cifrar y se proporcionó contraseña
        try:
            key = serialization.load_der_private_key(data, password=None)
        except ValueError as exc:
            raise KeyParseError(f"El archivo .key no es una llave PKCS#8 válida: {exc}") from exc
    except ValueError as exc:
        # Contraseña incorrecta o archivo corrupto. Se distingue probando sin contraseña.
        try:
            serialization.load_der_private_key(data, password=None)
        except TypeError:
            raise InvalidPassphrase("La contraseña de la llave privada es incorrecta") from None
        except ValueError:
            raise KeyParseError("El archivo .key no es una llave PKCS#8 válida") from exc
        raise KeyParseError("El archivo .key no es una llave PKCS#8 válida") from exc

    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyParseError("La llave privada del CSD debe ser RSA")
    return key


def read_csd_files(cer_path: str, key_path: str) -> Tuple[str, str]:
    """Contenido base64 del .cer y .key, como los espera el registro de Finkok."""
    cer = base64.b64encode(_read_file(cer_path, ".cer")).decode("ascii")
    key = base64.b64encode(_read_file(key_path, ".key")).decode("ascii")
    return cer, key


class CertificateStore:
    """Caché de certificados por ruta. Cada archivo se carga una sola vez."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._certificates: Dict[str, TaxCertificate] = {}

    def get(self, path: str) -> TaxCertificate:
        with self._lock:
            certificate = self._certificates.get(path)
            if certificate is None:
                certificate = load_certificate(path, check_validity=False)
                self._certificates[path] = certificate

        if not certificate.vigente():
            raise CertificateExpired(
                f"Certificado fuera de vigencia. Válido desde {certificate.valido_desde} "
                f"hasta {certificate.valido_hasta}"
            )
        return certificate

    def clear(self) -> None:
        with self._lock:
            self._certificates.clear()
