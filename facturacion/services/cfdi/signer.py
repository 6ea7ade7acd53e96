# facturacion/services/cfdi/signer.py
from __future__ import annotations

import base64
import binascii
import logging

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import SigningError
from .types import TaxCertificate

logger = logging.getLogger("facturacion.cfdi")


def sign(cadena: str, key: rsa.RSAPrivateKey) -> str:
    """
    Sello digital: base64 de RSA PKCS#1 v1.5 con SHA-256 sobre los bytes UTF-8 de la cadena.

    Determinista para la misma cadena y llave.
    """
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("La llave del CSD no es una llave privada RSA")
    if not cadena:
        raise SigningError("No se puede sellar una cadena original vacía")

    try:
        firma = key.sign(cadena.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except (ValueError, UnsupportedAlgorithm) as exc:
        logger.exception("Error generando el sello digital")
        raise SigningError(f"Error generando el sello digital: {exc}") from exc

    return base64.b64encode(firma).decode("ascii")


def verify(cadena: str, sello: str, certificate: TaxCertificate) -> bool:
    """Verifica un sello contra la cadena original y la llave pública del certificado."""
    try:
        firma = base64.b64decode(sello, validate=True)
    except (binascii.Error, ValueError):
        return False

    public_key = x509.load_der_x509_certificate(certificate.der).public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False

    try:
        public_key.verify(firma, cadena.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
