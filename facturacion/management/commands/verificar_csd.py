# facturacion/management/commands/verificar_csd.py
from __future__ import annotations

from typing import Any

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from facturacion.services.cfdi.certificates import load_certificate, load_private_key
from facturacion.services.cfdi.errors import CFDIError
from facturacion.services.cfdi.signer import sign, verify


class Command(BaseCommand):
    help = (
        "Verifica los CSD configurados (CFDI_CSD_CER / CFDI_CSD_KEY / CFDI_CSD_PASSWORD).\n"
        "Muestra número de certificado, RFC y vigencia, y comprueba que la llave "
        "corresponda al certificado firmando una cadena de prueba."
    )

    def add_arguments(self, parser) -> None:
        parser.add_argument("--cer", help="Ruta del .cer (por omisión CFDI_CSD_CER)")
        parser.add_argument("--key", help="Ruta del .key (por omisión CFDI_CSD_KEY)")
        parser.add_argument("--password", help="Contraseña de la llave (por omisión CFDI_CSD_PASSWORD)")
        parser.add_argument("--rfc", help="RFC esperado del emisor")

    def handle(self, *args: Any, **options: Any) -> None:
        cer_path = options.get("cer") or getattr(settings, "CFDI_CSD_CER", "")
        key_path = options.get("key") or getattr(settings, "CFDI_CSD_KEY", "")
        password = options.get("password") or getattr(settings, "CFDI_CSD_PASSWORD", "")

        if not cer_path or not key_path:
            raise CommandError("Faltan las rutas del CSD (--cer/--key o CFDI_CSD_CER/CFDI_CSD_KEY)")

        self.stdout.write(self.style.MIGRATE_HEADING(f"▶ Verificación de CSD: {cer_path}"))

        try:
            certificate = load_certificate(cer_path, check_validity=False)
        except CFDIError as exc:
            raise CommandError(f"[{exc.codigo}] {exc.mensaje}") from exc

        self.stdout.write(f"  NoCertificado: {certificate.no_certificado}")
        self.stdout.write(f"  RFC:           {certificate.rfc}")
        self.stdout.write(f"  Titular:       {certificate.nombre}")
        self.stdout.write(f"  Vigencia:      {certificate.valido_desde} - {certificate.valido_hasta}")

        if certificate.vigente():
            self.stdout.write(self.style.SUCCESS("  Certificado vigente"))
        else:
            self.stderr.write(self.style.ERROR("  Certificado fuera de vigencia"))

        rfc = (options.get("rfc") or "").upper()
        if rfc and rfc != certificate.rfc:
            self.stderr.write(self.style.ERROR(f"  El CSD pertenece a {certificate.rfc}, no a {rfc}"))

        try:
            key = load_private_key(key_path, password)
            cadena = f"||4.0|{certificate.no_certificado}||"
            ok = verify(cadena, sign(cadena, key), certificate)
        except CFDIError as exc:
            raise CommandError(f"[{exc.codigo}] {exc.mensaje}") from exc

        if not ok:
            raise CommandError("La llave privada no corresponde al certificado")

        self.stdout.write(self.style.SUCCESS("  La llave privada corresponde al certificado"))
