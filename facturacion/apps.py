from django.apps import AppConfig
from django.conf import settings


class FacturacionConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "facturacion"
    verbose_name = "Facturación CFDI"

    def ready(self):
        # Registros compartidos por proceso: clientes SOAP por WSDL y CSD ya cargados
        from facturacion.services.cfdi.certificates import CertificateStore
        from facturacion.services.pac.registry import ClientRegistry

        self.client_registry = ClientRegistry(
            timeout=int(getattr(settings, "FINKOK_TIMEOUT", 30)),
            ssl_verify=bool(getattr(settings, "FINKOK_SSL_VERIFY", True)),
        )
        self.certificate_store = CertificateStore()
