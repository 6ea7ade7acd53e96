# facturacion/services/pac/client.py
"""
Cliente SOAP de Finkok (PAC) para CFDI 4.0.

Servicios:
- stamp.wsdl: quick_stamp, stamp, stamped, sign_stamp
- cancel.wsdl: sign_cancel, get_sat_status, get_receipt, get_related
- registration.wsdl: add, edit, get, assign, customers, switch

Reglas de reintento:
- Solo fallas de transporte (timeout, conexión) se reintentan, una sola vez.
- El código 307 (ya timbrado) se resuelve consultando `stamped` y se devuelve
  el UUID existente. Nunca se genera un segundo UUID para el mismo XML.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import requests
from django.conf import settings
from zeep.exceptions import Fault, TransportError
from zeep.helpers import serialize_object

from facturacion.services.cfdi.errors import (
    AlreadyStamped,
    ConfigError,
    FieldError,
    TransientNetworkError,
    UnknownProviderError,
    ValidationError,
    parse_error_code,
    translate_code,
    translate_incidencias,
)
from facturacion.services.cfdi.tfd import parse_stamped_xml
from facturacion.services.cfdi.types import CancellationRequest
from facturacion.services.cfdi.validator import validate_cancellation

from .registry import ClientRegistry
from .results import (
    ESTADOS_SAT,
    CancellationPending,
    Cancelled,
    CancelRejected,
    CancelResult,
    CfdiRelations,
    CustomersPage,
    RegistrationResult,
    ResellerUser,
    SatStatus,
    StampOk,
    StampRejected,
    StampResult,
    canonical_uuid,
    normalize_incidencias,
)

logger = logging.getLogger("facturacion.pac")


# =========================
# Endpoints Finkok
# =========================

FINKOK_URLS: Dict[str, Dict[str, str]] = {
    "demo": {
        "stamp": "https://demo-facturacion.finkok.com/servicios/soap/stamp.wsdl",
        "cancel": "https://demo-facturacion.finkok.com/servicios/soap/cancel.wsdl",
        "registration": "https://demo-facturacion.finkok.com/servicios/soap/registration.wsdl",
    },
    "production": {
        "stamp": "https://facturacion.finkok.com/servicios/soap/stamp.wsdl",
        "cancel": "https://facturacion.finkok.com/servicios/soap/cancel.wsdl",
        "registration": "https://facturacion.finkok.com/servicios/soap/registration.wsdl",
    },
}

# Fallas que justifican un segundo intento
TRANSPORT_ERRORS = (requests.Timeout, requests.ConnectionError, TransportError)

# Códigos EstatusUUID de cancelación
CANCEL_OK = "201"
CANCEL_PREVIOUSLY = "202"
CANCEL_CERT_MISMATCH = ("203", "204")
CANCEL_PENDING = "205"

# Tipos de cliente: O = OnDemand (ilimitado), P = Prepago
TIPOS_CLIENTE = ("O", "P")
CUSTOMERS_PAGE_SIZE = 50


@dataclass(frozen=True)
class FinkokConfig:
    """Credenciales y ambiente. Timeout y verificación SSL pertenecen al ClientRegistry."""

    user: str
    password: str = ""
    environment: str = "demo"

    @classmethod
    def from_settings(cls) -> "FinkokConfig":
        environment = (getattr(settings, "FINKOK_ENVIRONMENT", "demo") or "demo").lower()
        return cls(
            user=getattr(settings, "FINKOK_USER", "") or "",
            password=getattr(settings, "FINKOK_PASSWORD", "") or "",
            environment=environment,
        )

    @property
    def urls(self) -> Dict[str, str]:
        try:
            return FINKOK_URLS[self.environment]
        except KeyError:
            raise ConfigError(
                f"FINKOK_ENVIRONMENT inválido: {self.environment!r} (use 'demo' o 'production')"
            ) from None

    def require_credentials(self) -> None:
        if not self.user:
            raise ConfigError("Falta configurar FINKOK_USER")
        if not self.password:
            raise ConfigError("Falta configurar FINKOK_PASSWORD")


def default_registry() -> ClientRegistry:
    from django.apps import apps

    return apps.get_app_config("facturacion").client_registry


def _as_bytes(xml: Union[str, bytes]) -> bytes:
    return xml.encode("utf-8") if isinstance(xml, str) else xml


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


class FinkokClient:
    """
    Cliente del PAC Finkok.

    Los clientes zeep se obtienen del ClientRegistry (uno por WSDL y proceso).
    """

    def __init__(self, config: Optional[FinkokConfig] = None, registry: Optional[ClientRegistry] = None):
        self.config = config or FinkokConfig.from_settings()
        self.registry = registry if registry is not None else default_registry()

    # -------------------------
    # Infraestructura
    # -------------------------

    def _service(self, servicio: str) -> Any:
        return self.registry.get(self.config.urls[servicio]).service

    def _call(self, servicio: str, metodo: str, **params: Any) -> Dict[str, Any]:
        """
        Invoca una operación SOAP y devuelve la respuesta serializada.

        Las fallas de transporte se convierten en TransientNetworkError;
        un SOAP Fault se traduce con el catálogo de errores.
        """
        self.config.require_credentials()

        try:
            operacion = getattr(self._service(servicio), metodo)
            respuesta = operacion(**params)
        except TRANSPORT_ERRORS as exc:
            logger.warning("Falla de transporte en Finkok %s.%s: %s", servicio, metodo, exc)
            raise TransientNetworkError(f"Sin respuesta de Finkok ({metodo}): {exc}") from exc
        except requests.RequestException as exc:
            logger.warning("Error de red en Finkok %s.%s: %s", servicio, metodo, exc)
            raise TransientNetworkError(f"Error de red con Finkok ({metodo}): {exc}") from exc
        except Fault as exc:
            logger.exception("SOAP Fault en Finkok %s.%s: %s", servicio, metodo, exc)
            mensaje = str(exc.message or exc)
            raise translate_code(parse_error_code(mensaje), mensaje) from exc

        data = serialize_object(respuesta)
        if data is None:
            return {}
        if not isinstance(data, dict):
            return {"value": data}

        # Algunas respuestas llegan envueltas en <metodo>Result
        envuelta = data.get(f"{metodo}Result")
        if isinstance(envuelta, dict):
            return envuelta
        return data

    def _with_retry(self, operacion: Callable[[], Any], descripcion: str) -> Any:
        """Un intento extra solo ante falla de transporte."""
        try:
            return operacion()
        except TransientNetworkError:
            logger.warning("Reintentando %s tras falla de transporte", descripcion)
            return operacion()

    # -------------------------
    # Timbrado
    # -------------------------

    def _parse_stamp(self, data: Dict[str, Any]) -> StampResult:
        incidencias = normalize_incidencias(data.get("Incidencias"))
        if incidencias:
            return StampRejected(tuple(incidencias))

        xml = _as_text(data.get("xml")) or ""
        uuid = canonical_uuid(data.get("UUID"))
        fecha = _as_text(data.get("Fecha"))
        sello_sat = _as_text(data.get("SatSeal"))
        no_cert_sat = _as_text(data.get("NoCertificadoSAT"))

        if xml and not (uuid and fecha and sello_sat and no_cert_sat):
            info = parse_stamped_xml(xml)
            if info.timbre is not None:
                uuid = uuid or canonical_uuid(info.timbre.uuid)
                fecha = fecha or info.timbre.fecha_timbrado
                sello_sat = sello_sat or info.timbre.sello_sat
                no_cert_sat = no_cert_sat or info.timbre.no_certificado_sat

        if not uuid:
            logger.error("Respuesta de Finkok sin UUID ni incidencias: CodEstatus=%s", data.get("CodEstatus"))
            raise UnknownProviderError(
                f"No se pudo obtener el UUID del timbrado ({data.get('CodEstatus') or 'sin estatus'})",
                codigo="NO_UUID",
            )

        return StampOk(
            uuid=uuid,
            xml=xml,
            fecha=fecha,
            sello_sat=sello_sat,
            no_certificado_sat=no_cert_sat,
            cod_estatus=_as_text(data.get("CodEstatus")),
        )

    def _stamp_params(self, xml: Union[str, bytes]) -> Dict[str, Any]:
        return {"xml": _as_bytes(xml), "username": self.config.user, "password": self.config.password}

    def stamped(self, xml: Union[str, bytes]) -> StampResult:
        """Consulta un timbrado previo del mismo XML (recuperación del 307)."""
        return self._parse_stamp(self._call("stamp", "stamped", **self._stamp_params(xml)))

    def _resolve(self, result: StampResult, xml: Union[str, bytes]) -> StampOk:
        if isinstance(result, StampOk):
            return result

        if result.ya_timbrado:
            logger.info("Finkok reporta 307 (ya timbrado); recuperando UUID existente")
            recuperado = self.stamped(xml)
            if isinstance(recuperado, StampOk):
                logger.info("UUID recuperado tras 307: %s", recuperado.uuid)
                return replace(recuperado, recuperado=True)
            raise AlreadyStamped(
                "El comprobante ya fue timbrado pero no se pudo recuperar el UUID existente",
            )

        error = translate_incidencias(result.incidencias)
        logger.warning("Timbrado rechazado por Finkok: %s", [str(i) for i in result.incidencias])
        raise error

    def stamp(self, xml: Union[str, bytes]) -> StampOk:
        """
        Timbra un XML sellado localmente.

        quick_stamp primero; ante falla de transporte, un único `stamp`.
        Máximo tres llamadas: rápida, respaldo y recuperación.
        """
        params = self._stamp_params(xml)
        try:
            data = self._call("stamp", "quick_stamp", **params)
        except TransientNetworkError:
            logger.warning("quick_stamp sin respuesta; usando stamp como respaldo")
            data = self._call("stamp", "stamp", **params)

        result = self._resolve(self._parse_stamp(data), xml)
        logger.info("CFDI timbrado UUID=%s (recuperado=%s)", result.uuid, result.recuperado)
        return result

    def sign_stamp(self, xml: Union[str, bytes]) -> StampOk:
        """Timbra un XML sin sello; Finkok sella con los CSD registrados del emisor."""
        params = self._stamp_params(xml)
        data = self._with_retry(lambda: self._call("stamp", "sign_stamp", **params), "sign_stamp")
        result = self._resolve(self._parse_stamp(data), xml)
        logger.info("CFDI sellado y timbrado en PAC UUID=%s (recuperado=%s)", result.uuid, result.recuperado)
        return result

    # -------------------------
    # Cancelación y consultas
    # -------------------------

    def _parse_cancel(self, uuid: str, data: Dict[str, Any]) -> CancelResult:
        incidencias = normalize_incidencias(data.get("Incidencias"))
        if incidencias:
            inc = incidencias[0]
            return CancelRejected(uuid, kind="provider_error", codigo=inc.codigo, mensaje=str(inc))

        folios = data.get("Folios") or {}
        if isinstance(folios, dict):
            folios = folios.get("Folio")
        folio = next(iter(_as_list(folios)), None) or {}

        estatus_uuid = _as_text(folio.get("EstatusUUID"))
        estatus_cancelacion = _as_text(folio.get("EstatusCancelacion")) or ""

        if not estatus_uuid:
            cod_estatus = _as_text(data.get("CodEstatus")) or ""
            return CancelRejected(
                uuid,
                kind="provider_error",
                codigo=parse_error_code(cod_estatus) or "UNKNOWN",
                mensaje=cod_estatus or "Respuesta de cancelación sin folios",
            )

        if estatus_uuid == CANCEL_OK:
            if "proceso" in estatus_cancelacion.lower():
                return CancellationPending(uuid, estatus_uuid, estatus_cancelacion)
            return Cancelled(uuid, acuse=_as_text(data.get("Acuse")), fecha=_as_text(data.get("Fecha")), estatus_uuid=estatus_uuid)
        if estatus_uuid == CANCEL_PREVIOUSLY:
            return Cancelled(
                uuid,
                acuse=_as_text(data.get("Acuse")),
                fecha=_as_text(data.get("Fecha")),
                already=True,
                estatus_uuid=estatus_uuid,
            )
        if estatus_uuid in CANCEL_CERT_MISMATCH:
            return CancelRejected(
                uuid,
                kind="certificate_mismatch",
                codigo=estatus_uuid,
                mensaje=estatus_cancelacion or "El RFC o certificado no corresponde al emisor del CFDI",
            )
        if estatus_uuid == CANCEL_PENDING:
            return CancellationPending(uuid, estatus_uuid, estatus_cancelacion or "En espera de aceptación")

        return CancelRejected(uuid, kind="rejected", codigo=estatus_uuid, mensaje=estatus_cancelacion)

    def cancel(
        self,
        uuid: str,
        rfc_emisor: str,
        motivo: str = "02",
        uuid_sustitucion: Optional[str] = None,
    ) -> CancelResult:
        """
        Solicita la cancelación de un CFDI.

        Motivo 01 sin UUID de sustitución se rechaza antes de cualquier llamada.
        """
        validate_cancellation(CancellationRequest(uuid, motivo, uuid_sustitucion))
        uuid = canonical_uuid(uuid) or uuid.upper()

        folio: Dict[str, Any] = {"UUID": uuid, "Motivo": motivo}
        if motivo == "01" and uuid_sustitucion:
            folio["FolioSustitucion"] = canonical_uuid(uuid_sustitucion) or uuid_sustitucion.upper()

        params = {
            "UUIDS": {"UUID": [folio]},
            "username": self.config.user,
            "password": self.config.password,
            "taxpayer_id": rfc_emisor.upper(),
            "store_pending": False,
        }
        data = self._with_retry(lambda: self._call("cancel", "sign_cancel", **params), "sign_cancel")
        result = self._parse_cancel(uuid, data)
        logger.info("Cancelación UUID=%s motivo=%s -> %s", uuid, motivo, type(result).__name__)
        return result

    def get_status(
        self,
        uuid: str,
        rfc_emisor: str,
        rfc_receptor: str,
        total: Union[Decimal, str],
    ) -> SatStatus:
        """Estado del CFDI ante el SAT: Vigente, Cancelado o No Encontrado."""
        params = {
            "username": self.config.user,
            "password": self.config.password,
            "taxpayer_id": rfc_emisor.upper(),
            "rtaxpayer_id": rfc_receptor.upper(),
            "uuid": (canonical_uuid(uuid) or uuid).upper(),
            "total": str(total),
        }
        data = self._with_retry(lambda: self._call("cancel", "get_sat_status", **params), "get_sat_status")

        if data.get("error"):
            raise translate_code(parse_error_code(str(data["error"])), str(data["error"]))

        sat = data.get("sat") or {}
        if not sat:
            raise UnknownProviderError("No se obtuvo respuesta del SAT", codigo="NO_SAT_RESPONSE")

        estado = _as_text(sat.get("Estado")) or ""
        if estado not in ESTADOS_SAT:
            estado = "No Encontrado"

        return SatStatus(
            estado=estado,
            es_cancelable=_as_text(sat.get("EsCancelable")),
            estatus_cancelacion=_as_text(sat.get("EstatusCancelacion")),
            codigo_estatus=_as_text(sat.get("CodigoEstatus")),
            validacion_efos=_as_text(sat.get("ValidacionEFOS")),
        )

    def get_receipt(self, uuid: str, rfc_emisor: str) -> str:
        """Acuse de cancelación (XML) de un CFDI."""
        data = self._call(
            "cancel",
            "get_receipt",
            username=self.config.user,
            password=self.config.password,
            taxpayer_id=rfc_emisor.upper(),
            uuid=(canonical_uuid(uuid) or uuid).upper(),
            type="C",
        )
        if data.get("error"):
            raise translate_code(parse_error_code(str(data["error"])), str(data["error"]))
        acuse = _as_text(data.get("receipt") or data.get("acuse"))
        if not acuse:
            raise UnknownProviderError("Finkok no devolvió el acuse de cancelación", codigo="NO_RECEIPT")
        return acuse

    def get_related(self, uuid: str, rfc_emisor: str) -> CfdiRelations:
        """CFDI relacionados (padres e hijos) de un UUID."""
        data = self._call(
            "cancel",
            "get_related",
            username=self.config.user,
            password=self.config.password,
            taxpayer_id=rfc_emisor.upper(),
            uuid=(canonical_uuid(uuid) or uuid).upper(),
        )
        if data.get("error"):
            raise translate_code(parse_error_code(str(data["error"])), str(data["error"]))

        def _uuids(nodo: Any) -> tuple:
            if isinstance(nodo, dict):
                nodo = nodo.get("UUID")
            return tuple(u for u in (canonical_uuid(_as_text(v)) for v in _as_list(nodo)) if u)

        return CfdiRelations(
            padres=_uuids(data.get("UUIDRelacionadoPadres")),
            hijos=_uuids(data.get("UUIDRelacionadosHijos")),
        )

    # -------------------------
    # Registro de clientes (cuenta de socio)
    # -------------------------

    def _reseller(self) -> Dict[str, str]:
        return {"reseller_username": self.config.user, "reseller_password": self.config.password}

    @staticmethod
    def _registration_result(data: Dict[str, Any]) -> RegistrationResult:
        credit = data.get("credit")
        return RegistrationResult(
            success=bool(data.get("success")),
            message=_as_text(data.get("message")) or "",
            credit=int(credit) if credit not in (None, "") else None,
        )

    def add_client(
        self,
        taxpayer_id: str,
        type_user: str = "O",
        cer: Optional[str] = None,
        key: Optional[str] = None,
        passphrase: Optional[str] = None,
    ) -> RegistrationResult:
        """Alta de un RFC emisor (O = OnDemand, P = Prepago)."""
        params: Dict[str, Any] = {**self._reseller(), "taxpayer_id": taxpayer_id.upper(), "type_user": type_user}
        if cer:
            params["cer"] = cer
        if key:
            params["key"] = key
        if passphrase:
            params["passphrase"] = passphrase
        result = self._registration_result(self._call("registration", "add", **params))
        logger.info("Alta de cliente Finkok %s: success=%s %s", taxpayer_id, result.success, result.message)
        return result

    def edit_client(self, taxpayer_id: str, status: str) -> RegistrationResult:
        """Activa (A) o suspende (S) un RFC emisor."""
        data = self._call("registration", "edit", **self._reseller(), taxpayer_id=taxpayer_id.upper(), status=status)
        return self._registration_result(data)

    @staticmethod
    def _reseller_users(users: Any) -> List[ResellerUser]:
        raw = users.get("ResellerUser") if isinstance(users, dict) else users
        return [
            ResellerUser(
                taxpayer_id=_as_text(u.get("taxpayer_id")) or "",
                status=_as_text(u.get("status")) or "S",
                counter=int(u.get("counter") or 0),
                credit=int(u.get("credit") or 0),
            )
            for u in _as_list(raw)
            if isinstance(u, dict)
        ]

    def get_client(self, taxpayer_id: str = "") -> List[ResellerUser]:
        data = self._call("registration", "get", **self._reseller(), taxpayer_id=taxpayer_id.upper())
        return self._reseller_users(data.get("users"))

    def get_customers(self, page: int = 1) -> CustomersPage:
        """RFCs registrados en la cuenta, paginados de 50 en 50."""
        data = self._call(
            "registration",
            "customers",
            username=self.config.user,
            password=self.config.password,
            page=str(page),
        )
        return CustomersPage(
            users=tuple(self._reseller_users(data.get("users"))),
            message=_as_text(data.get("message")) or "",
        )

    def get_all_customers(self) -> List[ResellerUser]:
        usuarios: List[ResellerUser] = []
        page = 1
        while True:
            pagina = self.get_customers(page)
            usuarios.extend(pagina.users)
            if len(pagina.users) < CUSTOMERS_PAGE_SIZE:
                return usuarios
            page += 1

    def switch_client(self, taxpayer_id: str, type_user: str) -> RegistrationResult:
        """Cambia un RFC entre OnDemand (O) y Prepago (P)."""
        if type_user not in TIPOS_CLIENTE:
            raise ValidationError([FieldError("type_user", "Tipo de cliente inválido (O o P)")])
        data = self._call(
            "registration",
            "switch",
            username=self.config.user,
            password=self.config.password,
            taxpayer_id=taxpayer_id.upper(),
            type_user=type_user,
        )
        result = self._registration_result(data)
        logger.info("Cambio de tipo de cliente Finkok %s a %s: success=%s", taxpayer_id, type_user, result.success)
        return result

    def assign_credits(self, taxpayer_id: str, credit: int) -> RegistrationResult:
        """Asigna timbres a un RFC en modo prepago."""
        data = self._call(
            "registration",
            "assign",
            username=self.config.user,
            password=self.config.password,
            taxpayer_id=taxpayer_id.upper(),
            credit=str(credit),
        )
        return self._registration_result(data)

    def upload_csd(self, taxpayer_id: str, cer_b64: str, key_b64: str, passphrase: str) -> RegistrationResult:
        """Registra los CSD del emisor en Finkok (necesarios para sign_stamp y cancelación)."""
        return self.add_client(taxpayer_id, cer=cer_b64, key=key_b64, passphrase=passphrase)
