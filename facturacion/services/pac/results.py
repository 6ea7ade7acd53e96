# facturacion/services/pac/results.py
"""
Resultados normalizados del PAC.

Cada operación devuelve una variante explícita (no un dict con banderas),
de modo que el llamador maneja cada caso por tipo.
"""
from __future__ import annotations

import uuid as uuid_lib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from facturacion.services.cfdi.errors import Incidencia


def canonical_uuid(value: Optional[str]) -> Optional[str]:
    """UUID en forma canónica de 36 caracteres, en mayúsculas."""
    if not value:
        return None
    try:
        return str(uuid_lib.UUID(str(value).strip())).upper()
    except ValueError:
        return None


def normalize_incidencias(raw: Any) -> List[Incidencia]:
    """
    Normaliza el nodo Incidencias de Finkok.

    Puede llegar como None, {"Incidencia": {...}}, {"Incidencia": [...]} o lista.
    """
    if not raw:
        return []

    items = raw.get("Incidencia") if isinstance(raw, dict) else raw
    if items is None:
        return []
    if isinstance(items, dict):
        items = [items]

    incidencias: List[Incidencia] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        codigo = str(item.get("CodigoError") or "").strip()
        mensaje = str(item.get("MensajeIncidencia") or "").strip()
        if codigo or mensaje:
            incidencias.append(Incidencia(codigo=codigo or "UNKNOWN", mensaje=mensaje))
    return incidencias


@dataclass(frozen=True)
class StampOk:
    uuid: str
    xml: str = field(repr=False)
    fecha: Optional[str] = None
    sello_sat: Optional[str] = field(default=None, repr=False)
    no_certificado_sat: Optional[str] = None
    cod_estatus: Optional[str] = None
    recuperado: bool = False


@dataclass(frozen=True)
class StampRejected:
    incidencias: Tuple[Incidencia, ...]

    @property
    def ya_timbrado(self) -> bool:
        return any(inc.codigo == "307" for inc in self.incidencias)


StampResult = Union[StampOk, StampRejected]


@dataclass(frozen=True)
class Cancelled:
    uuid: str
    acuse: Optional[str] = field(default=None, repr=False)
    fecha: Optional[str] = None
    already: bool = False
    estatus_uuid: Optional[str] = None


@dataclass(frozen=True)
class CancellationPending:
    """El receptor debe aceptar la cancelación; el CFDI sigue vigente."""

    uuid: str
    estatus_uuid: Optional[str] = None
    estatus_cancelacion: Optional[str] = None


@dataclass(frozen=True)
class CancelRejected:
    uuid: str
    kind: str
    codigo: Optional[str] = None
    mensaje: str = ""


CancelResult = Union[Cancelled, CancellationPending, CancelRejected]

ESTADOS_SAT = ("Vigente", "Cancelado", "No Encontrado")


@dataclass(frozen=True)
class SatStatus:
    estado: str
    es_cancelable: Optional[str] = None
    estatus_cancelacion: Optional[str] = None
    codigo_estatus: Optional[str] = None
    validacion_efos: Optional[str] = None

    @property
    def cancelable_sin_aceptacion(self) -> bool:
        return (self.es_cancelable or "").lower().startswith("cancelable sin")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "es_cancelable": self.es_cancelable,
            "estatus_cancelacion": self.estatus_cancelacion,
            "codigo_estatus": self.codigo_estatus,
        }


@dataclass(frozen=True)
class CfdiRelations:
    padres: Tuple[str, ...] = ()
    hijos: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RegistrationResult:
    """Respuesta de los métodos de registro de clientes (add/edit/assign)."""

    success: bool
    message: str = ""
    credit: Optional[int] = None


@dataclass(frozen=True)
class ResellerUser:
    taxpayer_id: str
    status: str = "S"
    counter: int = 0
    credit: int = 0


@dataclass(frozen=True)
class CustomersPage:
    """Una página del listado de RFCs de la cuenta de socio (50 por página)."""

    users: Tuple[ResellerUser, ...] = ()
    message: str = ""
