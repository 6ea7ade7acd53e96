# facturacion/services/cfdi/types.py
"""
Tipos del núcleo CFDI 4.0.

Son objetos de valor inmutables: el llamador entrega un InvoiceDraft
completamente resuelto (catálogos SAT ya aplicados) y el núcleo devuelve
un StampedInvoice o una excepción tipada.

Los totales del comprobante se DERIVAN de los conceptos, así que un
borrador nunca puede traer totales inconsistentes.
"""
from __future__ import annotations

import base64
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from django.utils import timezone

CENTAVO = Decimal("0.01")
MICRO = Decimal("0.000001")
CERO = Decimal("0.00")

IVA_16 = Decimal("0.160000")

IMPUESTO_ISR = "001"
IMPUESTO_IVA = "002"
IMPUESTO_IEPS = "003"

TIPO_FACTOR_TASA = "Tasa"
TIPO_FACTOR_EXENTO = "Exento"

OBJETO_IMP_NO = "01"
OBJETO_IMP_SI = "02"

MOTIVOS_CANCELACION: Dict[str, str] = {
    "01": "Comprobante emitido con errores con relación",
    "02": "Comprobante emitido con errores sin relación",
    "03": "No se llevó a cabo la operación",
    "04": "Operación nominativa relacionada en una factura global",
}


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return CERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    """Redondeo a centavos (ROUND_HALF_UP, como el SAT)."""
    return to_decimal(value).quantize(CENTAVO, rounding=ROUND_HALF_UP)


def quantize_tipo_cambio(value: Any) -> Decimal:
    """Tipo de cambio con la precisión recibida, entre 4 y 6 decimales."""
    value = to_decimal(value)
    decimales = min(max(-value.as_tuple().exponent, 4), 6)
    return value.quantize(Decimal(1).scaleb(-decimales), rounding=ROUND_HALF_UP)


class EstadoCFDI(str, enum.Enum):
    PENDIENTE = "PENDIENTE"
    TIMBRANDO = "TIMBRANDO"
    TIMBRADO = "TIMBRADO"
    ERROR_TIMBRADO = "ERROR_TIMBRADO"
    CANCELANDO = "CANCELANDO"
    CANCELADO = "CANCELADO"
    ERROR_CANCELACION = "ERROR_CANCELACION"


@dataclass(frozen=True)
class TaxCertificate:
    """Certificado de Sello Digital (.cer) ya parseado."""

    no_certificado: str
    rfc: str
    nombre: str
    valido_desde: datetime
    valido_hasta: datetime
    der: bytes = field(repr=False)

    @property
    def certificado_base64(self) -> str:
        return base64.b64encode(self.der).decode("ascii")

    def vigente(self, en: Optional[datetime] = None) -> bool:
        momento = en or timezone.now()
        return self.valido_desde <= momento <= self.valido_hasta


@dataclass(frozen=True)
class FirmaCFDI:
    """Material de firma que se incrusta en el Comprobante (modo final)."""

    sello: str = field(repr=False)
    no_certificado: str
    certificado: str = field(repr=False)


@dataclass(frozen=True)
class Emisor:
    rfc: str
    nombre: str
    regimen_fiscal: str


@dataclass(frozen=True)
class Receptor:
    rfc: str
    nombre: str
    domicilio_fiscal: str
    regimen_fiscal: str
    uso_cfdi: str


@dataclass(frozen=True)
class CfdiRelacionados:
    tipo_relacion: str
    uuids: Tuple[str, ...]


@dataclass(frozen=True)
class Retencion:
    """Retención a nivel concepto (ISR 001 / IVA 002) con su tasa."""

    impuesto: str
    tasa: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "tasa", to_decimal(self.tasa))


@dataclass(frozen=True)
class ImpuestoLinea:
    """Traslado o retención ya calculado (concepto o agregado del comprobante)."""

    base: Decimal
    impuesto: str
    tipo_factor: str
    tasa_o_cuota: Optional[Decimal]
    importe: Optional[Decimal]


@dataclass(frozen=True)
class Concepto:
    clave_prod_serv: str
    cantidad: Decimal
    clave_unidad: str
    descripcion: str
    valor_unitario: Decimal
    descuento_porcentaje: Decimal = CERO
    no_identificacion: Optional[str] = None
    unidad: Optional[str] = None
    objeto_imp: str = OBJETO_IMP_SI
    # None = IVA exento
    tasa_iva: Optional[Decimal] = IVA_16
    retenciones: Tuple[Retencion, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "cantidad", to_decimal(self.cantidad))
        object.__setattr__(self, "valor_unitario", to_decimal(self.valor_unitario))
        object.__setattr__(self, "descuento_porcentaje", to_decimal(self.descuento_porcentaje))
        if self.tasa_iva is not None:
            object.__setattr__(self, "tasa_iva", to_decimal(self.tasa_iva))
        object.__setattr__(self, "retenciones", tuple(self.retenciones))

    @property
    def importe(self) -> Decimal:
        return round_money(self.cantidad * self.valor_unitario)

    @property
    def descuento(self) -> Decimal:
        return round_money(self.importe * self.descuento_porcentaje / Decimal("100"))

    @property
    def base(self) -> Decimal:
        return self.importe - self.descuento

    @property
    def traslados(self) -> Tuple[ImpuestoLinea, ...]:
        if self.objeto_imp != OBJETO_IMP_SI:
            return ()
        if self.tasa_iva is None:
            return (ImpuestoLinea(self.base, IMPUESTO_IVA, TIPO_FACTOR_EXENTO, None, None),)
        return (
            ImpuestoLinea(
                self.base,
                IMPUESTO_IVA,
                TIPO_FACTOR_TASA,
                self.tasa_iva,
                round_money(self.base * self.tasa_iva),
            ),
        )

    @property
    def retenciones_calculadas(self) -> Tuple[ImpuestoLinea, ...]:
        if self.objeto_imp != OBJETO_IMP_SI:
            return ()
        return tuple(
            ImpuestoLinea(
                self.base,
                ret.impuesto,
                TIPO_FACTOR_TASA,
                ret.tasa,
                round_money(self.base * ret.tasa),
            )
            for ret in self.retenciones
        )


@dataclass(frozen=True)
class InvoiceDraft:
    """Comprobante listo para sellar (tipo I o E)."""

    emisor: Emisor
    receptor: Receptor
    conceptos: Tuple[Concepto, ...]
    folio: str
    fecha: datetime
    lugar_expedicion: str
    serie: Optional[str] = None
    moneda: str = "MXN"
    tipo_cambio: Optional[Decimal] = None
    forma_pago: Optional[str] = "99"
    metodo_pago: Optional[str] = "PUE"
    tipo_comprobante: str = "I"
    exportacion: str = "01"
    relacionados: Optional[CfdiRelacionados] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "conceptos", tuple(self.conceptos))
        if self.tipo_cambio is not None:
            object.__setattr__(self, "tipo_cambio", to_decimal(self.tipo_cambio))

    # ---- totales derivados ----

    @property
    def subtotal(self) -> Decimal:
        return sum((c.importe for c in self.conceptos), CERO)

    @property
    def descuento(self) -> Decimal:
        return sum((c.descuento for c in self.conceptos), CERO)

    @property
    def traslados(self) -> List[ImpuestoLinea]:
        """Traslados agrupados por (Impuesto, TipoFactor, TasaOCuota), en orden de aparición."""
        grupos: Dict[Tuple[str, str, Optional[Decimal]], List[ImpuestoLinea]] = {}
        for concepto in self.conceptos:
            for t in concepto.traslados:
                grupos.setdefault((t.impuesto, t.tipo_factor, t.tasa_o_cuota), []).append(t)

        agregados: List[ImpuestoLinea] = []
        for (impuesto, tipo_factor, tasa), lineas in grupos.items():
            importe = None
            if tipo_factor != TIPO_FACTOR_EXENTO:
                importe = sum((t.importe or CERO for t in lineas), CERO)
            agregados.append(
                ImpuestoLinea(
                    sum((t.base for t in lineas), CERO),
                    impuesto,
                    tipo_factor,
                    tasa,
                    importe,
                )
            )
        return agregados

    @property
    def retenciones(self) -> List[Tuple[str, Decimal]]:
        """Retenciones agrupadas por Impuesto: [(impuesto, importe)]."""
        grupos: Dict[str, Decimal] = {}
        for concepto in self.conceptos:
            for r in concepto.retenciones_calculadas:
                grupos[r.impuesto] = grupos.get(r.impuesto, CERO) + (r.importe or CERO)
        return list(grupos.items())

    @property
    def base_gravable(self) -> Decimal:
        return sum((t.base for t in self.traslados if t.tipo_factor != TIPO_FACTOR_EXENTO), CERO)

    @property
    def total_impuestos_trasladados(self) -> Optional[Decimal]:
        tasas = [t for t in self.traslados if t.tipo_factor != TIPO_FACTOR_EXENTO]
        if not tasas:
            return None
        return sum((t.importe or CERO for t in tasas), CERO)

    @property
    def total_impuestos_retenidos(self) -> Optional[Decimal]:
        if not self.retenciones:
            return None
        return sum((importe for _, importe in self.retenciones), CERO)

    @property
    def total(self) -> Decimal:
        return (
            self.subtotal
            - self.descuento
            + (self.total_impuestos_trasladados or CERO)
            - (self.total_impuestos_retenidos or CERO)
        )


@dataclass(frozen=True)
class CancellationRequest:
    uuid: str
    motivo: str
    uuid_sustitucion: Optional[str] = None


@dataclass(frozen=True)
class StampedInvoice:
    """Resultado inmutable de un timbrado exitoso."""

    documento: Union[InvoiceDraft, Any]
    uuid: str
    fecha_timbrado: str
    sello_sat: str
    no_certificado_sat: str
    xml: str = field(repr=False)
    sello_cfd: Optional[str] = field(default=None, repr=False)
    cadena_original_tfd: Optional[str] = field(default=None, repr=False)
    recuperado: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "fecha_timbrado": self.fecha_timbrado,
            "sello_sat": self.sello_sat,
            "no_certificado_sat": self.no_certificado_sat,
            "sello_cfd": self.sello_cfd,
            "cadena_original_tfd": self.cadena_original_tfd,
            "recuperado": self.recuperado,
            "xml": self.xml,
        }
