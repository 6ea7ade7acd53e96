# facturacion/services/cfdi/pago_builder.py
"""
CFDI tipo P con Complemento de Pago 2.0 (Recepción de pagos).

El comprobante lleva SubTotal/Total en 0, Moneda XXX, un único concepto
fijo y el detalle del pago en pago20:Pagos.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from django.utils import timezone
from lxml import etree

from .errors import FieldError, ValidationError
from .types import (
    CERO,
    IMPUESTO_IVA,
    IVA_16,
    OBJETO_IMP_NO,
    OBJETO_IMP_SI,
    TIPO_FACTOR_TASA,
    Emisor,
    FirmaCFDI,
    Receptor,
    quantize_tipo_cambio,
    round_money,
    to_decimal,
)
from .validator import CODIGO_POSTAL_PATTERN, is_valid_rfc, is_valid_uuid
from .xml_builder import (
    NS_CFDI,
    NS_XSI,
    comprobante_root,
    emisor_attrs,
    format_decimal,
    format_fecha,
    format_tipo_cambio,
    receptor_attrs,
    sub,
    to_xml_string,
)

logger = logging.getLogger("facturacion.cfdi")

NS_PAGO20 = "http://www.sat.gob.mx/Pagos20"
SCHEMA_PAGOS = (
    "http://www.sat.gob.mx/cfd/4 http://www.sat.gob.mx/sitio_internet/cfd/4/cfdv40.xsd "
    "http://www.sat.gob.mx/Pagos20 http://www.sat.gob.mx/sitio_internet/cfd/Pagos/Pagos20.xsd"
)
NSMAP_PAGOS = {"cfdi": NS_CFDI, "pago20": NS_PAGO20, "xsi": NS_XSI}

USO_CFDI_PAGOS = "CP01"

# Sufijo de los atributos de Totales por tasa de IVA
_TOTALES_POR_TASA = {
    Decimal("0.160000"): "IVA16",
    Decimal("0.080000"): "IVA8",
    Decimal("0.000000"): "IVA0",
}


@dataclass(frozen=True)
class DocumentoRelacionado:
    """Factura PPD a la que se aplica (parte de) un pago."""

    uuid: str
    folio: str
    num_parcialidad: int
    saldo_anterior: Decimal
    importe_pagado: Decimal
    serie: Optional[str] = None
    moneda: str = "MXN"
    equivalencia: Decimal = Decimal("1")
    # None = no objeto de impuesto
    tasa_iva: Optional[Decimal] = IVA_16
    base_iva: Optional[Decimal] = None
    importe_iva: Optional[Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "saldo_anterior", to_decimal(self.saldo_anterior))
        object.__setattr__(self, "importe_pagado", to_decimal(self.importe_pagado))
        object.__setattr__(self, "equivalencia", to_decimal(self.equivalencia))
        if self.tasa_iva is not None:
            object.__setattr__(self, "tasa_iva", to_decimal(self.tasa_iva))
        if self.base_iva is not None:
            object.__setattr__(self, "base_iva", to_decimal(self.base_iva))
        if self.importe_iva is not None:
            object.__setattr__(self, "importe_iva", to_decimal(self.importe_iva))

    @property
    def saldo_insoluto(self) -> Decimal:
        return self.saldo_anterior - self.importe_pagado

    @property
    def objeto_imp(self) -> str:
        return OBJETO_IMP_NO if self.tasa_iva is None else OBJETO_IMP_SI

    @property
    def base(self) -> Decimal:
        """Base del IVA; por omisión se desglosa del importe pagado."""
        if self.base_iva is not None:
            return round_money(self.base_iva)
        if self.tasa_iva is None:
            return CERO
        return round_money(self.importe_pagado / (Decimal("1") + self.tasa_iva))

    @property
    def iva(self) -> Decimal:
        if self.importe_iva is not None:
            return round_money(self.importe_iva)
        if self.tasa_iva is None:
            return CERO
        return round_money(self.base * self.tasa_iva)


@dataclass(frozen=True)
class Pago:
    fecha_pago: datetime
    forma_pago: str
    monto: Decimal
    documentos: Tuple[DocumentoRelacionado, ...]
    moneda: str = "MXN"
    tipo_cambio: Optional[Decimal] = None
    num_operacion: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "monto", to_decimal(self.monto))
        object.__setattr__(self, "documentos", tuple(self.documentos))
        if self.tipo_cambio is not None:
            object.__setattr__(self, "tipo_cambio", to_decimal(self.tipo_cambio))

    @property
    def tipo_cambio_p(self) -> Decimal:
        """TipoCambioP tal como se escribe en el XML; los totales en MXN se calculan con este valor."""
        if self.moneda == "MXN" or self.tipo_cambio is None:
            return Decimal("1")
        return quantize_tipo_cambio(self.tipo_cambio)

    @property
    def aplicado(self) -> Decimal:
        """Suma de lo aplicado a los documentos, en la moneda del pago."""
        return sum(
            (round_money(d.importe_pagado / (d.equivalencia or Decimal("1"))) for d in self.documentos),
            CERO,
        )

    def traslados(self) -> "OrderedDict[Decimal, Tuple[Decimal, Decimal]]":
        """(base, importe) de IVA por tasa para ImpuestosP."""
        grupos: "OrderedDict[Decimal, Tuple[Decimal, Decimal]]" = OrderedDict()
        for doc in self.documentos:
            if doc.tasa_iva is None:
                continue
            base, importe = grupos.get(doc.tasa_iva, (CERO, CERO))
            equivalencia = doc.equivalencia or Decimal("1")
            grupos[doc.tasa_iva] = (
                base + round_money(doc.base / equivalencia),
                importe + round_money(doc.iva / equivalencia),
            )
        return grupos


@dataclass(frozen=True)
class PaymentComplement:
    emisor: Emisor
    receptor: Receptor
    lugar_expedicion: str
    pagos: Tuple[Pago, ...]
    serie: Optional[str] = None
    folio: Optional[str] = None
    fecha: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "pagos", tuple(self.pagos))

    @property
    def monto_total_pagos(self) -> Decimal:
        return sum(
            (round_money(p.monto * p.tipo_cambio_p) for p in self.pagos),
            CERO,
        )

    def totales_traslados(self) -> Dict[str, Tuple[Decimal, Decimal]]:
        """Totales en MXN por sufijo (IVA16, IVA8, IVA0), a partir de ImpuestosP."""
        totales: Dict[str, Tuple[Decimal, Decimal]] = {}
        for pago in self.pagos:
            tipo_cambio = pago.tipo_cambio_p
            for tasa, (base, importe) in pago.traslados().items():
                sufijo = _TOTALES_POR_TASA.get(tasa.quantize(Decimal("0.000001")))
                if sufijo is None:
                    continue
                acumulado = totales.get(sufijo, (CERO, CERO))
                totales[sufijo] = (
                    acumulado[0] + round_money(base * tipo_cambio),
                    acumulado[1] + round_money(importe * tipo_cambio),
                )
        return totales


# ==========================
# Validación
# ==========================


def validate_payment_complement(complemento: PaymentComplement) -> None:
    """Invariantes de conciliación del complemento; ValidationError con todos los campos."""
    errors: List[FieldError] = []

    if not is_valid_rfc(complemento.emisor.rfc):
        errors.append(FieldError("emisor.rfc", "RFC con formato inválido"))
    if not is_valid_rfc(complemento.receptor.rfc):
        errors.append(FieldError("receptor.rfc", "RFC con formato inválido"))
    if not CODIGO_POSTAL_PATTERN.match(complemento.receptor.domicilio_fiscal or ""):
        errors.append(FieldError("receptor.domicilio_fiscal", "Código postal de 5 dígitos requerido"))
    if not CODIGO_POSTAL_PATTERN.match(complemento.lugar_expedicion or ""):
        errors.append(FieldError("lugar_expedicion", "Código postal de 5 dígitos requerido"))

    if not complemento.pagos:
        errors.append(FieldError("pagos", "Se requiere al menos un pago"))

    aplicado_por_uuid: Dict[str, Decimal] = {}
    saldo_por_uuid: Dict[str, Decimal] = {}

    for i, pago in enumerate(complemento.pagos):
        prefix = f"pagos[{i}]"
        if pago.monto <= 0:
            errors.append(FieldError(f"{prefix}.monto", "El monto debe ser mayor a 0"))
        if not pago.forma_pago:
            errors.append(FieldError(f"{prefix}.forma_pago", "Falta la forma de pago"))
        if pago.moneda != "MXN" and not pago.tipo_cambio:
            errors.append(FieldError(f"{prefix}.tipo_cambio", f"Tipo de cambio requerido para moneda {pago.moneda}"))
        if not pago.documentos:
            errors.append(FieldError(f"{prefix}.documentos", "Se requiere al menos un documento relacionado"))
            continue

        for j, doc in enumerate(pago.documentos):
            dprefix = f"{prefix}.documentos[{j}]"
            if not is_valid_uuid(doc.uuid):
                errors.append(FieldError(f"{dprefix}.uuid", "UUID inválido"))
            if doc.num_parcialidad < 1:
                errors.append(FieldError(f"{dprefix}.num_parcialidad", "La parcialidad inicia en 1"))
            if doc.importe_pagado <= 0:
                errors.append(FieldError(f"{dprefix}.importe_pagado", "El monto pagado debe ser mayor a 0"))
            if doc.importe_pagado > doc.saldo_anterior:
                errors.append(FieldError(f"{dprefix}.importe_pagado", "El monto pagado excede el saldo anterior"))
            if doc.saldo_insoluto < 0:
                errors.append(FieldError(f"{dprefix}.saldo_insoluto", "El saldo insoluto no puede ser negativo"))

            clave = doc.uuid.upper()
            aplicado_por_uuid[clave] = aplicado_por_uuid.get(clave, CERO) + doc.importe_pagado
            saldo_por_uuid[clave] = max(saldo_por_uuid.get(clave, CERO), doc.saldo_anterior)

        if pago.aplicado > pago.monto:
            errors.append(
                FieldError(
                    f"{prefix}.monto",
                    f"El monto del pago ({pago.monto}) es menor a lo aplicado a documentos ({pago.aplicado})",
                )
            )

    for uuid, aplicado in aplicado_por_uuid.items():
        if aplicado > saldo_por_uuid[uuid]:
            errors.append(
                FieldError(
                    "pagos",
                    f"Lo aplicado al documento {uuid} ({aplicado}) excede su saldo pendiente ({saldo_por_uuid[uuid]})",
                )
            )

    if errors:
        logger.info("Complemento de pago inválido: %s", [f"{e.campo}: {e.mensaje}" for e in errors])
        raise ValidationError(errors)


# ==========================
# XML
# ==========================


def _pago(ns_parent: etree._Element, name: str, attrs) -> etree._Element:
    return sub(ns_parent, name, attrs, ns=NS_PAGO20)


def _build_totales(pagos_el: etree._Element, complemento: PaymentComplement) -> None:
    attrs = []
    totales = complemento.totales_traslados()
    for sufijo in ("IVA16", "IVA8", "IVA0"):
        if sufijo in totales:
            base, importe = totales[sufijo]
            attrs.append((f"TotalTrasladosBase{sufijo}", format_decimal(base)))
            attrs.append((f"TotalTrasladosImpuesto{sufijo}", format_decimal(importe)))
    attrs.append(("MontoTotalPagos", format_decimal(complemento.monto_total_pagos)))
    _pago(pagos_el, "Totales", attrs)


def _build_documento(pago_el: etree._Element, doc: DocumentoRelacionado) -> None:
    doc_el = _pago(
        pago_el,
        "DoctoRelacionado",
        [
            ("IdDocumento", doc.uuid.upper()),
            ("Serie", doc.serie or None),
            ("Folio", doc.folio or None),
            ("MonedaDR", doc.moneda),
            ("EquivalenciaDR", "1" if doc.equivalencia == 1 else format_decimal(doc.equivalencia, "0.000000")),
            ("NumParcialidad", str(doc.num_parcialidad)),
            ("ImpSaldoAnt", format_decimal(doc.saldo_anterior)),
            ("ImpPagado", format_decimal(doc.importe_pagado)),
            ("ImpSaldoInsoluto", format_decimal(doc.saldo_insoluto)),
            ("ObjetoImpDR", doc.objeto_imp),
        ],
    )
    if doc.tasa_iva is None:
        return

    impuestos_el = _pago(doc_el, "ImpuestosDR", [])
    traslados_el = _pago(impuestos_el, "TrasladosDR", [])
    _pago(
        traslados_el,
        "TrasladoDR",
        [
            ("BaseDR", format_decimal(doc.base)),
            ("ImpuestoDR", IMPUESTO_IVA),
            ("TipoFactorDR", TIPO_FACTOR_TASA),
            ("TasaOCuotaDR", format_decimal(doc.tasa_iva, "0.000000")),
            ("ImporteDR", format_decimal(doc.iva)),
        ],
    )


def _build_pago(pagos_el: etree._Element, pago: Pago) -> None:
    pago_el = _pago(
        pagos_el,
        "Pago",
        [
            ("FechaPago", format_fecha(pago.fecha_pago)),
            ("FormaDePagoP", pago.forma_pago),
            ("MonedaP", pago.moneda),
            ("TipoCambioP", "1" if pago.moneda == "MXN" else format_tipo_cambio(pago.tipo_cambio_p)),
            ("Monto", format_decimal(pago.monto)),
            ("NumOperacion", pago.num_operacion or None),
        ],
    )
    for doc in pago.documentos:
        _build_documento(pago_el, doc)

    traslados = pago.traslados()
    if not traslados:
        return
    impuestos_el = _pago(pago_el, "ImpuestosP", [])
    traslados_el = _pago(impuestos_el, "TrasladosP", [])
    for tasa, (base, importe) in traslados.items():
        _pago(
            traslados_el,
            "TrasladoP",
            [
                ("BaseP", format_decimal(base)),
                ("ImpuestoP", IMPUESTO_IVA),
                ("TipoFactorP", TIPO_FACTOR_TASA),
                ("TasaOCuotaP", format_decimal(tasa, "0.000000")),
                ("ImporteP", format_decimal(importe)),
            ],
        )


def build_payment_xml(complemento: PaymentComplement, firma: Optional[FirmaCFDI] = None) -> str:
    """
    XML del CFDI tipo P. Sin `firma` se genera sin sello (timbrado con CSD en el PAC).
    """
    validate_payment_complement(complemento)

    fecha = complemento.fecha or timezone.now()
    root = comprobante_root(
        [
            ("Version", "4.0"),
            ("Serie", complemento.serie or None),
            ("Folio", complemento.folio or None),
            ("Fecha", format_fecha(fecha)),
            ("Sello", firma.sello if firma else None),
            ("NoCertificado", firma.no_certificado if firma else None),
            ("Certificado", firma.certificado if firma else None),
            ("SubTotal", "0"),
            ("Moneda", "XXX"),
            ("Total", "0"),
            ("TipoDeComprobante", "P"),
            ("Exportacion", "01"),
            ("LugarExpedicion", complemento.lugar_expedicion),
        ],
        nsmap=NSMAP_PAGOS,
        schema_location=SCHEMA_PAGOS,
    )

    sub(root, "Emisor", emisor_attrs(complemento.emisor))
    sub(root, "Receptor", receptor_attrs(replace(complemento.receptor, uso_cfdi=USO_CFDI_PAGOS)))

    conceptos_el = sub(root, "Conceptos")
    sub(
        conceptos_el,
        "Concepto",
        [
            ("ClaveProdServ", "84111506"),
            ("Cantidad", "1"),
            ("ClaveUnidad", "ACT"),
            ("Descripcion", "Pago"),
            ("ValorUnitario", "0"),
            ("Importe", "0"),
            ("ObjetoImp", OBJETO_IMP_NO),
        ],
    )

    complemento_el = sub(root, "Complemento")
    pagos_el = _pago(complemento_el, "Pagos", [("Version", "2.0")])
    _build_totales(pagos_el, complemento)
    for pago in complemento.pagos:
        _build_pago(pagos_el, pago)

    xml_str = to_xml_string(root)
    logger.debug(
        "XML de complemento de pago generado (%s pagos, monto total %s)",
        len(complemento.pagos),
        complemento.monto_total_pagos,
    )
    return xml_str
