# facturacion/services/cfdi/xml_builder.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from django.utils import timezone
from lxml import etree

from .errors import ValidationError
from .types import (
    CERO,
    TIPO_FACTOR_EXENTO,
    Concepto,
    Emisor,
    FirmaCFDI,
    ImpuestoLinea,
    InvoiceDraft,
    Receptor,
    quantize_tipo_cambio,
)
from .validator import validate_invoice

logger = logging.getLogger("facturacion.cfdi")

CFDI_VERSION = "4.0"

NS_CFDI = "http://www.sat.gob.mx/cfd/4"
NS_XSI = "http://www.w3.org/2001/XMLSchema-instance"
SCHEMA_CFDI = "http://www.sat.gob.mx/cfd/4 http://www.sat.gob.mx/sitio_internet/cfd/4/cfdv40.xsd"

NSMAP = {"cfdi": NS_CFDI, "xsi": NS_XSI}

MODE_OMIT_SIGNATURE = "omit-signature"
MODE_PLACEHOLDER = "placeholder"
MODE_FINAL = "final"
MODES = (MODE_OMIT_SIGNATURE, MODE_PLACEHOLDER, MODE_FINAL)

# Solo para vista previa. Nunca se sustituyen textualmente.
SELLO_PLACEHOLDER = "SELLO_PENDIENTE"
NO_CERTIFICADO_PLACEHOLDER = "00000000000000000000"
CERTIFICADO_PLACEHOLDER = "CERTIFICADO_PENDIENTE"

Attrs = List[Tuple[str, Optional[str]]]


def _format_decimal(value: Decimal | float | int | None, pattern: str = "0.00") -> str:
    """
    Formatea un número decimal según el patrón indicado (sin notación científica).

    - montos: 2 decimales (pattern="0.00")
    - cantidades, valor unitario y TasaOCuota: 6 decimales (pattern="0.000000")

    Maneja None como 0.00.
    """
    if value is None:
        value = CERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))

    if pattern == "0.00":
        return f"{value.quantize(Decimal('0.01')):.2f}"
    if pattern == "0.000000":
        return f"{value.quantize(Decimal('0.000001')):.6f}"
    # fallback genérico
    return f"{value:f}"


format_decimal = _format_decimal


def format_tipo_cambio(value: Decimal) -> str:
    return f"{quantize_tipo_cambio(value):f}"


def format_fecha(fecha: datetime) -> str:
    """Fecha en hora local del lugar de expedición, formato AAAA-MM-DDThh:mm:ss."""
    if timezone.is_aware(fecha):
        fecha = timezone.localtime(fecha)
    return fecha.strftime("%Y-%m-%dT%H:%M:%S")


def _money_or_none(value: Optional[Decimal]) -> Optional[str]:
    if value is None or value == 0:
        return None
    return _format_decimal(value)


def set_attributes(element: etree._Element, attrs: Iterable[Tuple[str, Optional[str]]]) -> etree._Element:
    """Agrega atributos en el orden dado; None significa atributo ausente."""
    for name, value in attrs:
        if value is not None:
            element.set(name, value)
    return element


def sub(parent: etree._Element, name: str, attrs: Iterable[Tuple[str, Optional[str]]] = (), ns: str = NS_CFDI) -> etree._Element:
    return set_attributes(etree.SubElement(parent, f"{{{ns}}}{name}"), attrs)


# ==========================
# Atributos por nodo
# ==========================


def comprobante_attrs(
    invoice: InvoiceDraft,
    *,
    sello: Optional[str] = None,
    no_certificado: Optional[str] = None,
    certificado: Optional[str] = None,
) -> Attrs:
    moneda = invoice.moneda.upper()
    tipo_cambio = None
    if moneda not in ("MXN", "XXX") and invoice.tipo_cambio is not None:
        tipo_cambio = format_tipo_cambio(invoice.tipo_cambio)

    return [
        ("Version", CFDI_VERSION),
        ("Serie", invoice.serie or None),
        ("Folio", invoice.folio or None),
        ("Fecha", format_fecha(invoice.fecha)),
        ("Sello", sello),
        ("FormaPago", invoice.forma_pago or None),
        ("NoCertificado", no_certificado),
        ("Certificado", certificado),
        ("SubTotal", _format_decimal(invoice.subtotal)),
        ("Descuento", _money_or_none(invoice.descuento)),
        ("Moneda", moneda),
        ("TipoCambio", tipo_cambio),
        ("Total", _format_decimal(invoice.total)),
        ("TipoDeComprobante", invoice.tipo_comprobante),
        ("Exportacion", invoice.exportacion),
        ("MetodoPago", invoice.metodo_pago or None),
        ("LugarExpedicion", invoice.lugar_expedicion),
    ]


def emisor_attrs(emisor: Emisor) -> Attrs:
    return [
        ("Rfc", emisor.rfc.upper()),
        ("Nombre", emisor.nombre),
        ("RegimenFiscal", emisor.regimen_fiscal),
    ]


def receptor_attrs(receptor: Receptor) -> Attrs:
    return [
        ("Rfc", receptor.rfc.upper()),
        ("Nombre", receptor.nombre),
        ("DomicilioFiscalReceptor", receptor.domicilio_fiscal),
        ("RegimenFiscalReceptor", receptor.regimen_fiscal),
        ("UsoCFDI", receptor.uso_cfdi),
    ]


def concepto_attrs(concepto: Concepto) -> Attrs:
    return [
        ("ClaveProdServ", concepto.clave_prod_serv),
        ("NoIdentificacion", concepto.no_identificacion or None),
        ("Cantidad", _format_decimal(concepto.cantidad, "0.000000")),
        ("ClaveUnidad", concepto.clave_unidad),
        ("Unidad", concepto.unidad or None),
        ("Descripcion", concepto.descripcion),
        ("ValorUnitario", _format_decimal(concepto.valor_unitario, "0.000000")),
        ("Importe", _format_decimal(concepto.importe)),
        ("Descuento", _money_or_none(concepto.descuento)),
        ("ObjetoImp", concepto.objeto_imp),
    ]


def traslado_attrs(linea: ImpuestoLinea, *, con_base: bool = True) -> Attrs:
    exento = linea.tipo_factor == TIPO_FACTOR_EXENTO
    attrs: Attrs = []
    if con_base:
        attrs.append(("Base", _format_decimal(linea.base)))
    attrs.extend(
        [
            ("Impuesto", linea.impuesto),
            ("TipoFactor", linea.tipo_factor),
            ("TasaOCuota", None if exento else _format_decimal(linea.tasa_o_cuota, "0.000000")),
            ("Importe", None if exento else _format_decimal(linea.importe)),
        ]
    )
    return attrs


def retencion_concepto_attrs(linea: ImpuestoLinea) -> Attrs:
    return [
        ("Base", _format_decimal(linea.base)),
        ("Impuesto", linea.impuesto),
        ("TipoFactor", linea.tipo_factor),
        ("TasaOCuota", _format_decimal(linea.tasa_o_cuota, "0.000000")),
        ("Importe", _format_decimal(linea.importe)),
    ]


# ==========================
# Nodos
# ==========================


def comprobante_root(attrs: Attrs, *, nsmap: Optional[Dict[str, str]] = None, schema_location: str = SCHEMA_CFDI) -> etree._Element:
    root = etree.Element(f"{{{NS_CFDI}}}Comprobante", nsmap=nsmap or NSMAP)
    root.set(f"{{{NS_XSI}}}schemaLocation", schema_location)
    return set_attributes(root, attrs)


def _build_relacionados(root: etree._Element, invoice: InvoiceDraft) -> None:
    if invoice.relacionados is None:
        return
    rel = sub(root, "CfdiRelacionados", [("TipoRelacion", invoice.relacionados.tipo_relacion)])
    for uuid in invoice.relacionados.uuids:
        sub(rel, "CfdiRelacionado", [("UUID", uuid.upper())])


def _build_conceptos(root: etree._Element, conceptos: Sequence[Concepto]) -> None:
    conceptos_el = sub(root, "Conceptos")
    for concepto in conceptos:
        concepto_el = sub(conceptos_el, "Concepto", concepto_attrs(concepto))

        traslados = concepto.traslados
        retenciones = concepto.retenciones_calculadas
        if not traslados and not retenciones:
            continue

        impuestos_el = sub(concepto_el, "Impuestos")
        if traslados:
            traslados_el = sub(impuestos_el, "Traslados")
            for linea in traslados:
                sub(traslados_el, "Traslado", traslado_attrs(linea))
        if retenciones:
            retenciones_el = sub(impuestos_el, "Retenciones")
            for linea in retenciones:
                sub(retenciones_el, "Retencion", retencion_concepto_attrs(linea))


def _build_impuestos(root: etree._Element, invoice: InvoiceDraft) -> None:
    """Impuestos del comprobante: agregados de los conceptos."""
    traslados = invoice.traslados
    retenciones = invoice.retenciones
    if not traslados and not retenciones:
        return

    retenidos = invoice.total_impuestos_retenidos
    trasladados = invoice.total_impuestos_trasladados
    impuestos_el = sub(
        root,
        "Impuestos",
        [
            ("TotalImpuestosRetenidos", None if retenidos is None else _format_decimal(retenidos)),
            ("TotalImpuestosTrasladados", None if trasladados is None else _format_decimal(trasladados)),
        ],
    )

    if retenciones:
        retenciones_el = sub(impuestos_el, "Retenciones")
        for impuesto, importe in retenciones:
            sub(retenciones_el, "Retencion", [("Impuesto", impuesto), ("Importe", _format_decimal(importe))])

    if traslados:
        traslados_el = sub(impuestos_el, "Traslados")
        for linea in traslados:
            sub(traslados_el, "Traslado", traslado_attrs(linea))


def build_comprobante_element(
    invoice: InvoiceDraft,
    *,
    sello: Optional[str] = None,
    no_certificado: Optional[str] = None,
    certificado: Optional[str] = None,
) -> etree._Element:
    """Árbol del Comprobante; los atributos de firma en None se omiten."""
    root = comprobante_root(
        comprobante_attrs(invoice, sello=sello, no_certificado=no_certificado, certificado=certificado)
    )
    _build_relacionados(root, invoice)
    sub(root, "Emisor", emisor_attrs(invoice.emisor))
    sub(root, "Receptor", receptor_attrs(invoice.receptor))
    _build_conceptos(root, invoice.conceptos)
    _build_impuestos(root, invoice)
    return root


def to_xml_string(root: etree._Element) -> str:
    xml_bytes = etree.tostring(
        root,
        encoding="UTF-8",
        xml_declaration=True,
        pretty_print=False,
    )
    return xml_bytes.decode("utf-8")


def build_invoice_xml(invoice: InvoiceDraft, mode: str = MODE_FINAL, firma: Optional[FirmaCFDI] = None) -> str:
    """
    Genera el XML del CFDI 4.0 (tipo I/E).

    Modos:
    - omit-signature: sin Sello/NoCertificado/Certificado (timbrado con CSD en el PAC).
    - placeholder: valores centinela, solo para vista previa.
    - final: requiere FirmaCFDI; la firma se emite en la misma pasada.
    """
    if mode not in MODES:
        raise ValueError(f"Modo de construcción desconocido: {mode!r}")

    validate_invoice(invoice)

    if mode == MODE_FINAL:
        if firma is None or not firma.sello or not firma.no_certificado or not firma.certificado:
            raise ValidationError(
                [],
                mensaje="El modo final requiere sello, número de certificado y certificado",
                codigo="MISSING_SIGNATURE",
            )
        root = build_comprobante_element(
            invoice,
            sello=firma.sello,
            no_certificado=firma.no_certificado,
            certificado=firma.certificado,
        )
    elif mode == MODE_PLACEHOLDER:
        root = build_comprobante_element(
            invoice,
            sello=SELLO_PLACEHOLDER,
            no_certificado=NO_CERTIFICADO_PLACEHOLDER,
            certificado=CERTIFICADO_PLACEHOLDER,
        )
    else:
        root = build_comprobante_element(invoice)

    xml_str = to_xml_string(root)
    logger.debug(
        "XML CFDI generado (modo=%s, folio=%s%s, %s bytes)",
        mode,
        invoice.serie or "",
        invoice.folio,
        len(xml_str),
    )
    return xml_str
