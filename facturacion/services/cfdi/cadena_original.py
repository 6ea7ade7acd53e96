# facturacion/services/cfdi/cadena_original.py
"""
Cadena original del CFDI 4.0.

Replica las reglas de cadenaoriginal_4_0.xslt del SAT:

- La cadena inicia con "||" y termina con "||"; cada dato va precedido de "|".
- Atributo Requerido: siempre ocupa su posición (vacía si falta).
- Atributo Opcional: solo si existe en el nodo (presente y vacío = posición vacía).
- Los valores se normalizan como normalize-space() y no se escapan.

El orden se toma de las tablas de este módulo, no del orden del XML.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple, Union

from lxml import etree

from .types import InvoiceDraft
from .validator import validate_invoice
from .xml_builder import build_comprobante_element

logger = logging.getLogger("facturacion.cfdi")

R = True   # Requerido
O = False  # Opcional

# Un paso es ("@", atributo, requerido) o ("/", hijo): los hijos se procesan en orden de documento.
Paso = Union[Tuple[str, str, bool], Tuple[str, str]]


def _attrs(*specs: Tuple[str, bool]) -> List[Paso]:
    return [("@", name, requerido) for name, requerido in specs]


def _hijos(*names: str) -> List[Paso]:
    return [("/", name) for name in names]


REGLAS: Dict[str, List[Paso]] = {
    "Comprobante": _attrs(
        ("Version", R),
        ("Serie", O),
        ("Folio", O),
        ("Fecha", R),
        ("FormaPago", O),
        ("NoCertificado", R),
        ("SubTotal", R),
        ("Descuento", O),
        ("Moneda", R),
        ("TipoCambio", O),
        ("Total", R),
        ("TipoDeComprobante", R),
        ("Exportacion", R),
        ("MetodoPago", O),
        ("LugarExpedicion", R),
        ("Confirmacion", O),
    )
    + _hijos("InformacionGlobal", "CfdiRelacionados", "Emisor", "Receptor", "Conceptos", "Impuestos", "Complemento"),
    "InformacionGlobal": _attrs(("Periodicidad", R), ("Meses", R), ("Año", R)),
    "CfdiRelacionados": _attrs(("TipoRelacion", R)) + _hijos("CfdiRelacionado"),
    "CfdiRelacionado": _attrs(("UUID", R)),
    "Emisor": _attrs(("Rfc", R), ("Nombre", R), ("RegimenFiscal", R), ("FacAtrAdquirente", O)),
    "Receptor": _attrs(
        ("Rfc", R),
        ("Nombre", R),
        ("DomicilioFiscalReceptor", R),
        ("ResidenciaFiscal", O),
        ("NumRegIdTrib", O),
        ("RegimenFiscalReceptor", R),
        ("UsoCFDI", R),
    ),
    "Conceptos": _hijos("Concepto"),
    "Concepto": _attrs(
        ("ClaveProdServ", R),
        ("NoIdentificacion", O),
        ("Cantidad", R),
        ("ClaveUnidad", R),
        ("Unidad", O),
        ("Descripcion", R),
        ("ValorUnitario", R),
        ("Importe", R),
        ("Descuento", O),
        ("ObjetoImp", R),
    )
    + _hijos("Impuestos"),
    # Impuestos de concepto: traslados y luego retenciones
    "Concepto/Impuestos": _hijos("Traslados", "Retenciones"),
    "Concepto/Traslados": _hijos("Traslado"),
    "Concepto/Traslado": _attrs(
        ("Base", R), ("Impuesto", R), ("TipoFactor", R), ("TasaOCuota", O), ("Importe", O)
    ),
    "Concepto/Retenciones": _hijos("Retencion"),
    "Concepto/Retencion": _attrs(
        ("Base", R), ("Impuesto", R), ("TipoFactor", R), ("TasaOCuota", R), ("Importe", R)
    ),
    # Impuestos del comprobante: retenciones, total retenido, traslados, total trasladado
    "Impuestos": _hijos("Retenciones")
    + _attrs(("TotalImpuestosRetenidos", O))
    + _hijos("Traslados")
    + _attrs(("TotalImpuestosTrasladados", O)),
    "Retenciones": _hijos("Retencion"),
    "Retencion": _attrs(("Impuesto", R), ("Importe", R)),
    "Traslados": _hijos("Traslado"),
    "Traslado": _attrs(("Base", R), ("Impuesto", R), ("TipoFactor", R), ("TasaOCuota", O), ("Importe", O)),
    "Complemento": _hijos("Pagos"),
    # Complemento de pagos 2.0
    "Pagos": _attrs(("Version", R)) + _hijos("Totales", "Pago"),
    "Totales": _attrs(
        ("TotalRetencionesIVA", O),
        ("TotalRetencionesISR", O),
        ("TotalRetencionesIEPS", O),
        ("TotalTrasladosBaseIVA16", O),
        ("TotalTrasladosImpuestoIVA16", O),
        ("TotalTrasladosBaseIVA8", O),
        ("TotalTrasladosImpuestoIVA8", O),
        ("TotalTrasladosBaseIVA0", O),
        ("TotalTrasladosImpuestoIVA0", O),
        ("TotalTrasladosBaseIVAExento", O),
        ("MontoTotalPagos", R),
    ),
    "Pago": _attrs(
        ("FechaPago", R),
        ("FormaDePagoP", R),
        ("MonedaP", R),
        ("TipoCambioP", O),
        ("Monto", R),
        ("NumOperacion", O),
        ("RfcEmisorCtaOrd", O),
        ("NomBancoOrdExt", O),
        ("CtaOrdenante", O),
        ("RfcEmisorCtaBen", O),
        ("CtaBeneficiario", O),
        ("TipoCadPago", O),
        ("CertPago", O),
        ("CadPago", O),
        ("SelloPago", O),
    )
    + _hijos("DoctoRelacionado", "ImpuestosP"),
    "DoctoRelacionado": _attrs(
        ("IdDocumento", R),
        ("Serie", O),
        ("Folio", O),
        ("MonedaDR", R),
        ("EquivalenciaDR", O),
        ("NumParcialidad", R),
        ("ImpSaldoAnt", R),
        ("ImpPagado", R),
        ("ImpSaldoInsoluto", R),
        ("ObjetoImpDR", R),
    )
    + _hijos("ImpuestosDR"),
    "ImpuestosDR": _hijos("RetencionesDR", "TrasladosDR"),
    "RetencionesDR": _hijos("RetencionDR"),
    "RetencionDR": _attrs(
        ("BaseDR", R), ("ImpuestoDR", R), ("TipoFactorDR", R), ("TasaOCuotaDR", R), ("ImporteDR", R)
    ),
    "TrasladosDR": _hijos("TrasladoDR"),
    "TrasladoDR": _attrs(
        ("BaseDR", R), ("ImpuestoDR", R), ("TipoFactorDR", R), ("TasaOCuotaDR", O), ("ImporteDR", O)
    ),
    "ImpuestosP": _hijos("RetencionesP", "TrasladosP"),
    "RetencionesP": _hijos("RetencionP"),
    "RetencionP": _attrs(("ImpuestoP", R), ("ImporteP", R)),
    "TrasladosP": _hijos("TrasladoP"),
    "TrasladoP": _attrs(
        ("BaseP", R), ("ImpuestoP", R), ("TipoFactorP", R), ("TasaOCuotaP", O), ("ImporteP", O)
    ),
    # Timbre Fiscal Digital 1.1
    "TimbreFiscalDigital": _attrs(
        ("Version", R),
        ("UUID", R),
        ("FechaTimbrado", R),
        ("RfcProvCertif", R),
        ("Leyenda", O),
        ("SelloCFD", R),
        ("NoCertificadoSAT", R),
    ),
}

# Nodos cuyo nombre se repite con otra estructura dentro de un Concepto
_DENTRO_DE_CONCEPTO = ("Impuestos", "Traslados", "Traslado", "Retenciones", "Retencion")

_WS_RE = re.compile(r"\s+")


def normalize_space(value: Optional[str]) -> str:
    """Equivalente a normalize-space() de XPath."""
    if not value:
        return ""
    return _WS_RE.sub(" ", value).strip()


def _local(element: etree._Element) -> str:
    return etree.QName(element).localname


def _regla(element: etree._Element, en_concepto: bool) -> Optional[Sequence[Paso]]:
    nombre = _local(element)
    if en_concepto and nombre in _DENTRO_DE_CONCEPTO:
        return REGLAS.get(f"Concepto/{nombre}")
    return REGLAS.get(nombre)


def _recorrer(element: etree._Element, partes: List[str], en_concepto: bool = False) -> None:
    pasos = _regla(element, en_concepto)
    if pasos is None:
        # Nodo sin plantilla (p. ej. el TFD dentro de Complemento): no aporta a la cadena
        return

    en_concepto = en_concepto or _local(element) == "Concepto"

    for paso in pasos:
        if paso[0] == "@":
            _, nombre, requerido = paso
            valor = element.get(nombre)
            if valor is None and not requerido:
                continue
            partes.append(normalize_space(valor))
        else:
            nombre = paso[1]
            for hijo in element:
                if isinstance(hijo.tag, str) and _local(hijo) == nombre:
                    _recorrer(hijo, partes, en_concepto)


def cadena_from_element(element: etree._Element) -> str:
    partes: List[str] = []
    _recorrer(element, partes)
    return "||" + "|".join(partes) + "||"


def build_cadena_original(invoice: InvoiceDraft, certificate_number: str) -> str:
    """
    Cadena original del comprobante para el número de certificado dado.

    Se arma sobre el mismo árbol que produce el XML, por lo que ambos
    nunca pueden diferir en valores ni formato.
    """
    validate_invoice(invoice)
    root = build_comprobante_element(invoice, no_certificado=certificate_number)
    cadena = cadena_from_element(root)
    logger.debug("Cadena original generada (%s caracteres)", len(cadena))
    return cadena


def _parse(xml: Union[str, bytes]) -> etree._Element:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False)
    return etree.fromstring(xml, parser=parser)


def build_cadena_original_from_xml(xml: Union[str, bytes]) -> str:
    """Cadena original de un CFDI ya serializado (sellado o timbrado)."""
    root = _parse(xml)
    if _local(root) != "Comprobante":
        raise ValueError("El XML no es un cfdi:Comprobante")
    return cadena_from_element(root)


def cadena_original_tfd(xml: Union[str, bytes, etree._Element]) -> str:
    """Cadena original del complemento TimbreFiscalDigital 1.1."""
    root = xml if isinstance(xml, etree._Element) else _parse(xml)
    if _local(root) == "TimbreFiscalDigital":
        tfd = root
    else:
        tfd = next(
            (el for el in root.iter() if isinstance(el.tag, str) and _local(el) == "TimbreFiscalDigital"),
            None,
        )
    if tfd is None:
        raise ValueError("El XML no contiene TimbreFiscalDigital")
    return cadena_from_element(tfd)
