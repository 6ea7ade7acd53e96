# facturacion/services/cfdi/tfd.py
"""
Lectura del XML timbrado: datos del Comprobante y del TimbreFiscalDigital.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from lxml import etree

from .cadena_original import cadena_original_tfd

logger = logging.getLogger("facturacion.cfdi")

NS_TFD = "http://www.sat.gob.mx/TimbreFiscalDigital"


@dataclass(frozen=True)
class TimbreFiscal:
    uuid: str
    fecha_timbrado: str
    rfc_prov_certif: str
    sello_cfd: str
    sello_sat: str
    no_certificado_sat: str
    version: str = "1.1"
    leyenda: Optional[str] = None


@dataclass(frozen=True)
class StampedXmlInfo:
    sello: Optional[str]
    no_certificado: Optional[str]
    certificado: Optional[str]
    total: Optional[str]
    rfc_emisor: Optional[str]
    rfc_receptor: Optional[str]
    timbre: Optional[TimbreFiscal]
    cadena_original_tfd: Optional[str]


def _child(root: etree._Element, localname: str) -> Optional[etree._Element]:
    for el in root.iter():
        if isinstance(el.tag, str) and etree.QName(el).localname == localname:
            return el
    return None


def parse_stamped_xml(xml: Union[str, bytes]) -> StampedXmlInfo:
    """Extrae sello, certificado y timbre de un CFDI timbrado."""
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False)
    root = etree.fromstring(xml, parser=parser)

    emisor = _child(root, "Emisor")
    receptor = _child(root, "Receptor")
    tfd_el = _child(root, "TimbreFiscalDigital")

    timbre = None
    cadena_tfd = None
    if tfd_el is not None:
        timbre = TimbreFiscal(
            uuid=(tfd_el.get("UUID") or "").upper(),
            fecha_timbrado=tfd_el.get("FechaTimbrado") or "",
            rfc_prov_certif=tfd_el.get("RfcProvCertif") or "",
            sello_cfd=tfd_el.get("SelloCFD") or "",
            sello_sat=tfd_el.get("SelloSAT") or "",
            no_certificado_sat=tfd_el.get("NoCertificadoSAT") or "",
            version=tfd_el.get("Version") or "1.1",
            leyenda=tfd_el.get("Leyenda"),
        )
        cadena_tfd = cadena_original_tfd(tfd_el)
    else:
        logger.warning("XML sin TimbreFiscalDigital")

    return StampedXmlInfo(
        sello=root.get("Sello"),
        no_certificado=root.get("NoCertificado"),
        certificado=root.get("Certificado"),
        total=root.get("Total"),
        rfc_emisor=emisor.get("Rfc") if emisor is not None else None,
        rfc_receptor=receptor.get("Rfc") if receptor is not None else None,
        timbre=timbre,
        cadena_original_tfd=cadena_tfd,
    )
