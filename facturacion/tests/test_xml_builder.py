# facturacion/tests/test_xml_builder.py
from __future__ import annotations

from decimal import Decimal

from django.test import SimpleTestCase
from lxml import etree

from facturacion.services.cfdi.errors import ValidationError
from facturacion.services.cfdi.types import CfdiRelacionados, FirmaCFDI, Retencion
from facturacion.services.cfdi.xml_builder import (
    CERTIFICADO_PLACEHOLDER,
    MODE_FINAL,
    MODE_OMIT_SIGNATURE,
    MODE_PLACEHOLDER,
    NO_CERTIFICADO_PLACEHOLDER,
    NS_CFDI,
    NS_XSI,
    SELLO_PLACEHOLDER,
    build_invoice_xml,
    format_decimal,
    format_tipo_cambio,
)
from facturacion.tests import factories

FIRMA = FirmaCFDI(sello="U0VMTE8=", no_certificado=factories.NO_CERTIFICADO, certificado="Q0VSVA==")


def _root(xml: str) -> etree._Element:
    return etree.fromstring(xml.encode("utf-8"))


def _find(root: etree._Element, path: str) -> etree._Element:
    return root.find(path, namespaces={"cfdi": NS_CFDI})


class FormatDecimalTests(SimpleTestCase):
    def test_patrones(self):
        self.assertEqual(format_decimal(Decimal("1000")), "1000.00")
        self.assertEqual(format_decimal(Decimal("0.16"), "0.000000"), "0.160000")
        self.assertEqual(format_decimal(None), "0.00")
        # Nunca notación científica
        self.assertEqual(format_decimal(Decimal("1E+3")), "1000.00")

    def test_tipo_de_cambio_entre_4_y_6_decimales(self):
        self.assertEqual(format_tipo_cambio(Decimal("17.5")), "17.5000")
        self.assertEqual(format_tipo_cambio(Decimal("17.12345")), "17.12345")
        self.assertEqual(format_tipo_cambio(Decimal("17.123456")), "17.123456")
        self.assertEqual(format_tipo_cambio(Decimal("17.1234565")), "17.123457")


class BuildInvoiceXmlTests(SimpleTestCase):
    """
    XML CFDI 4.0 (tipo I):

    - orden de atributos del Comprobante
    - modos final / placeholder / omit-signature
    - atributos opcionales omitidos (Descuento 0, TipoCambio en MXN)
    - impuestos por concepto y agregados
    """

    def test_orden_de_atributos_del_comprobante(self):
        root = _root(build_invoice_xml(factories.draft(), MODE_FINAL, FIRMA))

        self.assertEqual(etree.QName(root).localname, "Comprobante")
        self.assertEqual(
            list(root.attrib.keys()),
            [
                f"{{{NS_XSI}}}schemaLocation",
                "Version",
                "Serie",
                "Folio",
                "Fecha",
                "Sello",
                "FormaPago",
                "NoCertificado",
                "Certificado",
                "SubTotal",
                "Moneda",
                "Total",
                "TipoDeComprobante",
                "Exportacion",
                "MetodoPago",
                "LugarExpedicion",
            ],
        )
        self.assertEqual(root.get("Fecha"), "2024-05-10T12:00:00")
        self.assertEqual(root.get("SubTotal"), "1000.00")
        self.assertEqual(root.get("Total"), "1160.00")
        self.assertEqual(root.get("NoCertificado"), factories.NO_CERTIFICADO)

    def test_declaracion_y_prefijos(self):
        xml = build_invoice_xml(factories.draft(), MODE_FINAL, FIRMA)
        self.assertTrue(xml.startswith("<?xml version='1.0' encoding='UTF-8'?>"))
        self.assertIn('xmlns:cfdi="http://www.sat.gob.mx/cfd/4"', xml)
        self.assertIn("<cfdi:Emisor ", xml)

    def test_orden_de_nodos(self):
        root = _root(build_invoice_xml(factories.draft(), MODE_FINAL, FIRMA))
        self.assertEqual(
            [etree.QName(el).localname for el in root],
            ["Emisor", "Receptor", "Conceptos", "Impuestos"],
        )

        receptor = _find(root, "cfdi:Receptor")
        self.assertEqual(
            list(receptor.attrib.keys()),
            ["Rfc", "Nombre", "DomicilioFiscalReceptor", "RegimenFiscalReceptor", "UsoCFDI"],
        )

    def test_impuestos_de_concepto_y_agregados(self):
        root = _root(build_invoice_xml(factories.draft(), MODE_FINAL, FIRMA))

        traslado = _find(root, "cfdi:Conceptos/cfdi:Concepto/cfdi:Impuestos/cfdi:Traslados/cfdi:Traslado")
        self.assertEqual(
            dict(traslado.attrib),
            {"Base": "1000.00", "Impuesto": "002", "TipoFactor": "Tasa", "TasaOCuota": "0.160000", "Importe": "160.00"},
        )

        impuestos = _find(root, "cfdi:Impuestos")
        self.assertEqual(impuestos.get("TotalImpuestosTrasladados"), "160.00")
        self.assertIsNone(impuestos.get("TotalImpuestosRetenidos"))

    def test_modo_final_sin_firma_falla(self):
        with self.assertRaises(ValidationError) as ctx:
            build_invoice_xml(factories.draft(), MODE_FINAL)
        self.assertEqual(ctx.exception.codigo, "MISSING_SIGNATURE")

    def test_modo_desconocido(self):
        with self.assertRaises(ValueError):
            build_invoice_xml(factories.draft(), "borrador")

    def test_modo_placeholder(self):
        root = _root(build_invoice_xml(factories.draft(), MODE_PLACEHOLDER))
        self.assertEqual(root.get("Sello"), SELLO_PLACEHOLDER)
        self.assertEqual(root.get("NoCertificado"), NO_CERTIFICADO_PLACEHOLDER)
        self.assertEqual(root.get("Certificado"), CERTIFICADO_PLACEHOLDER)

    def test_modo_sin_firma(self):
        root = _root(build_invoice_xml(factories.draft(), MODE_OMIT_SIGNATURE))
        for attr in ("Sello", "NoCertificado", "Certificado"):
            self.assertIsNone(root.get(attr))

    def test_descuento_cero_se_omite(self):
        root = _root(build_invoice_xml(factories.draft(), MODE_FINAL, FIRMA))
        self.assertIsNone(root.get("Descuento"))
        self.assertIsNone(_find(root, "cfdi:Conceptos/cfdi:Concepto").get("Descuento"))

    def test_descuento_por_concepto(self):
        draft = factories.draft(conceptos=(factories.concepto(descuento_porcentaje=Decimal("10")),))
        root = _root(build_invoice_xml(draft, MODE_FINAL, FIRMA))

        self.assertEqual(root.get("Descuento"), "100.00")
        self.assertEqual(root.get("Total"), "1044.00")
        concepto = _find(root, "cfdi:Conceptos/cfdi:Concepto")
        self.assertEqual(concepto.get("Importe"), "1000.00")
        self.assertEqual(concepto.get("Descuento"), "100.00")
        traslado = concepto.find(".//cfdi:Traslado", namespaces={"cfdi": NS_CFDI})
        self.assertEqual(traslado.get("Base"), "900.00")
        self.assertEqual(traslado.get("Importe"), "144.00")

    def test_moneda_extranjera_con_tipo_de_cambio(self):
        draft = factories.draft(moneda="USD", tipo_cambio=Decimal("17.5"))
        root = _root(build_invoice_xml(draft, MODE_FINAL, FIRMA))
        self.assertEqual(root.get("Moneda"), "USD")
        self.assertEqual(root.get("TipoCambio"), "17.5000")

    def test_tipo_de_cambio_conserva_seis_decimales(self):
        draft = factories.draft(moneda="USD", tipo_cambio=Decimal("17.123456"))
        root = _root(build_invoice_xml(draft, MODE_FINAL, FIRMA))
        self.assertEqual(root.get("TipoCambio"), "17.123456")

    def test_mxn_no_lleva_tipo_de_cambio(self):
        draft = factories.draft(tipo_cambio=Decimal("1"))
        root = _root(build_invoice_xml(draft, MODE_FINAL, FIRMA))
        self.assertIsNone(root.get("TipoCambio"))

    def test_concepto_exento(self):
        draft = factories.draft(conceptos=(factories.concepto(tasa_iva=None),))
        root = _root(build_invoice_xml(draft, MODE_FINAL, FIRMA))

        traslado = _find(root, "cfdi:Conceptos/cfdi:Concepto/cfdi:Impuestos/cfdi:Traslados/cfdi:Traslado")
        self.assertEqual(traslado.get("TipoFactor"), "Exento")
        self.assertIsNone(traslado.get("TasaOCuota"))
        self.assertIsNone(traslado.get("Importe"))
        self.assertIsNone(_find(root, "cfdi:Impuestos").get("TotalImpuestosTrasladados"))
        self.assertEqual(root.get("Total"), "1000.00")

    def test_retenciones(self):
        concepto = factories.concepto(
            retenciones=(Retencion("001", Decimal("0.10")), Retencion("002", Decimal("0.106667"))),
        )
        root = _root(build_invoice_xml(factories.draft(conceptos=(concepto,)), MODE_FINAL, FIRMA))

        impuestos = _find(root, "cfdi:Impuestos")
        self.assertEqual(impuestos.get("TotalImpuestosRetenidos"), "206.67")
        self.assertEqual(
            [(r.get("Impuesto"), r.get("Importe")) for r in impuestos.find("cfdi:Retenciones", namespaces={"cfdi": NS_CFDI})],
            [("001", "100.00"), ("002", "106.67")],
        )
        self.assertEqual(root.get("Total"), "953.33")

    def test_cfdi_relacionados(self):
        draft = factories.draft(relacionados=CfdiRelacionados("04", (factories.UUID.lower(),)))
        root = _root(build_invoice_xml(draft, MODE_FINAL, FIRMA))

        self.assertEqual(etree.QName(root[0]).localname, "CfdiRelacionados")
        self.assertEqual(root[0][0].get("UUID"), factories.UUID)

    def test_sin_conceptos_no_genera_xml(self):
        with self.assertRaises(ValidationError) as ctx:
            build_invoice_xml(factories.draft(conceptos=()), MODE_FINAL, FIRMA)
        self.assertIn("conceptos", [f.campo for f in ctx.exception.fields])
