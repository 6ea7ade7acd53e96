# facturacion/tests/test_pago_builder.py
from __future__ import annotations

import datetime as dt
from decimal import Decimal

from django.test import SimpleTestCase
from lxml import etree

from facturacion.services.cfdi.cadena_original import build_cadena_original_from_xml
from facturacion.services.cfdi.errors import ValidationError
from facturacion.services.cfdi.pago_builder import (
    NS_PAGO20,
    DocumentoRelacionado,
    Pago,
    build_payment_xml,
    validate_payment_complement,
)
from facturacion.services.cfdi.types import round_money
from facturacion.services.cfdi.xml_builder import NS_CFDI
from facturacion.tests import factories

NS = {"cfdi": NS_CFDI, "pago20": NS_PAGO20}


def _documento(**overrides) -> DocumentoRelacionado:
    data = {
        "uuid": factories.UUID,
        "folio": "1",
        "num_parcialidad": 1,
        "saldo_anterior": Decimal("1160.00"),
        "importe_pagado": Decimal("580.00"),
    }
    data.update(overrides)
    return DocumentoRelacionado(**data)


class PaymentComplementValidationTests(SimpleTestCase):
    """Conciliación: lo pagado nunca excede el saldo pendiente del documento."""

    def test_complemento_valido(self):
        validate_payment_complement(factories.complemento_pago())

    def test_pagado_mayor_al_saldo(self):
        complemento = factories.with_documentos(
            factories.complemento_pago(),
            _documento(saldo_anterior=Decimal("500.00")),
        )
        with self.assertRaises(ValidationError) as ctx:
            validate_payment_complement(complemento)
        campos = [f.campo for f in ctx.exception.fields]
        self.assertIn("pagos[0].documentos[0].importe_pagado", campos)
        self.assertIn("pagos[0].documentos[0].saldo_insoluto", campos)

    def test_monto_menor_a_lo_aplicado(self):
        complemento = factories.with_documentos(
            factories.complemento_pago(),
            _documento(),
            monto=Decimal("100.00"),
        )
        with self.assertRaises(ValidationError) as ctx:
            validate_payment_complement(complemento)
        self.assertIn("pagos[0].monto", [f.campo for f in ctx.exception.fields])

    def test_mismo_documento_excede_saldo_entre_partidas(self):
        complemento = factories.with_documentos(
            factories.complemento_pago(),
            _documento(importe_pagado=Decimal("700.00")),
            _documento(importe_pagado=Decimal("700.00"), num_parcialidad=2),
            monto=Decimal("1400.00"),
        )
        with self.assertRaises(ValidationError) as ctx:
            validate_payment_complement(complemento)
        self.assertIn("pagos", [f.campo for f in ctx.exception.fields])

    def test_uuid_invalido(self):
        complemento = factories.with_documentos(factories.complemento_pago(), _documento(uuid="123"))
        with self.assertRaises(ValidationError):
            validate_payment_complement(complemento)


class BuildPaymentXmlTests(SimpleTestCase):
    """CFDI tipo P con Pagos 2.0: SubTotal/Total 0, Moneda XXX, concepto fijo."""

    def setUp(self) -> None:
        self.xml = build_payment_xml(factories.complemento_pago())
        self.root = etree.fromstring(self.xml.encode("utf-8"))

    def test_comprobante_tipo_p(self):
        self.assertEqual(self.root.get("TipoDeComprobante"), "P")
        self.assertEqual(self.root.get("SubTotal"), "0")
        self.assertEqual(self.root.get("Total"), "0")
        self.assertEqual(self.root.get("Moneda"), "XXX")
        self.assertIsNone(self.root.get("FormaPago"))
        self.assertIsNone(self.root.get("MetodoPago"))
        self.assertEqual(self.root.find("cfdi:Receptor", NS).get("UsoCFDI"), "CP01")

        concepto = self.root.find("cfdi:Conceptos/cfdi:Concepto", NS)
        self.assertEqual(concepto.get("ClaveProdServ"), "84111506")
        self.assertEqual(concepto.get("ClaveUnidad"), "ACT")
        self.assertEqual(concepto.get("ObjetoImp"), "01")

    def test_pagos_y_totales(self):
        pagos = self.root.find("cfdi:Complemento/pago20:Pagos", NS)
        self.assertEqual(pagos.get("Version"), "2.0")

        totales = pagos.find("pago20:Totales", NS)
        self.assertEqual(totales.get("MontoTotalPagos"), "580.00")
        self.assertEqual(totales.get("TotalTrasladosBaseIVA16"), "500.00")
        self.assertEqual(totales.get("TotalTrasladosImpuestoIVA16"), "80.00")

        pago = pagos.find("pago20:Pago", NS)
        self.assertEqual(pago.get("FechaPago"), "2024-05-31T12:00:00")
        self.assertEqual(pago.get("FormaDePagoP"), "03")
        self.assertEqual(pago.get("TipoCambioP"), "1")
        self.assertEqual(pago.get("Monto"), "580.00")

    def test_documento_relacionado(self):
        doc = self.root.find(".//pago20:DoctoRelacionado", NS)
        self.assertEqual(doc.get("IdDocumento"), factories.UUID)
        self.assertEqual(doc.get("ImpSaldoAnt"), "1160.00")
        self.assertEqual(doc.get("ImpPagado"), "580.00")
        self.assertEqual(doc.get("ImpSaldoInsoluto"), "580.00")
        self.assertEqual(doc.get("NumParcialidad"), "1")
        self.assertEqual(doc.get("EquivalenciaDR"), "1")
        self.assertEqual(doc.get("ObjetoImpDR"), "02")

        traslado = doc.find(".//pago20:TrasladoDR", NS)
        self.assertEqual(traslado.get("BaseDR"), "500.00")
        self.assertEqual(traslado.get("ImporteDR"), "80.00")
        self.assertEqual(traslado.get("TasaOCuotaDR"), "0.160000")

    def test_documento_no_objeto_de_impuesto(self):
        complemento = factories.with_documentos(factories.complemento_pago(), _documento(tasa_iva=None))
        root = etree.fromstring(build_payment_xml(complemento).encode("utf-8"))

        doc = root.find(".//pago20:DoctoRelacionado", NS)
        self.assertEqual(doc.get("ObjetoImpDR"), "01")
        self.assertIsNone(doc.find("pago20:ImpuestosDR", NS))
        self.assertIsNone(root.find(".//pago20:ImpuestosP", NS))
        self.assertIsNone(root.find(".//pago20:Totales", NS).get("TotalTrasladosBaseIVA16"))

    def test_cadena_incluye_el_complemento(self):
        cadena = build_cadena_original_from_xml(self.xml)
        self.assertIn("|2.0|500.00|80.00|580.00|", cadena)
        self.assertIn(f"|{factories.UUID}|A|1|MXN|1|1|1160.00|580.00|580.00|02|", cadena)
        self.assertTrue(cadena.endswith("|500.00|002|Tasa|0.160000|80.00||"))

    def test_complemento_invalido_no_genera_xml(self):
        complemento = factories.with_documentos(factories.complemento_pago(), _documento(importe_pagado=Decimal("0")))
        with self.assertRaises(ValidationError):
            build_payment_xml(complemento)


class PagoEnMonedaExtranjeraTests(SimpleTestCase):
    """Totales en MXN calculados con el TipoCambioP que queda escrito en el XML."""

    def _complemento(self, tipo_cambio) -> etree._Element:
        documento = _documento(
            moneda="USD",
            saldo_anterior=Decimal("116000.00"),
            importe_pagado=Decimal("116000.00"),
        )
        pago = Pago(
            fecha_pago=dt.datetime(2024, 5, 31, 12, 0, 0),
            forma_pago="03",
            monto=Decimal("116000.00"),
            moneda="USD",
            tipo_cambio=tipo_cambio,
            documentos=(documento,),
        )
        xml = build_payment_xml(factories.complemento_pago(pagos=(pago,)))
        return etree.fromstring(xml.encode("utf-8"))

    def test_totales_concilian_con_tipo_cambio_p(self):
        root = self._complemento(Decimal("17.123456"))
        pago = root.find(".//pago20:Pago", NS)
        totales = root.find(".//pago20:Totales", NS)

        self.assertEqual(pago.get("TipoCambioP"), "17.123456")
        self.assertEqual(totales.get("MontoTotalPagos"), "1986320.90")
        self.assertEqual(totales.get("TotalTrasladosBaseIVA16"), "1712345.60")
        self.assertEqual(totales.get("TotalTrasladosImpuestoIVA16"), "273975.30")

        tipo_cambio = Decimal(pago.get("TipoCambioP"))
        self.assertEqual(
            Decimal(totales.get("MontoTotalPagos")),
            round_money(Decimal(pago.get("Monto")) * tipo_cambio),
        )
        traslado = pago.find(".//pago20:TrasladoP", NS)
        self.assertEqual(
            Decimal(totales.get("TotalTrasladosBaseIVA16")),
            round_money(Decimal(traslado.get("BaseP")) * tipo_cambio),
        )

    def test_tipo_cambio_con_mas_de_seis_decimales(self):
        root = self._complemento(Decimal("17.1234565"))
        pago = root.find(".//pago20:Pago", NS)
        totales = root.find(".//pago20:Totales", NS)

        self.assertEqual(pago.get("TipoCambioP"), "17.123457")
        self.assertEqual(totales.get("MontoTotalPagos"), "1986321.01")
