# facturacion/tests/test_pac_client.py
from __future__ import annotations

import threading
from decimal import Decimal
from unittest.mock import Mock

import requests
from django.apps import apps
from django.conf import settings
from django.test import SimpleTestCase, override_settings
from zeep.exceptions import Fault

from facturacion.services.cfdi.errors import (
    AlreadyStamped,
    CertificateError,
    ConfigError,
    MissingSubstitution,
    TransientNetworkError,
    UnknownProviderError,
    ValidationError,
)
from facturacion.services.cfdi.xml_builder import MODE_OMIT_SIGNATURE, build_invoice_xml
from facturacion.services.pac.client import FINKOK_URLS, FinkokClient, FinkokConfig
from facturacion.services.pac.registry import ClientRegistry
from facturacion.services.pac.results import (
    CancellationPending,
    Cancelled,
    CancelRejected,
    StampOk,
    canonical_uuid,
    normalize_incidencias,
)
from facturacion.tests import factories


class FinkokTestMixin:
    """Cliente Finkok con un servicio SOAP simulado (sin red)."""

    def setUp(self) -> None:
        super().setUp()
        self.soap = Mock()
        self.factory = Mock(return_value=self.soap)
        self.registry = ClientRegistry(factory=self.factory)
        self.client = FinkokClient(
            config=FinkokConfig(user="usuario@example.com", password="secreto", environment="demo"),
            registry=self.registry,
        )
        self.service = self.soap.service
        self.xml = build_invoice_xml(factories.draft(), MODE_OMIT_SIGNATURE)


class FinkokStampTests(FinkokTestMixin, SimpleTestCase):
    """
    Timbrado:

    - quick_stamp con respaldo `stamp` ante falla de transporte (una sola vez)
    - 307 se resuelve con `stamped` (mismo UUID, nunca uno nuevo)
    - incidencias -> taxonomía interna
    """

    def test_timbrado_exitoso(self):
        self.service.quick_stamp.return_value = factories.stamp_response(self.xml)

        result = self.client.stamp(self.xml)

        self.assertIsInstance(result, StampOk)
        self.assertEqual(result.uuid, factories.UUID)
        self.assertEqual(result.no_certificado_sat, "30001000000500003456")
        self.assertFalse(result.recuperado)
        self.service.stamp.assert_not_called()

        kwargs = self.service.quick_stamp.call_args.kwargs
        self.assertEqual(kwargs["username"], "usuario@example.com")
        self.assertEqual(kwargs["xml"], self.xml.encode("utf-8"))
        self.factory.assert_called_once_with(FINKOK_URLS["demo"]["stamp"])

    def test_respaldo_stamp_ante_timeout(self):
        self.service.quick_stamp.side_effect = requests.Timeout("timeout")
        self.service.stamp.return_value = factories.stamp_response(self.xml)

        result = self.client.stamp(self.xml)

        self.assertEqual(result.uuid, factories.UUID)
        self.assertEqual(self.service.quick_stamp.call_count, 1)
        self.assertEqual(self.service.stamp.call_count, 1)

    def test_respaldo_tambien_falla(self):
        self.service.quick_stamp.side_effect = requests.Timeout("timeout")
        self.service.stamp.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(TransientNetworkError) as ctx:
            self.client.stamp(self.xml)

        self.assertEqual(ctx.exception.remediation, "RETRY_LATER")
        self.assertEqual(self.service.stamp.call_count, 1)

    def test_307_recupera_uuid_existente(self):
        self.service.quick_stamp.return_value = factories.incidencia_response("307", "El CFDI contiene un timbre previo")
        self.service.stamped.return_value = factories.stamp_response(self.xml)

        result = self.client.stamp(self.xml)

        self.assertEqual(result.uuid, factories.UUID)
        self.assertTrue(result.recuperado)
        self.assertEqual(self.service.stamped.call_count, 1)
        self.service.stamp.assert_not_called()

    def test_307_sin_recuperacion(self):
        self.service.quick_stamp.return_value = factories.incidencia_response("307")
        self.service.stamped.return_value = factories.incidencia_response("603", "No encontrado")

        with self.assertRaises(AlreadyStamped):
            self.client.stamp(self.xml)

    def test_incidencia_de_sello(self):
        self.service.quick_stamp.return_value = factories.incidencia_response("302", "Sello mal formado o inválido")

        with self.assertRaises(CertificateError) as ctx:
            self.client.stamp(self.xml)
        self.assertEqual(ctx.exception.codigo, "302")
        self.service.stamped.assert_not_called()

    def test_incidencia_de_validacion(self):
        self.service.quick_stamp.return_value = factories.incidencia_response("CFDI40161", "RFC no registrado")

        with self.assertRaises(ValidationError):
            self.client.stamp(self.xml)

    def test_uuid_desde_el_timbre(self):
        respuesta = factories.stamp_response(self.xml, UUID=None, SatSeal=None)
        self.service.quick_stamp.return_value = respuesta

        result = self.client.stamp(self.xml)

        self.assertEqual(result.uuid, factories.UUID)
        self.assertEqual(result.sello_sat, "U0VMTE9TQVQ=")

    def test_respuesta_sin_uuid(self):
        self.service.quick_stamp.return_value = {"xml": None, "UUID": None, "CodEstatus": "Error", "Incidencias": None}

        with self.assertRaises(UnknownProviderError) as ctx:
            self.client.stamp(self.xml)
        self.assertEqual(ctx.exception.codigo, "NO_UUID")

    def test_soap_fault_se_traduce(self):
        self.service.quick_stamp.side_effect = Fault("[705] Usuario no autorizado")

        with self.assertRaises(ConfigError):
            self.client.stamp(self.xml)
        self.service.stamp.assert_not_called()

    def test_sign_stamp_reintenta_una_vez(self):
        self.service.sign_stamp.side_effect = [
            requests.Timeout("timeout"),
            factories.stamp_response(self.xml),
        ]

        result = self.client.sign_stamp(self.xml)

        self.assertEqual(result.uuid, factories.UUID)
        self.assertEqual(self.service.sign_stamp.call_count, 2)

    def test_credenciales_faltantes(self):
        client = FinkokClient(config=FinkokConfig(user=""), registry=self.registry)
        with self.assertRaises(ConfigError):
            client.stamp(self.xml)
        self.factory.assert_not_called()

    def test_ambiente_invalido(self):
        client = FinkokClient(config=FinkokConfig(user="u", password="p", environment="sandbox"), registry=self.registry)
        with self.assertRaises(ConfigError):
            client.stamp(self.xml)


class FinkokCancelTests(FinkokTestMixin, SimpleTestCase):
    """Cancelación: EstatusUUID -> Cancelled / CancellationPending / CancelRejected."""

    def test_cancelado(self):
        self.service.sign_cancel.return_value = factories.cancel_response("201", "Cancelado sin aceptación")

        result = self.client.cancel(factories.UUID.lower(), factories.RFC_EMISOR.lower(), "02")

        self.assertIsInstance(result, Cancelled)
        self.assertFalse(result.already)
        self.assertEqual(result.acuse, "<Acuse/>")

        kwargs = self.service.sign_cancel.call_args.kwargs
        self.assertEqual(kwargs["UUIDS"], {"UUID": [{"UUID": factories.UUID, "Motivo": "02"}]})
        self.assertEqual(kwargs["taxpayer_id"], factories.RFC_EMISOR)
        self.assertFalse(kwargs["store_pending"])

    def test_cancelado_previamente(self):
        self.service.sign_cancel.return_value = factories.cancel_response("202", "Previamente cancelado")

        result = self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02")

        self.assertIsInstance(result, Cancelled)
        self.assertTrue(result.already)

    def test_en_proceso(self):
        self.service.sign_cancel.return_value = factories.cancel_response("201", "En proceso")
        self.assertIsInstance(self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02"), CancellationPending)

    def test_pendiente_de_aceptacion(self):
        self.service.sign_cancel.return_value = factories.cancel_response("205")

        result = self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02")

        self.assertIsInstance(result, CancellationPending)
        self.assertEqual(result.estatus_cancelacion, "En espera de aceptación")

    def test_certificado_no_corresponde(self):
        self.service.sign_cancel.return_value = factories.cancel_response("203", "No corresponde el RFC")

        result = self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02")

        self.assertIsInstance(result, CancelRejected)
        self.assertEqual(result.kind, "certificate_mismatch")

    def test_estatus_desconocido(self):
        self.service.sign_cancel.return_value = factories.cancel_response("708", "No se pudo conectar al SAT")

        result = self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02")

        self.assertIsInstance(result, CancelRejected)
        self.assertEqual(result.kind, "rejected")
        self.assertEqual(result.codigo, "708")

    def test_incidencias(self):
        self.service.sign_cancel.return_value = {"Folios": None, **factories.incidencia_response("300", "Usuario inválido")}

        result = self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02")

        self.assertIsInstance(result, CancelRejected)
        self.assertEqual(result.kind, "provider_error")
        self.assertEqual(result.codigo, "300")

    def test_motivo_01_requiere_sustitucion_sin_llamar_al_pac(self):
        with self.assertRaises(MissingSubstitution):
            self.client.cancel(factories.UUID, factories.RFC_EMISOR, "01")

        self.factory.assert_not_called()
        self.service.sign_cancel.assert_not_called()

    def test_motivo_01_envia_folio_sustitucion(self):
        self.service.sign_cancel.return_value = factories.cancel_response("201", "Cancelado sin aceptación")

        self.client.cancel(factories.UUID, factories.RFC_EMISOR, "01", factories.UUID_SUSTITUTO.lower())

        folio = self.service.sign_cancel.call_args.kwargs["UUIDS"]["UUID"][0]
        self.assertEqual(folio["FolioSustitucion"], factories.UUID_SUSTITUTO)

    def test_reintento_ante_timeout(self):
        self.service.sign_cancel.side_effect = [
            requests.Timeout("timeout"),
            factories.cancel_response("201", "Cancelado sin aceptación"),
        ]

        self.assertIsInstance(self.client.cancel(factories.UUID, factories.RFC_EMISOR, "02"), Cancelled)
        self.assertEqual(self.service.sign_cancel.call_count, 2)


class FinkokQueryTests(FinkokTestMixin, SimpleTestCase):
    def test_get_status_vigente(self):
        self.service.get_sat_status.return_value = {
            "sat": {
                "CodigoEstatus": "S - Comprobante obtenido satisfactoriamente.",
                "EsCancelable": "Cancelable sin aceptación",
                "Estado": "Vigente",
                "EstatusCancelacion": None,
            },
            "error": None,
        }

        status = self.client.get_status(factories.UUID, factories.RFC_EMISOR, factories.RFC_RECEPTOR, Decimal("1160.00"))

        self.assertEqual(status.estado, "Vigente")
        self.assertTrue(status.cancelable_sin_aceptacion)
        kwargs = self.service.get_sat_status.call_args.kwargs
        self.assertEqual(kwargs["rtaxpayer_id"], factories.RFC_RECEPTOR)
        self.assertEqual(kwargs["total"], "1160.00")

    def test_get_status_estado_desconocido(self):
        self.service.get_sat_status.return_value = {"sat": {"Estado": "Otro"}, "error": None}

        status = self.client.get_status(factories.UUID, factories.RFC_EMISOR, factories.RFC_RECEPTOR, "1160.00")
        self.assertEqual(status.estado, "No Encontrado")

    def test_get_status_sin_respuesta_sat(self):
        self.service.get_sat_status.return_value = {"sat": None, "error": None}

        with self.assertRaises(UnknownProviderError):
            self.client.get_status(factories.UUID, factories.RFC_EMISOR, factories.RFC_RECEPTOR, "1160.00")

    def test_get_receipt(self):
        self.service.get_receipt.return_value = {"receipt": "<Acuse/>", "error": None}
        self.assertEqual(self.client.get_receipt(factories.UUID, factories.RFC_EMISOR), "<Acuse/>")

    def test_get_related(self):
        self.service.get_related.return_value = {
            "UUIDRelacionadoPadres": {"UUID": [factories.UUID_SUSTITUTO.lower()]},
            "UUIDRelacionadosHijos": None,
            "error": None,
        }

        relations = self.client.get_related(factories.UUID, factories.RFC_EMISOR)

        self.assertEqual(relations.padres, (factories.UUID_SUSTITUTO,))
        self.assertEqual(relations.hijos, ())


class FinkokRegistrationTests(FinkokTestMixin, SimpleTestCase):
    def test_upload_csd(self):
        self.service.add.return_value = {"success": True, "message": "Account Created successfully"}

        result = self.client.upload_csd("eku9003173c9", "Q0VS", "S0VZ", "12345678a")

        self.assertTrue(result.success)
        kwargs = self.service.add.call_args.kwargs
        self.assertEqual(kwargs["taxpayer_id"], "EKU9003173C9")
        self.assertEqual(kwargs["reseller_username"], "usuario@example.com")
        self.assertEqual(kwargs["cer"], "Q0VS")
        self.factory.assert_called_once_with(FINKOK_URLS["demo"]["registration"])

    def test_get_client(self):
        self.service.get.return_value = {
            "users": {"ResellerUser": [{"taxpayer_id": "EKU9003173C9", "status": "A", "counter": 3, "credit": 10}]},
            "message": None,
        }

        users = self.client.get_client("EKU9003173C9")

        self.assertEqual(len(users), 1)
        self.assertEqual(users[0].status, "A")
        self.assertEqual(users[0].credit, 10)

    def test_assign_credits(self):
        self.service.assign.return_value = {"success": True, "credit": "50", "message": "Success"}
        self.assertEqual(self.client.assign_credits("EKU9003173C9", 50).credit, 50)

    def test_get_customers(self):
        self.service.customers.return_value = {
            "customersResult": {
                "message": "Showing 1 to 2 of 2 entries",
                "users": {
                    "ResellerUser": [
                        {"taxpayer_id": "EKU9003173C9", "status": "A", "counter": 3, "credit": -1},
                        {"taxpayer_id": "URE180429TM6", "status": "S", "counter": 0, "credit": 0},
                    ]
                },
            }
        }

        pagina = self.client.get_customers(2)

        self.assertEqual([u.taxpayer_id for u in pagina.users], ["EKU9003173C9", "URE180429TM6"])
        self.assertEqual(pagina.message, "Showing 1 to 2 of 2 entries")
        kwargs = self.service.customers.call_args.kwargs
        self.assertEqual(kwargs["username"], "usuario@example.com")
        self.assertEqual(kwargs["page"], "2")

    def test_get_all_customers_recorre_paginas(self):
        llena = {"users": {"ResellerUser": [{"taxpayer_id": f"AAA0101010{i:02d}"} for i in range(50)]}}
        ultima = {"users": {"ResellerUser": [{"taxpayer_id": "EKU9003173C9"}]}}
        self.service.customers.side_effect = [llena, ultima]

        usuarios = self.client.get_all_customers()

        self.assertEqual(len(usuarios), 51)
        self.assertEqual([c.kwargs["page"] for c in self.service.customers.call_args_list], ["1", "2"])

    def test_switch_client(self):
        self.service.switch.return_value = {"success": True, "message": "Success, type of user changed"}

        result = self.client.switch_client("eku9003173c9", "P")

        self.assertTrue(result.success)
        kwargs = self.service.switch.call_args.kwargs
        self.assertEqual(kwargs["taxpayer_id"], "EKU9003173C9")
        self.assertEqual(kwargs["type_user"], "P")
        self.assertNotIn("reseller_username", kwargs)

    def test_switch_client_tipo_invalido(self):
        with self.assertRaises(ValidationError):
            self.client.switch_client("EKU9003173C9", "X")
        self.factory.assert_not_called()


class ResultHelpersTests(SimpleTestCase):
    def test_canonical_uuid(self):
        self.assertEqual(canonical_uuid(factories.UUID.lower()), factories.UUID)
        self.assertIsNone(canonical_uuid("no-es-uuid"))
        self.assertIsNone(canonical_uuid(None))

    def test_normalize_incidencias(self):
        self.assertEqual(normalize_incidencias(None), [])
        unica = normalize_incidencias({"Incidencia": {"CodigoError": "301", "MensajeIncidencia": "XML mal formado"}})
        self.assertEqual([i.codigo for i in unica], ["301"])
        lista = normalize_incidencias([{"CodigoError": "302"}, {"CodigoError": "CFDI40161"}])
        self.assertEqual([i.codigo for i in lista], ["302", "CFDI40161"])


class ClientRegistryTests(SimpleTestCase):
    def test_un_cliente_por_wsdl(self):
        factory = Mock(side_effect=lambda wsdl: Mock(name=wsdl))
        registry = ClientRegistry(factory=factory)

        primero = registry.get("https://a/stamp.wsdl")
        self.assertIs(primero, registry.get("https://a/stamp.wsdl"))
        registry.get("https://a/cancel.wsdl")

        self.assertEqual(factory.call_count, 2)

    def test_register_y_clear(self):
        registry = ClientRegistry(factory=Mock())
        cliente = object()
        registry.register("https://a/stamp.wsdl", cliente)
        self.assertIs(registry.get("https://a/stamp.wsdl"), cliente)

        registry.clear()
        self.assertIsNot(registry.get("https://a/stamp.wsdl"), cliente)

    def test_descarga_de_un_wsdl_no_bloquea_a_otros(self):
        liberar = threading.Event()
        descargando = threading.Event()

        def factory(wsdl):
            if wsdl.endswith("stamp.wsdl"):
                descargando.set()
                liberar.wait(5)
            return Mock(name=wsdl)

        registry = ClientRegistry(factory=factory)
        hilo = threading.Thread(target=registry.get, args=("https://a/stamp.wsdl",))
        hilo.start()
        self.assertTrue(descargando.wait(5))

        # stamp.wsdl sigue descargándose; cancel.wsdl se obtiene sin esperar
        cancel = registry.get("https://a/cancel.wsdl")
        self.assertIsNotNone(cancel)
        self.assertTrue(hilo.is_alive())

        liberar.set()
        hilo.join(5)
        self.assertFalse(hilo.is_alive())

    def test_descargas_concurrentes_del_mismo_wsdl(self):
        liberar = threading.Event()
        factory = Mock(side_effect=lambda wsdl: liberar.wait(5) and Mock(name=wsdl))
        registry = ClientRegistry(factory=factory)
        resultados = []

        hilos = [
            threading.Thread(target=lambda: resultados.append(registry.get("https://a/stamp.wsdl")))
            for _ in range(3)
        ]
        for hilo in hilos:
            hilo.start()
        liberar.set()
        for hilo in hilos:
            hilo.join(5)

        self.assertEqual(factory.call_count, 1)
        self.assertEqual(len(resultados), 3)
        self.assertTrue(all(r is resultados[0] for r in resultados))


class FinkokConfigTests(SimpleTestCase):
    @override_settings(FINKOK_USER="socio@example.com", FINKOK_PASSWORD="clave", FINKOK_ENVIRONMENT="Production")
    def test_desde_settings(self):
        config = FinkokConfig.from_settings()
        self.assertEqual(config, FinkokConfig(user="socio@example.com", password="clave", environment="production"))
        self.assertEqual(config.urls["stamp"], "https://facturacion.finkok.com/servicios/soap/stamp.wsdl")

    def test_servicios_por_ambiente(self):
        for urls in FINKOK_URLS.values():
            self.assertEqual(set(urls), {"stamp", "cancel", "registration"})

    def test_timeout_y_ssl_los_define_el_registro_de_la_app(self):
        registry = apps.get_app_config("facturacion").client_registry
        self.assertEqual(registry.timeout, settings.FINKOK_TIMEOUT)
        self.assertEqual(registry.ssl_verify, settings.FINKOK_SSL_VERIFY)
        self.assertIs(FinkokClient(config=FinkokConfig(user="u", password="p")).registry, registry)
