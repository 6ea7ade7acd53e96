# facturacion/api/serializers.py
"""
Serializers de entrada de la API CFDI.

La API no persiste entidades: el cuerpo JSON trae el comprobante ya resuelto
y `to_draft()` lo convierte en los tipos inmutables del núcleo.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from django.utils import timezone
from rest_framework import serializers

from facturacion.services.cfdi.pago_builder import DocumentoRelacionado, Pago, PaymentComplement
from facturacion.services.cfdi.types import (
    MOTIVOS_CANCELACION,
    CfdiRelacionados,
    Concepto,
    Emisor,
    InvoiceDraft,
    Receptor,
    Retencion,
)

MONEY = {"max_digits": 18, "decimal_places": 2}
SIX = {"max_digits": 24, "decimal_places": 6}


class EmisorSerializer(serializers.Serializer):
    rfc = serializers.CharField(max_length=13)
    nombre = serializers.CharField(max_length=300)
    regimen_fiscal = serializers.CharField(max_length=3)

    def to_value(self, data: Dict[str, Any]) -> Emisor:
        return Emisor(rfc=data["rfc"].upper(), nombre=data["nombre"], regimen_fiscal=data["regimen_fiscal"])


class ReceptorSerializer(serializers.Serializer):
    rfc = serializers.CharField(max_length=13)
    nombre = serializers.CharField(max_length=300)
    domicilio_fiscal = serializers.CharField(max_length=5)
    regimen_fiscal = serializers.CharField(max_length=3)
    uso_cfdi = serializers.CharField(max_length=4, required=False, default="G03")

    def to_value(self, data: Dict[str, Any]) -> Receptor:
        return Receptor(
            rfc=data["rfc"].upper(),
            nombre=data["nombre"],
            domicilio_fiscal=data["domicilio_fiscal"],
            regimen_fiscal=data["regimen_fiscal"],
            uso_cfdi=data["uso_cfdi"],
        )


class RetencionSerializer(serializers.Serializer):
    impuesto = serializers.ChoiceField(choices=["001", "002", "003"])
    tasa = serializers.DecimalField(**SIX)


class ConceptoSerializer(serializers.Serializer):
    clave_prod_serv = serializers.CharField(max_length=8)
    cantidad = serializers.DecimalField(**SIX)
    clave_unidad = serializers.CharField(max_length=3)
    descripcion = serializers.CharField(max_length=1000)
    valor_unitario = serializers.DecimalField(**SIX)
    descuento_porcentaje = serializers.DecimalField(max_digits=5, decimal_places=2, required=False, default=Decimal("0"))
    no_identificacion = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
    unidad = serializers.CharField(max_length=20, required=False, allow_blank=True, allow_null=True)
    objeto_imp = serializers.CharField(max_length=2, required=False, default="02")
    exento = serializers.BooleanField(required=False, default=False)
    tasa_iva = serializers.DecimalField(**SIX, required=False, default=Decimal("0.160000"))
    retenciones = RetencionSerializer(many=True, required=False, default=list)


class RelacionadosSerializer(serializers.Serializer):
    tipo_relacion = serializers.CharField(max_length=2)
    uuids = serializers.ListField(child=serializers.CharField(max_length=36), allow_empty=False)


class InvoiceDraftSerializer(serializers.Serializer):
    emisor = EmisorSerializer()
    receptor = ReceptorSerializer()
    conceptos = ConceptoSerializer(many=True, allow_empty=True)
    serie = serializers.CharField(max_length=25, required=False, allow_blank=True, allow_null=True)
    folio = serializers.CharField(max_length=40)
    fecha = serializers.DateTimeField(required=False)
    lugar_expedicion = serializers.CharField(max_length=5)
    moneda = serializers.CharField(max_length=3, required=False, default="MXN")
    tipo_cambio = serializers.DecimalField(max_digits=18, decimal_places=6, required=False, allow_null=True)
    forma_pago = serializers.CharField(max_length=2, required=False, default="99")
    metodo_pago = serializers.ChoiceField(choices=["PUE", "PPD"], required=False, default="PUE")
    tipo_comprobante = serializers.ChoiceField(choices=["I", "E"], required=False, default="I")
    exportacion = serializers.CharField(max_length=2, required=False, default="01")
    relacionados = RelacionadosSerializer(required=False, allow_null=True)
    # None: se usa CFDI_FIRMAR_EN_PAC
    firmar_en_pac = serializers.BooleanField(allow_null=True, default=None)

    def to_draft(self) -> InvoiceDraft:
        data = self.validated_data
        conceptos = tuple(
            Concepto(
                clave_prod_serv=c["clave_prod_serv"],
                cantidad=c["cantidad"],
                clave_unidad=c["clave_unidad"],
                descripcion=c["descripcion"],
                valor_unitario=c["valor_unitario"],
                descuento_porcentaje=c["descuento_porcentaje"],
                no_identificacion=c.get("no_identificacion") or None,
                unidad=c.get("unidad") or None,
                objeto_imp=c["objeto_imp"],
                tasa_iva=None if c["exento"] else c["tasa_iva"],
                retenciones=tuple(Retencion(r["impuesto"], r["tasa"]) for r in c["retenciones"]),
            )
            for c in data["conceptos"]
        )

        relacionados = None
        if data.get("relacionados"):
            relacionados = CfdiRelacionados(
                tipo_relacion=data["relacionados"]["tipo_relacion"],
                uuids=tuple(data["relacionados"]["uuids"]),
            )

        return InvoiceDraft(
            emisor=EmisorSerializer().to_value(data["emisor"]),
            receptor=ReceptorSerializer().to_value(data["receptor"]),
            conceptos=conceptos,
            serie=data.get("serie") or None,
            folio=data["folio"],
            fecha=data.get("fecha") or timezone.now(),
            lugar_expedicion=data["lugar_expedicion"],
            moneda=data["moneda"].upper(),
            tipo_cambio=data.get("tipo_cambio"),
            forma_pago=data["forma_pago"],
            metodo_pago=data["metodo_pago"],
            tipo_comprobante=data["tipo_comprobante"],
            exportacion=data["exportacion"],
            relacionados=relacionados,
        )


class CancelacionSerializer(serializers.Serializer):
    uuid = serializers.CharField(max_length=36)
    rfc_emisor = serializers.CharField(max_length=13)
    motivo = serializers.ChoiceField(choices=sorted(MOTIVOS_CANCELACION))
    uuid_sustitucion = serializers.CharField(max_length=36, required=False, allow_blank=True, allow_null=True)


class StatusQuerySerializer(serializers.Serializer):
    uuid = serializers.CharField(max_length=36)
    rfc_emisor = serializers.CharField(max_length=13)
    rfc_receptor = serializers.CharField(max_length=13)
    total = serializers.DecimalField(**MONEY)


class DocumentoRelacionadoSerializer(serializers.Serializer):
    uuid = serializers.CharField(max_length=36)
    serie = serializers.CharField(max_length=25, required=False, allow_blank=True, allow_null=True)
    folio = serializers.CharField(max_length=40)
    moneda = serializers.CharField(max_length=3, required=False, default="MXN")
    equivalencia = serializers.DecimalField(max_digits=18, decimal_places=6, required=False, default=Decimal("1"))
    num_parcialidad = serializers.IntegerField(min_value=1)
    saldo_anterior = serializers.DecimalField(**MONEY)
    importe_pagado = serializers.DecimalField(**MONEY)
    exento = serializers.BooleanField(required=False, default=False)
    tasa_iva = serializers.DecimalField(**SIX, required=False, default=Decimal("0.160000"))
    base_iva = serializers.DecimalField(**MONEY, required=False, allow_null=True)
    importe_iva = serializers.DecimalField(**MONEY, required=False, allow_null=True)


class PagoSerializer(serializers.Serializer):
    fecha_pago = serializers.DateTimeField()
    forma_pago = serializers.CharField(max_length=2)
    moneda = serializers.CharField(max_length=3, required=False, default="MXN")
    tipo_cambio = serializers.DecimalField(max_digits=18, decimal_places=6, required=False, allow_null=True)
    monto = serializers.DecimalField(**MONEY)
    num_operacion = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
    documentos = DocumentoRelacionadoSerializer(many=True, allow_empty=False)


class ComplementoPagoSerializer(serializers.Serializer):
    emisor = EmisorSerializer()
    receptor = ReceptorSerializer()
    lugar_expedicion = serializers.CharField(max_length=5)
    serie = serializers.CharField(max_length=25, required=False, allow_blank=True, allow_null=True)
    folio = serializers.CharField(max_length=40, required=False, allow_blank=True, allow_null=True)
    pagos = PagoSerializer(many=True, allow_empty=False)

    def to_complemento(self) -> PaymentComplement:
        data = self.validated_data
        pagos = tuple(
            Pago(
                fecha_pago=p["fecha_pago"],
                forma_pago=p["forma_pago"],
                moneda=p["moneda"].upper(),
                tipo_cambio=p.get("tipo_cambio"),
                monto=p["monto"],
                num_operacion=p.get("num_operacion") or None,
                documentos=tuple(
                    DocumentoRelacionado(
                        uuid=d["uuid"],
                        serie=d.get("serie") or None,
                        folio=d["folio"],
                        moneda=d["moneda"].upper(),
                        equivalencia=d["equivalencia"],
                        num_parcialidad=d["num_parcialidad"],
                        saldo_anterior=d["saldo_anterior"],
                        importe_pagado=d["importe_pagado"],
                        tasa_iva=None if d["exento"] else d["tasa_iva"],
                        base_iva=d.get("base_iva"),
                        importe_iva=d.get("importe_iva"),
                    )
                    for d in p["documentos"]
                ),
            )
            for p in data["pagos"]
        )
        return PaymentComplement(
            emisor=EmisorSerializer().to_value(data["emisor"]),
            receptor=ReceptorSerializer().to_value(data["receptor"]),
            lugar_expedicion=data["lugar_expedicion"],
            serie=data.get("serie") or None,
            folio=data.get("folio") or None,
            pagos=pagos,
        )


class CsdUploadSerializer(serializers.Serializer):
    """Registro de CSD en Finkok; si no se envían archivos se usan los configurados."""

    rfc = serializers.CharField(max_length=13)
    cer = serializers.CharField(required=False, allow_blank=True)
    key = serializers.CharField(required=False, allow_blank=True)
    passphrase = serializers.CharField(required=False, allow_blank=True, write_only=True)


class ClienteFinkokSerializer(serializers.Serializer):
    """Alta de un RFC emisor en la cuenta de socio Finkok."""

    taxpayer_id = serializers.CharField(max_length=13)
    # O = OnDemand (ilimitado), P = Prepago
    type_user = serializers.ChoiceField(choices=["O", "P"], required=False, default="O")
