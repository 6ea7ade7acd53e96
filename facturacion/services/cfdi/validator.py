# facturacion/services/cfdi/validator.py
"""
Validación fail-fast de comprobantes antes de construir el XML.

Todo lo que se puede detectar localmente se detecta aquí, para no gastar
timbres ni llamadas al PAC en comprobantes que el SAT rechazaría.
"""
from __future__ import annotations

import logging
import re
import uuid as uuid_lib
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .errors import FieldError, MissingSubstitution, ValidationError
from .types import MOTIVOS_CANCELACION, CancellationRequest, InvoiceDraft

logger = logging.getLogger("facturacion.cfdi")

RFC_PATTERN = re.compile(r"^[A-Z&Ñ]{3,4}[0-9]{6}[A-Z0-9]{3}$")
CODIGO_POSTAL_PATTERN = re.compile(r"^[0-9]{5}$")
CLAVE_PROD_SERV_PATTERN = re.compile(r"^[0-9]{8}$")

TIPOS_COMPROBANTE = ("I", "E")
OBJETOS_IMPUESTO = ("01", "02", "03", "04", "05", "06", "07", "08")
METODOS_PAGO = ("PUE", "PPD")

USO_CFDI_CATALOG: Dict[str, str] = {
    "G01": "Adquisición de mercancías",
    "G02": "Devoluciones, descuentos o bonificaciones",
    "G03": "Gastos en general",
    "I01": "Construcciones",
    "I02": "Mobiliario y equipo de oficina por inversiones",
    "I03": "Equipo de transporte",
    "I04": "Equipo de cómputo y accesorios",
    "I05": "Dados, troqueles, moldes, matrices y herramental",
    "I06": "Comunicaciones telefónicas",
    "I07": "Comunicaciones satelitales",
    "I08": "Otra maquinaria y equipo",
    "D01": "Honorarios médicos, dentales y gastos hospitalarios",
    "D02": "Gastos médicos por incapacidad o discapacidad",
    "D03": "Gastos funerales",
    "D04": "Donativos",
    "D05": "Intereses reales efectivamente pagados por créditos hipotecarios",
    "D06": "Aportaciones voluntarias al SAR",
    "D07": "Primas por seguros de gastos médicos",
    "D08": "Gastos de transportación escolar obligatoria",
    "D09": "Depósitos en cuentas para el ahorro, primas de pensiones",
    "D10": "Pagos por servicios educativos (colegiaturas)",
    "S01": "Sin efectos fiscales",
    "CP01": "Pagos",
    "CN01": "Nómina",
}

_USOS_GENERALES = ("G01", "G02", "G03", "I01", "I02", "I03", "I04", "I05", "I06", "I07", "I08")
_DEDUCCIONES_PERSONALES = ("D01", "D02", "D03", "D04", "D05", "D06", "D07", "D08", "D09", "D10")
_SIN_EFECTOS = ("S01", "CP01")

_CON_DEDUCCIONES = _USOS_GENERALES + _DEDUCCIONES_PERSONALES + _SIN_EFECTOS
_SIN_DEDUCCIONES = _USOS_GENERALES + _SIN_EFECTOS

# UsoCFDI admitidos por régimen fiscal del receptor (Anexo 20, c_UsoCFDI)
USO_CFDI_POR_REGIMEN: Dict[str, Tuple[str, ...]] = {
    "601": _CON_DEDUCCIONES,
    "603": _SIN_DEDUCCIONES,
    "605": _SIN_DEDUCCIONES,
    "606": _SIN_DEDUCCIONES,
    "607": _CON_DEDUCCIONES,
    "608": _SIN_DEDUCCIONES,
    "610": _SIN_DEDUCCIONES,
    "611": _CON_DEDUCCIONES,
    "612": _CON_DEDUCCIONES,
    "614": _CON_DEDUCCIONES,
    "616": _SIN_DEDUCCIONES,
    "620": _SIN_DEDUCCIONES,
    "621": _SIN_DEDUCCIONES,
    "622": _SIN_DEDUCCIONES,
    "623": _SIN_DEDUCCIONES,
    "624": _SIN_DEDUCCIONES,
    "625": _CON_DEDUCCIONES,
    "626": _CON_DEDUCCIONES,
}
USO_CFDI_POR_OMISION = ("G03", "S01", "CP01")


def is_valid_rfc(rfc: Optional[str]) -> bool:
    return bool(rfc) and bool(RFC_PATTERN.match(rfc.strip().upper()))


def is_valid_uuid(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid_lib.UUID(str(value))
    except ValueError:
        return False
    return len(str(value).strip()) == 36


def usos_cfdi_compatibles(regimen_fiscal: Optional[str]) -> List[Tuple[str, str]]:
    """(clave, descripción) de los UsoCFDI que admite un régimen fiscal."""
    claves = USO_CFDI_POR_REGIMEN.get(regimen_fiscal or "", USO_CFDI_POR_OMISION)
    return [(clave, USO_CFDI_CATALOG.get(clave, clave)) for clave in claves]


def _required(errors: List[FieldError], campo: str, value: Optional[str]) -> None:
    if not value or not str(value).strip():
        errors.append(FieldError(campo, "Campo requerido"))


def _validate_uso_cfdi(errors: List[FieldError], uso_cfdi: Optional[str], regimen_fiscal: Optional[str]) -> None:
    if not uso_cfdi:
        errors.append(FieldError("receptor.uso_cfdi", "Campo requerido"))
        return
    if uso_cfdi not in USO_CFDI_CATALOG:
        errors.append(FieldError("receptor.uso_cfdi", f"UsoCFDI {uso_cfdi} no existe en el catálogo"))
        return
    if not regimen_fiscal:
        return
    compatibles = [clave for clave, _ in usos_cfdi_compatibles(regimen_fiscal)]
    if uso_cfdi not in compatibles:
        errors.append(
            FieldError(
                "receptor.uso_cfdi",
                f"UsoCFDI {uso_cfdi} no es compatible con el régimen fiscal {regimen_fiscal} "
                f"(CFDI40138); admitidos: {', '.join(compatibles)}",
            )
        )


def validate_invoice(invoice: InvoiceDraft) -> None:
    """
    Valida un InvoiceDraft y levanta ValidationError con TODOS los campos inválidos.
    """
    errors: List[FieldError] = []

    # Emisor
    if not is_valid_rfc(invoice.emisor.rfc):
        errors.append(FieldError("emisor.rfc", "RFC con formato inválido"))
    _required(errors, "emisor.nombre", invoice.emisor.nombre)
    _required(errors, "emisor.regimen_fiscal", invoice.emisor.regimen_fiscal)

    # Receptor
    receptor = invoice.receptor
    if not is_valid_rfc(receptor.rfc):
        errors.append(FieldError("receptor.rfc", "RFC con formato inválido"))
    _required(errors, "receptor.nombre", receptor.nombre)
    _required(errors, "receptor.regimen_fiscal", receptor.regimen_fiscal)
    _validate_uso_cfdi(errors, receptor.uso_cfdi, receptor.regimen_fiscal)
    if not CODIGO_POSTAL_PATTERN.match(receptor.domicilio_fiscal or ""):
        errors.append(FieldError("receptor.domicilio_fiscal", "Código postal de 5 dígitos requerido"))

    # Comprobante
    if not CODIGO_POSTAL_PATTERN.match(invoice.lugar_expedicion or ""):
        errors.append(FieldError("lugar_expedicion", "Código postal de 5 dígitos requerido"))
    if invoice.tipo_comprobante not in TIPOS_COMPROBANTE:
        errors.append(FieldError("tipo_comprobante", "Solo se admiten comprobantes de Ingreso (I) o Egreso (E)"))
    if invoice.metodo_pago and invoice.metodo_pago not in METODOS_PAGO:
        errors.append(FieldError("metodo_pago", "Método de pago inválido"))
    if invoice.metodo_pago == "PPD" and invoice.forma_pago != "99":
        errors.append(FieldError("forma_pago", "Con método PPD la forma de pago debe ser 99 (Por definir)"))

    moneda = (invoice.moneda or "").upper()
    if not moneda:
        errors.append(FieldError("moneda", "Campo requerido"))
    elif moneda == "MXN":
        if invoice.tipo_cambio is not None and invoice.tipo_cambio != Decimal("1"):
            errors.append(FieldError("tipo_cambio", "MXN no admite tipo de cambio distinto de 1"))
    elif invoice.tipo_cambio is None or invoice.tipo_cambio <= 0:
        errors.append(FieldError("tipo_cambio", f"Tipo de cambio requerido para moneda {moneda}"))

    if invoice.relacionados is not None:
        _required(errors, "relacionados.tipo_relacion", invoice.relacionados.tipo_relacion)
        if not invoice.relacionados.uuids:
            errors.append(FieldError("relacionados.uuids", "Se requiere al menos un UUID relacionado"))
        for idx, uuid in enumerate(invoice.relacionados.uuids):
            if not is_valid_uuid(uuid):
                errors.append(FieldError(f"relacionados.uuids[{idx}]", "UUID inválido"))

    # Conceptos
    if not invoice.conceptos:
        errors.append(FieldError("conceptos", "El comprobante debe tener al menos un concepto"))

    for idx, concepto in enumerate(invoice.conceptos):
        prefix = f"conceptos[{idx}]"
        if not CLAVE_PROD_SERV_PATTERN.match(concepto.clave_prod_serv or ""):
            errors.append(FieldError(f"{prefix}.clave_prod_serv", "Clave de producto/servicio de 8 dígitos requerida"))
        _required(errors, f"{prefix}.clave_unidad", concepto.clave_unidad)
        _required(errors, f"{prefix}.descripcion", concepto.descripcion)
        if concepto.cantidad <= 0:
            errors.append(FieldError(f"{prefix}.cantidad", "La cantidad debe ser mayor a cero"))
        if concepto.valor_unitario < 0:
            errors.append(FieldError(f"{prefix}.valor_unitario", "El valor unitario no puede ser negativo"))
        if not (Decimal("0") <= concepto.descuento_porcentaje <= Decimal("100")):
            errors.append(FieldError(f"{prefix}.descuento_porcentaje", "El descuento debe estar entre 0 y 100"))
        if concepto.objeto_imp not in OBJETOS_IMPUESTO:
            errors.append(FieldError(f"{prefix}.objeto_imp", "ObjetoImp inválido"))
        if concepto.tasa_iva is not None and concepto.tasa_iva < 0:
            errors.append(FieldError(f"{prefix}.tasa_iva", "La tasa de IVA no puede ser negativa"))

    if invoice.conceptos and not errors and invoice.total <= 0:
        errors.append(FieldError("total", "El total del comprobante debe ser mayor a cero"))

    if errors:
        logger.info(
            "Comprobante %s%s inválido: %s",
            invoice.serie or "",
            invoice.folio,
            [f"{e.campo}: {e.mensaje}" for e in errors],
        )
        raise ValidationError(errors)


def validate_cancellation(request: CancellationRequest) -> None:
    """Reglas de cancelación que no requieren red (motivo y sustitución)."""
    errors: List[FieldError] = []

    if not is_valid_uuid(request.uuid):
        errors.append(FieldError("uuid", "UUID inválido"))

    if request.motivo not in MOTIVOS_CANCELACION:
        errors.append(FieldError("motivo", "Motivo de cancelación inválido (01, 02, 03 o 04)"))
    elif request.motivo == "01":
        if not request.uuid_sustitucion:
            raise MissingSubstitution()
        if not is_valid_uuid(request.uuid_sustitucion):
            errors.append(FieldError("uuid_sustitucion", "UUID de sustitución inválido"))

    if errors:
        raise ValidationError(errors)
