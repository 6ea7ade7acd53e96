# facturacion/tasks.py
from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

from facturacion.services.cfdi.errors import CFDIError, TransientNetworkError
from facturacion.services.pac.client import FinkokClient

logger = logging.getLogger("facturacion.pac")


# =====================================================
# Tarea: conciliación de estatus ante el SAT
# =====================================================


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def reconciliar_estatus_task(
    self,
    uuid: str,
    rfc_emisor: str,
    rfc_receptor: str,
    total: str,
) -> Dict[str, Any]:
    """
    Consulta el estado de un CFDI ante el SAT (get_sat_status) en background.

    Sirve para resolver comprobantes con cancelación pendiente o timbrados
    cuyo resultado no se confirmó. Solo reintenta ante fallas de red.
    """
    logger.info("reconciliar_estatus_task iniciado para uuid=%s", uuid)

    try:
        status = FinkokClient().get_status(uuid, rfc_emisor, rfc_receptor, total)
    except TransientNetworkError as exc:
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            logger.warning(
                "reconciliar_estatus_task sin respuesta para %s; reintento en %ss",
                uuid,
                countdown,
            )
            raise self.retry(exc=exc, countdown=countdown)
        return {"ok": False, "uuid": uuid, **exc.as_dict()}
    except CFDIError as exc:
        logger.error("reconciliar_estatus_task falló para %s: %s", uuid, exc)
        return {"ok": False, "uuid": uuid, **exc.as_dict()}

    logger.info(
        "reconciliar_estatus_task finalizado para uuid=%s, estado=%s, estatus_cancelacion=%s",
        uuid,
        status.estado,
        status.estatus_cancelacion,
    )
    return {"ok": True, "uuid": uuid, **status.as_dict()}
