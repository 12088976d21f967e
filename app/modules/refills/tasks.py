"""
Tareas periódicas de Celery para la cola de resurtidos.
"""
import asyncio
import logging
from typing import Optional
from uuid import UUID

from app.core.celery import celery_app
from app.database.database import AsyncSessionLocal, async_engine
from app.modules.billing.gateway import StripeBillingGateway
from app.modules.refills.pharmacy import HttpPharmacyClient
from app.modules.refills.service import RefillQueueService

logger = logging.getLogger(__name__)


@celery_app.task
def process_due_refills(clinic_id: Optional[str] = None):
    """
    Periodic sweep of due refills. Safe to run on several workers at once:
    only the lock holder does the work.
    """
    logger.info(f"Starting due refill sweep (clinic={clinic_id or 'all'})")
    result = asyncio.run(_process_due_refills_async(UUID(clinic_id) if clinic_id else None))
    if result.get("skipped"):
        logger.info(f"Due refill sweep skipped: {result.get('reason')}")
    else:
        logger.info(f"Due refill sweep completed: {result['processed']} processed, {len(result['errors'])} errors")
    return result


async def _process_due_refills_async(clinic_id: Optional[UUID]) -> dict:
    try:
        async with AsyncSessionLocal() as db:
            service = RefillQueueService(db, gateway=StripeBillingGateway(), pharmacy=HttpPharmacyClient())
            return await service.run_due_refills_job(clinic_id)
    finally:
        # Pooled connections belong to this event loop; the next run gets a new one
        await async_engine.dispose()
