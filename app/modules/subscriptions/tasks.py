"""
Tareas periódicas de Celery para suscripciones.
"""
import asyncio
import logging
from typing import Optional
from uuid import UUID

from app.core.celery import celery_app
from app.database.database import AsyncSessionLocal, async_engine
from app.modules.billing.gateway import StripeBillingGateway
from app.modules.refills.service import RefillQueueService
from app.modules.subscriptions.service import SubscriptionLifecycleService

logger = logging.getLogger(__name__)


@celery_app.task
def reconcile_subscription_billing(clinic_id: Optional[str] = None):
    """
    Periodic retry of subscriptions whose creation at the billing provider
    never got confirmed.
    """
    logger.info(f"Starting billing reconciliation (clinic={clinic_id or 'all'})")
    result = asyncio.run(_reconcile_async(UUID(clinic_id) if clinic_id else None))
    if result.get("skipped"):
        logger.info(f"Billing reconciliation skipped: {result.get('reason')}")
    else:
        logger.info(f"Billing reconciliation completed: {result['confirmed']} of {result['processed']} confirmed")
    return result


async def _reconcile_async(clinic_id: Optional[UUID]) -> dict:
    try:
        async with AsyncSessionLocal() as db:
            gateway = StripeBillingGateway()
            service = SubscriptionLifecycleService(db, gateway, RefillQueueService(db, gateway=gateway))
            return await service.reconcile_unsynced(clinic_id)
    finally:
        await async_engine.dispose()
