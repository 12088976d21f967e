"""
Construcción de servicios por request. Los tests reemplazan el gateway de cobros
y el cliente de farmacia con app.dependency_overrides.
"""
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from app.core.config import settings
from app.dependencies.dbDependecies import async_db_dependency
from app.modules.billing.gateway import BillingGateway, StripeBillingGateway
from app.modules.refills.pharmacy import HttpPharmacyClient, PharmacyClient
from app.modules.refills.service import RefillQueueService
from app.modules.subscriptions.service import SubscriptionLifecycleService


def get_billing_gateway() -> BillingGateway:
    return StripeBillingGateway()


def get_pharmacy_client() -> PharmacyClient:
    return HttpPharmacyClient()


def get_refill_service(
    db: async_db_dependency,
    gateway: BillingGateway = Depends(get_billing_gateway),
    pharmacy: PharmacyClient = Depends(get_pharmacy_client)
) -> RefillQueueService:
    return RefillQueueService(db, gateway=gateway, pharmacy=pharmacy)


def get_lifecycle_service(
    db: async_db_dependency,
    gateway: BillingGateway = Depends(get_billing_gateway),
    refill_service: RefillQueueService = Depends(get_refill_service)
) -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService(db, gateway, refill_service)


def verify_cron_secret(x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret")) -> None:
    """Autoriza los disparadores programados (cron externo)."""
    if not settings.CRON_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron trigger is not configured"
        )
    if not x_cron_secret or not secrets.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret"
        )
