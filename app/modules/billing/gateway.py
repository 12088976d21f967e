"""
Billing Gateway Adapter

Thin wrapper around the Stripe subscription and payment APIs. Every call runs
in the billing-account context of one clinic (Stripe Connect account), resolved
from the clinic id.

Errors from Stripe are re-raised as RemoteGatewayError with a sanitized message
only: Stripe error objects may carry payment-instrument details.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple
from uuid import UUID

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.exceptions import NotFoundError, RemoteGatewayError
from app.core.config import settings
from app.modules.clinics.crud import get_clinic

logger = logging.getLogger(__name__)


def map_interval(interval: str, interval_count: int) -> Tuple[str, int]:
    """Map a plan interval to Stripe's recurring (interval, interval_count)."""
    if interval == "year":
        return "year", 1
    if interval == "semiannual":
        return "month", 6
    if interval == "quarter":
        return "month", 3
    return "month", interval_count or 1


@dataclass(frozen=True)
class BillingContext:
    clinic_id: UUID
    stripe_account: Optional[str] = None

    @property
    def request_options(self) -> Dict[str, str]:
        return {"stripe_account": self.stripe_account} if self.stripe_account else {}


@dataclass(frozen=True)
class PriceSpec:
    """Recurring price in integer minor currency units."""
    amount: int
    interval: str
    interval_count: int
    product_name: str
    currency: str = field(default_factory=lambda: settings.STRIPE_DEFAULT_CURRENCY)


def _sanitize(error: "stripe.StripeError", action: str) -> RemoteGatewayError:
    code = getattr(error, "code", None)
    message = f"Billing provider error during {action}"
    if code:
        message = f"{message} ({code})"
    return RemoteGatewayError(message, provider_code=code, details={"action": action})


class BillingGateway(ABC):
    """Interface used by the lifecycle manager and the refill engine."""

    @abstractmethod
    async def resolve_context(self, db: AsyncSession, clinic_id: UUID) -> BillingContext:
        pass

    @abstractmethod
    async def create_customer(
        self,
        ctx: BillingContext,
        email: Optional[str],
        name: Optional[str],
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        pass

    @abstractmethod
    async def create_subscription(
        self,
        ctx: BillingContext,
        customer_ref: str,
        price: PriceSpec,
        payment_method_ref: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        """Create the remote subscription and return its id."""
        pass

    @abstractmethod
    async def update_subscription(
        self,
        ctx: BillingContext,
        remote_id: str,
        pause_collection: bool = False,
        resumes_at: Optional[datetime] = None,
        resume: bool = False,
        cancel_at_period_end: Optional[bool] = None
    ) -> None:
        pass

    @abstractmethod
    async def cancel_subscription(self, ctx: BillingContext, remote_id: str) -> None:
        pass

    @abstractmethod
    async def charge_saved_payment_method(
        self,
        ctx: BillingContext,
        customer_ref: str,
        payment_method_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Charge off-session and return the payment reference."""
        pass


class StripeBillingGateway(BillingGateway):
    """
    Stripe implementation.

        gateway = StripeBillingGateway()
        ctx = await gateway.resolve_context(db, clinic_id)
        remote_id = await gateway.create_subscription(ctx, "cus_123", price)
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY

    def _options(self, ctx: BillingContext) -> Dict[str, str]:
        options = {"api_key": self.api_key}
        options.update(ctx.request_options)
        return options

    def _ensure_configured(self):
        if not self.api_key:
            raise RemoteGatewayError("Billing provider is not configured", provider_code="not_configured")

    async def resolve_context(self, db: AsyncSession, clinic_id: UUID) -> BillingContext:
        clinic = await get_clinic(db, clinic_id)
        if not clinic:
            raise NotFoundError("Clínica no encontrada", details={"clinic_id": str(clinic_id)})
        return BillingContext(clinic_id=clinic.id, stripe_account=clinic.stripe_account_id)

    async def create_customer(self, ctx, email, name, metadata=None) -> str:
        self._ensure_configured()
        try:
            customer = await stripe.Customer.create_async(
                email=email,
                name=name,
                metadata=metadata or {},
                **self._options(ctx)
            )
        except stripe.StripeError as e:
            logger.error(f"[BILLING] Customer creation failed for clinic {ctx.clinic_id}: {type(e).__name__}")
            raise _sanitize(e, "create_customer") from e
        return customer.id

    async def create_subscription(
        self,
        ctx,
        customer_ref,
        price,
        payment_method_ref=None,
        metadata=None,
        idempotency_key=None
    ) -> str:
        self._ensure_configured()
        interval, interval_count = map_interval(price.interval, price.interval_count)
        try:
            product_params = {"name": price.product_name}
            if idempotency_key:
                # a retried create must reuse the same product under the same key
                product_params["idempotency_key"] = f"{idempotency_key}-product"
            product = await stripe.Product.create_async(**product_params, **self._options(ctx))
            params = {
                "customer": customer_ref,
                "items": [{
                    "price_data": {
                        "currency": price.currency,
                        "unit_amount": price.amount,
                        "product": product.id,
                        "recurring": {"interval": interval, "interval_count": interval_count},
                    }
                }],
                "metadata": metadata or {},
            }
            if payment_method_ref:
                params["default_payment_method"] = payment_method_ref
            if idempotency_key:
                params["idempotency_key"] = idempotency_key
            subscription = await stripe.Subscription.create_async(**params, **self._options(ctx))
        except stripe.StripeError as e:
            logger.error(f"[BILLING] Subscription creation failed for clinic {ctx.clinic_id}: {type(e).__name__}")
            raise _sanitize(e, "create_subscription") from e

        logger.info(f"[BILLING] Created remote subscription {subscription.id} for clinic {ctx.clinic_id}")
        return subscription.id

    async def update_subscription(
        self,
        ctx,
        remote_id,
        pause_collection=False,
        resumes_at=None,
        resume=False,
        cancel_at_period_end=None
    ) -> None:
        self._ensure_configured()
        params = {}
        if pause_collection:
            pause = {"behavior": "void"}
            if resumes_at:
                pause["resumes_at"] = int(resumes_at.timestamp())
            params["pause_collection"] = pause
        elif resume:
            # Empty string unsets pause_collection in Stripe
            params["pause_collection"] = ""
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end

        try:
            await stripe.Subscription.modify_async(remote_id, **params, **self._options(ctx))
        except stripe.StripeError as e:
            logger.error(f"[BILLING] Update of {remote_id} failed: {type(e).__name__}")
            raise _sanitize(e, "update_subscription") from e

        logger.info(f"[BILLING] Updated remote subscription {remote_id}: {sorted(params)}")

    async def cancel_subscription(self, ctx, remote_id) -> None:
        self._ensure_configured()
        try:
            await stripe.Subscription.cancel_async(remote_id, **self._options(ctx))
        except stripe.StripeError as e:
            logger.error(f"[BILLING] Cancel of {remote_id} failed: {type(e).__name__}")
            raise _sanitize(e, "cancel_subscription") from e

        logger.info(f"[BILLING] Canceled remote subscription {remote_id}")

    async def charge_saved_payment_method(
        self,
        ctx,
        customer_ref,
        payment_method_ref,
        amount,
        currency,
        idempotency_key,
        metadata=None
    ) -> str:
        self._ensure_configured()
        try:
            intent = await stripe.PaymentIntent.create_async(
                amount=amount,
                currency=currency,
                customer=customer_ref,
                payment_method=payment_method_ref,
                off_session=True,
                confirm=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                **self._options(ctx)
            )
        except stripe.StripeError as e:
            logger.error(f"[BILLING] Off-session charge failed ({idempotency_key}): {type(e).__name__}")
            raise _sanitize(e, "charge") from e

        if intent.status != "succeeded":
            raise RemoteGatewayError(
                f"Payment not completed (status: {intent.status})",
                provider_code=intent.status,
                details={"action": "charge"}
            )
        return intent.id
