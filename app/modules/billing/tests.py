"""
Tests para el adaptador de cobros (Stripe)

Las llamadas al SDK se reemplazan con AsyncMock; se verifica el mapeo de
intervalos, el enrutamiento por cuenta de la clínica y que los errores del
proveedor nunca expongan su contenido.
"""
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
import stripe

from app.common.exceptions import NotFoundError, RemoteGatewayError
from app.modules.billing.gateway import BillingContext, PriceSpec, StripeBillingGateway, map_interval


@pytest.fixture
def stripe_gateway():
    return StripeBillingGateway(api_key="sk_test_123")


@pytest.fixture
def ctx():
    return BillingContext(clinic_id=uuid4(), stripe_account="acct_clinic")


def _price(interval="month", interval_count=1):
    return PriceSpec(
        amount=29900,
        interval=interval,
        interval_count=interval_count,
        product_name="Semaglutide Monthly",
        currency="usd"
    )


# ===== TESTS DE MAPEO =====

class TestIntervalMapping:
    """Mapeo de intervalos del plan a intervalos recurrentes de Stripe"""

    def test_mapping(self):
        assert map_interval("year", 1) == ("year", 1)
        assert map_interval("semiannual", 1) == ("month", 6)
        assert map_interval("quarter", 1) == ("month", 3)
        assert map_interval("month", 2) == ("month", 2)
        assert map_interval("month", 0) == ("month", 1)


# ===== TESTS DE CONTEXTO =====

class TestBillingContext:

    async def test_resolves_clinic_account(self, db, clinic, stripe_gateway):
        clinic.stripe_account_id = "acct_norte"
        await db.commit()

        ctx = await stripe_gateway.resolve_context(db, clinic.id)

        assert ctx.stripe_account == "acct_norte"
        assert ctx.request_options == {"stripe_account": "acct_norte"}

    async def test_platform_account_when_clinic_has_none(self, db, clinic, stripe_gateway):
        ctx = await stripe_gateway.resolve_context(db, clinic.id)
        assert ctx.request_options == {}

    async def test_unknown_clinic(self, db, stripe_gateway):
        with pytest.raises(NotFoundError):
            await stripe_gateway.resolve_context(db, uuid4())


# ===== TESTS DE SUSCRIPCIONES =====

class TestStripeSubscriptions:
    """Creación, actualización y cancelación de suscripciones remotas"""

    async def test_create_subscription(self, stripe_gateway, ctx):
        with patch.object(stripe.Product, "create_async", new_callable=AsyncMock) as create_product, \
                patch.object(stripe.Subscription, "create_async", new_callable=AsyncMock) as create_sub:
            create_product.return_value = SimpleNamespace(id="prod_1")
            create_sub.return_value = SimpleNamespace(id="sub_remote_1")

            remote_id = await stripe_gateway.create_subscription(
                ctx,
                "cus_1",
                _price("quarter"),
                payment_method_ref="pm_1",
                metadata={"planId": "sema"},
                idempotency_key="subscription-abc-create"
            )

        assert remote_id == "sub_remote_1"
        kwargs = create_sub.call_args.kwargs
        assert kwargs["customer"] == "cus_1"
        assert kwargs["default_payment_method"] == "pm_1"
        assert kwargs["idempotency_key"] == "subscription-abc-create"
        assert kwargs["stripe_account"] == "acct_clinic"
        assert kwargs["api_key"] == "sk_test_123"
        price_data = kwargs["items"][0]["price_data"]
        assert price_data["unit_amount"] == 29900
        assert price_data["product"] == "prod_1"
        assert price_data["recurring"] == {"interval": "month", "interval_count": 3}

    async def test_retry_with_same_key_sends_identical_params(self, stripe_gateway, ctx):
        """Un reintento con la misma llave reutiliza el producto y repite los mismos parámetros"""
        products = {}

        async def _create_product(**kwargs):
            key = kwargs.get("idempotency_key")
            products.setdefault(key, SimpleNamespace(id=f"prod_{len(products) + 1}"))
            return products[key]

        with patch.object(stripe.Product, "create_async", new_callable=AsyncMock) as create_product, \
                patch.object(stripe.Subscription, "create_async", new_callable=AsyncMock) as create_sub:
            create_product.side_effect = _create_product
            create_sub.return_value = SimpleNamespace(id="sub_remote_1")

            for _ in range(2):
                await stripe_gateway.create_subscription(
                    ctx, "cus_1", _price(), idempotency_key="subscription-abc-create"
                )

        product_keys = [call.kwargs["idempotency_key"] for call in create_product.call_args_list]
        assert product_keys == ["subscription-abc-create-product"] * 2
        first, second = create_sub.call_args_list
        assert first.kwargs == second.kwargs
        assert first.kwargs["items"][0]["price_data"]["product"] == "prod_1"

    async def test_product_without_key_when_none_given(self, stripe_gateway, ctx):
        with patch.object(stripe.Product, "create_async", new_callable=AsyncMock) as create_product, \
                patch.object(stripe.Subscription, "create_async", new_callable=AsyncMock) as create_sub:
            create_product.return_value = SimpleNamespace(id="prod_1")
            create_sub.return_value = SimpleNamespace(id="sub_remote_1")

            await stripe_gateway.create_subscription(ctx, "cus_1", _price())

        assert "idempotency_key" not in create_product.call_args.kwargs
        assert "idempotency_key" not in create_sub.call_args.kwargs

    async def test_stripe_error_is_sanitized(self, stripe_gateway, ctx):
        error = stripe.CardError("Your card ending in 4242 was declined", None, "card_declined")
        with patch.object(stripe.Product, "create_async", new_callable=AsyncMock) as create_product, \
                patch.object(stripe.Subscription, "create_async", new_callable=AsyncMock) as create_sub:
            create_product.return_value = SimpleNamespace(id="prod_1")
            create_sub.side_effect = error

            with pytest.raises(RemoteGatewayError) as exc_info:
                await stripe_gateway.create_subscription(ctx, "cus_1", _price())

        assert exc_info.value.provider_code == "card_declined"
        assert "4242" not in exc_info.value.message
        assert exc_info.value.__cause__ is error

    async def test_pause_with_resume_date(self, stripe_gateway, ctx):
        resumes_at = datetime(2025, 3, 1, tzinfo=timezone.utc)
        with patch.object(stripe.Subscription, "modify_async", new_callable=AsyncMock) as modify:
            await stripe_gateway.update_subscription(ctx, "sub_1", pause_collection=True, resumes_at=resumes_at)

        args, kwargs = modify.call_args
        assert args == ("sub_1",)
        assert kwargs["pause_collection"] == {"behavior": "void", "resumes_at": int(resumes_at.timestamp())}

    async def test_resume_unsets_pause(self, stripe_gateway, ctx):
        with patch.object(stripe.Subscription, "modify_async", new_callable=AsyncMock) as modify:
            await stripe_gateway.update_subscription(ctx, "sub_1", resume=True)

        assert modify.call_args.kwargs["pause_collection"] == ""

    async def test_cancel_at_period_end(self, stripe_gateway, ctx):
        with patch.object(stripe.Subscription, "modify_async", new_callable=AsyncMock) as modify:
            await stripe_gateway.update_subscription(ctx, "sub_1", cancel_at_period_end=True)

        assert modify.call_args.kwargs["cancel_at_period_end"] is True
        assert "pause_collection" not in modify.call_args.kwargs

    async def test_cancel_now(self, stripe_gateway, ctx):
        with patch.object(stripe.Subscription, "cancel_async", new_callable=AsyncMock) as cancel:
            await stripe_gateway.cancel_subscription(ctx, "sub_1")

        cancel.assert_awaited_once()
        assert cancel.call_args.args == ("sub_1",)

    async def test_not_configured(self, ctx):
        gateway = StripeBillingGateway()
        gateway.api_key = ""

        with pytest.raises(RemoteGatewayError) as exc_info:
            await gateway.cancel_subscription(ctx, "sub_1")
        assert exc_info.value.provider_code == "not_configured"


# ===== TESTS DE COBROS =====

class TestOffSessionCharge:
    """Cobro del método de pago guardado"""

    async def test_successful_charge(self, stripe_gateway, ctx):
        with patch.object(stripe.PaymentIntent, "create_async", new_callable=AsyncMock) as create_intent:
            create_intent.return_value = SimpleNamespace(id="pi_1", status="succeeded")

            reference = await stripe_gateway.charge_saved_payment_method(
                ctx, "cus_1", "pm_1", 29900, "usd", idempotency_key="refill-1-charge"
            )

        assert reference == "pi_1"
        kwargs = create_intent.call_args.kwargs
        assert kwargs["off_session"] is True
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "refill-1-charge"

    async def test_incomplete_charge_raises(self, stripe_gateway, ctx):
        with patch.object(stripe.PaymentIntent, "create_async", new_callable=AsyncMock) as create_intent:
            create_intent.return_value = SimpleNamespace(id="pi_2", status="requires_action")

            with pytest.raises(RemoteGatewayError) as exc_info:
                await stripe_gateway.charge_saved_payment_method(
                    ctx, "cus_1", "pm_1", 29900, "usd", idempotency_key="refill-2-charge"
                )

        assert exc_info.value.provider_code == "requires_action"

    async def test_network_error(self, stripe_gateway, ctx):
        with patch.object(stripe.PaymentIntent, "create_async", new_callable=AsyncMock) as create_intent:
            create_intent.side_effect = stripe.APIConnectionError("connection reset")

            with pytest.raises(RemoteGatewayError) as exc_info:
                await stripe_gateway.charge_saved_payment_method(
                    ctx, "cus_1", "pm_1", 29900, "usd", idempotency_key="refill-3-charge"
                )

        assert exc_info.value.message == "Billing provider error during charge"
