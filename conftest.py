"""
Fixtures compartidos para los tests de suscripciones, resurtidos y cobros.

Cada test usa su propia base SQLite (aiosqlite) en un directorio temporal.
El gateway de cobros y el cliente de farmacia se reemplazan por dobles que
registran las llamadas y pueden configurarse para fallar.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./clinic_core_test.db")
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.main import app as fastapi_app
from app.common.exceptions import RemoteGatewayError
from app.common.mixins import utcnow
from app.database.database import Base, build_async_engine, get_async_db
from app.dependencies.serviceDependencies import get_billing_gateway, get_pharmacy_client
from app.modules.auth.utils import create_access_token
from app.modules.billing.gateway import BillingContext, BillingGateway
from app.modules.clinics.models import Clinic, Patient
from app.modules.refills.pharmacy import PharmacyClient, PharmacyOrderRequest
from app.modules.refills.service import RefillQueueService
from app.modules.subscriptions.models import BillingSyncStatus, Subscription, SubscriptionStatus
from app.modules.subscriptions.service import SubscriptionLifecycleService
from app.modules.subscriptions.utils import calculate_interval_days, calculate_period_end


# ===== TEST DOUBLES =====

class FakeBillingGateway(BillingGateway):
    """Gateway en memoria. `fail_on` contiene los métodos que deben fallar."""

    def __init__(self):
        self.calls: List[Tuple[str, dict]] = []
        self.fail_on = set()
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append((method, kwargs))
        if method in self.fail_on:
            raise RemoteGatewayError(
                f"Billing provider error during {method} (card_declined)",
                provider_code="card_declined"
            )

    def calls_to(self, method: str) -> List[dict]:
        return [kwargs for call, kwargs in self.calls if call == method]

    async def resolve_context(self, db, clinic_id: UUID) -> BillingContext:
        return BillingContext(clinic_id=clinic_id)

    async def create_customer(self, ctx, email, name, metadata=None) -> str:
        self._record("create_customer", email=email, name=name, metadata=metadata)
        return self._next_id("cus")

    async def create_subscription(
        self,
        ctx,
        customer_ref,
        price,
        payment_method_ref=None,
        metadata=None,
        idempotency_key=None
    ) -> str:
        self._record(
            "create_subscription",
            customer_ref=customer_ref,
            price=price,
            payment_method_ref=payment_method_ref,
            metadata=metadata,
            idempotency_key=idempotency_key
        )
        return self._next_id("sub")

    async def update_subscription(
        self,
        ctx,
        remote_id,
        pause_collection=False,
        resumes_at=None,
        resume=False,
        cancel_at_period_end=None
    ) -> None:
        self._record(
            "update_subscription",
            remote_id=remote_id,
            pause_collection=pause_collection,
            resumes_at=resumes_at,
            resume=resume,
            cancel_at_period_end=cancel_at_period_end
        )

    async def cancel_subscription(self, ctx, remote_id) -> None:
        self._record("cancel_subscription", remote_id=remote_id)

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
        self._record(
            "charge_saved_payment_method",
            customer_ref=customer_ref,
            payment_method_ref=payment_method_ref,
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key
        )
        return self._next_id("pi")


class FakePharmacy(PharmacyClient):
    def __init__(self):
        self.orders: List[PharmacyOrderRequest] = []
        self.fail = False

    async def submit_order(self, order: PharmacyOrderRequest) -> str:
        if self.fail:
            raise RemoteGatewayError("Pharmacy rejected the order (HTTP 503)", provider_code="503")
        self.orders.append(order)
        return f"ORD-{len(self.orders)}"


# ===== DATABASE =====

@pytest.fixture
async def engine(tmp_path):
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'clinic_core.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ===== REFERENCE DATA =====

async def _add(db: AsyncSession, instance):
    db.add(instance)
    await db.commit()
    return instance


@pytest.fixture
async def clinic(db):
    """Clínica con paso de aprobación administrativa."""
    return await _add(db, Clinic(
        id=uuid4(),
        name="Clínica Norte",
        refill_requires_admin_approval=True,
        default_medication_strength="2.5mg/ml",
        default_medication_form="injection"
    ))


@pytest.fixture
async def ungated_clinic(db):
    """Clínica sin aprobación administrativa: pago verificado va directo al proveedor."""
    return await _add(db, Clinic(id=uuid4(), name="Clínica Sur", refill_requires_admin_approval=False))


@pytest.fixture
async def other_clinic(db):
    return await _add(db, Clinic(id=uuid4(), name="Clínica Oeste"))


@pytest.fixture
def patient_factory(db):
    async def _create(clinic: Clinic, stripe_customer_id: Optional[str] = None, **fields) -> Patient:
        values = {
            "id": uuid4(),
            "clinic_id": clinic.id,
            "email": f"paciente-{uuid4().hex[:6]}@example.com",
            "first_name": "Ana",
            "last_name": "García",
            "stripe_customer_id": stripe_customer_id,
            "tags": [],
        }
        values.update(fields)
        return await _add(db, Patient(**values))
    return _create


@pytest.fixture
async def patient(patient_factory, clinic):
    return await patient_factory(clinic)


@pytest.fixture
async def billed_patient(patient_factory, clinic):
    """Paciente que ya tiene cliente en el proveedor de cobros."""
    return await patient_factory(clinic, stripe_customer_id="cus_seed")


@pytest.fixture
def subscription_factory(db):
    """Inserta una suscripción ya confirmada sin pasar por el ciclo de vida."""
    async def _create(patient: Patient, **overrides) -> Subscription:
        now = utcnow()
        period_end = calculate_period_end(now, "month", 1)
        vial_count = overrides.pop("vial_count", 1)
        values = {
            "id": uuid4(),
            "patient_id": patient.id,
            "clinic_id": patient.clinic_id,
            "plan_id": "semaglutide-monthly",
            "plan_name": "Semaglutide Monthly",
            "amount": 29900,
            "currency": "usd",
            "interval": "month",
            "interval_count": 1,
            "status": SubscriptionStatus.ACTIVE.value,
            "start_date": now,
            "current_period_start": now,
            "current_period_end": period_end,
            "next_billing_date": period_end,
            "vial_count": vial_count,
            "refill_interval_days": calculate_interval_days(vial_count),
            "payment_method_ref": "pm_test_visa",
            "billing_provider_subscription_id": f"sub_seed_{uuid4().hex[:8]}",
            "billing_sync_status": BillingSyncStatus.CONFIRMED.value,
        }
        values.update(overrides)
        return await _add(db, Subscription(**values))
    return _create


# ===== SERVICES =====

@pytest.fixture
def gateway():
    return FakeBillingGateway()


@pytest.fixture
def pharmacy():
    return FakePharmacy()


@pytest.fixture
def refill_service(db, gateway, pharmacy):
    return RefillQueueService(db, gateway=gateway, pharmacy=pharmacy)


@pytest.fixture
def lifecycle(db, gateway, refill_service):
    return SubscriptionLifecycleService(db, gateway, refill_service)


# ===== HTTP =====

@pytest.fixture
async def api_client(session_factory, gateway, pharmacy):
    """Cliente HTTP contra la app con base de datos y proveedores de prueba."""

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[get_async_db] = _get_test_db
    fastapi_app.dependency_overrides[get_billing_gateway] = lambda: gateway
    fastapi_app.dependency_overrides[get_pharmacy_client] = lambda: pharmacy

    transport = httpx.ASGITransport(app=fastapi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Headers de un usuario con rol dado en una clínica."""
    def _headers(clinic: Clinic, role: str = "admin", user_id: Optional[UUID] = None) -> Dict[str, str]:
        token = create_access_token({
            "sub": str(user_id or uuid4()),
            "role": role,
            "clinic_id": str(clinic.id),
        })
        return {"Authorization": f"Bearer {token}", "X-Clinic-ID": str(clinic.id)}
    return _headers
