"""
Tests para el módulo de Suscripciones

Cubren:
- Cálculo de fin de período (meses cortos, años bisiestos)
- Reglas de la máquina de estados: pausar, reanudar, cancelar
- Orden remoto/local y fallas del proveedor de cobros
- Auditoría: exactamente una acción por transición exitosa
- Reconciliación de suscripciones sin confirmar
- Endpoints HTTP con multi-tenant por X-Clinic-ID
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from app.common.locks import try_advisory_lock
from app.common.mixins import utcnow
from app.modules.clinics.crud import get_patient
from app.modules.clinics.models import ACTIVE_SUBSCRIPTION_TAG
from app.modules.refills import crud as refill_crud
from app.modules.refills.models import RefillStatus
from app.modules.subscriptions.audit import AuditLog
from app.modules.subscriptions.models import (
    BillingInterval,
    BillingSyncStatus,
    SubscriptionActionType,
    SubscriptionStatus,
)
from app.modules.subscriptions.schemas import (
    CancelSubscriptionInput,
    CreateSubscriptionInput,
    PauseSubscriptionInput,
    ResumeSubscriptionInput,
)
from app.modules.subscriptions.service import RECONCILE_JOB
from app.modules.subscriptions.utils import (
    calculate_interval_days,
    calculate_period_end,
    extract_medication_name,
    plan_tag,
)

CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


UTC = timezone.utc


# ===== FIXTURES =====

@pytest.fixture
def create_input(patient):
    def _input(**overrides):
        values = {
            "patient_id": patient.id,
            "clinic_id": patient.clinic_id,
            "plan_id": "semaglutide-monthly",
            "plan_name": "Semaglutide Monthly",
            "amount": 29900,
            "interval": BillingInterval.MONTH,
            "payment_method_ref": "pm_test_visa",
        }
        values.update(overrides)
        return CreateSubscriptionInput(**values)
    return _input


@pytest.fixture
async def active_subscription(lifecycle, create_input):
    result = await lifecycle.create_subscription(create_input())
    assert result.success
    return result.subscription


async def _action_count(db, subscription, action_type=None):
    return await AuditLog(db).count_for_subscription(subscription.id, action_type)


# ===== TESTS DE UTILIDADES =====

class TestPeriodCalculation:
    """Tests para el cálculo del fin de período de facturación"""

    def test_quarter_from_mid_month(self):
        start = datetime(2024, 1, 15, tzinfo=UTC)
        assert calculate_period_end(start, "quarter") == datetime(2024, 4, 15, tzinfo=UTC)

    def test_year_from_mid_month(self):
        start = datetime(2024, 1, 15, tzinfo=UTC)
        assert calculate_period_end(start, "year") == datetime(2025, 1, 15, tzinfo=UTC)

    def test_three_months_clamps_to_end_of_april(self):
        start = datetime(2024, 1, 31, tzinfo=UTC)
        assert calculate_period_end(start, "month", 3) == datetime(2024, 4, 30, tzinfo=UTC)

    def test_quarter_clamps_to_end_of_shorter_month(self):
        start = datetime(2024, 1, 31, 9, 30, tzinfo=UTC)
        assert calculate_period_end(start, "quarter") == datetime(2024, 4, 30, 9, 30, tzinfo=UTC)

    def test_year_from_leap_day(self):
        start = datetime(2024, 2, 29, tzinfo=UTC)
        assert calculate_period_end(start, "year") == datetime(2025, 2, 28, tzinfo=UTC)

    def test_month_clamps_into_february(self):
        start = datetime(2024, 1, 31, tzinfo=UTC)
        assert calculate_period_end(start, "month", 1) == datetime(2024, 2, 29, tzinfo=UTC)

    def test_month_uses_interval_count(self):
        start = datetime(2024, 1, 31, tzinfo=UTC)
        assert calculate_period_end(start, "month", 2) == datetime(2024, 3, 31, tzinfo=UTC)

    def test_semiannual(self):
        start = datetime(2024, 8, 31, tzinfo=UTC)
        assert calculate_period_end(start, "semiannual") == datetime(2025, 2, 28, tzinfo=UTC)

    def test_interval_days_by_vial_count(self):
        assert calculate_interval_days(1) == 30
        assert calculate_interval_days(3) == 90
        assert calculate_interval_days(6) == 180
        assert calculate_interval_days(2) == 30

    def test_plan_tag_and_medication(self):
        assert plan_tag("Semaglutide  Monthly ") == "subscription-semaglutide-monthly"
        assert extract_medication_name("Tirzepatide Quarterly") == "Tirzepatide"
        assert extract_medication_name("Wellness") is None


# ===== TESTS DE MODELO =====

class TestSubscriptionModel:
    """Invariantes del modelo Subscription y SubscriptionAction"""

    async def test_remote_id_can_only_be_set_once(self, active_subscription):
        remote_id = active_subscription.billing_provider_subscription_id
        assert remote_id is not None

        active_subscription.billing_provider_subscription_id = remote_id
        with pytest.raises(ValueError):
            active_subscription.billing_provider_subscription_id = "sub_other"

    async def test_period_end_must_follow_start(self, active_subscription):
        with pytest.raises(ValueError):
            active_subscription.current_period_end = active_subscription.current_period_start

    async def test_actions_are_append_only(self, db, active_subscription):
        actions = await AuditLog(db).list_for_subscription(active_subscription.id)
        actions[0].reason = "editado"
        with pytest.raises(ValueError):
            await db.commit()
        await db.rollback()


# ===== TESTS DE CREACIÓN =====

class TestCreateSubscription:
    """Tests para la creación local-primero de suscripciones"""

    async def test_create_confirms_remote_and_schedules_verified_refill(
        self, db, lifecycle, gateway, create_input, patient
    ):
        result = await lifecycle.create_subscription(create_input())

        assert result.success is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.billing_sync_status == BillingSyncStatus.CONFIRMED.value
        assert subscription.billing_provider_subscription_id.startswith("sub_test_")
        assert subscription.next_billing_date == subscription.current_period_end
        assert subscription.current_period_end > subscription.current_period_start
        assert subscription.refill_interval_days == 30

        created = gateway.calls_to("create_subscription")
        assert len(created) == 1
        assert created[0]["idempotency_key"] == f"subscription-{subscription.id}-create"
        assert created[0]["metadata"]["localSubscriptionId"] == str(subscription.id)
        assert patient.stripe_customer_id.startswith("cus_test_")

        assert await _action_count(db, subscription, SubscriptionActionType.CREATED) == 1

        refill = await refill_crud.get_active_refill_for_subscription(db, subscription.id)
        assert refill.status == RefillStatus.PENDING_ADMIN.value
        assert refill.payment_verified is True
        assert refill.medication_name == "Semaglutide"

        assert ACTIVE_SUBSCRIPTION_TAG in patient.tags
        assert "subscription-semaglutide-monthly" in patient.tags

    async def test_existing_customer_is_reused(self, db, lifecycle, gateway, create_input, patient):
        patient.stripe_customer_id = "cus_existing"
        await db.commit()

        await lifecycle.create_subscription(create_input())

        assert gateway.calls_to("create_customer") == []
        assert gateway.calls_to("create_subscription")[0]["customer_ref"] == "cus_existing"

    async def test_remote_failure_keeps_local_row_as_failed(self, db, lifecycle, gateway, create_input):
        gateway.fail_on = {"create_subscription"}

        result = await lifecycle.create_subscription(create_input())

        assert result.success is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.billing_sync_status == BillingSyncStatus.FAILED.value
        assert subscription.billing_provider_subscription_id is None
        assert "card_declined" in subscription.extension.billing_sync_error
        assert await _action_count(db, subscription, SubscriptionActionType.CREATED) == 1

        refill = await refill_crud.get_active_refill_for_subscription(db, subscription.id)
        assert refill.status == RefillStatus.SCHEDULED.value
        assert refill.payment_verified is False
        assert refill.next_refill_date == subscription.next_billing_date

    async def test_unexpected_remote_error_degrades_to_failed_sync(self, db, lifecycle, gateway, create_input):
        """Un error inesperado del adaptador no aborta la creación local"""
        gateway.create_subscription = AsyncMock(side_effect=RuntimeError("sdk exploded: pm_secret_123"))

        result = await lifecycle.create_subscription(create_input())

        assert result.success is True
        subscription = result.subscription
        assert subscription.billing_sync_status == BillingSyncStatus.FAILED.value
        assert subscription.billing_provider_subscription_id is None
        assert "pm_secret_123" not in subscription.extension.billing_sync_error
        assert await _action_count(db, subscription, SubscriptionActionType.CREATED) == 1

        refill = await refill_crud.get_active_refill_for_subscription(db, subscription.id)
        assert refill.status == RefillStatus.SCHEDULED.value
        assert ACTIVE_SUBSCRIPTION_TAG in (await get_patient(db, subscription.patient_id)).tags

    async def test_patient_from_other_clinic_is_rejected(self, db, lifecycle, create_input, other_clinic):
        result = await lifecycle.create_subscription(create_input(clinic_id=other_clinic.id))

        assert result.success is False
        assert result.error_code == "NOT_FOUND"


# ===== TESTS DE PAUSA Y REANUDACIÓN =====

class TestPauseResume:
    """Tests de pausa (remoto primero) y reanudación"""

    async def test_pause_active_subscription(self, db, lifecycle, gateway, active_subscription):
        resume_at = utcnow() + timedelta(days=14)
        refill = await refill_crud.get_active_refill_for_subscription(db, active_subscription.id)

        result = await lifecycle.pause_subscription(PauseSubscriptionInput(
            subscription_id=active_subscription.id,
            reason="Viaje",
            resume_at=resume_at
        ))

        assert result.success is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.PAUSED.value
        assert subscription.paused_at is not None
        assert subscription.resume_at == resume_at
        assert subscription.next_billing_date is None

        update = gateway.calls_to("update_subscription")[0]
        assert update["pause_collection"] is True
        assert update["resumes_at"] == resume_at

        await db.refresh(refill)
        assert refill.status == RefillStatus.ON_HOLD.value
        assert "Viaje" in refill.admin_notes

        actions = await AuditLog(db).list_for_subscription(subscription.id)
        assert actions[0].action_type == SubscriptionActionType.PAUSED.value
        assert actions[0].paused_until == resume_at

    async def test_pause_requires_active(self, db, lifecycle, active_subscription):
        pause = PauseSubscriptionInput(subscription_id=active_subscription.id)
        assert (await lifecycle.pause_subscription(pause)).success is True
        paused_at = active_subscription.paused_at

        second = await lifecycle.pause_subscription(pause)

        assert second.success is False
        assert active_subscription.paused_at == paused_at
        assert await _action_count(db, active_subscription, SubscriptionActionType.PAUSED) == 1

    async def test_pause_remote_failure_changes_nothing(self, db, lifecycle, gateway, active_subscription):
        gateway.fail_on = {"update_subscription"}
        before = await _action_count(db, active_subscription)

        result = await lifecycle.pause_subscription(
            PauseSubscriptionInput(subscription_id=active_subscription.id)
        )

        assert result.success is False
        assert result.error_code == "REMOTE_GATEWAY_ERROR"
        await db.refresh(active_subscription)
        assert active_subscription.status == SubscriptionStatus.ACTIVE.value
        assert active_subscription.paused_at is None
        assert await _action_count(db, active_subscription) == before

    async def test_unsynced_subscription_skips_remote_leg(self, db, lifecycle, gateway, create_input):
        gateway.fail_on = {"create_subscription"}
        subscription = (await lifecycle.create_subscription(create_input())).subscription
        gateway.fail_on = set()

        result = await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=subscription.id))

        assert result.success is True
        assert gateway.calls_to("update_subscription") == []

    async def test_resume_recomputes_period_and_schedules_one_refill(
        self, db, lifecycle, gateway, active_subscription
    ):
        await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=active_subscription.id))
        before_resume = utcnow()

        result = await lifecycle.resume_subscription(
            ResumeSubscriptionInput(subscription_id=active_subscription.id)
        )

        assert result.success is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.paused_at is None
        assert subscription.resume_at is None
        assert subscription.current_period_start >= before_resume
        assert subscription.current_period_end > before_resume
        assert gateway.calls_to("update_subscription")[-1]["resume"] is True

        history = await refill_crud.get_patient_refill_history(db, subscription.patient_id)
        active = [item for item in history if item.is_active]
        assert len(active) == 1
        assert active[0].status == RefillStatus.SCHEDULED.value
        assert active[0].next_refill_date == subscription.next_billing_date
        assert await _action_count(db, subscription, SubscriptionActionType.RESUMED) == 1

    async def test_resume_requires_paused(self, db, lifecycle, active_subscription):
        result = await lifecycle.resume_subscription(
            ResumeSubscriptionInput(subscription_id=active_subscription.id)
        )

        assert result.success is False
        assert await _action_count(db, active_subscription, SubscriptionActionType.RESUMED) == 0

    async def test_unknown_subscription(self, lifecycle):
        result = await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=uuid4()))
        assert result.success is False
        assert result.error_code == "NOT_FOUND"


# ===== TESTS DE CANCELACIÓN =====

class TestCancel:
    """Tests de cancelación al final del período e inmediata"""

    async def test_soft_cancel_keeps_status(self, db, lifecycle, gateway, active_subscription, patient):
        refill = await refill_crud.get_active_refill_for_subscription(db, active_subscription.id)

        result = await lifecycle.cancel_subscription(CancelSubscriptionInput(
            subscription_id=active_subscription.id,
            reason="Costo"
        ))

        assert result.success is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.canceled_at is not None
        assert subscription.ended_at is None
        assert subscription.extension.cancel_at_period_end is True
        assert subscription.extension.cancellation_reason == "Costo"
        assert gateway.calls_to("update_subscription")[0]["cancel_at_period_end"] is True
        assert gateway.calls_to("cancel_subscription") == []

        await db.refresh(refill)
        assert refill.status == RefillStatus.PENDING_ADMIN.value
        assert ACTIVE_SUBSCRIPTION_TAG not in patient.tags

    async def test_hard_cancel_cancels_refills(self, db, lifecycle, gateway, active_subscription):
        refill = await refill_crud.get_active_refill_for_subscription(db, active_subscription.id)

        result = await lifecycle.cancel_subscription(CancelSubscriptionInput(
            subscription_id=active_subscription.id,
            cancel_at_period_end=False
        ))

        assert result.success is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.CANCELED.value
        assert subscription.ended_at is not None
        assert subscription.next_billing_date is None
        assert gateway.calls_to("cancel_subscription")[0]["remote_id"] == (
            subscription.billing_provider_subscription_id
        )

        await db.refresh(refill)
        assert refill.status == RefillStatus.CANCELLED.value

    async def test_hard_cancel_of_paused_cancels_held_refills(self, db, lifecycle, active_subscription):
        refill = await refill_crud.get_active_refill_for_subscription(db, active_subscription.id)
        await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=active_subscription.id))

        result = await lifecycle.cancel_subscription(CancelSubscriptionInput(
            subscription_id=active_subscription.id,
            cancel_at_period_end=False
        ))

        assert result.success is True
        await db.refresh(refill)
        assert refill.status == RefillStatus.CANCELLED.value

    async def test_double_cancel_is_rejected(self, db, lifecycle, active_subscription):
        hard = CancelSubscriptionInput(subscription_id=active_subscription.id, cancel_at_period_end=False)
        assert (await lifecycle.cancel_subscription(hard)).success is True

        again = await lifecycle.cancel_subscription(hard)
        soft = await lifecycle.cancel_subscription(
            CancelSubscriptionInput(subscription_id=active_subscription.id)
        )

        assert again.success is False
        assert soft.success is False
        assert await _action_count(db, active_subscription, SubscriptionActionType.CANCELLED) == 1

    async def test_double_soft_cancel_is_rejected(self, db, lifecycle, active_subscription):
        soft = CancelSubscriptionInput(subscription_id=active_subscription.id)
        assert (await lifecycle.cancel_subscription(soft)).success is True

        assert (await lifecycle.cancel_subscription(soft)).success is False
        assert await _action_count(db, active_subscription, SubscriptionActionType.CANCELLED) == 1

    async def test_canceled_subscription_rejects_every_operation(self, lifecycle, active_subscription):
        await lifecycle.cancel_subscription(CancelSubscriptionInput(
            subscription_id=active_subscription.id,
            cancel_at_period_end=False
        ))

        pause = await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=active_subscription.id))
        resume = await lifecycle.resume_subscription(
            ResumeSubscriptionInput(subscription_id=active_subscription.id)
        )

        assert pause.success is False
        assert resume.success is False

    async def test_tag_kept_while_another_subscription_is_active(
        self, lifecycle, create_input, active_subscription, patient
    ):
        second = await lifecycle.create_subscription(create_input(plan_id="b12", plan_name="B12 Monthly"))
        assert second.success is True

        await lifecycle.cancel_subscription(CancelSubscriptionInput(
            subscription_id=active_subscription.id,
            cancel_at_period_end=False
        ))

        assert ACTIVE_SUBSCRIPTION_TAG in patient.tags


# ===== TESTS DE AUDITORÍA =====

class TestAuditTrail:
    """Exactamente una acción por transición exitosa"""

    async def test_full_lifecycle_writes_one_action_per_transition(self, db, lifecycle, active_subscription):
        subscription_id = active_subscription.id
        await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=subscription_id))
        await lifecycle.pause_subscription(PauseSubscriptionInput(subscription_id=subscription_id))
        await lifecycle.resume_subscription(ResumeSubscriptionInput(subscription_id=subscription_id))
        await lifecycle.cancel_subscription(
            CancelSubscriptionInput(subscription_id=subscription_id, cancel_at_period_end=False)
        )

        actions = await AuditLog(db).list_for_subscription(subscription_id)

        assert [a.action_type for a in reversed(actions)] == [
            SubscriptionActionType.CREATED.value,
            SubscriptionActionType.PAUSED.value,
            SubscriptionActionType.RESUMED.value,
            SubscriptionActionType.CANCELLED.value,
        ]

    async def test_details_include_recent_actions(self, lifecycle, active_subscription):
        subscription, actions = await lifecycle.get_subscription_with_details(
            active_subscription.id, active_subscription.clinic_id
        )

        assert subscription.id == active_subscription.id
        assert len(actions) == 1
        assert actions[0].reason == "Started Semaglutide Monthly plan"


# ===== TESTS DE RECONCILIACIÓN =====

class TestBillingReconciliation:
    """Reintento de creación remota para suscripciones sin confirmar"""

    async def test_retry_confirms_failed_subscription(self, lifecycle, gateway, create_input):
        gateway.fail_on = {"create_subscription"}
        subscription = (await lifecycle.create_subscription(create_input())).subscription
        gateway.fail_on = set()

        result = await lifecycle.retry_billing_sync(subscription.id)

        assert result.success is True
        assert subscription.billing_sync_status == BillingSyncStatus.CONFIRMED.value
        assert subscription.billing_provider_subscription_id is not None
        assert subscription.extension.billing_sync_error is None
        keys = {call["idempotency_key"] for call in gateway.calls_to("create_subscription")}
        assert keys == {f"subscription-{subscription.id}-create"}

    async def test_retry_rejects_confirmed(self, lifecycle, active_subscription):
        result = await lifecycle.retry_billing_sync(active_subscription.id)
        assert result.success is False

    async def test_retry_failure_keeps_row_failed(self, lifecycle, gateway, create_input):
        gateway.fail_on = {"create_subscription"}
        subscription = (await lifecycle.create_subscription(create_input())).subscription

        result = await lifecycle.retry_billing_sync(subscription.id)

        assert result.success is False
        assert result.subscription is subscription
        assert subscription.billing_sync_status == BillingSyncStatus.FAILED.value

    async def test_reconcile_processes_each_unsynced_row(self, lifecycle, gateway, create_input):
        gateway.fail_on = {"create_subscription"}
        first = (await lifecycle.create_subscription(create_input())).subscription
        second = (await lifecycle.create_subscription(create_input(plan_id="b12", plan_name="B12"))).subscription
        gateway.fail_on = set()

        result = await lifecycle.reconcile_unsynced()

        assert result == {"processed": 2, "confirmed": 2, "errors": []}
        for subscription in (first, second):
            assert subscription.billing_sync_status == BillingSyncStatus.CONFIRMED.value

    async def test_reconcile_skips_when_lock_is_held(self, db, lifecycle):
        async with try_advisory_lock(db.bind, RECONCILE_JOB) as acquired:
            assert acquired is True
            result = await lifecycle.reconcile_unsynced()

        assert result["skipped"] is True


# ===== TESTS DE ENDPOINTS =====

class TestSubscriptionEndpoints:
    """Tests HTTP de la API de suscripciones"""

    def _payload(self, patient):
        return {
            "patient_id": str(patient.id),
            "plan_id": "semaglutide-monthly",
            "plan_name": "Semaglutide Monthly",
            "amount": 29900,
            "payment_method_ref": "pm_test_visa",
        }

    async def test_create_and_pause(self, api_client, auth_headers, clinic, patient):
        headers = auth_headers(clinic, role="staff")

        response = await api_client.post("/subscriptions", json=self._payload(patient), headers=headers)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["subscription"]["status"] == "ACTIVE"
        assert body["subscription"]["billing_sync_status"] == "CONFIRMED"
        subscription_id = body["subscription"]["id"]

        paused = await api_client.post(
            f"/subscriptions/{subscription_id}/pause",
            json={"reason": "Vacaciones"},
            headers=headers
        )
        assert paused.status_code == 200
        assert paused.json()["subscription"]["status"] == "PAUSED"

        again = await api_client.post(f"/subscriptions/{subscription_id}/pause", json={}, headers=headers)
        assert again.status_code == 400

        detail = await api_client.get(f"/subscriptions/{subscription_id}", headers=headers)
        assert detail.status_code == 200
        assert [a["action_type"] for a in detail.json()["actions"]] == ["PAUSED", "CREATED"]

    async def test_missing_clinic_header(self, api_client, auth_headers, clinic):
        headers = auth_headers(clinic)
        headers.pop("X-Clinic-ID")

        response = await api_client.get("/subscriptions", headers=headers)

        assert response.status_code == 400

    async def test_token_for_other_clinic_is_forbidden(self, api_client, auth_headers, clinic, other_clinic):
        headers = auth_headers(clinic)
        headers["X-Clinic-ID"] = str(other_clinic.id)

        response = await api_client.get("/subscriptions", headers=headers)

        assert response.status_code == 403

    async def test_patient_role_cannot_create(self, api_client, auth_headers, clinic, patient):
        response = await api_client.post(
            "/subscriptions",
            json=self._payload(patient),
            headers=auth_headers(clinic, role="patient")
        )
        assert response.status_code == 403

    async def test_subscription_is_scoped_to_clinic(
        self, api_client, auth_headers, clinic, other_clinic, patient
    ):
        created = await api_client.post(
            "/subscriptions", json=self._payload(patient), headers=auth_headers(clinic)
        )
        subscription_id = created.json()["subscription"]["id"]

        response = await api_client.get(
            f"/subscriptions/{subscription_id}", headers=auth_headers(other_clinic)
        )
        cancel = await api_client.post(
            f"/subscriptions/{subscription_id}/cancel", json={}, headers=auth_headers(other_clinic)
        )

        assert response.status_code == 404
        assert cancel.status_code == 404

    async def test_unknown_patient_returns_404(self, api_client, auth_headers, clinic):
        payload = {"patient_id": str(uuid4()), "plan_id": "p", "plan_name": "Plan", "amount": 1000}

        response = await api_client.post("/subscriptions", json=payload, headers=auth_headers(clinic))

        assert response.status_code == 404

    async def test_reconcile_cron_requires_secret(self, api_client):
        denied = await api_client.post("/subscriptions/cron/reconcile-billing")
        allowed = await api_client.post("/subscriptions/cron/reconcile-billing", headers=CRON_HEADERS)

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json()["processed"] == 0
