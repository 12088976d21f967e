"""
Tests para el módulo de Resurtidos

Cubren:
- Creación idempotente de resurtidos desde la suscripción (con y sin aprobación administrativa)
- Barrido de resurtidos vencidos: cobro, fallas por resurtido y lock de concurrencia
- Checkpoints: verificación de pago, aprobación, rechazo, cola del proveedor
- Envío a farmacia como máximo una vez y programación del siguiente ciclo
- Espera, reanudación, cancelación y solicitudes anticipadas
- Cliente HTTP de farmacia
"""
import asyncio
import json
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from app.common.exceptions import NotFoundError, PersistenceError, RemoteGatewayError, ValidationError
from app.common.locks import try_advisory_lock
from app.common.mixins import utcnow
from app.database.database import run_in_transaction
from app.modules.refills import crud
from app.modules.refills.models import PaymentVerificationMethod, RefillQueueItem, RefillStatus
from app.modules.refills.pharmacy import HttpPharmacyClient, PharmacyOrderRequest
from app.modules.refills.schemas import RefillQueueFilters, RefillUpdate
from app.modules.refills.service import AUTO_APPROVAL_NOTE, PROCESS_DUE_JOB
from app.modules.subscriptions.models import Subscription, SubscriptionStatus

CRON_HEADERS = {"X-Cron-Secret": "test-cron-secret"}


# ===== FIXTURES =====

@pytest.fixture
async def subscription(subscription_factory, billed_patient):
    return await subscription_factory(billed_patient)


@pytest.fixture
async def scheduled_refill(refill_service, subscription):
    return await refill_service.trigger_refill_for_subscription_payment(
        subscription.id, payment_confirmed=False
    )


@pytest.fixture
def make_due(db):
    async def _make_due(refill: RefillQueueItem, days_ago: int = 1) -> RefillQueueItem:
        refill.next_refill_date = utcnow() - timedelta(days=days_ago)
        await db.commit()
        return refill
    return _make_due


@pytest.fixture
async def pending_admin_refill(refill_service, subscription):
    return await refill_service.trigger_refill_for_subscription_payment(subscription.id)


@pytest.fixture
async def provider_refill(refill_service, subscription_factory, patient_factory, ungated_clinic):
    """Resurtido pagado en una clínica sin paso administrativo: ya en la cola del proveedor."""
    patient = await patient_factory(ungated_clinic, stripe_customer_id="cus_ungated")
    subscription = await subscription_factory(patient)
    return await refill_service.trigger_refill_for_subscription_payment(subscription.id)


# ===== TESTS DE PROGRAMACIÓN =====

class TestTriggerRefill:
    """Tests para la creación de resurtidos desde el cobro de la suscripción"""

    async def test_confirmed_payment_in_gated_clinic(self, refill_service, subscription):
        refill = await refill_service.trigger_refill_for_subscription_payment(
            subscription.id, payment_reference="pi_first"
        )

        assert refill.status == RefillStatus.PENDING_ADMIN.value
        assert refill.payment_verified is True
        assert refill.payment_method == PaymentVerificationMethod.PROVIDER_AUTO.value
        assert refill.payment_reference == "pi_first"
        assert refill.admin_approved is None
        assert refill.medication_name == "Semaglutide"
        assert refill.medication_strength == "2.5mg/ml"
        assert subscription.last_refill_item_id == refill.id

    async def test_confirmed_payment_in_ungated_clinic_goes_to_provider(self, provider_refill):
        assert provider_refill.status == RefillStatus.PENDING_PROVIDER.value
        assert provider_refill.admin_approved is True
        assert provider_refill.admin_notes == AUTO_APPROVAL_NOTE
        assert provider_refill.provider_queued_at is not None

    async def test_unconfirmed_payment_is_scheduled_at_next_billing(self, scheduled_refill, subscription):
        assert scheduled_refill.status == RefillStatus.SCHEDULED.value
        assert scheduled_refill.payment_verified is False
        assert scheduled_refill.next_refill_date == subscription.next_billing_date

    async def test_trigger_is_idempotent(self, db, refill_service, subscription):
        first = await refill_service.trigger_refill_for_subscription_payment(subscription.id)
        second = await refill_service.trigger_refill_for_subscription_payment(
            subscription.id, payment_confirmed=False
        )

        assert second.id == first.id
        history = await crud.get_patient_refill_history(db, subscription.patient_id)
        assert len(history) == 1

    async def test_vial_count_sets_interval(self, refill_service, subscription_factory, billed_patient):
        subscription = await subscription_factory(billed_patient, vial_count=3)

        refill = await refill_service.trigger_refill_for_subscription_payment(subscription.id)

        assert refill.vial_count == 3
        assert refill.refill_interval_days == 90

    async def test_canceled_subscription_is_rejected(self, refill_service, subscription_factory, billed_patient):
        subscription = await subscription_factory(billed_patient, status=SubscriptionStatus.CANCELED.value)

        with pytest.raises(ValidationError):
            await refill_service.trigger_refill_for_subscription_payment(subscription.id)

    async def test_unknown_subscription(self, refill_service):
        with pytest.raises(NotFoundError):
            await refill_service.trigger_refill_for_subscription_payment(uuid4())

    async def test_second_active_item_is_refused_by_the_database(self, db, subscription, scheduled_refill):
        duplicate = RefillQueueItem(
            clinic_id=subscription.clinic_id,
            patient_id=subscription.patient_id,
            subscription_id=subscription.id,
            status=RefillStatus.PENDING_PAYMENT.value,
            next_refill_date=utcnow()
        )
        db.add(duplicate)

        with pytest.raises(IntegrityError):
            await db.commit()
        await db.rollback()

    async def test_concurrent_insert_returns_existing_item(
        self, db, refill_service, subscription, scheduled_refill
    ):
        refill = await refill_service._insert_for_subscription(
            subscription,
            lambda: refill_service._new_item(subscription, None, RefillStatus.PENDING_PAYMENT, utcnow()),
            operation="test_insert"
        )

        assert refill.id == scheduled_refill.id


# ===== TESTS DEL BARRIDO =====

class TestProcessDueRefills:
    """Tests del barrido periódico de resurtidos vencidos"""

    async def test_due_item_is_charged_and_advanced(
        self, db, refill_service, gateway, scheduled_refill, make_due
    ):
        await make_due(scheduled_refill)

        result = await refill_service.process_due_refills()

        assert result == {"processed": 1, "errors": []}
        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.PENDING_ADMIN.value
        assert scheduled_refill.payment_verified is True
        assert scheduled_refill.payment_reference.startswith("pi_test_")

        charge = gateway.calls_to("charge_saved_payment_method")[0]
        assert charge["idempotency_key"] == f"refill-{scheduled_refill.id}-charge"
        assert charge["customer_ref"] == "cus_seed"
        assert charge["payment_method_ref"] == "pm_test_visa"
        assert charge["amount"] == 29900

    async def test_due_item_leaves_scheduled_exactly_once(
        self, refill_service, gateway, scheduled_refill, make_due
    ):
        await make_due(scheduled_refill)

        first = await refill_service.process_due_refills()
        second = await refill_service.process_due_refills()

        assert first["processed"] == 1
        assert second["processed"] == 0
        assert len(gateway.calls_to("charge_saved_payment_method")) == 1

    async def test_claim_is_compare_and_set(self, refill_service, scheduled_refill, make_due):
        await make_due(scheduled_refill)

        assert await refill_service._claim_due(scheduled_refill.id) is True
        assert await refill_service._claim_due(scheduled_refill.id) is False

    async def test_future_items_are_not_due(self, refill_service, gateway, scheduled_refill):
        result = await refill_service.process_due_refills()

        assert result == {"processed": 0, "errors": []}
        assert gateway.calls_to("charge_saved_payment_method") == []

    async def test_ungated_clinic_goes_to_provider_queue(
        self, db, refill_service, subscription_factory, patient_factory, ungated_clinic, make_due
    ):
        patient = await patient_factory(ungated_clinic, stripe_customer_id="cus_ungated")
        subscription = await subscription_factory(patient)
        refill = await refill_service.trigger_refill_for_subscription_payment(
            subscription.id, payment_confirmed=False
        )
        await make_due(refill)

        await refill_service.process_due_refills(ungated_clinic.id)

        await db.refresh(refill)
        assert refill.status == RefillStatus.PENDING_PROVIDER.value
        assert refill.admin_approved is True
        assert refill.provider_queued_at is not None

    async def test_charge_failure_stays_pending_payment(
        self, db, refill_service, gateway, scheduled_refill, make_due
    ):
        gateway.fail_on = {"charge_saved_payment_method"}
        await make_due(scheduled_refill)

        result = await refill_service.process_due_refills()

        assert result["processed"] == 1
        assert len(result["errors"]) == 1
        assert "card_declined" in result["errors"][0]
        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.PENDING_PAYMENT.value
        assert scheduled_refill.payment_verified is False

    async def test_one_failure_does_not_block_the_rest(
        self, db, refill_service, subscription_factory, billed_patient, patient_factory, clinic,
        scheduled_refill, make_due
    ):
        other_patient = await patient_factory(clinic, stripe_customer_id="cus_other")
        no_card = await subscription_factory(other_patient, payment_method_ref=None)
        failing = await refill_service.trigger_refill_for_subscription_payment(
            no_card.id, payment_confirmed=False
        )
        await make_due(failing, days_ago=3)
        await make_due(scheduled_refill, days_ago=1)

        result = await refill_service.process_due_refills()

        assert result["processed"] == 2
        assert len(result["errors"]) == 1
        assert str(failing.id) in result["errors"][0]
        await db.refresh(failing)
        await db.refresh(scheduled_refill)
        assert failing.status == RefillStatus.PENDING_PAYMENT.value
        assert scheduled_refill.status == RefillStatus.PENDING_ADMIN.value

    async def test_unexpected_error_does_not_halt_the_sweep(
        self, db, refill_service, gateway, subscription_factory, patient_factory, clinic,
        scheduled_refill, make_due
    ):
        """Una excepción no prevista en un resurtido no detiene el barrido"""
        other_patient = await patient_factory(clinic, stripe_customer_id="cus_other")
        other_subscription = await subscription_factory(other_patient)
        second = await refill_service.trigger_refill_for_subscription_payment(
            other_subscription.id, payment_confirmed=False
        )
        await make_due(scheduled_refill, days_ago=3)
        await make_due(second, days_ago=1)
        broken_id = scheduled_refill.id

        charge = gateway.charge_saved_payment_method
        attempts = []

        async def _charge_once_broken(*args, **kwargs):
            attempts.append(kwargs["idempotency_key"])
            if len(attempts) == 1:
                raise RuntimeError("unexpected SDK failure")
            return await charge(*args, **kwargs)

        gateway.charge_saved_payment_method = _charge_once_broken

        result = await refill_service.process_due_refills()

        assert result["processed"] == 2
        assert result["errors"] == [f"Refill {broken_id}: Error inesperado"]
        await db.refresh(scheduled_refill)
        await db.refresh(second)
        assert scheduled_refill.status == RefillStatus.PENDING_PAYMENT.value
        assert second.status == RefillStatus.PENDING_ADMIN.value
        assert second.payment_verified is True

    async def test_sweep_limited_to_clinic(
        self, db, refill_service, gateway, scheduled_refill, other_clinic, make_due
    ):
        await make_due(scheduled_refill)

        result = await refill_service.process_due_refills(other_clinic.id)

        assert result["processed"] == 0
        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.SCHEDULED.value

    async def test_job_skips_when_lock_is_held(self, db, refill_service, scheduled_refill, make_due):
        await make_due(scheduled_refill)

        async with try_advisory_lock(db.bind, PROCESS_DUE_JOB) as acquired:
            assert acquired is True
            result = await refill_service.run_due_refills_job()

        assert result["skipped"] is True
        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.SCHEDULED.value

    async def test_job_runs_when_lock_is_free(self, refill_service, scheduled_refill, make_due):
        await make_due(scheduled_refill)

        result = await refill_service.run_due_refills_job()

        assert result == {"processed": 1, "errors": []}


# ===== TESTS DE CHECKPOINTS =====

class TestCheckpoints:
    """Tests de verificación de pago, aprobación y cola del proveedor"""

    async def test_manual_payment_verification(self, refill_service, scheduled_refill, billed_patient):
        early = await refill_service.request_early_refill(billed_patient.id, billed_patient.clinic_id)
        staff_id = uuid4()

        refill = await refill_service.verify_payment(
            early.id,
            method=PaymentVerificationMethod.MANUAL_VERIFIED,
            verified_by=staff_id,
            payment_reference="cash-001"
        )

        assert refill.status == RefillStatus.PENDING_ADMIN.value
        assert refill.payment_verified is True
        assert refill.payment_verified_by == staff_id
        assert refill.payment_method == PaymentVerificationMethod.MANUAL_VERIFIED.value

    async def test_verify_payment_rejects_scheduled(self, db, refill_service, scheduled_refill):
        with pytest.raises(ValidationError):
            await refill_service.verify_payment(scheduled_refill.id, PaymentVerificationMethod.MANUAL_VERIFIED)

        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.SCHEDULED.value

    async def test_approve_then_queue_for_provider(self, refill_service, pending_admin_refill):
        admin_id = uuid4()

        approved = await refill_service.approve_refill(pending_admin_refill.id, admin_id=admin_id, notes="OK")
        assert approved.status == RefillStatus.APPROVED.value
        assert approved.admin_approved is True
        assert approved.admin_approved_by == admin_id

        queued = await refill_service.queue_for_provider(pending_admin_refill.id)
        assert queued.status == RefillStatus.PENDING_PROVIDER.value
        assert queued.provider_queued_at is not None

    async def test_reject_cancels(self, refill_service, pending_admin_refill):
        refill = await refill_service.reject_refill(pending_admin_refill.id, reason="Dosis inadecuada")

        assert refill.status == RefillStatus.CANCELLED.value
        assert refill.admin_approved is False
        assert refill.admin_notes == "Dosis inadecuada"

    async def test_queue_requires_approval(self, refill_service, pending_admin_refill):
        with pytest.raises(ValidationError):
            await refill_service.queue_for_provider(pending_admin_refill.id)

    async def test_checkpoint_is_scoped_to_clinic(self, refill_service, pending_admin_refill, other_clinic):
        with pytest.raises(NotFoundError):
            await refill_service.approve_refill(pending_admin_refill.id, clinic_id=other_clinic.id)


# ===== TESTS DE FARMACIA =====

class TestSubmitToPharmacy:
    """El envío a farmacia ocurre como máximo una vez por resurtido"""

    async def test_submit_dispenses_and_schedules_next_cycle(self, refill_service, pharmacy, provider_refill):
        provider_id = uuid4()
        before = utcnow()

        current, next_refill = await refill_service.submit_to_pharmacy(provider_refill.id, provider_id=provider_id)

        assert current.status == RefillStatus.DISPENSED.value
        assert current.order_id == "ORD-1"
        assert current.prescribed_by == provider_id
        assert current.last_refill_date >= before
        assert pharmacy.orders[0].refill_id == provider_refill.id

        assert next_refill is not None
        assert next_refill.status == RefillStatus.SCHEDULED.value
        assert next_refill.subscription_id == provider_refill.subscription_id
        assert next_refill.next_refill_date >= before + timedelta(days=30)

    async def test_second_submit_is_rejected(self, refill_service, pharmacy, provider_refill):
        await refill_service.submit_to_pharmacy(provider_refill.id)

        with pytest.raises(ValidationError):
            await refill_service.submit_to_pharmacy(provider_refill.id)

        assert len(pharmacy.orders) == 1

    async def test_prescription_claim_is_compare_and_set(self, refill_service, provider_refill):
        now = utcnow()
        assert await refill_service._claim_prescription(provider_refill.id, None, now) is True
        assert await refill_service._claim_prescription(provider_refill.id, None, now) is False

    async def test_pharmacy_failure_releases_claim(self, db, refill_service, pharmacy, provider_refill):
        pharmacy.fail = True

        with pytest.raises(RemoteGatewayError):
            await refill_service.submit_to_pharmacy(provider_refill.id)

        await db.refresh(provider_refill)
        assert provider_refill.status == RefillStatus.PENDING_PROVIDER.value
        assert provider_refill.prescribed_at is None

        pharmacy.fail = False
        current, _ = await refill_service.submit_to_pharmacy(provider_refill.id)
        assert current.status == RefillStatus.DISPENSED.value

    async def test_no_next_cycle_when_subscription_not_active(self, db, refill_service, provider_refill):
        subscription = await db.get(Subscription, provider_refill.subscription_id)
        subscription.status = SubscriptionStatus.PAUSED.value
        await db.commit()

        current, next_refill = await refill_service.submit_to_pharmacy(provider_refill.id)

        assert current.status == RefillStatus.DISPENSED.value
        assert next_refill is None

    async def test_submit_requires_provider_queue(self, refill_service, pending_admin_refill):
        with pytest.raises(ValidationError):
            await refill_service.submit_to_pharmacy(pending_admin_refill.id)


# ===== TESTS DE ACCIONES =====

class TestRefillActions:
    """Espera, reanudación, cancelación, edición y solicitudes anticipadas"""

    async def test_hold_and_resume_returns_to_checkpoint(self, refill_service, pending_admin_refill):
        await refill_service.approve_refill(pending_admin_refill.id)

        held = await refill_service.hold_refill(pending_admin_refill.id, reason="Revisión médica")
        assert held.status == RefillStatus.ON_HOLD.value

        resumed = await refill_service.resume_refill(pending_admin_refill.id)
        assert resumed.status == RefillStatus.APPROVED.value

    async def test_resume_unpaid_future_item_returns_to_scheduled(self, refill_service, scheduled_refill):
        await refill_service.hold_refill(scheduled_refill.id)

        resumed = await refill_service.resume_refill(scheduled_refill.id)

        assert resumed.status == RefillStatus.SCHEDULED.value

    async def test_resume_blocked_by_other_active_item(self, refill_service, subscription, scheduled_refill):
        await refill_service.hold_refill(scheduled_refill.id)
        await refill_service.trigger_refill_for_subscription_payment(subscription.id)

        with pytest.raises(ValidationError):
            await refill_service.resume_refill(scheduled_refill.id)

    async def test_resume_blocked_when_subscription_paused(self, db, refill_service, subscription, scheduled_refill):
        await refill_service.hold_refill(scheduled_refill.id)
        subscription.status = SubscriptionStatus.PAUSED.value
        await db.commit()

        with pytest.raises(ValidationError):
            await refill_service.resume_refill(scheduled_refill.id)

    async def test_resume_requires_on_hold(self, refill_service, scheduled_refill):
        with pytest.raises(ValidationError):
            await refill_service.resume_refill(scheduled_refill.id)

    async def test_cancel_is_terminal(self, refill_service, scheduled_refill):
        cancelled = await refill_service.cancel_refill(scheduled_refill.id, reason="Paciente se mudó")
        assert cancelled.status == RefillStatus.CANCELLED.value

        with pytest.raises(ValidationError):
            await refill_service.cancel_refill(scheduled_refill.id)
        with pytest.raises(ValidationError):
            await refill_service.hold_refill(scheduled_refill.id)

    async def test_hold_and_cancel_for_subscription(self, db, refill_service, subscription, scheduled_refill):
        held = await refill_service.hold_for_subscription(subscription.id, reason="pausa")
        await db.commit()
        assert held == 1
        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.ON_HOLD.value

        cancelled = await refill_service.cancel_for_subscription(subscription.id, reason="baja")
        await db.commit()
        assert cancelled == 1
        await db.refresh(scheduled_refill)
        assert scheduled_refill.status == RefillStatus.CANCELLED.value

    async def test_early_request_advances_scheduled_item(self, refill_service, billed_patient, scheduled_refill):
        refill = await refill_service.request_early_refill(
            billed_patient.id, billed_patient.clinic_id, notes="Me voy de viaje"
        )

        assert refill.id == scheduled_refill.id
        assert refill.status == RefillStatus.PENDING_PAYMENT.value
        assert refill.requested_early is True
        assert refill.patient_notes == "Me voy de viaje"

    async def test_early_request_only_flags_later_checkpoints(
        self, refill_service, billed_patient, pending_admin_refill
    ):
        refill = await refill_service.request_early_refill(billed_patient.id, billed_patient.clinic_id)

        assert refill.id == pending_admin_refill.id
        assert refill.status == RefillStatus.PENDING_ADMIN.value
        assert refill.requested_early is True

    async def test_early_request_without_subscription(self, refill_service, patient):
        refill = await refill_service.request_early_refill(patient.id, patient.clinic_id)

        assert refill.subscription_id is None
        assert refill.status == RefillStatus.PENDING_PAYMENT.value
        assert refill.requested_early is True

    async def test_early_request_for_patient_of_other_clinic(self, refill_service, patient, other_clinic):
        with pytest.raises(NotFoundError):
            await refill_service.request_early_refill(patient.id, other_clinic.id)

    async def test_update_refill(self, refill_service, scheduled_refill):
        new_date = utcnow() + timedelta(days=3)

        refill = await refill_service.update_refill(
            scheduled_refill.id,
            RefillUpdate(medication_name="Tirzepatide", next_refill_date=new_date)
        )

        assert refill.medication_name == "Tirzepatide"
        assert refill.next_refill_date == new_date

    async def test_update_terminal_refill_is_rejected(self, refill_service, scheduled_refill):
        await refill_service.cancel_refill(scheduled_refill.id)

        with pytest.raises(ValidationError):
            await refill_service.update_refill(scheduled_refill.id, RefillUpdate(medication_name="X"))


# ===== TESTS DE CONSULTAS =====

class TestQueueQueries:
    """Cola administrativa y estadísticas"""

    async def test_stats_count_non_terminal_statuses(
        self, refill_service, clinic, subscription_factory, patient_factory, pending_admin_refill
    ):
        other = await patient_factory(clinic, stripe_customer_id="cus_2")
        second = await subscription_factory(other)
        scheduled = await refill_service.trigger_refill_for_subscription_payment(second.id, payment_confirmed=False)
        await refill_service.hold_refill(scheduled.id)
        await refill_service.request_early_refill(other.id, clinic.id)

        stats = await refill_service.get_refill_queue_stats(clinic.id)

        assert stats.pending_admin == 1
        assert stats.on_hold == 1
        assert stats.pending_payment == 1
        assert stats.total == 3

    async def test_queue_filters_by_status(self, refill_service, clinic, pending_admin_refill, patient):
        await refill_service.request_early_refill(patient.id, clinic.id)

        queue = await refill_service.get_admin_refill_queue(
            RefillQueueFilters(clinic_id=clinic.id, status=[RefillStatus.PENDING_ADMIN])
        )

        assert [item.id for item in queue] == [pending_admin_refill.id]

    async def test_queue_due_window(self, refill_service, clinic, scheduled_refill, make_due):
        await make_due(scheduled_refill, days_ago=2)

        due = await refill_service.get_admin_refill_queue(
            RefillQueueFilters(clinic_id=clinic.id, due_before=utcnow())
        )
        future = await refill_service.get_admin_refill_queue(
            RefillQueueFilters(clinic_id=clinic.id, due_after=utcnow())
        )

        assert [item.id for item in due] == [scheduled_refill.id]
        assert future == []


# ===== TESTS DE ENDPOINTS =====

class TestRefillEndpoints:
    """Tests HTTP de la API de resurtidos"""

    async def test_cron_requires_secret(self, api_client):
        denied = await api_client.post("/refills/cron/process-due", headers={"X-Cron-Secret": "wrong"})
        allowed = await api_client.post("/refills/cron/process-due", headers=CRON_HEADERS)

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert allowed.json() == {"skipped": False, "reason": None, "processed": 0, "errors": []}

    async def test_checkpoint_error_maps_to_400(self, api_client, auth_headers, clinic, scheduled_refill):
        response = await api_client.post(
            f"/refills/{scheduled_refill.id}/approve", json={}, headers=auth_headers(clinic, role="staff")
        )

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    async def test_unknown_refill_maps_to_404(self, api_client, auth_headers, clinic):
        response = await api_client.post(
            f"/refills/{uuid4()}/hold", json={}, headers=auth_headers(clinic, role="staff")
        )
        assert response.status_code == 404

    async def test_submit_requires_clinical_role(self, api_client, auth_headers, ungated_clinic, provider_refill):
        staff = await api_client.post(
            f"/refills/{provider_refill.id}/submit", headers=auth_headers(ungated_clinic, role="staff")
        )
        provider = await api_client.post(
            f"/refills/{provider_refill.id}/submit", headers=auth_headers(ungated_clinic, role="provider")
        )

        assert staff.status_code == 403
        assert provider.status_code == 200
        body = provider.json()
        assert body["current"]["status"] == "DISPENSED"
        assert body["next"]["status"] == "SCHEDULED"

    async def test_queue_and_stats(self, api_client, auth_headers, clinic, pending_admin_refill):
        headers = auth_headers(clinic, role="provider")

        queue = await api_client.get("/refills/queue", params={"status": "PENDING_ADMIN"}, headers=headers)
        stats = await api_client.get("/refills/stats", headers=headers)

        assert queue.status_code == 200
        assert [item["id"] for item in queue.json()] == [str(pending_admin_refill.id)]
        assert stats.json()["pending_admin"] == 1

    async def test_patient_can_only_request_own_refill(self, api_client, auth_headers, clinic, patient):
        body = {"patient_id": str(patient.id)}

        other = await api_client.post(
            "/refills/early-request", json=body, headers=auth_headers(clinic, role="patient")
        )
        own = await api_client.post(
            "/refills/early-request", json=body, headers=auth_headers(clinic, role="patient", user_id=patient.id)
        )

        assert other.status_code == 403
        assert own.status_code == 201
        assert own.json()["requested_early"] is True


# ===== TESTS DEL CLIENTE DE FARMACIA =====

def _order() -> PharmacyOrderRequest:
    return PharmacyOrderRequest(
        patient_id=uuid4(),
        clinic_id=uuid4(),
        refill_id=uuid4(),
        medication_name="Semaglutide",
        medication_strength="2.5mg/ml",
        medication_form="injection",
        vial_count=1
    )


class TestHttpPharmacyClient:
    """Cliente HTTP de farmacia con transporte simulado"""

    async def test_submit_order_posts_payload(self):
        captured = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(201, json={"order_id": "PH-100"})

        order = _order()
        client = HttpPharmacyClient(
            base_url="https://pharmacy.test/api/v1",
            api_key="secret",
            transport=httpx.MockTransport(handler)
        )

        assert await client.submit_order(order) == "PH-100"

        request = captured[0]
        assert request.url == "https://pharmacy.test/api/v1/orders"
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["Idempotency-Key"] == f"refill-{order.refill_id}-order"
        payload = json.loads(request.content)
        assert payload["refill_id"] == str(order.refill_id)
        assert payload["medication_name"] == "Semaglutide"

    async def test_http_error_is_sanitized(self):
        client = HttpPharmacyClient(
            base_url="https://pharmacy.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="stack trace"))
        )

        with pytest.raises(RemoteGatewayError) as exc_info:
            await client.submit_order(_order())

        assert exc_info.value.provider_code == "500"
        assert "stack trace" not in exc_info.value.message

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = HttpPharmacyClient(base_url="https://pharmacy.test", transport=httpx.MockTransport(handler))

        with pytest.raises(RemoteGatewayError) as exc_info:
            await client.submit_order(_order())
        assert exc_info.value.provider_code == "timeout"

    async def test_missing_order_reference(self):
        client = HttpPharmacyClient(
            base_url="https://pharmacy.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"status": "ok"}))
        )

        with pytest.raises(RemoteGatewayError):
            await client.submit_order(_order())


class TestTransactionTimeout:
    """Escrituras locales con tiempo máximo"""

    async def test_timeout_rolls_back_and_raises(self, db):
        async def _slow():
            await asyncio.sleep(1)

        with pytest.raises(PersistenceError):
            await run_in_transaction(db, _slow, timeout=0.01, operation="slow_write")
