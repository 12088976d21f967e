"""
Servicio de ciclo de vida de suscripciones de pacientes.

Operaciones: crear, pausar, reanudar y cancelar. Cada una:
1. Modifica el proveedor de cobros (Stripe) y la fila local en un orden fijo:
   - crear: primero local, luego remoto; si el remoto falla la fila se conserva
     con billing_sync_status=FAILED para reintentarla después.
   - pausar/reanudar/cancelar: primero remoto; si falla no se toca nada local.
2. Registra una SubscriptionAction de auditoría.
3. Ajusta la cola de resurtidos a través del RefillScheduler inyectado.

Los errores de validación y del proveedor se devuelven como
LifecycleResult(success=False); los errores de base de datos se propagan.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.common.exceptions import (
    ClinicCoreError,
    NotFoundError,
    PersistenceError,
    RemoteGatewayError,
    ValidationError,
)
from app.common.locks import try_advisory_lock
from app.common.mixins import utcnow
from app.database.database import run_in_transaction
from app.modules.billing.gateway import BillingGateway, PriceSpec
from app.modules.clinics.crud import get_patient
from app.modules.clinics.models import ACTIVE_SUBSCRIPTION_TAG, Patient
from app.core.config import settings

from . import crud
from .audit import AuditLog
from .models import (
    BillingSyncStatus,
    Subscription,
    SubscriptionAction,
    SubscriptionActionType,
    SubscriptionExtension,
    SubscriptionStatus,
)
from .schemas import (
    CancelSubscriptionInput,
    CreateSubscriptionInput,
    PauseSubscriptionInput,
    ResumeSubscriptionInput,
)
from .utils import calculate_interval_days, calculate_period_end, plan_tag

logger = logging.getLogger(__name__)

RECONCILE_JOB = "subscriptions:reconcile-billing"


class RefillScheduler(ABC):
    """
    Capacidad de la cola de resurtidos que necesita el ciclo de vida.

    hold/cancel solo preparan los cambios en la sesión (sin commit) para que
    queden en la misma transacción que el cambio de la suscripción.
    """

    @abstractmethod
    async def schedule_for_subscription(self, subscription_id: UUID, payment_confirmed: bool) -> Any:
        pass

    @abstractmethod
    async def hold_for_subscription(self, subscription_id: UUID, reason: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def cancel_for_subscription(self, subscription_id: UUID, reason: Optional[str] = None) -> int:
        pass


@dataclass
class LifecycleResult:
    success: bool
    subscription: Optional[Subscription] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


def _failure(error: str, code: str = ValidationError.code) -> LifecycleResult:
    return LifecycleResult(success=False, error=error, error_code=code)


class SubscriptionLifecycleService:
    """Orquesta los cambios de estado de una suscripción entre Stripe y la base local."""

    def __init__(self, db: AsyncSession, gateway: BillingGateway, refill_scheduler: RefillScheduler):
        self.db = db
        self.gateway = gateway
        self.refill_scheduler = refill_scheduler
        self.audit = AuditLog(db)

    # ===== CREATE =====

    async def create_subscription(self, data: CreateSubscriptionInput) -> LifecycleResult:
        patient = await get_patient(self.db, data.patient_id, data.clinic_id)
        if not patient:
            return _failure("Paciente no encontrado en la clínica", NotFoundError.code)

        now = utcnow()
        period_end = calculate_period_end(now, data.interval.value, data.interval_count)

        subscription = Subscription(
            patient_id=data.patient_id,
            clinic_id=data.clinic_id,
            plan_id=data.plan_id,
            plan_name=data.plan_name,
            plan_description=data.plan_description or f"{data.plan_name} subscription",
            amount=data.amount,
            currency=(data.currency or settings.STRIPE_DEFAULT_CURRENCY).lower(),
            interval=data.interval.value,
            interval_count=data.interval_count,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=now,
            current_period_start=now,
            current_period_end=period_end,
            next_billing_date=period_end,
            vial_count=data.vial_count,
            refill_interval_days=calculate_interval_days(data.vial_count),
            payment_method_ref=data.payment_method_ref,
            billing_sync_status=BillingSyncStatus.PENDING.value,
            extension=SubscriptionExtension()
        )

        async def _insert():
            self.db.add(subscription)
            await self.db.flush()
            return subscription

        await run_in_transaction(self.db, _insert, operation="create_subscription")
        logger.info(
            f"[SUBSCRIPTION] Created local subscription {subscription.id} "
            f"for patient {data.patient_id} in clinic {data.clinic_id}"
        )

        await self._sync_remote_creation(subscription, patient, data.metadata)

        await self.audit.record(
            subscription,
            SubscriptionActionType.CREATED,
            reason=f"Started {data.plan_name} plan"
        )

        await self._schedule_refill(
            subscription,
            payment_confirmed=subscription.billing_sync_status == BillingSyncStatus.CONFIRMED.value
        )
        await self._tag_patient(subscription, patient)

        return LifecycleResult(success=True, subscription=subscription)

    async def _sync_remote_creation(
        self,
        subscription: Subscription,
        patient: Patient,
        metadata: Optional[Dict[str, str]] = None
    ) -> bool:
        """Crea la suscripción remota; devuelve True si quedó confirmada."""
        try:
            ctx = await self.gateway.resolve_context(self.db, subscription.clinic_id)
            customer_ref = await self._ensure_customer(ctx, patient)
            remote_id = await self.gateway.create_subscription(
                ctx,
                customer_ref,
                PriceSpec(
                    amount=subscription.amount,
                    interval=subscription.interval,
                    interval_count=subscription.interval_count,
                    product_name=subscription.plan_name,
                    currency=subscription.currency
                ),
                payment_method_ref=subscription.payment_method_ref,
                metadata={
                    "clinicId": str(subscription.clinic_id),
                    "patientId": str(subscription.patient_id),
                    "planId": subscription.plan_id,
                    "localSubscriptionId": str(subscription.id),
                    **(metadata or {})
                },
                idempotency_key=f"subscription-{subscription.id}-create"
            )
        except PersistenceError:
            raise
        except Exception as e:
            if isinstance(e, (RemoteGatewayError, NotFoundError)):
                sync_error = e.message
                logger.error(
                    f"[SUBSCRIPTION] Remote creation failed for {subscription.id}, keeping local row: {sync_error}"
                )
            else:
                sync_error = "Error inesperado al crear la suscripción en el proveedor de cobros"
                logger.error(
                    f"[SUBSCRIPTION] Unexpected error creating remote subscription for {subscription.id}",
                    exc_info=True
                )

            async def _mark_failed():
                subscription.billing_sync_status = BillingSyncStatus.FAILED.value
                subscription.update_extension(billing_sync_error=sync_error)
                return subscription

            await run_in_transaction(self.db, _mark_failed, operation="mark_billing_failed")
            return False

        async def _confirm():
            subscription.billing_provider_subscription_id = remote_id
            subscription.billing_sync_status = BillingSyncStatus.CONFIRMED.value
            subscription.update_extension(billing_sync_error=None)
            return subscription

        try:
            await run_in_transaction(self.db, _confirm, operation="confirm_billing")
        except PersistenceError:
            logger.critical(
                f"[SUBSCRIPTION] Remote subscription {remote_id} created but local row "
                f"{subscription.id} could not be linked; manual reconciliation required"
            )
            raise

        logger.info(f"[SUBSCRIPTION] Linked {subscription.id} to remote subscription {remote_id}")
        return True

    async def _ensure_customer(self, ctx, patient: Patient) -> str:
        if patient.stripe_customer_id:
            return patient.stripe_customer_id

        customer_ref = await self.gateway.create_customer(
            ctx,
            email=patient.email,
            name=patient.full_name,
            metadata={"patientId": str(patient.id), "clinicId": str(patient.clinic_id)}
        )

        async def _store():
            patient.stripe_customer_id = customer_ref
            return patient

        await run_in_transaction(self.db, _store, operation="store_customer_ref")
        return customer_ref

    # ===== PAUSE =====

    async def pause_subscription(self, data: PauseSubscriptionInput) -> LifecycleResult:
        subscription = await crud.get_subscription(self.db, data.subscription_id)
        if not subscription:
            return _failure("Suscripción no encontrada", NotFoundError.code)

        if subscription.status != SubscriptionStatus.ACTIVE.value:
            return _failure(f"No se puede pausar una suscripción en estado {subscription.status}")

        if subscription.billing_provider_subscription_id:
            try:
                ctx = await self.gateway.resolve_context(self.db, subscription.clinic_id)
                await self.gateway.update_subscription(
                    ctx,
                    subscription.billing_provider_subscription_id,
                    pause_collection=True,
                    resumes_at=data.resume_at
                )
            except (RemoteGatewayError, NotFoundError) as e:
                logger.error(f"[SUBSCRIPTION] Remote pause failed for {subscription.id}: {e.message}")
                return _failure(f"Error del proveedor de cobros: {e.message}", RemoteGatewayError.code)

        hold_note = f"Subscription paused: {data.reason}" if data.reason else "Subscription paused"

        async def _pause():
            subscription.status = SubscriptionStatus.PAUSED.value
            subscription.paused_at = utcnow()
            subscription.resume_at = data.resume_at
            subscription.next_billing_date = None
            held = await self.refill_scheduler.hold_for_subscription(subscription.id, reason=hold_note)
            return held

        held = await run_in_transaction(self.db, _pause, operation="pause_subscription")

        await self.audit.record(
            subscription,
            SubscriptionActionType.PAUSED,
            reason=data.reason,
            paused_until=data.resume_at,
            performed_by=data.paused_by
        )

        logger.info(
            f"[SUBSCRIPTION] Paused {subscription.id} (patient {subscription.patient_id}), "
            f"{held} refill(s) on hold"
        )
        return LifecycleResult(success=True, subscription=subscription)

    # ===== RESUME =====

    async def resume_subscription(self, data: ResumeSubscriptionInput) -> LifecycleResult:
        subscription = await crud.get_subscription(self.db, data.subscription_id)
        if not subscription:
            return _failure("Suscripción no encontrada", NotFoundError.code)

        if subscription.status != SubscriptionStatus.PAUSED.value:
            return _failure(f"No se puede reanudar una suscripción en estado {subscription.status}")

        if subscription.billing_provider_subscription_id:
            try:
                ctx = await self.gateway.resolve_context(self.db, subscription.clinic_id)
                await self.gateway.update_subscription(
                    ctx,
                    subscription.billing_provider_subscription_id,
                    resume=True
                )
            except (RemoteGatewayError, NotFoundError) as e:
                logger.error(f"[SUBSCRIPTION] Remote resume failed for {subscription.id}: {e.message}")
                return _failure(f"Error del proveedor de cobros: {e.message}", RemoteGatewayError.code)

        now = utcnow()
        period_end = calculate_period_end(now, subscription.interval, subscription.interval_count)

        async def _resume():
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.paused_at = None
            subscription.resume_at = None
            subscription.current_period_start = now
            subscription.current_period_end = period_end
            subscription.next_billing_date = period_end
            return subscription

        await run_in_transaction(self.db, _resume, operation="resume_subscription")

        await self.audit.record(
            subscription,
            SubscriptionActionType.RESUMED,
            performed_by=data.resumed_by
        )

        await self._schedule_refill(subscription, payment_confirmed=False)

        logger.info(f"[SUBSCRIPTION] Resumed {subscription.id} (patient {subscription.patient_id})")
        return LifecycleResult(success=True, subscription=subscription)

    # ===== CANCEL =====

    async def cancel_subscription(self, data: CancelSubscriptionInput) -> LifecycleResult:
        subscription = await crud.get_subscription(self.db, data.subscription_id)
        if not subscription:
            return _failure("Suscripción no encontrada", NotFoundError.code)

        if subscription.status == SubscriptionStatus.CANCELED.value:
            return _failure("La suscripción ya está cancelada")

        at_period_end = data.cancel_at_period_end
        if at_period_end and subscription.extension.cancel_at_period_end:
            return _failure("La cancelación al final del período ya está programada")

        if subscription.billing_provider_subscription_id:
            try:
                ctx = await self.gateway.resolve_context(self.db, subscription.clinic_id)
                if at_period_end:
                    await self.gateway.update_subscription(
                        ctx,
                        subscription.billing_provider_subscription_id,
                        cancel_at_period_end=True
                    )
                else:
                    await self.gateway.cancel_subscription(ctx, subscription.billing_provider_subscription_id)
            except (RemoteGatewayError, NotFoundError) as e:
                logger.error(f"[SUBSCRIPTION] Remote cancel failed for {subscription.id}: {e.message}")
                return _failure(f"Error del proveedor de cobros: {e.message}", RemoteGatewayError.code)

        now = utcnow()
        cancel_note = f"Subscription canceled: {data.reason}" if data.reason else "Subscription canceled"

        async def _cancel():
            subscription.canceled_at = now
            subscription.update_extension(
                cancel_at_period_end=at_period_end,
                cancellation_reason=data.reason
            )
            cancelled = 0
            if not at_period_end:
                subscription.status = SubscriptionStatus.CANCELED.value
                subscription.ended_at = now
                subscription.next_billing_date = None
                cancelled = await self.refill_scheduler.cancel_for_subscription(
                    subscription.id, reason=cancel_note
                )
            return cancelled

        cancelled = await run_in_transaction(self.db, _cancel, operation="cancel_subscription")

        await self.audit.record(
            subscription,
            SubscriptionActionType.CANCELLED,
            reason=data.reason,
            cancellation_reason=data.reason,
            performed_by=data.canceled_by
        )

        await self._untag_patient(subscription)

        logger.info(
            f"[SUBSCRIPTION] Canceled {subscription.id} (patient {subscription.patient_id}, "
            f"at_period_end={at_period_end}, refills cancelled={cancelled})"
        )
        return LifecycleResult(success=True, subscription=subscription)

    # ===== BILLING RECONCILIATION =====

    async def retry_billing_sync(self, subscription_id: UUID) -> LifecycleResult:
        """Reintenta crear en el proveedor una suscripción que quedó sin confirmar."""
        subscription = await crud.get_subscription(self.db, subscription_id)
        if not subscription:
            return _failure("Suscripción no encontrada", NotFoundError.code)
        if subscription.billing_provider_subscription_id:
            return _failure("La suscripción ya está sincronizada con el proveedor")
        if subscription.is_terminal:
            return _failure("La suscripción está cancelada")

        patient = await get_patient(self.db, subscription.patient_id)
        if not patient:
            return _failure("Paciente no encontrado", NotFoundError.code)

        confirmed = await self._sync_remote_creation(subscription, patient)
        if not confirmed:
            return LifecycleResult(
                success=False,
                subscription=subscription,
                error=subscription.extension.billing_sync_error,
                error_code=RemoteGatewayError.code
            )
        return LifecycleResult(success=True, subscription=subscription)

    async def reconcile_unsynced(self, clinic_id: Optional[UUID] = None, limit: int = 100) -> dict:
        """
        Barrido de suscripciones PENDING/FAILED sin id remoto. Cada una se
        procesa por separado; un fallo no detiene a las demás.
        """
        async with try_advisory_lock(self.db.bind, RECONCILE_JOB, clinic_id) as acquired:
            if not acquired:
                return {"skipped": True, "reason": "Reconciliation already running"}

            pending = await crud.get_unsynced_subscriptions(self.db, clinic_id=clinic_id, limit=limit)
            # ids only: a failed retry rolls back and expires the loaded rows
            pending_ids = [subscription.id for subscription in pending]
            confirmed = 0
            errors: List[str] = []

            for subscription_id in pending_ids:
                try:
                    result = await self.retry_billing_sync(subscription_id)
                except ClinicCoreError as e:
                    errors.append(f"Subscription {subscription_id}: {e.message}")
                    continue
                if result.success:
                    confirmed += 1
                else:
                    errors.append(f"Subscription {subscription_id}: {result.error}")

            logger.info(
                f"[SUBSCRIPTION] Billing reconciliation processed {len(pending_ids)}, "
                f"confirmed {confirmed}, errors {len(errors)}"
            )
            return {"processed": len(pending_ids), "confirmed": confirmed, "errors": errors}

    # ===== QUERIES =====

    async def get_subscription_with_details(
        self,
        subscription_id: UUID,
        clinic_id: Optional[UUID] = None,
        actions_limit: int = 10
    ) -> Optional[Tuple[Subscription, List[SubscriptionAction]]]:
        subscription = await crud.get_subscription(self.db, subscription_id, clinic_id)
        if not subscription:
            return None
        actions = await self.audit.list_for_subscription(subscription.id, limit=actions_limit)
        return subscription, actions

    async def get_active_subscription_for_patient(self, patient_id: UUID) -> Optional[Subscription]:
        return await crud.get_active_subscription_for_patient(self.db, patient_id)

    async def list_subscriptions(
        self,
        clinic_id: UUID,
        patient_id: Optional[UUID] = None,
        status: Optional[SubscriptionStatus] = None,
        skip: int = 0,
        limit: int = 20
    ) -> List[Subscription]:
        return await crud.get_subscriptions(
            self.db, clinic_id, patient_id=patient_id, status=status, skip=skip, limit=limit
        )

    # ===== HELPERS =====

    async def _recover(self, subscription: Subscription) -> None:
        await self.db.rollback()
        await self.db.refresh(subscription)

    async def _schedule_refill(self, subscription: Subscription, payment_confirmed: bool) -> None:
        try:
            await self.refill_scheduler.schedule_for_subscription(
                subscription.id, payment_confirmed=payment_confirmed
            )
        except Exception as e:
            logger.error(
                f"[SUBSCRIPTION] Failed to schedule refill for {subscription.id}: {e}",
                exc_info=True
            )
            await self._recover(subscription)

    async def _tag_patient(self, subscription: Subscription, patient: Patient) -> None:
        try:
            patient.add_tags(plan_tag(subscription.plan_name), ACTIVE_SUBSCRIPTION_TAG)
            await self.db.commit()
        except Exception as e:
            logger.warning(f"[SUBSCRIPTION] Failed to tag patient {patient.id}: {e}")
            await self._recover(subscription)

    async def _untag_patient(self, subscription: Subscription) -> None:
        try:
            others = await crud.count_other_active_subscriptions(
                self.db, subscription.patient_id, subscription.id
            )
            if others:
                return
            patient = await get_patient(self.db, subscription.patient_id)
            if patient:
                patient.remove_tag(ACTIVE_SUBSCRIPTION_TAG)
                await self.db.commit()
        except Exception as e:
            logger.warning(f"[SUBSCRIPTION] Failed to untag patient {subscription.patient_id}: {e}")
            await self._recover(subscription)
