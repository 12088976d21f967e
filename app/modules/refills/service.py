"""
Refill Queue Engine.

Flujo de un ciclo de resurtido:
    suscripción -> SCHEDULED -> cobro (PENDING_PAYMENT) -> aprobación administrativa
    (PENDING_ADMIN -> APPROVED) -> cola del proveedor (PENDING_PROVIDER) -> farmacia (DISPENSED)

- Las clínicas sin paso administrativo pasan de pago verificado directo a la cola del proveedor.
- Una suscripción tiene como máximo un resurtido no terminal (ni ON_HOLD).
- El envío a farmacia ocurre como máximo una vez por resurtido; después se programa
  el siguiente ciclo si la suscripción sigue activa.
- Los barridos procesan cada resurtido por separado: un fallo no bloquea al resto.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import update, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.exceptions import ClinicCoreError, NotFoundError, PersistenceError, ValidationError
from app.common.locks import try_advisory_lock
from app.common.mixins import utcnow
from app.database.database import run_in_transaction
from app.modules.billing.gateway import BillingGateway
from app.modules.clinics.crud import get_clinic, get_patient
from app.modules.clinics.models import Clinic
from app.modules.subscriptions import crud as subscription_crud
from app.modules.subscriptions.models import Subscription, SubscriptionStatus
from app.modules.subscriptions.service import RefillScheduler
from app.modules.subscriptions.utils import (
    DEFAULT_VIAL_COUNT,
    calculate_interval_days,
    calculate_next_refill_date,
    extract_medication_name,
)

from . import crud
from .models import (
    ACTIVE_REFILL_STATUSES,
    PaymentVerificationMethod,
    RefillQueueItem,
    RefillStatus,
)
from .pharmacy import PharmacyClient, PharmacyOrderRequest
from .schemas import RefillQueueFilters, RefillQueueStats, RefillUpdate

logger = logging.getLogger(__name__)

PROCESS_DUE_JOB = "refills:process-due"
AUTO_APPROVAL_NOTE = "Auto-approved: clinic has no admin approval step"


class RefillQueueService(RefillScheduler):
    """
    Cola de resurtidos de una clínica.

        service = RefillQueueService(db, gateway=StripeBillingGateway(), pharmacy=HttpPharmacyClient())
        result = await service.run_due_refills_job(clinic_id)
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[BillingGateway] = None,
        pharmacy: Optional[PharmacyClient] = None
    ):
        self.db = db
        self.gateway = gateway
        self.pharmacy = pharmacy

    # ===== HELPERS =====

    async def _require(self, refill_id: UUID, clinic_id: Optional[UUID] = None) -> RefillQueueItem:
        refill = await crud.get_refill(self.db, refill_id, clinic_id)
        if not refill:
            raise NotFoundError("Resurtido no encontrado", details={"refill_id": str(refill_id)})
        return refill

    @staticmethod
    def _require_status(refill: RefillQueueItem, allowed: List[str], action: str) -> None:
        if refill.status not in allowed:
            raise ValidationError(
                f"No se puede {action} un resurtido en estado {refill.status}",
                details={"refill_id": str(refill.id), "status": refill.status}
            )

    async def _apply(self, refill: RefillQueueItem, operation: str, **values) -> RefillQueueItem:
        async def _work():
            for key, value in values.items():
                setattr(refill, key, value)
            return refill

        return await run_in_transaction(self.db, _work, operation=operation)

    async def _requires_admin_approval(self, clinic_id: UUID) -> bool:
        clinic = await get_clinic(self.db, clinic_id)
        return clinic.refill_requires_admin_approval if clinic else True

    @staticmethod
    def _after_payment(gated: bool, now: datetime) -> dict:
        """Campos del siguiente checkpoint una vez verificado el pago."""
        if gated:
            return {"status": RefillStatus.PENDING_ADMIN.value}
        return {
            "status": RefillStatus.PENDING_PROVIDER.value,
            "admin_approved": True,
            "admin_approved_at": now,
            "admin_notes": AUTO_APPROVAL_NOTE,
            "provider_queued_at": now,
        }

    @staticmethod
    def _new_item(
        subscription: Subscription,
        clinic: Optional[Clinic],
        status: RefillStatus,
        next_refill_date: datetime,
        **fields
    ) -> RefillQueueItem:
        vial_count = subscription.vial_count or DEFAULT_VIAL_COUNT
        return RefillQueueItem(
            id=uuid.uuid4(),
            clinic_id=subscription.clinic_id,
            patient_id=subscription.patient_id,
            subscription_id=subscription.id,
            status=status.value,
            vial_count=vial_count,
            refill_interval_days=calculate_interval_days(vial_count),
            next_refill_date=next_refill_date,
            plan_name=subscription.plan_name,
            medication_name=(
                extract_medication_name(subscription.plan_name)
                or (clinic.default_medication_name if clinic else None)
            ),
            medication_strength=clinic.default_medication_strength if clinic else None,
            medication_form=clinic.default_medication_form if clinic else None,
            **fields
        )

    async def _insert_for_subscription(
        self,
        subscription: Subscription,
        build: Callable[[], RefillQueueItem],
        operation: str
    ) -> RefillQueueItem:
        """
        Inserta un resurtido y lo enlaza a la suscripción. Si otro proceso ganó la
        carrera (índice único de resurtido activo) devuelve el existente.
        """
        subscription_id = subscription.id

        async def _work():
            item = build()
            self.db.add(item)
            subscription.last_refill_item_id = item.id
            return item

        try:
            return await run_in_transaction(self.db, _work, operation=operation)
        except PersistenceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            await self.db.refresh(subscription)
            existing = await crud.get_active_refill_for_subscription(self.db, subscription_id)
            if existing is None:
                raise
            logger.info(f"[REFILL] Concurrent insert for subscription {subscription_id}, using {existing.id}")
            return existing

    # ===== SCHEDULING =====

    async def trigger_refill_for_subscription_payment(
        self,
        subscription_id: UUID,
        payment_confirmed: bool = True,
        payment_reference: Optional[str] = None
    ) -> RefillQueueItem:
        """
        Crea el resurtido de la suscripción, o devuelve el activo si ya existe.

        Con pago confirmado el resurtido nace verificado (PENDING_ADMIN, o directo
        a la cola del proveedor si la clínica no exige aprobación). Sin pago queda
        SCHEDULED para la próxima fecha de cobro.
        """
        subscription = await subscription_crud.get_subscription(self.db, subscription_id)
        if not subscription:
            raise NotFoundError("Suscripción no encontrada", details={"subscription_id": str(subscription_id)})
        if subscription.is_terminal:
            raise ValidationError("La suscripción está cancelada")

        existing = await crud.get_active_refill_for_subscription(self.db, subscription_id)
        if existing:
            logger.info(
                f"[REFILL] Active refill {existing.id} ({existing.status}) already exists "
                f"for subscription {subscription_id}, skipping"
            )
            return existing

        clinic = await get_clinic(self.db, subscription.clinic_id)
        now = utcnow()

        if payment_confirmed:
            gated = clinic.refill_requires_admin_approval if clinic else True
            fields = {
                "payment_verified": True,
                "payment_verified_at": now,
                "payment_method": PaymentVerificationMethod.PROVIDER_AUTO.value,
                "payment_reference": payment_reference,
            }
            fields.update(self._after_payment(gated, now))
            status = RefillStatus(fields.pop("status"))
            due = now
        else:
            fields = {}
            status = RefillStatus.SCHEDULED
            due = subscription.next_billing_date or subscription.current_period_end

        refill = await self._insert_for_subscription(
            subscription,
            lambda: self._new_item(subscription, clinic, status, due, **fields),
            operation="trigger_refill"
        )
        logger.info(
            f"[REFILL] Created refill {refill.id} ({refill.status}) for subscription {subscription_id}, "
            f"payment_confirmed={payment_confirmed}"
        )
        return refill

    async def schedule_for_subscription(self, subscription_id: UUID, payment_confirmed: bool) -> RefillQueueItem:
        return await self.trigger_refill_for_subscription_payment(
            subscription_id, payment_confirmed=payment_confirmed
        )

    async def hold_for_subscription(self, subscription_id: UUID, reason: Optional[str] = None) -> int:
        """Pone en espera los resurtidos activos. No confirma la transacción."""
        result = await self.db.execute(
            update(RefillQueueItem)
            .where(
                and_(
                    RefillQueueItem.subscription_id == subscription_id,
                    RefillQueueItem.status.in_(ACTIVE_REFILL_STATUSES)
                )
            )
            .values(status=RefillStatus.ON_HOLD.value, admin_notes=reason)
        )
        return result.rowcount

    async def cancel_for_subscription(self, subscription_id: UUID, reason: Optional[str] = None) -> int:
        """Cancela los resurtidos no terminales (incluye los que están en espera). No confirma."""
        result = await self.db.execute(
            update(RefillQueueItem)
            .where(
                and_(
                    RefillQueueItem.subscription_id == subscription_id,
                    RefillQueueItem.status.in_(ACTIVE_REFILL_STATUSES + [RefillStatus.ON_HOLD.value])
                )
            )
            .values(status=RefillStatus.CANCELLED.value, admin_notes=reason)
        )
        return result.rowcount

    # ===== BATCH SWEEP =====

    async def process_due_refills(self, clinic_id: Optional[UUID] = None) -> dict:
        now = utcnow()
        due_ids = [item.id for item in await crud.get_due_refills(self.db, now, clinic_id)]
        processed = 0
        errors: List[str] = []

        for refill_id in due_ids:
            try:
                if not await self._claim_due(refill_id):
                    logger.info(f"[REFILL] Refill {refill_id} already claimed, skipping")
                    continue
                processed += 1
                await self._collect_payment(refill_id)
            except ClinicCoreError as e:
                errors.append(f"Refill {refill_id}: {e.message}")
                logger.error(f"[REFILL] Error processing due refill {refill_id}: {e.message}")
            except SQLAlchemyError as e:
                await self.db.rollback()
                errors.append(f"Refill {refill_id}: Error de base de datos")
                logger.error(f"[REFILL] Database error processing due refill {refill_id}: {e}")
            except Exception:
                await self.db.rollback()
                errors.append(f"Refill {refill_id}: Error inesperado")
                logger.error(f"[REFILL] Unexpected error processing due refill {refill_id}", exc_info=True)

        logger.info(f"[REFILL] Sweep processed {processed} of {len(due_ids)} due refills, errors {len(errors)}")
        return {"processed": processed, "errors": errors}

    async def _claim_due(self, refill_id: UUID) -> bool:
        """SCHEDULED -> PENDING_PAYMENT solo si nadie lo tomó antes."""

        async def _work():
            result = await self.db.execute(
                update(RefillQueueItem)
                .where(
                    and_(
                        RefillQueueItem.id == refill_id,
                        RefillQueueItem.status == RefillStatus.SCHEDULED.value
                    )
                )
                .values(status=RefillStatus.PENDING_PAYMENT.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        return await run_in_transaction(self.db, _work, operation="claim_due_refill") == 1

    async def _collect_payment(self, refill_id: UUID) -> None:
        refill = await self._require(refill_id)
        await self.db.refresh(refill)

        subscription = None
        if refill.subscription_id:
            subscription = await subscription_crud.get_subscription(self.db, refill.subscription_id)
        patient = await get_patient(self.db, refill.patient_id)

        if self.gateway is None:
            raise ValidationError("Cobro automático no disponible; requiere verificación manual")
        if not subscription or not subscription.payment_method_ref:
            raise ValidationError("Sin método de pago guardado; requiere verificación manual")
        if not patient or not patient.stripe_customer_id:
            raise ValidationError("Paciente sin cliente en el proveedor; requiere verificación manual")

        ctx = await self.gateway.resolve_context(self.db, refill.clinic_id)
        payment_reference = await self.gateway.charge_saved_payment_method(
            ctx,
            customer_ref=patient.stripe_customer_id,
            payment_method_ref=subscription.payment_method_ref,
            amount=subscription.amount,
            currency=subscription.currency,
            idempotency_key=f"refill-{refill.id}-charge",
            metadata={"refillId": str(refill.id), "subscriptionId": str(subscription.id)}
        )

        gated = await self._requires_admin_approval(refill.clinic_id)
        now = utcnow()
        try:
            await self._apply(
                refill,
                "record_refill_payment",
                payment_verified=True,
                payment_verified_at=now,
                payment_method=PaymentVerificationMethod.PROVIDER_AUTO.value,
                payment_reference=payment_reference,
                **self._after_payment(gated, now)
            )
        except PersistenceError:
            logger.critical(
                f"[REFILL] Charge {payment_reference} succeeded for refill {refill_id} "
                f"but could not be recorded; verify manually"
            )
            raise
        logger.info(f"[REFILL] Charged refill {refill_id} ({payment_reference}), now {refill.status}")

    async def run_due_refills_job(self, clinic_id: Optional[UUID] = None) -> dict:
        """Barrido protegido por lock: una sola instancia a la vez por clínica."""
        async with try_advisory_lock(self.db.bind, PROCESS_DUE_JOB, clinic_id) as acquired:
            if not acquired:
                return {"skipped": True, "reason": "Refill sweep already running"}
            return await self.process_due_refills(clinic_id)

    # ===== CHECKPOINTS =====

    async def verify_payment(
        self,
        refill_id: UUID,
        method: PaymentVerificationMethod,
        verified_by: Optional[UUID] = None,
        payment_reference: Optional[str] = None,
        clinic_id: Optional[UUID] = None
    ) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        self._require_status(refill, [RefillStatus.PENDING_PAYMENT.value], "verificar el pago de")

        gated = await self._requires_admin_approval(refill.clinic_id)
        now = utcnow()
        await self._apply(
            refill,
            "verify_payment",
            payment_verified=True,
            payment_verified_at=now,
            payment_verified_by=verified_by,
            payment_method=method.value,
            payment_reference=payment_reference,
            **self._after_payment(gated, now)
        )
        logger.info(f"[REFILL] Payment verified for {refill_id} ({method.value}), now {refill.status}")
        return refill

    async def approve_refill(
        self,
        refill_id: UUID,
        admin_id: Optional[UUID] = None,
        notes: Optional[str] = None,
        clinic_id: Optional[UUID] = None
    ) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        self._require_status(refill, [RefillStatus.PENDING_ADMIN.value], "aprobar")

        await self._apply(
            refill,
            "approve_refill",
            status=RefillStatus.APPROVED.value,
            admin_approved=True,
            admin_approved_at=utcnow(),
            admin_approved_by=admin_id,
            admin_notes=notes
        )
        logger.info(f"[REFILL] Refill {refill_id} approved by {admin_id}")
        return refill

    async def reject_refill(
        self,
        refill_id: UUID,
        admin_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        clinic_id: Optional[UUID] = None
    ) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        self._require_status(refill, [RefillStatus.PENDING_ADMIN.value], "rechazar")

        await self._apply(
            refill,
            "reject_refill",
            status=RefillStatus.CANCELLED.value,
            admin_approved=False,
            admin_approved_at=utcnow(),
            admin_approved_by=admin_id,
            admin_notes=reason
        )
        logger.info(f"[REFILL] Refill {refill_id} rejected by {admin_id}")
        return refill

    async def queue_for_provider(self, refill_id: UUID, clinic_id: Optional[UUID] = None) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        if refill.status != RefillStatus.APPROVED.value:
            raise ValidationError("El resurtido debe estar aprobado antes de pasar al proveedor")

        await self._apply(
            refill,
            "queue_for_provider",
            status=RefillStatus.PENDING_PROVIDER.value,
            provider_queued_at=utcnow()
        )
        logger.info(f"[REFILL] Refill {refill_id} queued for provider")
        return refill

    async def submit_to_pharmacy(
        self,
        refill_id: UUID,
        provider_id: Optional[UUID] = None,
        clinic_id: Optional[UUID] = None
    ) -> Tuple[RefillQueueItem, Optional[RefillQueueItem]]:
        """
        Envía el resurtido a la farmacia (como máximo una vez) y programa el
        siguiente ciclo si la suscripción sigue activa.
        """
        refill = await self._require(refill_id, clinic_id)
        self._require_status(refill, [RefillStatus.PENDING_PROVIDER.value], "enviar a farmacia")
        if self.pharmacy is None:
            raise ValidationError("Integración con farmacia no disponible")

        now = utcnow()
        if not await self._claim_prescription(refill_id, provider_id, now):
            raise ValidationError("El resurtido ya fue enviado a farmacia")

        try:
            order_ref = await self.pharmacy.submit_order(
                PharmacyOrderRequest(
                    patient_id=refill.patient_id,
                    clinic_id=refill.clinic_id,
                    refill_id=refill.id,
                    medication_name=refill.medication_name,
                    medication_strength=refill.medication_strength,
                    medication_form=refill.medication_form,
                    vial_count=refill.vial_count
                )
            )
        except ClinicCoreError:
            await self._release_prescription(refill_id)
            raise

        subscription = None
        if refill.subscription_id:
            subscription = await subscription_crud.get_subscription(self.db, refill.subscription_id)
        schedule_next = subscription is not None and subscription.status == SubscriptionStatus.ACTIVE.value
        clinic = await get_clinic(self.db, refill.clinic_id) if schedule_next else None

        async def _dispense():
            await self.db.refresh(refill)
            refill.status = RefillStatus.DISPENSED.value
            refill.order_id = order_ref
            refill.last_refill_date = now
            return refill

        try:
            await run_in_transaction(self.db, _dispense, operation="dispense_refill")
        except PersistenceError:
            logger.critical(
                f"[REFILL] Pharmacy order {order_ref} placed for refill {refill_id} "
                f"but could not be recorded; reconcile manually"
            )
            raise

        next_refill = None
        if schedule_next:
            next_refill = await crud.get_active_refill_for_subscription(self.db, subscription.id)
            if next_refill is None:
                next_refill = await self._insert_for_subscription(
                    subscription,
                    lambda: self._new_item(
                        subscription,
                        clinic,
                        RefillStatus.SCHEDULED,
                        calculate_next_refill_date(now, refill.refill_interval_days)
                    ),
                    operation="schedule_next_refill"
                )

        logger.info(
            f"[REFILL] Refill {refill_id} dispensed as pharmacy order {order_ref}"
            + (f", next refill {next_refill.id}" if next_refill else "")
        )
        return refill, next_refill

    async def _claim_prescription(self, refill_id: UUID, provider_id: Optional[UUID], now: datetime) -> bool:
        async def _work():
            result = await self.db.execute(
                update(RefillQueueItem)
                .where(
                    and_(
                        RefillQueueItem.id == refill_id,
                        RefillQueueItem.status == RefillStatus.PENDING_PROVIDER.value,
                        RefillQueueItem.prescribed_at.is_(None)
                    )
                )
                .values(prescribed_at=now, prescribed_by=provider_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        return await run_in_transaction(self.db, _work, operation="claim_prescription") == 1

    async def _release_prescription(self, refill_id: UUID) -> None:
        async def _work():
            await self.db.execute(
                update(RefillQueueItem)
                .where(
                    and_(
                        RefillQueueItem.id == refill_id,
                        RefillQueueItem.status == RefillStatus.PENDING_PROVIDER.value
                    )
                )
                .values(prescribed_at=None, prescribed_by=None)
                .execution_options(synchronize_session=False)
            )

        await run_in_transaction(self.db, _work, operation="release_prescription")
        logger.warning(f"[REFILL] Pharmacy submission failed for {refill_id}, claim released")

    # ===== PATIENT / ADMIN ACTIONS =====

    async def request_early_refill(
        self,
        patient_id: UUID,
        clinic_id: UUID,
        subscription_id: Optional[UUID] = None,
        notes: Optional[str] = None
    ) -> RefillQueueItem:
        """
        Solicitud del paciente. Marca el resurtido activo como anticipado (y lo
        adelanta a cobro si aún estaba programado) o crea uno nuevo pendiente de pago.
        """
        existing = await crud.get_active_refill_for_patient(self.db, patient_id, subscription_id)
        if existing and existing.clinic_id == clinic_id:
            values = {"requested_early": True, "patient_notes": notes}
            if existing.status == RefillStatus.SCHEDULED.value:
                values["status"] = RefillStatus.PENDING_PAYMENT.value
            await self._apply(existing, "request_early_refill", **values)
            logger.info(f"[REFILL] Marked refill {existing.id} as early request for patient {patient_id}")
            return existing

        patient = await get_patient(self.db, patient_id, clinic_id)
        if not patient:
            raise NotFoundError("Paciente no encontrado en la clínica")

        now = utcnow()
        fields = {"requested_early": True, "patient_notes": notes}

        if subscription_id is not None:
            subscription = await subscription_crud.get_subscription(self.db, subscription_id, clinic_id)
            if not subscription or subscription.patient_id != patient_id:
                raise NotFoundError("Suscripción no encontrada para el paciente")
            if subscription.is_terminal:
                raise ValidationError("La suscripción está cancelada")
            clinic = await get_clinic(self.db, clinic_id)
            refill = await self._insert_for_subscription(
                subscription,
                lambda: self._new_item(subscription, clinic, RefillStatus.PENDING_PAYMENT, now, **fields),
                operation="request_early_refill"
            )
        else:
            refill = RefillQueueItem(
                id=uuid.uuid4(),
                clinic_id=clinic_id,
                patient_id=patient_id,
                status=RefillStatus.PENDING_PAYMENT.value,
                vial_count=DEFAULT_VIAL_COUNT,
                refill_interval_days=calculate_interval_days(DEFAULT_VIAL_COUNT),
                next_refill_date=now,
                **fields
            )

            async def _insert():
                self.db.add(refill)
                return refill

            await run_in_transaction(self.db, _insert, operation="request_early_refill")

        logger.info(f"[REFILL] Created early refill {refill.id} for patient {patient_id}")
        return refill

    async def hold_refill(
        self,
        refill_id: UUID,
        reason: Optional[str] = None,
        clinic_id: Optional[UUID] = None
    ) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        self._require_status(refill, ACTIVE_REFILL_STATUSES, "poner en espera")

        await self._apply(refill, "hold_refill", status=RefillStatus.ON_HOLD.value, admin_notes=reason)
        logger.info(f"[REFILL] Refill {refill_id} put on hold")
        return refill

    async def resume_refill(self, refill_id: UUID, clinic_id: Optional[UUID] = None) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        if refill.status != RefillStatus.ON_HOLD.value:
            raise ValidationError("El resurtido no está en espera")

        if refill.subscription_id:
            subscription = await subscription_crud.get_subscription(self.db, refill.subscription_id)
            if subscription and subscription.status != SubscriptionStatus.ACTIVE.value:
                raise ValidationError(f"La suscripción está en estado {subscription.status}")
            active = await crud.get_active_refill_for_subscription(self.db, refill.subscription_id)
            if active:
                raise ValidationError(
                    "La suscripción ya tiene un resurtido activo",
                    details={"active_refill_id": str(active.id)}
                )

        new_status = refill.resume_status(utcnow())
        await self._apply(refill, "resume_refill", status=new_status)
        logger.info(f"[REFILL] Refill {refill_id} resumed to {new_status}")
        return refill

    async def cancel_refill(
        self,
        refill_id: UUID,
        reason: Optional[str] = None,
        clinic_id: Optional[UUID] = None
    ) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        if refill.is_terminal:
            raise ValidationError(f"El resurtido ya está en estado {refill.status}")

        await self._apply(refill, "cancel_refill", status=RefillStatus.CANCELLED.value, admin_notes=reason)
        logger.info(f"[REFILL] Refill {refill_id} cancelled")
        return refill

    async def update_refill(
        self,
        refill_id: UUID,
        data: RefillUpdate,
        clinic_id: Optional[UUID] = None
    ) -> RefillQueueItem:
        refill = await self._require(refill_id, clinic_id)
        values = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if not values:
            return refill
        if refill.is_terminal:
            raise ValidationError(f"No se puede editar un resurtido en estado {refill.status}")

        await self._apply(refill, "update_refill", **values)
        logger.info(f"[REFILL] Updated refill {refill_id}: {sorted(values)}")
        return refill

    # ===== QUERIES =====

    async def get_admin_refill_queue(self, filters: RefillQueueFilters) -> List[RefillQueueItem]:
        return await crud.get_refill_queue(self.db, filters)

    async def get_refill_queue_stats(self, clinic_id: UUID) -> RefillQueueStats:
        counts = await crud.count_by_status(self.db, clinic_id)
        stats = RefillQueueStats(
            scheduled=counts.get(RefillStatus.SCHEDULED.value, 0),
            pending_payment=counts.get(RefillStatus.PENDING_PAYMENT.value, 0),
            pending_admin=counts.get(RefillStatus.PENDING_ADMIN.value, 0),
            approved=counts.get(RefillStatus.APPROVED.value, 0),
            pending_provider=counts.get(RefillStatus.PENDING_PROVIDER.value, 0),
            on_hold=counts.get(RefillStatus.ON_HOLD.value, 0)
        )
        stats.total = (
            stats.scheduled + stats.pending_payment + stats.pending_admin
            + stats.approved + stats.pending_provider + stats.on_hold
        )
        return stats

    async def get_refill(self, refill_id: UUID, clinic_id: Optional[UUID] = None) -> Optional[RefillQueueItem]:
        return await crud.get_refill(self.db, refill_id, clinic_id)

    async def get_patient_refill_history(
        self,
        patient_id: UUID,
        clinic_id: Optional[UUID] = None,
        limit: int = 20
    ) -> List[RefillQueueItem]:
        return await crud.get_patient_refill_history(self.db, patient_id, clinic_id, limit)
