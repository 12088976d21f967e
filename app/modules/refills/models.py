"""
Models for the medication refill queue.
"""
from sqlalchemy import Column, String, Integer, Text, Boolean, ForeignKey, Index, Uuid, text
from datetime import datetime
from enum import Enum
import uuid

from app.database.database import Base
from app.common.mixins import ClinicScopedMixin, TimestampMixin, UTCDateTime


class RefillStatus(str, Enum):
    """
    Estados del resurtido.

    SCHEDULED -> PENDING_PAYMENT -> PENDING_ADMIN -> APPROVED -> PENDING_PROVIDER -> DISPENSED
    ON_HOLD y CANCELLED se alcanzan desde cualquier estado no terminal.
    """
    SCHEDULED = "SCHEDULED"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_ADMIN = "PENDING_ADMIN"
    APPROVED = "APPROVED"
    PENDING_PROVIDER = "PENDING_PROVIDER"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"
    DISPENSED = "DISPENSED"


class PaymentVerificationMethod(str, Enum):
    PROVIDER_AUTO = "PROVIDER_AUTO"
    MANUAL_VERIFIED = "MANUAL_VERIFIED"
    EXTERNAL_REFERENCE = "EXTERNAL_REFERENCE"
    PAYMENT_SKIPPED = "PAYMENT_SKIPPED"


# A subscription may have at most one item in these statuses
ACTIVE_REFILL_STATUSES = [
    RefillStatus.SCHEDULED.value,
    RefillStatus.PENDING_PAYMENT.value,
    RefillStatus.PENDING_ADMIN.value,
    RefillStatus.APPROVED.value,
    RefillStatus.PENDING_PROVIDER.value,
]

TERMINAL_REFILL_STATUSES = [
    RefillStatus.CANCELLED.value,
    RefillStatus.DISPENSED.value,
]

_ACTIVE_FILTER = text("status IN (" + ", ".join(f"'{s}'" for s in ACTIVE_REFILL_STATUSES) + ")")


class RefillQueueItem(Base, ClinicScopedMixin, TimestampMixin):
    """Un ciclo de dispensación de medicamento para un paciente."""
    __tablename__ = "refill_queue_items"
    __table_args__ = (
        Index(
            "uq_refill_queue_items_active_subscription",
            "subscription_id",
            unique=True,
            postgresql_where=_ACTIVE_FILTER,
            sqlite_where=_ACTIVE_FILTER
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=RefillStatus.SCHEDULED.value, index=True)

    # Programación
    vial_count = Column(Integer, nullable=False, default=1)
    refill_interval_days = Column(Integer, nullable=False, default=30)
    next_refill_date = Column(UTCDateTime, nullable=False, index=True)
    last_refill_date = Column(UTCDateTime, nullable=True)

    # Checkpoint de pago
    payment_verified = Column(Boolean, nullable=False, default=False)
    payment_verified_at = Column(UTCDateTime, nullable=True)
    payment_verified_by = Column(Uuid(as_uuid=True), nullable=True)
    payment_method = Column(String(30), nullable=True)
    payment_reference = Column(String(255), nullable=True)

    # Checkpoint administrativo
    admin_approved = Column(Boolean, nullable=True)
    admin_approved_at = Column(UTCDateTime, nullable=True)
    admin_approved_by = Column(Uuid(as_uuid=True), nullable=True)
    admin_notes = Column(Text, nullable=True)

    # Checkpoint clínico y farmacia
    provider_queued_at = Column(UTCDateTime, nullable=True)
    prescribed_at = Column(UTCDateTime, nullable=True)
    prescribed_by = Column(Uuid(as_uuid=True), nullable=True)
    order_id = Column(String(100), nullable=True)

    # Solicitud del paciente
    requested_early = Column(Boolean, nullable=False, default=False)
    patient_notes = Column(Text, nullable=True)

    # Medicamento
    plan_name = Column(String(200), nullable=True)
    medication_name = Column(String(100), nullable=True)
    medication_strength = Column(String(50), nullable=True)
    medication_form = Column(String(50), nullable=True)

    def __str__(self):
        return f"Refill {self.id} - {self.status}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REFILL_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REFILL_STATUSES

    def resume_status(self, now: datetime) -> str:
        """Checkpoint al que vuelve un resurtido en espera según sus marcas."""
        if not self.payment_verified:
            if not self.requested_early and self.next_refill_date > now:
                return RefillStatus.SCHEDULED.value
            return RefillStatus.PENDING_PAYMENT.value
        if not self.admin_approved:
            return RefillStatus.PENDING_ADMIN.value
        if self.provider_queued_at is not None:
            return RefillStatus.PENDING_PROVIDER.value
        return RefillStatus.APPROVED.value
