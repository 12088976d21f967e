"""
Models for patient subscription management.
"""
from sqlalchemy import Column, String, Integer, Text, ForeignKey, CheckConstraint, JSON, Uuid, event
from sqlalchemy.orm import relationship, validates
from sqlalchemy.types import TypeDecorator
from pydantic import BaseModel
from typing import Optional
from enum import Enum
import uuid

from app.database.database import Base
from app.common.mixins import ClinicScopedMixin, TimestampMixin, UTCDateTime, utcnow


class SubscriptionStatus(str, Enum):
    """Estados de suscripción."""
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"


class BillingInterval(str, Enum):
    """Intervalos de facturación."""
    MONTH = "month"
    QUARTER = "quarter"
    SEMIANNUAL = "semiannual"
    YEAR = "year"


class BillingSyncStatus(str, Enum):
    """Estado de sincronización con el proveedor de cobros."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class SubscriptionActionType(str, Enum):
    CREATED = "CREATED"
    PAUSED = "PAUSED"
    RESUMED = "RESUMED"
    CANCELLED = "CANCELLED"


class SubscriptionExtension(BaseModel):
    """
    Datos adicionales de la suscripción con llaves cerradas.

    - billing_sync_error: último error (sanitizado) al sincronizar con el proveedor
    - cancel_at_period_end: modo de cancelación solicitado
    - cancellation_reason: motivo indicado al cancelar
    """
    billing_sync_error: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    cancellation_reason: Optional[str] = None

    model_config = {"extra": "forbid"}


class ExtensionType(TypeDecorator):
    """Stores SubscriptionExtension as JSON and loads it back as the model."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return SubscriptionExtension().model_dump()
        if isinstance(value, dict):
            value = SubscriptionExtension(**value)
        return value.model_dump()

    def process_result_value(self, value, dialect):
        return SubscriptionExtension(**(value or {}))


class Subscription(Base, ClinicScopedMixin, TimestampMixin):
    """
    Acuerdo recurrente de cobro y resurtido entre un paciente y una clínica.
    Nunca se elimina físicamente.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period_order"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    patient_id = Column(Uuid(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)

    # Plan y términos de cobro
    plan_id = Column(String(100), nullable=False)
    plan_name = Column(String(200), nullable=False)
    plan_description = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)  # minor currency units
    currency = Column(String(3), nullable=False, default="usd")
    interval = Column(String(20), nullable=False, default=BillingInterval.MONTH.value)
    interval_count = Column(Integer, nullable=False, default=1)

    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True)

    # Fechas
    start_date = Column(UTCDateTime, nullable=False)
    current_period_start = Column(UTCDateTime, nullable=False)
    current_period_end = Column(UTCDateTime, nullable=False)
    next_billing_date = Column(UTCDateTime, nullable=True)
    paused_at = Column(UTCDateTime, nullable=True)
    resume_at = Column(UTCDateTime, nullable=True)
    canceled_at = Column(UTCDateTime, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)

    # Resurtido
    vial_count = Column(Integer, nullable=False, default=1)
    refill_interval_days = Column(Integer, nullable=False, default=30)
    last_refill_item_id = Column(Uuid(as_uuid=True), nullable=True)

    # Proveedor de cobros
    payment_method_ref = Column(String(100), nullable=True)
    billing_provider_subscription_id = Column(String(100), nullable=True, unique=True)
    billing_sync_status = Column(String(20), nullable=False, default=BillingSyncStatus.PENDING.value, index=True)
    extension = Column(ExtensionType, nullable=False, default=lambda: SubscriptionExtension())

    # Relaciones
    actions = relationship(
        "SubscriptionAction",
        back_populates="subscription",
        order_by="SubscriptionAction.created_at.desc()",
        lazy="raise"
    )

    def __str__(self):
        return f"Subscription {self.plan_name} - {self.status}"

    @validates("billing_provider_subscription_id")
    def _validate_remote_id(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and value != current:
            raise ValueError("billing_provider_subscription_id can only be set once")
        return value

    @validates("current_period_end")
    def _validate_period_end(self, key, value):
        start = self.__dict__.get("current_period_start")
        if value is not None and start is not None and value <= start:
            raise ValueError("current_period_end must be after current_period_start")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED.value

    def update_extension(self, **values) -> None:
        # Assign a new object so SQLAlchemy sees the change
        self.extension = self.extension.model_copy(update=values)


class SubscriptionAction(Base, ClinicScopedMixin):
    """Registro de auditoría inmutable de transiciones de ciclo de vida."""
    __tablename__ = "subscription_actions"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    action_type = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    paused_until = Column(UTCDateTime, nullable=True)

    # Cambios de plan (reservado)
    previous_plan_id = Column(String(100), nullable=True)
    new_plan_id = Column(String(100), nullable=True)
    previous_amount = Column(Integer, nullable=True)
    new_amount = Column(Integer, nullable=True)

    cancellation_reason = Column(Text, nullable=True)
    performed_by = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

    subscription = relationship("Subscription", back_populates="actions")


@event.listens_for(SubscriptionAction, "before_update")
def _refuse_action_update(mapper, connection, target):
    raise ValueError("SubscriptionAction rows are append-only")
