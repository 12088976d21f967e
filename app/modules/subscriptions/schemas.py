"""
Pydantic schemas for patient subscription management.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from uuid import UUID

from .models import SubscriptionStatus, BillingInterval, BillingSyncStatus, SubscriptionActionType


# ===== INPUT SCHEMAS =====

class CreateSubscriptionInput(BaseModel):
    """Datos para iniciar una suscripción de un paciente."""
    patient_id: UUID
    clinic_id: UUID
    plan_id: str = Field(..., min_length=1, description="Identificador del plan")
    plan_name: str = Field(..., min_length=1, description="Nombre del plan")
    plan_description: Optional[str] = None
    amount: int = Field(..., gt=0, description="Monto en unidades menores (centavos)")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTH
    interval_count: int = Field(default=1, ge=1, le=12)
    vial_count: int = Field(default=1, ge=1)
    payment_method_ref: Optional[str] = Field(None, description="Método de pago guardado en el proveedor")
    metadata: dict = Field(default_factory=dict)


class PauseSubscriptionInput(BaseModel):
    subscription_id: UUID
    reason: Optional[str] = None
    paused_by: Optional[UUID] = None
    resume_at: Optional[datetime] = None


class ResumeSubscriptionInput(BaseModel):
    subscription_id: UUID
    resumed_by: Optional[UUID] = None


class CancelSubscriptionInput(BaseModel):
    subscription_id: UUID
    reason: Optional[str] = None
    canceled_by: Optional[UUID] = None
    cancel_at_period_end: bool = Field(default=True, description="True = cancelar al final del período")


# ===== REQUEST BODIES (clinic and subscription come from headers/path) =====

class SubscriptionCreateRequest(BaseModel):
    patient_id: UUID
    plan_id: str = Field(..., min_length=1)
    plan_name: str = Field(..., min_length=1)
    plan_description: Optional[str] = None
    amount: int = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    interval: BillingInterval = BillingInterval.MONTH
    interval_count: int = Field(default=1, ge=1, le=12)
    vial_count: int = Field(default=1, ge=1)
    payment_method_ref: Optional[str] = None


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    resume_at: Optional[datetime] = None

    @field_validator("resume_at")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    cancel_at_period_end: bool = True


# ===== OUTPUT SCHEMAS =====

class SubscriptionExtensionOut(BaseModel):
    billing_sync_error: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    cancellation_reason: Optional[str] = None

    class Config:
        from_attributes = True


class SubscriptionOut(BaseModel):
    id: UUID
    patient_id: UUID
    clinic_id: UUID
    plan_id: str
    plan_name: str
    amount: int
    currency: str
    interval: BillingInterval
    interval_count: int
    status: SubscriptionStatus
    start_date: datetime
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resume_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    vial_count: int
    refill_interval_days: int
    billing_provider_subscription_id: Optional[str] = None
    billing_sync_status: BillingSyncStatus
    extension: SubscriptionExtensionOut
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubscriptionActionOut(BaseModel):
    id: UUID
    subscription_id: UUID
    action_type: SubscriptionActionType
    reason: Optional[str] = None
    paused_until: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    performed_by: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LifecycleResponse(BaseModel):
    """Respuesta de las operaciones de ciclo de vida."""
    success: bool
    subscription: Optional[SubscriptionOut] = None
    error: Optional[str] = None


class SubscriptionDetail(SubscriptionOut):
    """Suscripción con sus acciones recientes."""
    actions: List[SubscriptionActionOut] = []


class ReconcileResponse(BaseModel):
    skipped: bool = False
    reason: Optional[str] = None
    processed: int = 0
    confirmed: int = 0
    errors: List[str] = []
