"""
Pydantic schemas for the refill queue.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from uuid import UUID

from .models import RefillStatus, PaymentVerificationMethod


def _assume_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class RefillQueueFilters(BaseModel):
    """Filtros de la cola administrativa."""
    clinic_id: Optional[UUID] = None
    patient_id: Optional[UUID] = None
    status: Optional[List[RefillStatus]] = None
    due_before: Optional[datetime] = None
    due_after: Optional[datetime] = None

    @field_validator("due_before", "due_after")
    @classmethod
    def assume_utc(cls, v):
        return _assume_utc(v)


class PaymentVerificationRequest(BaseModel):
    method: PaymentVerificationMethod = PaymentVerificationMethod.MANUAL_VERIFIED
    payment_reference: Optional[str] = Field(None, max_length=255)


class AdminDecisionRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class EarlyRefillRequest(BaseModel):
    patient_id: UUID
    subscription_id: Optional[UUID] = None
    notes: Optional[str] = Field(None, max_length=1000)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class RefillUpdate(BaseModel):
    """Campos editables de un resurtido; los ausentes no se modifican."""
    next_refill_date: Optional[datetime] = None
    plan_name: Optional[str] = Field(None, max_length=200)
    medication_name: Optional[str] = Field(None, max_length=100)
    medication_strength: Optional[str] = Field(None, max_length=50)
    medication_form: Optional[str] = Field(None, max_length=50)

    @field_validator("next_refill_date")
    @classmethod
    def assume_utc(cls, v):
        return _assume_utc(v)


class RefillOut(BaseModel):
    id: UUID
    clinic_id: UUID
    patient_id: UUID
    subscription_id: Optional[UUID] = None
    status: RefillStatus
    vial_count: int
    refill_interval_days: int
    next_refill_date: datetime
    last_refill_date: Optional[datetime] = None
    payment_verified: bool
    payment_verified_at: Optional[datetime] = None
    payment_method: Optional[PaymentVerificationMethod] = None
    payment_reference: Optional[str] = None
    admin_approved: Optional[bool] = None
    admin_approved_at: Optional[datetime] = None
    admin_approved_by: Optional[UUID] = None
    admin_notes: Optional[str] = None
    provider_queued_at: Optional[datetime] = None
    prescribed_at: Optional[datetime] = None
    prescribed_by: Optional[UUID] = None
    order_id: Optional[str] = None
    requested_early: bool
    patient_notes: Optional[str] = None
    plan_name: Optional[str] = None
    medication_name: Optional[str] = None
    medication_strength: Optional[str] = None
    medication_form: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DispenseResponse(BaseModel):
    current: RefillOut
    next: Optional[RefillOut] = None


class RefillQueueStats(BaseModel):
    scheduled: int = 0
    pending_payment: int = 0
    pending_admin: int = 0
    approved: int = 0
    pending_provider: int = 0
    on_hold: int = 0
    total: int = 0


class SweepResponse(BaseModel):
    skipped: bool = False
    reason: Optional[str] = None
    processed: int = 0
    errors: List[str] = []
