"""
Models for clinics and patients.
"""
from sqlalchemy import Column, String, Boolean, JSON, Uuid
from sqlalchemy.ext.mutable import MutableList
import uuid

from app.database.database import Base
from app.common.mixins import ClinicScopedMixin, TimestampMixin

ACTIVE_SUBSCRIPTION_TAG = "active-subscription"


class Clinic(Base, TimestampMixin):
    """
    Tenant. Routes billing calls to its Stripe Connect account and decides
    whether refills need an administrative approval step.
    """
    __tablename__ = "clinics"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)

    # null = platform Stripe account
    stripe_account_id = Column(String(100), nullable=True)
    refill_requires_admin_approval = Column(Boolean, nullable=False, default=True)

    default_medication_name = Column(String(100), nullable=True)
    default_medication_strength = Column(String(50), nullable=True)
    default_medication_form = Column(String(50), nullable=True)

    def __str__(self):
        return self.name


class Patient(Base, ClinicScopedMixin, TimestampMixin):
    __tablename__ = "patients"

    id = Column(Uuid(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    email = Column(String(255), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    stripe_customer_id = Column(String(100), nullable=True)
    tags = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Patient"

    def add_tags(self, *tags: str) -> None:
        current = list(self.tags or [])
        for tag in tags:
            if tag not in current:
                current.append(tag)
        self.tags = current

    def remove_tag(self, tag: str) -> None:
        self.tags = [t for t in (self.tags or []) if t != tag]
