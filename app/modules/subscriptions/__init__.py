"""
Patient subscription module.

Lifecycle of recurring billing agreements between patients and clinics, kept
consistent with the billing provider, plus their audit trail.
"""

from .models import (
    Subscription,
    SubscriptionAction,
    SubscriptionStatus,
    SubscriptionActionType,
    BillingInterval,
    BillingSyncStatus,
    SubscriptionExtension,
)
from .service import SubscriptionLifecycleService, RefillScheduler, LifecycleResult

__all__ = [
    # Models
    "Subscription",
    "SubscriptionAction",
    "SubscriptionStatus",
    "SubscriptionActionType",
    "BillingInterval",
    "BillingSyncStatus",
    "SubscriptionExtension",

    # Service
    "SubscriptionLifecycleService",
    "RefillScheduler",
    "LifecycleResult",
]
