"""
CRUD operations for patient subscriptions.

Writes that belong to a lifecycle transition live in service.py; these are the
lookups and listings it and the routers share.
"""
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, and_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Subscription, SubscriptionStatus, BillingSyncStatus


async def get_subscription(
    db: AsyncSession,
    subscription_id: UUID,
    clinic_id: Optional[UUID] = None
) -> Optional[Subscription]:
    """Obtener suscripción por ID (limitada a la clínica si se indica)."""
    conditions = [Subscription.id == subscription_id]
    if clinic_id is not None:
        conditions.append(Subscription.clinic_id == clinic_id)
    result = await db.execute(select(Subscription).where(and_(*conditions)))
    return result.scalar_one_or_none()


async def get_subscriptions(
    db: AsyncSession,
    clinic_id: UUID,
    patient_id: Optional[UUID] = None,
    status: Optional[SubscriptionStatus] = None,
    skip: int = 0,
    limit: int = 20
) -> List[Subscription]:
    """Obtener lista de suscripciones de una clínica."""
    conditions = [Subscription.clinic_id == clinic_id]
    if patient_id:
        conditions.append(Subscription.patient_id == patient_id)
    if status:
        conditions.append(Subscription.status == status.value)

    query = (
        select(Subscription)
        .where(and_(*conditions))
        .order_by(desc(Subscription.created_at))
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_active_subscription_for_patient(
    db: AsyncSession,
    patient_id: UUID
) -> Optional[Subscription]:
    """Suscripción vigente más reciente (activa, pausada o en mora)."""
    result = await db.execute(
        select(Subscription)
        .where(
            and_(
                Subscription.patient_id == patient_id,
                Subscription.status.in_([
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.PAUSED.value,
                    SubscriptionStatus.PAST_DUE.value
                ])
            )
        )
        .order_by(desc(Subscription.created_at))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count_other_active_subscriptions(
    db: AsyncSession,
    patient_id: UUID,
    exclude_subscription_id: UUID
) -> int:
    result = await db.execute(
        select(func.count(Subscription.id)).where(
            and_(
                Subscription.patient_id == patient_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.id != exclude_subscription_id
            )
        )
    )
    return result.scalar_one()


async def get_unsynced_subscriptions(
    db: AsyncSession,
    clinic_id: Optional[UUID] = None,
    limit: int = 100
) -> List[Subscription]:
    """
    Suscripciones creadas localmente que nunca se confirmaron en el proveedor.
    Las canceladas se excluyen: no tiene sentido crearlas remotamente.
    """
    conditions = [
        Subscription.billing_sync_status.in_([
            BillingSyncStatus.PENDING.value,
            BillingSyncStatus.FAILED.value
        ]),
        Subscription.billing_provider_subscription_id.is_(None),
        Subscription.status != SubscriptionStatus.CANCELED.value
    ]
    if clinic_id is not None:
        conditions.append(Subscription.clinic_id == clinic_id)

    result = await db.execute(
        select(Subscription)
        .where(and_(*conditions))
        .order_by(Subscription.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())
