"""
Lookups for refill queue items.
"""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, and_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from .models import RefillQueueItem, ACTIVE_REFILL_STATUSES, RefillStatus
from .schemas import RefillQueueFilters


async def get_refill(
    db: AsyncSession,
    refill_id: UUID,
    clinic_id: Optional[UUID] = None
) -> Optional[RefillQueueItem]:
    conditions = [RefillQueueItem.id == refill_id]
    if clinic_id is not None:
        conditions.append(RefillQueueItem.clinic_id == clinic_id)
    result = await db.execute(select(RefillQueueItem).where(and_(*conditions)))
    return result.scalar_one_or_none()


async def get_active_refill_for_subscription(
    db: AsyncSession,
    subscription_id: UUID
) -> Optional[RefillQueueItem]:
    result = await db.execute(
        select(RefillQueueItem)
        .where(
            and_(
                RefillQueueItem.subscription_id == subscription_id,
                RefillQueueItem.status.in_(ACTIVE_REFILL_STATUSES)
            )
        )
        .order_by(desc(RefillQueueItem.created_at))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_active_refill_for_patient(
    db: AsyncSession,
    patient_id: UUID,
    subscription_id: Optional[UUID] = None
) -> Optional[RefillQueueItem]:
    conditions = [
        RefillQueueItem.patient_id == patient_id,
        RefillQueueItem.status.in_(ACTIVE_REFILL_STATUSES)
    ]
    if subscription_id is not None:
        conditions.append(RefillQueueItem.subscription_id == subscription_id)
    result = await db.execute(
        select(RefillQueueItem)
        .where(and_(*conditions))
        .order_by(desc(RefillQueueItem.created_at))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_due_refills(
    db: AsyncSession,
    now: datetime,
    clinic_id: Optional[UUID] = None
) -> List[RefillQueueItem]:
    """Resurtidos programados cuya fecha ya llegó, los más antiguos primero."""
    conditions = [
        RefillQueueItem.status == RefillStatus.SCHEDULED.value,
        RefillQueueItem.next_refill_date <= now
    ]
    if clinic_id is not None:
        conditions.append(RefillQueueItem.clinic_id == clinic_id)
    result = await db.execute(
        select(RefillQueueItem)
        .where(and_(*conditions))
        .order_by(RefillQueueItem.next_refill_date)
    )
    return list(result.scalars().all())


async def get_refill_queue(db: AsyncSession, filters: RefillQueueFilters) -> List[RefillQueueItem]:
    conditions = []
    if filters.clinic_id:
        conditions.append(RefillQueueItem.clinic_id == filters.clinic_id)
    if filters.patient_id:
        conditions.append(RefillQueueItem.patient_id == filters.patient_id)
    if filters.status:
        conditions.append(RefillQueueItem.status.in_([s.value for s in filters.status]))
    if filters.due_before:
        conditions.append(RefillQueueItem.next_refill_date <= filters.due_before)
    if filters.due_after:
        conditions.append(RefillQueueItem.next_refill_date >= filters.due_after)

    query = select(RefillQueueItem)
    if conditions:
        query = query.where(and_(*conditions))
    query = query.order_by(RefillQueueItem.status, RefillQueueItem.next_refill_date)

    result = await db.execute(query)
    return list(result.scalars().all())


async def count_by_status(db: AsyncSession, clinic_id: UUID) -> dict:
    result = await db.execute(
        select(RefillQueueItem.status, func.count(RefillQueueItem.id))
        .where(RefillQueueItem.clinic_id == clinic_id)
        .group_by(RefillQueueItem.status)
    )
    return {status: count for status, count in result.all()}


async def get_patient_refill_history(
    db: AsyncSession,
    patient_id: UUID,
    clinic_id: Optional[UUID] = None,
    limit: int = 20
) -> List[RefillQueueItem]:
    query = select(RefillQueueItem).where(RefillQueueItem.patient_id == patient_id)
    if clinic_id is not None:
        query = query.where(RefillQueueItem.clinic_id == clinic_id)
    result = await db.execute(query.order_by(desc(RefillQueueItem.created_at)).limit(limit))
    return list(result.scalars().all())
