"""
Audit log of subscription lifecycle transitions.

Rows are appended after the local transition commits, each in its own commit.
A failing audit write is logged and never changes the caller's result.
"""
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.common.mixins import utcnow
from .models import Subscription, SubscriptionAction, SubscriptionActionType

logger = logging.getLogger(__name__)


class AuditLog:
    """Escritura y consulta del historial de acciones de una suscripción."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        subscription: Subscription,
        action_type: SubscriptionActionType,
        reason: Optional[str] = None,
        paused_until: Optional[datetime] = None,
        cancellation_reason: Optional[str] = None,
        performed_by: Optional[UUID] = None,
        previous_plan_id: Optional[str] = None,
        new_plan_id: Optional[str] = None,
        previous_amount: Optional[int] = None,
        new_amount: Optional[int] = None
    ) -> Optional[SubscriptionAction]:
        action = SubscriptionAction(
            subscription_id=subscription.id,
            clinic_id=subscription.clinic_id,
            action_type=action_type.value,
            reason=reason,
            paused_until=paused_until,
            cancellation_reason=cancellation_reason,
            performed_by=performed_by,
            previous_plan_id=previous_plan_id,
            new_plan_id=new_plan_id,
            previous_amount=previous_amount,
            new_amount=new_amount,
            created_at=utcnow()
        )
        try:
            self.db.add(action)
            await self.db.commit()
        except Exception as e:
            subscription_id = subscription.id
            await self.db.rollback()
            logger.error(
                f"[AUDIT] Failed to record {action_type.value} for subscription {subscription_id}: {e}"
            )
            # rollback expires loaded instances; reload so callers can keep reading it
            await self.db.refresh(subscription)
            return None
        return action

    async def list_for_subscription(self, subscription_id: UUID, limit: int = 50) -> List[SubscriptionAction]:
        """Acciones más recientes primero."""
        result = await self.db.execute(
            select(SubscriptionAction)
            .where(SubscriptionAction.subscription_id == subscription_id)
            .order_by(SubscriptionAction.created_at.desc(), SubscriptionAction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_subscription(
        self,
        subscription_id: UUID,
        action_type: Optional[SubscriptionActionType] = None
    ) -> int:
        query = select(func.count(SubscriptionAction.id)).where(
            SubscriptionAction.subscription_id == subscription_id
        )
        if action_type is not None:
            query = query.where(SubscriptionAction.action_type == action_type.value)
        result = await self.db.execute(query)
        return result.scalar_one()
