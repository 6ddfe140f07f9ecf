"""
Subscription activation

Runs when a payment reaches `confirmed`. The write is an upsert keyed by
user_id, so repeating it for the same user never creates a second
active subscription.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainverify.models.subscription import Subscription
from chainverify.utils.timezone import utc_now_naive

logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIVE = "active"


def build_activation_statement(
    user_id: str,
    plan_id: str,
    period_start: datetime,
    period_end: datetime,
    payment_id: Optional[str] = None,
):
    """INSERT ... ON CONFLICT (user_id) DO UPDATE"""
    stmt = pg_insert(Subscription).values(
        id=str(uuid.uuid4()),
        user_id=user_id,
        plan_id=plan_id,
        status=SUBSCRIPTION_ACTIVE,
        payment_id=payment_id,
        current_period_start=period_start,
        current_period_end=period_end,
        created_at=period_start,
        updated_at=period_start,
    )
    return stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_={
            "plan_id": stmt.excluded.plan_id,
            "status": stmt.excluded.status,
            "payment_id": stmt.excluded.payment_id,
            "current_period_start": stmt.excluded.current_period_start,
            "current_period_end": stmt.excluded.current_period_end,
            "updated_at": stmt.excluded.updated_at,
        },
    )


class SubscriptionActivator:
    """Upserts the single active subscription of a user"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], period_days: int = 30):
        self.session_factory = session_factory
        self.period_days = period_days

    async def activate(
        self,
        user_id: str,
        plan_id: str,
        payment_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Activate (or renew) a user's subscription

        Args:
            user_id: subscriber
            plan_id: purchased plan
            payment_id: confirmed payment behind the activation
            now: period start, defaults to current UTC time

        Returns:
            the period written
        """
        period_start = now or utc_now_naive()
        period_end = period_start + timedelta(days=self.period_days)
        stmt = build_activation_statement(user_id, plan_id, period_start, period_end, payment_id)

        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        logger.info(f"Subscription activated for user {user_id} with plan {plan_id} until {period_end.isoformat()}")
        return {
            "user_id": user_id,
            "plan_id": plan_id,
            "current_period_start": period_start,
            "current_period_end": period_end,
        }
