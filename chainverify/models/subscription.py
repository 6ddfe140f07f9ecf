"""
Subscription model - one active subscription per user
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from chainverify.database import Base
from chainverify.utils.timezone import utc_now_naive


class Subscription(Base):
    """Subscription table"""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    plan_id: Mapped[str] = mapped_column(String(36))
    status: Mapped[str] = mapped_column(String(16), default="active")
    payment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)  # payment that activated it
    current_period_start: Mapped[datetime] = mapped_column(DateTime)
    current_period_end: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    def __repr__(self):
        return f"<Subscription {self.user_id}: {self.plan_id} until {self.current_period_end}>"
