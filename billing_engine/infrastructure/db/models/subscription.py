"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field

from billing_engine.infrastructure.db.models.base import (
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
)


OPEN_STATUS_PREDICATE = "status IN ('pending', 'active', 'grace')"


class SubscriptionModel(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription table for storing user subscription data.

    Maps to the 'subscriptions' table. Rows are never deleted.
    The partial unique index allows any number of cancelled or expired
    rows per user but only one open one.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_user_open",
            "user_id",
            unique=True,
            sqlite_where=text(OPEN_STATUS_PREDICATE),
            postgresql_where=text(OPEN_STATUS_PREDICATE),
        ),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    plan_id: str = Field(foreign_key="plans.id", max_length=36)

    # Subscription details
    billing_period: str = Field(default="monthly", max_length=20)
    status: str = Field(default="pending", max_length=20)
    is_active: bool = Field(default=False)

    # Billing period dates
    current_period_start: datetime = Field(sa_type=UTCDateTime, nullable=False)
    current_period_end: datetime = Field(sa_type=UTCDateTime, nullable=False)

    # Cancellation
    cancel_at_period_end: bool = Field(default=False)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)

    # Payments and dunning
    last_payment_date: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    last_payment_amount: Optional[int] = Field(default=None)
    failed_payment_attempts: int = Field(default=0)
    grace_period_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime, index=True)
    expired_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Optimistic concurrency
    version: int = Field(default=1, nullable=False)
