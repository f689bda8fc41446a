"""
Transaction Database Model

Append-only payment ledger.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from billing_engine.infrastructure.db.models.base import UTCDateTime, utcnow


class TransactionModel(SQLModel, table=True):
    """
    Ledger table. Rows are inserted, never updated; ``id`` is the insertion order.
    """

    __tablename__ = "transactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    subscription_id: str = Field(foreign_key="subscriptions.id", index=True, max_length=36)

    amount: int = Field(nullable=False)
    currency: str = Field(max_length=3)
    status: str = Field(max_length=20)
    type: str = Field(max_length=32)
    plan_id: Optional[str] = Field(default=None, foreign_key="plans.id", max_length=36)
    previous_plan_id: Optional[str] = Field(default=None, foreign_key="plans.id", max_length=36)

    gateway: Optional[str] = Field(default=None, max_length=32)
    gateway_reference: Optional[str] = Field(default=None, index=True, max_length=255)
    error: Optional[str] = Field(default=None, max_length=1000)
    processed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    renews_period_end: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, nullable=False)
