"""
SQLModel ORM Models for the Billing Engine

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from billing_engine.infrastructure.db.models.base import (
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
)
from billing_engine.infrastructure.db.models.user_account import UserAccountModel
from billing_engine.infrastructure.db.models.plan import PlanModel
from billing_engine.infrastructure.db.models.subscription import SubscriptionModel
from billing_engine.infrastructure.db.models.transaction import TransactionModel
from billing_engine.infrastructure.db.models.processed_payment_event import (
    ProcessedPaymentEventModel,
)


__all__ = [
    # Base
    "TimestampMixin",
    "UTCDateTime",
    "UUIDMixin",
    # Tables
    "UserAccountModel",
    "PlanModel",
    "SubscriptionModel",
    "TransactionModel",
    "ProcessedPaymentEventModel",
]
