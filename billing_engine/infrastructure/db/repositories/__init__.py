"""
Repository Layer for the Billing Engine

Exports all repository classes for dependency injection.
"""

from billing_engine.infrastructure.db.repositories.plan_repository import PlanRepository
from billing_engine.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from billing_engine.infrastructure.db.repositories.transaction_repository import (
    TransactionRepository,
)
from billing_engine.infrastructure.db.repositories.payment_event_repository import (
    ProcessedEventRepository,
)
from billing_engine.infrastructure.db.repositories.user_repository import UserRepository


__all__ = [
    "PlanRepository",
    "SubscriptionRepository",
    "TransactionRepository",
    "ProcessedEventRepository",
    "UserRepository",
]
