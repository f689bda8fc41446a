"""
Collaborator Interfaces for the Billing Engine

Abstract contracts for persistence, payment gateways, the user directory
and notifications. The lifecycle services depend only on these; concrete
adapters live under ``billing_engine.infrastructure``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from billing_engine.domain.plans import Plan
from billing_engine.domain.subscription import (
    PaymentOutcome,
    Subscription,
    SubscriptionStatus,
    Transaction,
)


# =============================================================================
# Value Objects
# =============================================================================

@dataclass(frozen=True)
class Customer:
    """Customer details handed to the payment gateway."""
    user_id: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class PaymentInitialization:
    """Result of asking a gateway to start a charge."""
    reference: str
    payment_link: Optional[str] = None
    status: PaymentOutcome = PaymentOutcome.PENDING


@dataclass(frozen=True)
class PaymentVerification:
    """Gateway's view of a charge, normalized."""
    reference: str
    status: PaymentOutcome
    amount: Optional[int] = None  # minor units
    currency: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class PaymentNotification:
    """A verified webhook event that concerns a charge reference."""
    event_id: str
    event_type: str
    reference: str
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Persistence
# =============================================================================

class SubscriptionStore(ABC):
    """Subscription persistence with atomic constraints."""

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        """The user's non-terminal subscription, if any."""
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Subscription]:
        pass

    @abstractmethod
    async def insert_if_no_open(self, subscription: Subscription) -> Subscription:
        """
        Insert ``subscription`` unless the user already holds a non-terminal one.

        Raises:
            DuplicateActiveSubscriptionError: another open subscription exists
        """
        pass

    @abstractmethod
    async def update_if_status(
        self,
        subscription: Subscription,
        expected_status: SubscriptionStatus,
        expected_version: int,
    ) -> Subscription:
        """
        Persist ``subscription`` only if the stored row still has the expected
        status and version. Bumps the version.

        Raises:
            SubscriptionNotFoundError: no row with that id
            ConcurrentModificationError: the row changed underneath the caller
        """
        pass

    @abstractmethod
    async def find_grace_expired(self, now: datetime, limit: int) -> List[Subscription]:
        pass

    @abstractmethod
    async def find_due_for_renewal(self, now: datetime, limit: int) -> List[Subscription]:
        pass

    @abstractmethod
    async def find_renewing_between(
        self, start: datetime, end: datetime, limit: int
    ) -> List[Subscription]:
        pass


class PlanStore(ABC):
    """Plan persistence. Plans are created, read and deactivated, never repriced in place."""

    @abstractmethod
    async def create(self, plan: Plan) -> Plan:
        pass

    @abstractmethod
    async def get(self, plan_id: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def list_all(self, include_inactive: bool = False) -> List[Plan]:
        pass

    @abstractmethod
    async def deactivate(self, plan_id: str) -> Optional[Plan]:
        pass


class TransactionStore(ABC):
    """Append-only ledger."""

    @abstractmethod
    async def append(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get_charge(self, reference: str) -> Optional[Transaction]:
        """The original pending row recorded for a gateway reference."""
        pass

    @abstractmethod
    async def get_settlement(self, reference: str) -> Optional[Transaction]:
        """The settled row for a gateway reference, if one was recorded."""
        pass

    @abstractmethod
    async def list_for_subscription(self, subscription_id: str) -> List[Transaction]:
        pass


class ProcessedEventStore(ABC):
    """At-most-once claims for settled payments."""

    @abstractmethod
    async def claim(self, event_key: str, outcome: str) -> bool:
        """Record ``event_key``. Returns False if it was already claimed."""
        pass

    @abstractmethod
    async def release(self, event_key: str) -> None:
        """Drop a claim whose outcome could not be applied."""
        pass


class UserDirectory(ABC):
    """Read-only view of the external user store."""

    @abstractmethod
    async def get_customer(self, user_id: str) -> Optional[Customer]:
        pass


# =============================================================================
# Payment Gateway
# =============================================================================

class PaymentGateway(ABC):
    """
    Adapter over an external payment processor.

    Implementations normalize processor statuses to PaymentOutcome and
    raise PaymentGatewayError for transport or processor failures.
    """

    name: str = "gateway"
    signature_header: str = "x-signature"

    @abstractmethod
    async def initialize_payment(
        self,
        amount: int,
        currency: str,
        customer: Customer,
        *,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentInitialization:
        pass

    @abstractmethod
    async def verify_payment(self, reference: str) -> PaymentVerification:
        pass

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentNotification]:
        """
        Verify the signature and extract the charge reference.

        Returns None for verified events that do not concern a charge.

        Raises:
            WebhookVerificationError: missing or invalid signature, malformed body
        """
        pass


# =============================================================================
# Notifications
# =============================================================================

class NotificationDispatcher(ABC):
    """Fire-and-forget lifecycle notifications. Return values are ignored."""

    @abstractmethod
    async def send_welcome_email(self, subscription: Subscription, plan: Plan) -> None:
        pass

    @abstractmethod
    async def send_renewal_reminder(self, subscription: Subscription, plan: Plan) -> None:
        pass

    @abstractmethod
    async def send_cancellation_email(self, subscription: Subscription, plan: Plan) -> None:
        pass

    @abstractmethod
    async def send_payment_failed_email(self, subscription: Subscription, plan: Plan) -> None:
        pass

    @abstractmethod
    async def send_expired_email(self, subscription: Subscription, plan: Plan) -> None:
        pass
