"""
Subscription Domain Models

Domain models for the subscription lifecycle following Clean Architecture.
Enums, DTOs, and domain entities for the billing bounded context.
"""

import calendar
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.domain.plans import BillingPeriod, FeatureLimit, Plan


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    PENDING = "pending"
    ACTIVE = "active"
    GRACE = "grace"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)

    @property
    def grants_access(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE)


# A user may hold at most one subscription in any of these states.
NON_TERMINAL_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE,
)


class TransactionStatus(str, Enum):
    """Ledger row status."""
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"


class TransactionType(str, Enum):
    """What a ledger row pays for."""
    NEW_SUBSCRIPTION = "new_subscription"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"


class PaymentOutcome(str, Enum):
    """Normalized result of a payment attempt. Only SUCCESSFUL counts as payment."""
    SUCCESSFUL = "successful"
    FAILED = "failed"
    PENDING = "pending"


# =============================================================================
# Calendar Arithmetic
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_billing_period(moment: datetime, billing_period: BillingPeriod) -> datetime:
    """
    Advance ``moment`` by one billing period.

    Calendar months and years: Jan 31 + 1 month is Feb 28 (or 29),
    Feb 29 + 1 year is Feb 28.
    """
    if billing_period == BillingPeriod.ANNUAL:
        return _add_months(moment, 12)
    return _add_months(moment, 1)


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """
    Core subscription domain entity.

    Instances are never mutated in place; transitions produce a copy via
    ``model_copy(update=...)`` that is persisted with a conditional write.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: Optional[str] = None
    user_id: str
    plan_id: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    is_active: bool = False
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Optional[int] = None
    failed_payment_attempts: int = 0
    grace_period_end: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    """
    Append-only ledger row.

    ``amount`` is signed minor units: positive is owed by the customer,
    negative is a credit.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: Optional[str] = None
    user_id: str
    subscription_id: str
    amount: int
    currency: str
    status: TransactionStatus
    type: TransactionType
    plan_id: Optional[str] = None
    previous_plan_id: Optional[str] = None
    gateway: Optional[str] = None
    gateway_reference: Optional[str] = None
    error: Optional[str] = None
    processed_at: Optional[datetime] = None
    renews_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request DTO for starting a subscription."""
    user_id: str = Field(..., description="Internal user ID")
    plan_id: str = Field(..., description="Plan to subscribe to")
    billing_period: BillingPeriod = Field(
        default=BillingPeriod.MONTHLY,
        description="Billing period (monthly or annual)"
    )


class ChangePlanRequest(BaseModel):
    """Request DTO for an upgrade or downgrade."""
    plan_id: str = Field(..., description="Target plan")


class CancelSubscriptionRequest(BaseModel):
    """Request DTO for cancelling a subscription."""
    immediate: bool = Field(
        default=False,
        description="Cancel now instead of at the end of the current period"
    )
    reason: Optional[str] = Field(default=None, max_length=500)


class RenewalOutcomeRequest(BaseModel):
    """Request DTO for reporting a renewal payment outcome."""
    outcome: PaymentOutcome
    amount: Optional[int] = Field(default=None, ge=0)


class SubscriptionResponse(BaseModel):
    """Response DTO for a subscription."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    plan_id: str
    billing_period: BillingPeriod
    status: SubscriptionStatus
    is_active: bool
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Optional[int] = None
    failed_payment_attempts: int
    grace_period_end: Optional[datetime] = None
    expired_at: Optional[datetime] = None


class CheckoutResponse(BaseModel):
    """Response DTO for subscription creation."""
    subscription: SubscriptionResponse
    payment_link: Optional[str] = None
    reference: Optional[str] = None


class ProrationResponse(BaseModel):
    """Response DTO for a computed proration."""
    remaining_fraction: str
    unused_credit: int
    new_charge: int
    proration_amount: int
    is_upgrade: bool


class PlanChangeResponse(BaseModel):
    """Response DTO for a plan change."""
    subscription: SubscriptionResponse
    previous_plan_id: str
    proration: ProrationResponse
    payment_link: Optional[str] = None
    reference: Optional[str] = None


class FeatureAccessResponse(BaseModel):
    """Response DTO for a feature access check."""
    feature: str
    allowed: bool
    limit: Optional[FeatureLimit] = None


class FeatureLimitsResponse(BaseModel):
    """Response DTO for the limits granted by a user's current plan."""
    plan: Optional[Plan] = None
    features: dict[str, FeatureLimit] = Field(default_factory=dict)
