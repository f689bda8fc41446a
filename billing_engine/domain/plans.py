"""
Plan Catalog Domain Models

Plans, billing periods and per-feature usage limits.
Plans are immutable once published: a price change produces a new
plan version that supersedes the old one.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BillingPeriod(str, Enum):
    """Billing period for subscriptions."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


# =============================================================================
# Feature Limits
# =============================================================================

class FiniteLimit(BaseModel):
    """A feature capped at a fixed amount of usage."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["finite"] = "finite"
    value: int = Field(ge=0)

    def allows(self, usage: int) -> bool:
        return usage < self.value


class UnlimitedLimit(BaseModel):
    """A feature with no usage cap."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["unlimited"] = "unlimited"

    def allows(self, usage: int) -> bool:
        return True


FeatureLimit = Annotated[Union[FiniteLimit, UnlimitedLimit], Field(discriminator="kind")]


# =============================================================================
# Domain Entities
# =============================================================================

class Plan(BaseModel):
    """
    A purchasable plan.

    Prices are integer minor currency units (cents, kobo). ``features`` keeps
    insertion order so plan pages render limits in the order they were defined.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: Optional[str] = None
    name: str
    monthly_price: int = Field(ge=0)
    annual_price: int = Field(ge=0)
    currency: str = "USD"
    features: dict[str, FeatureLimit] = Field(default_factory=dict)
    is_active: bool = True
    version: int = 1
    supersedes_id: Optional[str] = None
    created_at: Optional[datetime] = None

    def price_for(self, billing_period: BillingPeriod) -> int:
        """Price of one billing period, in minor units."""
        if billing_period == BillingPeriod.ANNUAL:
            return self.annual_price
        return self.monthly_price

    def limit_for(self, feature: str) -> Optional[FeatureLimit]:
        """Limit configured for a feature, or None if the plan lacks it."""
        return self.features.get(feature)

    def permits(self, feature: str, usage: int = 0) -> bool:
        """Whether the plan allows one more use of ``feature`` given current usage."""
        limit = self.limit_for(feature)
        if limit is None:
            return False
        return limit.allows(usage)


# =============================================================================
# Request DTOs
# =============================================================================

class PlanCreate(BaseModel):
    """Request DTO for publishing a new plan."""
    name: str = Field(..., min_length=1, max_length=100)
    monthly_price: int = Field(..., ge=0, description="Monthly price in minor units")
    annual_price: int = Field(..., ge=0, description="Annual price in minor units")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    features: dict[str, FeatureLimit] = Field(default_factory=dict)


class PlanPriceRevision(BaseModel):
    """Request DTO for publishing a new version of a plan with different prices."""
    monthly_price: int = Field(..., ge=0)
    annual_price: int = Field(..., ge=0)
    features: Optional[dict[str, FeatureLimit]] = Field(
        default=None,
        description="Replacement feature limits; omitted keeps the current ones",
    )
