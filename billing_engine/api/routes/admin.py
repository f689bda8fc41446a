"""
Admin Routes for Billing Operations

Scheduler entry points (renewal, grace expiry and reminder sweeps),
single-subscription maintenance, and the user directory mirror.
Protected by API key authentication.
"""

import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from billing_engine.api.dependencies import SettingsDep, SubscriptionServiceDep, UserRepoDep
from billing_engine.config.settings import Settings, get_settings
from billing_engine.domain.interfaces import Customer
from billing_engine.domain.subscription import RenewalOutcomeRequest, SubscriptionResponse


logger = logging.getLogger(__name__)


# =============================================================================
# Admin API Key Authentication
# =============================================================================

async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations"),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify admin API key from header.

    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    expected_key = settings.admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # Constant-time comparison
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


# =============================================================================
# Response Models
# =============================================================================

class SweepResult(BaseModel):
    """Response from a sweep endpoint."""
    processed: int
    subscription_ids: List[str] = Field(default_factory=list)


class RenewalStartResponse(BaseModel):
    subscription: SubscriptionResponse
    reference: Optional[str] = None
    payment_link: Optional[str] = None
    created: bool


class UserMirrorRequest(BaseModel):
    """A user as known to the identity provider."""
    user_id: str = Field(..., max_length=36)
    email: str = Field(..., max_length=320)
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)


def _to_response(subscription) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(subscription, from_attributes=True)


# =============================================================================
# Sweeps
# =============================================================================

@router.post("/sweeps/renewals", response_model=SweepResult)
async def run_renewal_sweep(
    service: SubscriptionServiceDep,
    settings: SettingsDep,
    limit: Optional[int] = None,
):
    """
    Start renewal charges for subscriptions whose period has ended.

    Subscriptions flagged to cancel at period end are cancelled instead.
    """
    started = await service.run_due_renewals(
        limit,
        timeout=settings.payment_gateway_timeout_seconds,
    )
    return SweepResult(
        processed=len(started),
        subscription_ids=[item.subscription.id for item in started],
    )


@router.post("/sweeps/grace-expiry", response_model=SweepResult)
async def run_grace_expiry_sweep(service: SubscriptionServiceDep, limit: Optional[int] = None):
    """Expire grace subscriptions whose window has closed."""
    expired = await service.sweep_grace_expiries(limit)
    return SweepResult(
        processed=len(expired),
        subscription_ids=[subscription.id for subscription in expired],
    )


@router.post("/sweeps/reminders", response_model=SweepResult)
async def run_reminder_sweep(
    service: SubscriptionServiceDep,
    settings: SettingsDep,
    within_days: Optional[int] = None,
    limit: Optional[int] = None,
):
    """Send renewal reminders for periods ending soon."""
    sent = await service.send_renewal_reminders(
        within_days if within_days is not None else settings.renewal_reminder_days,
        limit,
    )
    return SweepResult(processed=sent)


# =============================================================================
# Single Subscription Maintenance
# =============================================================================

@router.post("/subscriptions/{subscription_id}/renew", response_model=RenewalStartResponse)
async def start_renewal(
    subscription_id: str,
    service: SubscriptionServiceDep,
    settings: SettingsDep,
):
    renewal = await service.start_renewal(
        subscription_id,
        timeout=settings.payment_gateway_timeout_seconds,
    )
    return RenewalStartResponse(
        subscription=_to_response(renewal.subscription),
        reference=renewal.reference,
        payment_link=renewal.payment_link,
        created=renewal.created,
    )


@router.post("/subscriptions/{subscription_id}/renewal-outcome", response_model=SubscriptionResponse)
async def record_renewal_outcome(
    subscription_id: str,
    request: RenewalOutcomeRequest,
    service: SubscriptionServiceDep,
):
    """Apply a renewal result reported outside the gateway flow (e.g. manual collection)."""
    subscription = await service.process_renewal(
        subscription_id,
        request.outcome,
        amount=request.amount,
    )
    return _to_response(subscription)


@router.post("/subscriptions/{subscription_id}/grace-check", response_model=SubscriptionResponse)
async def check_grace_expiry(subscription_id: str, service: SubscriptionServiceDep):
    return _to_response(await service.check_grace_expiry(subscription_id))


# =============================================================================
# User Directory
# =============================================================================

@router.post("/users", status_code=status.HTTP_201_CREATED)
async def mirror_user(request: UserMirrorRequest, users: UserRepoDep):
    """Register a user from the identity provider so they can subscribe."""
    customer = await users.add(
        Customer(
            user_id=request.user_id,
            email=request.email,
            full_name=request.full_name,
            phone=request.phone,
        )
    )
    logger.info(f"Mirrored user {customer.user_id}")
    return {"user_id": customer.user_id, "email": customer.email}
