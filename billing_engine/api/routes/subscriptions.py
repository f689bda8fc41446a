"""
Subscription API Routes

REST API endpoints for the subscription lifecycle. Routes are thin: domain
errors propagate to the exception handlers registered in ``main``.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, status

from billing_engine.api.dependencies import SettingsDep, SubscriptionServiceDep
from billing_engine.domain.subscription import (
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CheckoutResponse,
    CreateSubscriptionRequest,
    FeatureAccessResponse,
    FeatureLimitsResponse,
    PaymentOutcome,
    PlanChangeResponse,
    ProrationResponse,
    SubscriptionResponse,
    Transaction,
)
from billing_engine.infrastructure.exceptions import PaymentDeclinedError


logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(subscription) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(subscription, from_attributes=True)


# =============================================================================
# Subscription Endpoints
# =============================================================================

@router.post(
    "/subscriptions",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    service: SubscriptionServiceDep,
    settings: SettingsDep,
):
    """
    Start a subscription.

    Returns the pending subscription and the gateway payment link. Free
    plans come back already active with no link.
    """
    checkout = await service.create_subscription(
        request.user_id,
        request.plan_id,
        request.billing_period,
        timeout=settings.payment_gateway_timeout_seconds,
    )
    return CheckoutResponse(
        subscription=_to_response(checkout.subscription),
        payment_link=checkout.payment_link,
        reference=checkout.reference,
    )


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: str, service: SubscriptionServiceDep):
    return _to_response(await service.get_subscription(subscription_id))


@router.post("/subscriptions/{subscription_id}/plan", response_model=PlanChangeResponse)
async def change_plan(
    subscription_id: str,
    request: ChangePlanRequest,
    service: SubscriptionServiceDep,
    settings: SettingsDep,
):
    """
    Upgrade or downgrade mid-period.

    An upgrade returns a payment link for the prorated difference; a
    downgrade is credited in the ledger.
    """
    change = await service.update_subscription(
        subscription_id,
        request.plan_id,
        timeout=settings.payment_gateway_timeout_seconds,
    )
    proration = change.proration
    return PlanChangeResponse(
        subscription=_to_response(change.subscription),
        previous_plan_id=change.previous_plan_id,
        proration=ProrationResponse(
            remaining_fraction=str(proration.remaining_fraction),
            unused_credit=proration.unused_credit,
            new_charge=proration.new_charge,
            proration_amount=proration.proration_amount,
            is_upgrade=proration.is_upgrade,
        ),
        payment_link=change.payment_link,
        reference=change.reference,
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    service: SubscriptionServiceDep,
    request: Optional[CancelSubscriptionRequest] = None,
):
    """Cancel at period end (default) or immediately."""
    request = request or CancelSubscriptionRequest()
    subscription = await service.cancel_subscription(
        subscription_id,
        immediate=request.immediate,
        reason=request.reason,
    )
    return _to_response(subscription)


@router.get("/subscriptions/{subscription_id}/transactions", response_model=List[Transaction])
async def list_transactions(subscription_id: str, service: SubscriptionServiceDep):
    """Ledger rows for a subscription, oldest first."""
    return await service.list_transactions(subscription_id)


# =============================================================================
# User Endpoints
# =============================================================================

@router.get("/users/{user_id}/subscription", response_model=Optional[SubscriptionResponse])
async def get_user_subscription(user_id: str, service: SubscriptionServiceDep):
    """The user's pending, active or grace subscription, or null."""
    subscription = await service.get_user_subscription(user_id)
    return _to_response(subscription) if subscription else None


@router.get("/users/{user_id}/subscriptions", response_model=List[SubscriptionResponse])
async def list_user_subscriptions(user_id: str, service: SubscriptionServiceDep):
    """Every subscription the user has held, newest first."""
    return [_to_response(s) for s in await service.list_user_subscriptions(user_id)]


@router.get("/users/{user_id}/features", response_model=FeatureLimitsResponse)
async def get_feature_limits(user_id: str, service: SubscriptionServiceDep):
    limits = await service.get_feature_limits(user_id)
    return FeatureLimitsResponse(plan=limits.plan, features=limits.features)


@router.get("/users/{user_id}/features/{feature}", response_model=FeatureAccessResponse)
async def check_feature_access(
    user_id: str,
    feature: str,
    service: SubscriptionServiceDep,
    usage: int = 0,
):
    access = await service.check_feature_access(user_id, feature, usage)
    return FeatureAccessResponse(feature=access.feature, allowed=access.allowed, limit=access.limit)


# =============================================================================
# Payment Verification
# =============================================================================

@router.post("/payments/{reference}/verify", response_model=SubscriptionResponse)
async def verify_payment(
    reference: str,
    service: SubscriptionServiceDep,
    settings: SettingsDep,
):
    """
    Verify a charge with the gateway and apply it.

    Called when the customer returns from the payment page. Safe to call
    repeatedly and alongside the webhook: a charge is applied once. A
    declined charge is applied first and then reported as 402.
    """
    application = await service.apply_payment_outcome(
        reference,
        timeout=settings.payment_gateway_timeout_seconds,
    )
    settlement = application.settlement
    if settlement.outcome == PaymentOutcome.FAILED:
        raise PaymentDeclinedError(
            settlement.error or "Payment declined",
            gateway=settlement.charge.gateway,
            reference=reference,
        )
    return _to_response(application.subscription)
