"""
Payment Webhook Handler

Receives settlement notifications from the configured gateway. The
notification only identifies the charge: its outcome is always re-verified
with the gateway before it is applied, and each charge is applied at most
once however many times the gateway delivers it.

Responses:
- 200 {"status": "success"}: outcome applied
- 200 {"status": "already_processed"}: duplicate delivery
- 200 {"status": "pending"}: gateway has not settled the charge yet
- 200 {"status": "ignored"}: event type or reference not ours
- 400: signature or payload rejected
- 502: gateway unreachable during verification (the gateway retries)
"""

import logging

from fastapi import APIRouter, Request

from billing_engine.api.dependencies import (
    PaymentOrchestratorDep,
    SettingsDep,
    SubscriptionServiceDep,
)
from billing_engine.infrastructure.exceptions import TransactionNotFoundError


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    orchestrator: PaymentOrchestratorDep,
    service: SubscriptionServiceDep,
    settings: SettingsDep,
):
    """Verify the signature, then settle and apply the referenced charge."""
    payload = await request.body()
    signature = request.headers.get(orchestrator.gateway.signature_header)

    notification = orchestrator.parse_webhook(payload, signature)
    if notification is None:
        return {"status": "ignored"}

    logger.info(
        f"Processing {orchestrator.gateway.name} webhook {notification.event_type} "
        f"({notification.event_id}) for {notification.reference}"
    )

    try:
        application = await service.apply_payment_outcome(
            notification.reference,
            timeout=settings.payment_gateway_timeout_seconds,
        )
    except TransactionNotFoundError:
        logger.warning(f"Webhook for unknown charge {notification.reference}, ignoring")
        return {"status": "ignored"}

    settlement = application.settlement
    if settlement.already_processed:
        logger.info(f"Charge {notification.reference} already processed, skipping")
        return {"status": "already_processed"}
    if not settlement.is_final:
        return {"status": "pending"}

    return {
        "status": "success",
        "outcome": settlement.outcome.value,
        "subscription_id": application.subscription.id,
        "subscription_status": application.subscription.status.value,
    }
