"""
Tests for the payment webhook endpoint.

Deliveries are signed for the fake gateway with the literal "valid".
"""

import json
from unittest.mock import patch

import pytest

from billing_engine.domain.subscription import PaymentOutcome, SubscriptionStatus
from billing_engine.infrastructure.exceptions import ConcurrentModificationError

from tests.conftest import FakeGateway


WEBHOOK_URL = "/api/webhooks/payments"


def _delivery(reference: str, event_id: str = "evt_1", event_type: str = "charge.completed") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "reference": reference}).encode()


def _headers(signature: str = "valid") -> dict:
    return {FakeGateway.signature_header: signature, "content-type": "application/json"}


@pytest.mark.asyncio
async def test_bad_signature_rejected(async_client, service, user, plans):
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)

    response = await async_client.post(
        WEBHOOK_URL, content=_delivery(checkout.reference), headers=_headers("forged")
    )

    assert response.status_code == 400
    assert response.json()["error"] == "WebhookVerificationError"


@pytest.mark.asyncio
async def test_missing_signature_rejected(async_client):
    response = await async_client.post(
        WEBHOOK_URL, content=_delivery("fake_1"), headers={"content-type": "application/json"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_successful_payment_activates(async_client, service, gateway, dispatcher, user, plans):
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)
    gateway.settle(checkout.reference, PaymentOutcome.SUCCESSFUL)

    response = await async_client.post(
        WEBHOOK_URL, content=_delivery(checkout.reference), headers=_headers()
    )

    assert response.status_code == 200
    assert response.json() == {
        "status": "success",
        "outcome": "successful",
        "subscription_id": checkout.subscription.id,
        "subscription_status": "active",
    }
    assert dispatcher.kinds() == ["welcome"]


@pytest.mark.asyncio
async def test_failed_apply_is_retried_by_redelivery(async_client, service, gateway, subscription_repo, user, plans):
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)
    gateway.settle(checkout.reference, PaymentOutcome.SUCCESSFUL)
    body = _delivery(checkout.reference)

    with patch.object(
        subscription_repo,
        "update_if_status",
        side_effect=ConcurrentModificationError("lost race"),
    ):
        failed = await async_client.post(WEBHOOK_URL, content=body, headers=_headers())
    redelivered = await async_client.post(WEBHOOK_URL, content=body, headers=_headers())

    assert failed.status_code == 409
    assert redelivered.status_code == 200
    assert redelivered.json()["subscription_status"] == "active"


@pytest.mark.asyncio
async def test_duplicate_delivery(async_client, service, gateway, user, plans):
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)
    gateway.settle(checkout.reference, PaymentOutcome.SUCCESSFUL)
    body = _delivery(checkout.reference)

    await async_client.post(WEBHOOK_URL, content=body, headers=_headers())
    response = await async_client.post(WEBHOOK_URL, content=body, headers=_headers())

    assert response.status_code == 200
    assert response.json() == {"status": "already_processed"}


@pytest.mark.asyncio
async def test_webhook_after_manual_verify(async_client, service, gateway, user, plans):
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)
    gateway.settle(checkout.reference, PaymentOutcome.SUCCESSFUL)
    await async_client.post(f"/api/payments/{checkout.reference}/verify")

    response = await async_client.post(
        WEBHOOK_URL, content=_delivery(checkout.reference), headers=_headers()
    )

    assert response.json() == {"status": "already_processed"}


@pytest.mark.asyncio
async def test_unsettled_charge_is_pending(async_client, service, user, plans):
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)

    response = await async_client.post(
        WEBHOOK_URL, content=_delivery(checkout.reference), headers=_headers()
    )

    assert response.json() == {"status": "pending"}
    stored = await service.get_subscription(checkout.subscription.id)
    assert stored.status == SubscriptionStatus.PENDING


@pytest.mark.asyncio
async def test_declined_renewal_enters_grace(async_client, service, gateway, clock, active_subscription):
    clock.set(active_subscription.current_period_end)
    started = await service.start_renewal(active_subscription.id)
    gateway.settle(started.reference, PaymentOutcome.FAILED)

    response = await async_client.post(
        WEBHOOK_URL, content=_delivery(started.reference, "evt_2"), headers=_headers()
    )

    body = response.json()
    assert body["outcome"] == "failed"
    assert body["subscription_status"] == "grace"


@pytest.mark.asyncio
async def test_other_event_types_ignored(async_client):
    response = await async_client.post(
        WEBHOOK_URL,
        content=_delivery("fake_1", event_type="customer.updated"),
        headers=_headers(),
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}


@pytest.mark.asyncio
async def test_unknown_reference_ignored(async_client, plans):
    response = await async_client.post(
        WEBHOOK_URL, content=_delivery("someone_elses_charge"), headers=_headers()
    )

    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}
