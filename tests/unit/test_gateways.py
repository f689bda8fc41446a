"""
Unit tests for the payment gateway adapters.

Flutterwave is exercised against ``httpx.MockTransport``; the Stripe SDK
is patched where the adapter calls it. Webhook signatures are computed the
way each provider computes them.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe

from billing_engine.config.settings import Settings
from billing_engine.domain.interfaces import Customer
from billing_engine.domain.subscription import PaymentOutcome
from billing_engine.infrastructure.exceptions import (
    ConfigurationError,
    PaymentGatewayError,
    ValidationError,
    WebhookVerificationError,
)
from billing_engine.infrastructure.payments import (
    FlutterwavePaymentGateway,
    StripePaymentGateway,
    create_payment_gateway,
)
from billing_engine.infrastructure.payments.flutterwave_gateway import (
    sign_payload,
    to_major_units,
    to_minor_units,
)


CUSTOMER = Customer(user_id="user-1", email="ada@example.com", full_name="Ada Lovelace")


# =============================================================================
# Flutterwave
# =============================================================================

def flutterwave(handler) -> FlutterwavePaymentGateway:
    return FlutterwavePaymentGateway(
        secret_key="FLWSECK_TEST-secret",
        secret_hash="webhook-hash",
        redirect_url="https://app.example.test/billing/complete",
        base_url="https://api.flutterwave.test/v3",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestFlutterwaveUnits:

    def test_major_units(self):
        assert to_major_units(999, "USD") == "9.99"
        assert to_major_units(1000, "NGN") == "10"

    def test_minor_units(self):
        assert to_minor_units(9.99, "USD") == 999
        assert to_minor_units("29.99", "usd") == 2999
        assert to_minor_units(10, "KES") == 1000

    @pytest.mark.parametrize("currency", ["JPY", "xof", "KWD"])
    def test_non_two_decimal_currency_rejected(self, currency):
        with pytest.raises(ValidationError):
            to_major_units(1000, currency)
        with pytest.raises(ValidationError):
            to_minor_units(10, currency)


class TestFlutterwaveGateway:

    @pytest.mark.asyncio
    async def test_initialize_payment(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"status": "success", "data": {"link": "https://checkout.flutterwave.test/abc"}},
            )

        result = await flutterwave(handler).initialize_payment(
            999, "usd", CUSTOMER, description="Basic (monthly)", metadata={"subscription_id": "s-1"}
        )

        assert seen["path"] == "/v3/payments"
        assert seen["auth"] == "Bearer FLWSECK_TEST-secret"
        assert seen["body"]["amount"] == "9.99"
        assert seen["body"]["currency"] == "USD"
        assert seen["body"]["customer"]["email"] == "ada@example.com"
        assert seen["body"]["meta"] == {"subscription_id": "s-1"}
        assert result.reference == seen["body"]["tx_ref"]
        assert result.reference.startswith("sub_")
        assert result.payment_link == "https://checkout.flutterwave.test/abc"
        assert result.status == PaymentOutcome.PENDING

    @pytest.mark.asyncio
    async def test_initialize_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"status": "error", "message": "Invalid currency"})

        with pytest.raises(PaymentGatewayError, match="Invalid currency"):
            await flutterwave(handler).initialize_payment(999, "XXX", CUSTOMER, description="x")

    @pytest.mark.asyncio
    async def test_initialize_zero_decimal_currency_never_reaches_gateway(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"status": "success", "data": {"link": "x"}})

        with pytest.raises(ValidationError, match="JPY"):
            await flutterwave(handler).initialize_payment(1000, "JPY", CUSTOMER, description="x")
        assert requests == []

    @pytest.mark.asyncio
    async def test_transport_failure_is_gateway_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PaymentGatewayError) as exc_info:
            await flutterwave(handler).verify_payment("sub_1")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_verify_successful(self):
        def handler(request):
            assert request.url.path == "/v3/transactions/verify_by_reference"
            assert request.url.params["tx_ref"] == "sub_1"
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": {"id": 4242, "status": "successful", "amount": 9.99, "currency": "USD"},
                },
            )

        result = await flutterwave(handler).verify_payment("sub_1")

        assert result.status == PaymentOutcome.SUCCESSFUL
        assert result.amount == 999
        assert result.currency == "USD"
        assert result.gateway_transaction_id == "4242"

    @pytest.mark.asyncio
    async def test_verify_failed(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": {
                        "id": 1,
                        "status": "failed",
                        "amount": 9.99,
                        "currency": "USD",
                        "processor_response": "Insufficient funds",
                    },
                },
            )

        result = await flutterwave(handler).verify_payment("sub_1")

        assert result.status == PaymentOutcome.FAILED
        assert result.message == "Insufficient funds"

    @pytest.mark.asyncio
    async def test_verify_zero_decimal_currency_reports_no_amount(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": {"id": 7, "status": "successful", "amount": 1500, "currency": "JPY"},
                },
            )

        result = await flutterwave(handler).verify_payment("sub_1")

        assert result.status == PaymentOutcome.SUCCESSFUL
        assert result.amount is None
        assert result.currency == "JPY"

    @pytest.mark.asyncio
    async def test_verify_unknown_reference_is_pending(self):
        def handler(request):
            return httpx.Response(404, json={"status": "error", "message": "No transaction found"})

        result = await flutterwave(handler).verify_payment("sub_unpaid")

        assert result.status == PaymentOutcome.PENDING

    def test_webhook_valid_signature(self):
        payload = json.dumps(
            {"event": "charge.completed", "data": {"id": 77, "tx_ref": "sub_1", "status": "successful"}}
        ).encode()
        signature = hmac.new(b"webhook-hash", payload, hashlib.sha256).hexdigest()

        notification = flutterwave(lambda r: httpx.Response(200)).parse_webhook(payload, signature)

        assert notification.reference == "sub_1"
        assert notification.event_id == "77"
        assert notification.event_type == "charge.completed"

    def test_webhook_invalid_signature(self):
        payload = b'{"event": "charge.completed", "data": {"tx_ref": "sub_1"}}'

        with pytest.raises(WebhookVerificationError, match="Invalid signature"):
            flutterwave(lambda r: httpx.Response(200)).parse_webhook(payload, "0" * 64)

    def test_webhook_missing_signature(self):
        with pytest.raises(WebhookVerificationError, match="Missing"):
            flutterwave(lambda r: httpx.Response(200)).parse_webhook(b"{}", None)

    def test_webhook_other_event_ignored(self):
        payload = b'{"event": "transfer.completed", "data": {"id": 1}}'
        signature = sign_payload("webhook-hash", payload)

        assert flutterwave(lambda r: httpx.Response(200)).parse_webhook(payload, signature) is None


# =============================================================================
# Stripe
# =============================================================================

def stripe_signature(payload: bytes, secret: str) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestStripeGateway:

    @pytest.fixture
    def gateway(self):
        return StripePaymentGateway(
            api_key="sk_test_123",
            webhook_secret="whsec_test",
            success_url="https://app.example.test/billing/complete",
        )

    @pytest.mark.asyncio
    async def test_initialize_creates_checkout_session(self, gateway):
        with patch("billing_engine.infrastructure.payments.stripe_gateway.stripe.checkout.Session.create") as mock_create:
            mock_create.return_value = MagicMock(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")

            result = await gateway.initialize_payment(
                2999, "USD", CUSTOMER, description="Pro (monthly)", metadata={"subscription_id": "s-1"}
            )

        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["api_key"] == "sk_test_123"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 2999
        assert kwargs["line_items"][0]["price_data"]["currency"] == "usd"
        assert kwargs["metadata"] == {"subscription_id": "s-1"}
        assert result.reference == "cs_test_1"
        assert result.payment_link == "https://checkout.stripe.test/cs_test_1"

    @pytest.mark.asyncio
    async def test_initialize_error_is_gateway_error(self, gateway):
        with patch("billing_engine.infrastructure.payments.stripe_gateway.stripe.checkout.Session.create") as mock_create:
            mock_create.side_effect = stripe.StripeError("API unavailable")

            with pytest.raises(PaymentGatewayError):
                await gateway.initialize_payment(2999, "USD", CUSTOMER, description="Pro")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payment_status,status,expected",
        [
            ("paid", "complete", PaymentOutcome.SUCCESSFUL),
            ("unpaid", "expired", PaymentOutcome.FAILED),
            ("unpaid", "open", PaymentOutcome.PENDING),
        ],
    )
    async def test_verify_maps_session_status(self, gateway, payment_status, status, expected):
        session = MagicMock(
            payment_status=payment_status,
            status=status,
            amount_total=2999,
            currency="usd",
            payment_intent="pi_1",
        )
        with patch(
            "billing_engine.infrastructure.payments.stripe_gateway.stripe.checkout.Session.retrieve",
            return_value=session,
        ):
            result = await gateway.verify_payment("cs_test_1")

        assert result.status == expected
        assert result.amount == 2999
        assert result.currency == "USD"

    def test_webhook_settlement_event(self, gateway):
        payload = json.dumps(
            {
                "id": "evt_1",
                "object": "event",
                "type": "checkout.session.completed",
                "data": {"object": {"id": "cs_test_1", "object": "checkout.session"}},
            }
        ).encode()

        notification = gateway.parse_webhook(payload, stripe_signature(payload, "whsec_test"))

        assert notification.reference == "cs_test_1"
        assert notification.event_id == "evt_1"

    def test_webhook_invalid_signature(self, gateway):
        payload = b'{"id": "evt_1", "object": "event", "type": "checkout.session.completed"}'

        with pytest.raises(WebhookVerificationError):
            gateway.parse_webhook(payload, stripe_signature(payload, "whsec_wrong"))

    def test_webhook_other_event_ignored(self, gateway):
        payload = json.dumps(
            {"id": "evt_2", "object": "event", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        ).encode()

        assert gateway.parse_webhook(payload, stripe_signature(payload, "whsec_test")) is None


# =============================================================================
# Factory
# =============================================================================

class TestCreatePaymentGateway:

    def test_none_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            create_payment_gateway(Settings(_env_file=None, payment_provider="none"))

    def test_stripe(self):
        settings = Settings(
            _env_file=None,
            payment_provider="stripe",
            stripe_secret_key="sk_test",
            stripe_webhook_secret="whsec",
        )
        assert isinstance(create_payment_gateway(settings), StripePaymentGateway)

    def test_flutterwave(self):
        settings = Settings(
            _env_file=None,
            payment_provider="flutterwave",
            flutterwave_secret_key="FLWSECK_TEST",
            flutterwave_secret_hash="hash",
        )
        gateway = create_payment_gateway(settings, http_client=httpx.AsyncClient())
        assert isinstance(gateway, FlutterwavePaymentGateway)
        assert gateway.signature_header == "flutterwave-signature"
