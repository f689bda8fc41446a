"""
Stripe Payment Gateway

Infrastructure adapter for Stripe payment processing.
Each charge is a one-off hosted Checkout Session in ``payment`` mode;
renewals are driven by the billing engine rather than Stripe Billing.

- Hosted Checkout for minimal PCI burden
- Webhook signatures always verified
- The Checkout Session id is the charge reference
"""

import asyncio
import json
import logging
from typing import Dict, Optional

import stripe
from stripe import StripeError

from billing_engine.domain.interfaces import (
    Customer,
    PaymentGateway,
    PaymentInitialization,
    PaymentNotification,
    PaymentVerification,
)
from billing_engine.domain.subscription import PaymentOutcome
from billing_engine.infrastructure.exceptions import (
    PaymentGatewayError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)

# Checkout events that change the outcome of a session
SETTLEMENT_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


class StripePaymentGateway(PaymentGateway):
    """
    Stripe payment gateway.

    The stripe SDK is synchronous; calls run in a worker thread so the
    caller's timeout can interrupt the wait.
    """

    name = "stripe"
    signature_header = "stripe-signature"

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: Optional[str] = None,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url or success_url

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def initialize_payment(
        self,
        amount: int,
        currency: str,
        customer: Customer,
        *,
        description: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentInitialization:
        """
        Create a hosted Checkout Session for a single charge.

        Args:
            amount: Amount in minor units
            currency: ISO currency code
            customer: Customer to prefill
            description: Line item name shown at checkout
            metadata: Stored on the session for reconciliation

        Returns:
            PaymentInitialization with the checkout URL and session id
        """
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._api_key,
                mode="payment",
                payment_method_types=["card"],
                customer_email=customer.email,
                client_reference_id=customer.user_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount,
                            "product_data": {"name": description},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{self._success_url}?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=self._cancel_url,
                metadata=metadata or {},
            )
        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise PaymentGatewayError(
                f"Failed to create checkout: {e.user_message or e}",
                gateway=self.name,
                original_error=e,
            )

        logger.info(f"Created checkout session {session.id} for user {customer.user_id}")
        return PaymentInitialization(
            reference=session.id,
            payment_link=session.url,
            status=PaymentOutcome.PENDING,
        )

    async def verify_payment(self, reference: str) -> PaymentVerification:
        """Retrieve a Checkout Session and normalize its payment status."""
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, reference, api_key=self._api_key
            )
        except StripeError as e:
            logger.error(f"Failed to retrieve checkout session {reference}: {e}")
            raise PaymentGatewayError(
                f"Failed to verify payment: {e.user_message or e}",
                gateway=self.name,
                reference=reference,
                original_error=e,
            )

        if session.payment_status in ("paid", "no_payment_required"):
            status = PaymentOutcome.SUCCESSFUL
        elif session.status == "expired":
            status = PaymentOutcome.FAILED
        else:
            status = PaymentOutcome.PENDING

        return PaymentVerification(
            reference=reference,
            status=status,
            amount=session.amount_total,
            currency=session.currency.upper() if session.currency else None,
            gateway_transaction_id=session.payment_intent if isinstance(session.payment_intent, str) else None,
            message=session.status,
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentNotification]:
        """
        Verify webhook signature and extract the Checkout Session id.

        Raises:
            WebhookVerificationError if signature invalid
        """
        if not signature:
            raise WebhookVerificationError("Missing Stripe signature", gateway=self.name)

        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}", gateway=self.name, original_error=e)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}", gateway=self.name, original_error=e)

        event_type = event["type"]
        if event_type not in SETTLEMENT_EVENTS:
            logger.debug(f"Ignoring Stripe event type: {event_type}")
            return None

        session = event["data"]["object"]
        return PaymentNotification(
            event_id=event["id"],
            event_type=event_type,
            reference=session["id"],
            raw=json.loads(payload),
        )
