"""
Payments Infrastructure Module

Payment gateway adapters and the factory that selects one from settings.
"""

from typing import Optional

import httpx

from billing_engine.config.settings import Settings
from billing_engine.domain.interfaces import PaymentGateway
from billing_engine.infrastructure.exceptions import ConfigurationError
from billing_engine.infrastructure.payments.flutterwave_gateway import FlutterwavePaymentGateway
from billing_engine.infrastructure.payments.stripe_gateway import StripePaymentGateway


def create_payment_gateway(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PaymentGateway:
    """Build the gateway adapter selected by PAYMENT_PROVIDER."""
    if settings.payment_provider == "stripe":
        return StripePaymentGateway(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            success_url=settings.payment_redirect_url,
        )

    if settings.payment_provider == "flutterwave":
        return FlutterwavePaymentGateway(
            secret_key=settings.flutterwave_secret_key,
            secret_hash=settings.flutterwave_secret_hash,
            redirect_url=settings.payment_redirect_url,
            base_url=settings.flutterwave_base_url,
            client=http_client,
        )

    raise ConfigurationError(
        "No payment gateway configured",
        missing_keys=["PAYMENT_PROVIDER"],
    )


__all__ = [
    "FlutterwavePaymentGateway",
    "StripePaymentGateway",
    "create_payment_gateway",
]
