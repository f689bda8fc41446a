"""
Flutterwave Payment Gateway

Infrastructure adapter for Flutterwave Standard (v3 REST API).
Charges are hosted payment links keyed by our own ``tx_ref``.
Flutterwave amounts are major units; this adapter converts to and from
minor units for two-decimal currencies and refuses the rest (JPY, XOF,
KWD and the like).
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx

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
    ValidationError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)

_MINOR_UNITS = Decimal(100)

# ISO 4217 currencies whose minor unit is not 1/100
_NON_DECIMAL_CURRENCIES = frozenset({
    # zero decimals
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF",
    # three decimals
    "BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND",
})

_STATUS_MAP = {
    "successful": PaymentOutcome.SUCCESSFUL,
    "failed": PaymentOutcome.FAILED,
    "cancelled": PaymentOutcome.FAILED,
    "pending": PaymentOutcome.PENDING,
}


def supports_currency(currency: str) -> bool:
    return currency.upper() not in _NON_DECIMAL_CURRENCIES


def _require_two_decimals(currency: str) -> None:
    if not supports_currency(currency):
        raise ValidationError(
            f"Currency {currency.upper()} does not use two decimal places",
            {"currency": currency.upper(), "gateway": "flutterwave"},
        )


def to_major_units(amount: int, currency: str) -> str:
    _require_two_decimals(currency)
    return format(Decimal(amount) / _MINOR_UNITS, "f")


def to_minor_units(amount: Any, currency: str) -> int:
    _require_two_decimals(currency)
    return int((Decimal(str(amount)) * _MINOR_UNITS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def sign_payload(secret_hash: str, payload: bytes) -> str:
    """HMAC-SHA256 hex digest of the raw webhook body."""
    return hmac.new(secret_hash.encode(), payload, hashlib.sha256).hexdigest()


class FlutterwavePaymentGateway(PaymentGateway):
    """Flutterwave payment gateway over an injected ``httpx.AsyncClient``."""

    name = "flutterwave"
    signature_header = "flutterwave-signature"

    def __init__(
        self,
        secret_key: str,
        secret_hash: str,
        redirect_url: str,
        base_url: str = "https://api.flutterwave.com/v3",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._secret_hash = secret_hash
        self._redirect_url = redirect_url
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {secret_key}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(
                method, f"{self._base_url}{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as e:
            logger.error(f"[FLUTTERWAVE] {method} {path} failed: {e}")
            raise PaymentGatewayError(
                f"Flutterwave request failed: {e}", gateway=self.name, original_error=e
            )

    # =========================================================================
    # Payments
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
        """Create a hosted payment link. The generated ``tx_ref`` is the charge reference."""
        tx_ref = f"sub_{uuid4().hex}"
        body = {
            "tx_ref": tx_ref,
            "amount": to_major_units(amount, currency),
            "currency": currency.upper(),
            "redirect_url": self._redirect_url,
            "customer": {
                "email": customer.email,
                "name": customer.full_name or customer.email,
                "phonenumber": customer.phone,
            },
            "customizations": {"title": description},
            "meta": metadata or {},
        }

        response = await self._request("POST", "/payments", json=body)
        data = self._json(response)
        if response.status_code >= 400 or data.get("status") != "success":
            raise PaymentGatewayError(
                f"Flutterwave rejected payment initialization: {data.get('message', response.status_code)}",
                gateway=self.name,
                reference=tx_ref,
            )

        logger.info(f"[FLUTTERWAVE] Initialized payment {tx_ref} for user {customer.user_id}")
        return PaymentInitialization(
            reference=tx_ref,
            payment_link=data["data"]["link"],
            status=PaymentOutcome.PENDING,
        )

    async def verify_payment(self, reference: str) -> PaymentVerification:
        """Look a charge up by ``tx_ref``. No transaction yet means the customer has not paid."""
        response = await self._request(
            "GET", "/transactions/verify_by_reference", params={"tx_ref": reference}
        )
        if response.status_code == 404:
            return PaymentVerification(reference=reference, status=PaymentOutcome.PENDING)

        payload = self._json(response)
        if response.status_code >= 400 or payload.get("status") != "success":
            raise PaymentGatewayError(
                f"Flutterwave verification failed: {payload.get('message', response.status_code)}",
                gateway=self.name,
                reference=reference,
            )

        data = payload.get("data") or {}
        currency = data.get("currency")
        amount = None
        # Amounts in a currency we never charge in are left to the currency check
        if data.get("amount") is not None and supports_currency(currency or ""):
            amount = to_minor_units(data["amount"], currency or "")
        return PaymentVerification(
            reference=reference,
            status=_STATUS_MAP.get(str(data.get("status", "")).lower(), PaymentOutcome.PENDING),
            amount=amount,
            currency=currency,
            gateway_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            message=data.get("processor_response"),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentNotification]:
        if not signature:
            raise WebhookVerificationError("Missing Flutterwave signature", gateway=self.name)

        expected = sign_payload(self._secret_hash, payload)
        if not hmac.compare_digest(signature, expected):
            raise WebhookVerificationError("Invalid signature", gateway=self.name)

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}", gateway=self.name, original_error=e)

        event_type = event.get("event") or event.get("event.type")
        data = event.get("data") or {}
        if event_type != "charge.completed" or not data.get("tx_ref"):
            logger.debug(f"[FLUTTERWAVE] Ignoring event type: {event_type}")
            return None

        return PaymentNotification(
            event_id=str(data.get("id") or data["tx_ref"]),
            event_type=event_type,
            reference=data["tx_ref"],
            raw=event,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            return {}
