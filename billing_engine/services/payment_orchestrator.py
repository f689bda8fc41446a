"""
Payment Orchestrator

Owns the gateway adapter and the ledger. Starts charges, records internal
adjustments, and settles gateway references exactly once: a settled
reference is claimed in the processed-event store before its outcome is
handed back, so a webhook and a manual verify racing on the same charge
cannot both apply it. A caller that fails to apply a claimed outcome
releases the claim so the next delivery settles it again.

The orchestrator never touches subscription state; callers route the
returned Settlement into the lifecycle.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from billing_engine.domain.interfaces import (
    Customer,
    PaymentGateway,
    PaymentNotification,
    PaymentVerification,
    ProcessedEventStore,
    TransactionStore,
)
from billing_engine.domain.subscription import (
    PaymentOutcome,
    Subscription,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from billing_engine.infrastructure.exceptions import (
    PaymentGatewayError,
    TransactionNotFoundError,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeInitialization:
    """A started charge and the ledger row recording it."""
    transaction: Transaction
    reference: str
    payment_link: Optional[str]
    status: PaymentOutcome


@dataclass(frozen=True)
class Settlement:
    """The orchestrator's verdict on a charge reference."""
    charge: Transaction
    outcome: PaymentOutcome
    amount: Optional[int] = None
    already_processed: bool = False
    error: Optional[str] = None
    event_key: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.outcome != PaymentOutcome.PENDING


class PaymentOrchestrator:
    """
    Payment orchestration over one gateway.

    Args:
        gateway: Payment processor adapter
        transactions: Append-only ledger
        processed_events: At-most-once claim store
        clock: Source of "now" (UTC)
        default_timeout: Seconds allowed per gateway call when the caller gives none
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        transactions: TransactionStore,
        processed_events: ProcessedEventStore,
        clock: Callable[[], datetime] = utcnow,
        default_timeout: float = 15.0,
    ):
        self._gateway = gateway
        self._transactions = transactions
        self._processed_events = processed_events
        self._clock = clock
        self._default_timeout = default_timeout

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    async def ledger(self, subscription_id: str) -> List[Transaction]:
        """Every ledger row for a subscription, oldest first."""
        return await self._transactions.list_for_subscription(subscription_id)

    async def _call(self, awaitable, timeout: Optional[float], reference: Optional[str] = None):
        """Run a gateway call under the caller's timeout."""
        limit = timeout if timeout is not None else self._default_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError as e:
            logger.warning(f"{self._gateway.name} call timed out after {limit}s (reference={reference})")
            raise PaymentGatewayError(
                f"Payment gateway did not respond within {limit} seconds",
                gateway=self._gateway.name,
                reference=reference,
                original_error=e,
            )

    # =========================================================================
    # Charges
    # =========================================================================

    async def initialize_charge(
        self,
        subscription: Subscription,
        amount: int,
        currency: str,
        transaction_type: TransactionType,
        customer: Customer,
        *,
        description: str,
        plan_id: Optional[str] = None,
        previous_plan_id: Optional[str] = None,
        renews_period_end: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> ChargeInitialization:
        """
        Start a charge with the gateway and record it as a pending ledger row.

        Raises:
            PaymentGatewayError: gateway failure or timeout; nothing is recorded
        """
        if amount <= 0:
            raise ValueError("Charges must be positive; use record_adjustment for credits")

        initialization = await self._call(
            self._gateway.initialize_payment(
                amount,
                currency,
                customer,
                description=description,
                metadata={
                    "subscription_id": subscription.id,
                    "user_id": subscription.user_id,
                    "type": transaction_type.value,
                },
            ),
            timeout,
        )

        transaction = await self._transactions.append(
            Transaction(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                amount=amount,
                currency=currency,
                status=TransactionStatus.PENDING,
                type=transaction_type,
                plan_id=plan_id or subscription.plan_id,
                previous_plan_id=previous_plan_id,
                gateway=self._gateway.name,
                gateway_reference=initialization.reference,
                renews_period_end=renews_period_end,
            )
        )

        logger.info(
            f"Initialized {transaction_type.value} charge {initialization.reference} "
            f"of {amount} {currency} for subscription {subscription.id}"
        )
        return ChargeInitialization(
            transaction=transaction,
            reference=initialization.reference,
            payment_link=initialization.payment_link,
            status=initialization.status,
        )

    async def record_adjustment(
        self,
        subscription: Subscription,
        amount: int,
        currency: str,
        transaction_type: TransactionType,
        *,
        plan_id: Optional[str] = None,
        previous_plan_id: Optional[str] = None,
    ) -> Transaction:
        """Record a zero or negative adjustment that needs no gateway call."""
        if amount > 0:
            raise ValueError("Positive amounts must be charged through initialize_charge")

        transaction = await self._transactions.append(
            Transaction(
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                amount=amount,
                currency=currency,
                status=TransactionStatus.SUCCESSFUL,
                type=transaction_type,
                plan_id=plan_id or subscription.plan_id,
                previous_plan_id=previous_plan_id,
                processed_at=self._clock(),
            )
        )
        logger.info(f"Recorded {transaction_type.value} adjustment of {amount} {currency} for subscription {subscription.id}")
        return transaction

    # =========================================================================
    # Settlement
    # =========================================================================

    async def settle(self, reference: str, *, timeout: Optional[float] = None) -> Settlement:
        """
        Verify a charge with the gateway and claim its outcome.

        Pending outcomes are returned without a claim so they can be
        verified again later. A final outcome is claimed once; every later
        call for the same reference comes back ``already_processed``.

        Raises:
            TransactionNotFoundError: unknown reference
            PaymentGatewayError: gateway failure or timeout
        """
        charge = await self._transactions.get_charge(reference)
        if charge is None:
            raise TransactionNotFoundError(reference)

        verification = await self._call(self._gateway.verify_payment(reference), timeout, reference)
        outcome, error = self._evaluate(charge, verification)

        if outcome == PaymentOutcome.PENDING:
            logger.info(f"Charge {reference} still pending")
            return Settlement(charge=charge, outcome=outcome, amount=verification.amount)

        event_key = f"{self._gateway.name}:{reference}"
        if not await self._processed_events.claim(event_key, outcome.value):
            return Settlement(
                charge=charge,
                outcome=outcome,
                amount=verification.amount,
                already_processed=True,
                error=error,
            )

        if await self._transactions.get_settlement(reference) is not None:
            # Claim was released after a failed apply; the ledger already has the outcome
            logger.info(f"Charge {reference} settled again after a released claim")
            return Settlement(
                charge=charge,
                outcome=outcome,
                amount=verification.amount,
                error=error,
                event_key=event_key,
            )

        await self._transactions.append(
            charge.model_copy(
                update={
                    "id": None,
                    "status": (
                        TransactionStatus.SUCCESSFUL
                        if outcome == PaymentOutcome.SUCCESSFUL
                        else TransactionStatus.FAILED
                    ),
                    "error": error,
                    "processed_at": self._clock(),
                    "created_at": None,
                }
            )
        )

        if outcome == PaymentOutcome.SUCCESSFUL:
            logger.info(f"Charge {reference} settled successfully")
        else:
            logger.warning(f"Charge {reference} failed: {error}")

        return Settlement(
            charge=charge,
            outcome=outcome,
            amount=verification.amount,
            error=error,
            event_key=event_key,
        )

    async def release(self, settlement: Settlement) -> None:
        """Give up the claim on a settlement whose outcome was not applied."""
        if settlement.event_key is None or settlement.already_processed:
            return
        await self._processed_events.release(settlement.event_key)
        logger.warning(f"Released claim on charge {settlement.charge.gateway_reference} for redelivery")

    def _evaluate(self, charge: Transaction, verification: PaymentVerification):
        """Normalize a verification against the charge. Underpayment counts as failure."""
        if verification.status == PaymentOutcome.PENDING:
            return PaymentOutcome.PENDING, None
        if verification.status == PaymentOutcome.FAILED:
            return PaymentOutcome.FAILED, verification.message or "Payment declined"

        if verification.currency and verification.currency.upper() != charge.currency.upper():
            return PaymentOutcome.FAILED, (
                f"Currency mismatch: expected {charge.currency}, got {verification.currency}"
            )
        if verification.amount is not None and verification.amount < charge.amount:
            return PaymentOutcome.FAILED, (
                f"Amount mismatch: expected {charge.amount}, got {verification.amount}"
            )
        return PaymentOutcome.SUCCESSFUL, None

    # =========================================================================
    # Webhooks
    # =========================================================================

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[PaymentNotification]:
        """Verify a gateway webhook and return the charge reference it concerns."""
        return self._gateway.parse_webhook(payload, signature)
