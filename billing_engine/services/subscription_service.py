"""
Subscription Service

The subscription lifecycle state machine:

    pending --(initial payment successful)--> active
    active  --(cancel, immediate)-----------> cancelled
    active  --(cancel, deferred)------------> active, cancel_at_period_end
    active  --(period end, cancel flagged)--> cancelled
    active  --(renewal failed)--------------> grace
    grace   --(renewal successful)----------> active
    grace   --(grace window closed)---------> expired
    pending | grace --(cancel, immediate)---> cancelled

Every transition is a conditional write on (id, status, version), so two
callers racing on one subscription cannot both apply a transition built
from the same snapshot. Notifications are sent after the write and never
undo it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

from billing_engine.domain.grace import GracePolicy
from billing_engine.domain.interfaces import (
    Customer,
    NotificationDispatcher,
    PlanStore,
    SubscriptionStore,
    UserDirectory,
)
from billing_engine.domain.plans import BillingPeriod, FeatureLimit, Plan
from billing_engine.domain.proration import ProrationResult, calculate_proration
from billing_engine.domain.subscription import (
    PaymentOutcome,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    add_billing_period,
    utcnow,
)
from billing_engine.infrastructure.exceptions import (
    InvalidStateError,
    PaymentGatewayError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from billing_engine.services.payment_orchestrator import PaymentOrchestrator, Settlement


logger = logging.getLogger(__name__)


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class Checkout:
    """A new subscription and where to pay for it."""
    subscription: Subscription
    payment_link: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class PlanChange:
    subscription: Subscription
    previous_plan_id: str
    proration: ProrationResult
    payment_link: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class PaymentApplication:
    """What a settled charge did to its subscription. ``applied`` is False for replays and pending charges."""
    subscription: Subscription
    settlement: Settlement
    applied: bool


@dataclass(frozen=True)
class RenewalStart:
    subscription: Subscription
    reference: Optional[str] = None
    payment_link: Optional[str] = None
    created: bool = False


@dataclass(frozen=True)
class FeatureAccess:
    feature: str
    allowed: bool
    limit: Optional[FeatureLimit] = None


@dataclass(frozen=True)
class FeatureLimits:
    plan: Optional[Plan] = None
    features: Dict[str, FeatureLimit] = field(default_factory=dict)


class SubscriptionService:
    """
    Subscription lifecycle operations.

    All collaborators are passed in; the service holds no global state.

    Args:
        subscriptions: Subscription persistence
        plans: Plan catalog persistence
        users: User directory
        payments: Payment orchestrator
        notifications: Notification dispatcher
        grace_policy: Grace window and attempt limit
        clock: Source of "now" (UTC)
        sweep_batch_size: Maximum subscriptions handled per sweep call
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        plans: PlanStore,
        users: UserDirectory,
        payments: PaymentOrchestrator,
        notifications: NotificationDispatcher,
        grace_policy: Optional[GracePolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sweep_batch_size: int = 100,
    ):
        self._subscriptions = subscriptions
        self._plans = plans
        self._users = users
        self._payments = payments
        self._notifications = notifications
        self._grace_policy = grace_policy or GracePolicy()
        self._clock = clock
        self._sweep_batch_size = sweep_batch_size

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        """The user's pending, active or grace subscription, if any."""
        return await self._subscriptions.get_open_for_user(user_id)

    async def list_user_subscriptions(self, user_id: str) -> List[Subscription]:
        return await self._subscriptions.list_for_user(user_id)

    async def list_transactions(self, subscription_id: str) -> List[Transaction]:
        await self.get_subscription(subscription_id)
        return await self._payments.ledger(subscription_id)

    # =========================================================================
    # Create
    # =========================================================================

    async def create_subscription(
        self,
        user_id: str,
        plan_id: str,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        *,
        timeout: Optional[float] = None,
    ) -> Checkout:
        """
        Open a pending subscription and start its first charge.

        The duplicate check is the insert itself, so concurrent calls for one
        user produce exactly one subscription. If the charge cannot be
        started the pending subscription is cancelled again and the gateway
        error is raised.

        Raises:
            UserNotFoundError
            PlanNotFoundError: unknown or withdrawn plan
            DuplicateActiveSubscriptionError
            PaymentGatewayError
        """
        customer = await self._get_customer(user_id)
        plan = await self._get_active_plan(plan_id)
        now = self._clock()

        subscription = await self._subscriptions.insert_if_no_open(
            Subscription(
                user_id=user_id,
                plan_id=plan.id,
                billing_period=billing_period,
                status=SubscriptionStatus.PENDING,
                is_active=False,
                current_period_start=now,
                current_period_end=add_billing_period(now, billing_period),
            )
        )

        amount = plan.price_for(billing_period)
        if amount == 0:
            await self._payments.record_adjustment(
                subscription, 0, plan.currency, TransactionType.NEW_SUBSCRIPTION
            )
            subscription = await self._activate(subscription, plan, amount=0)
            return Checkout(subscription=subscription)

        try:
            charge = await self._payments.initialize_charge(
                subscription,
                amount,
                plan.currency,
                TransactionType.NEW_SUBSCRIPTION,
                customer,
                description=f"{plan.name} ({billing_period.value})",
                timeout=timeout,
            )
        except Exception:
            await self._abandon(subscription, "payment_initialization_failed")
            raise

        if charge.status == PaymentOutcome.SUCCESSFUL:
            application = await self.apply_payment_outcome(charge.reference, timeout=timeout)
            subscription = application.subscription

        return Checkout(
            subscription=subscription,
            payment_link=charge.payment_link,
            reference=charge.reference,
        )

    async def _abandon(self, subscription: Subscription, reason: str) -> None:
        """Cancel a pending subscription whose first charge never started."""
        try:
            await self._save(
                subscription.model_copy(
                    update={
                        "status": SubscriptionStatus.CANCELLED,
                        "is_active": False,
                        "cancelled_at": self._clock(),
                        "cancellation_reason": reason,
                    }
                ),
                subscription,
            )
            logger.warning(f"Abandoned subscription {subscription.id}: {reason}")
        except InvalidStateError:
            logger.warning(f"Subscription {subscription.id} changed before it could be abandoned")

    async def _activate(self, subscription: Subscription, plan: Plan, amount: int) -> Subscription:
        """pending -> active. The paid period starts when the first payment lands."""
        now = self._clock()
        activated = await self._save(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE,
                    "is_active": True,
                    "current_period_start": now,
                    "current_period_end": add_billing_period(now, subscription.billing_period),
                    "last_payment_date": now,
                    "last_payment_amount": amount,
                    "failed_payment_attempts": 0,
                }
            ),
            subscription,
        )
        logger.info(f"Activated subscription {activated.id} on plan {plan.name}")
        await self._notify(self._notifications.send_welcome_email, activated, plan)
        return activated

    # =========================================================================
    # Upgrade / Downgrade
    # =========================================================================

    async def update_subscription(
        self,
        subscription_id: str,
        new_plan_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> PlanChange:
        """
        Move a paid subscription to another plan mid-period.

        The change applies immediately and the current period is unchanged.
        A positive proration is charged through the gateway; zero or
        negative prorations are recorded as a ledger adjustment.

        Raises:
            SubscriptionNotFoundError
            InvalidStateError: terminal or pending subscription
            PlanNotFoundError: unknown or withdrawn target plan
            ValidationError: same plan, or a plan in another currency
            PaymentGatewayError: the proration charge could not be started;
                the previous plan is restored first
        """
        subscription = await self.get_subscription(subscription_id)
        if not subscription.status.grants_access:
            raise InvalidStateError(
                f"Cannot change plan of a {subscription.status.value} subscription",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="update",
            )

        new_plan = await self._get_active_plan(new_plan_id)
        if new_plan.id == subscription.plan_id:
            raise ValidationError(
                "Subscription is already on this plan",
                {"subscription_id": subscription.id, "plan_id": new_plan.id},
            )
        old_plan = await self._get_plan(subscription.plan_id)
        if new_plan.currency != old_plan.currency:
            raise ValidationError(
                f"Cannot change from a {old_plan.currency} plan to a {new_plan.currency} plan",
                {"subscription_id": subscription.id, "plan_id": new_plan.id},
            )

        period = subscription.billing_period
        proration = calculate_proration(
            old_price=old_plan.price_for(period),
            new_price=new_plan.price_for(period),
            billing_period=period,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            now=self._clock(),
        )

        changed = await self._save(
            subscription.model_copy(update={"plan_id": new_plan.id}),
            subscription,
        )
        logger.info(
            f"Subscription {changed.id} moved {old_plan.name} -> {new_plan.name}, "
            f"proration {proration.proration_amount} {new_plan.currency}"
        )

        transaction_type = TransactionType.UPGRADE if proration.is_upgrade else TransactionType.DOWNGRADE
        if proration.proration_amount <= 0:
            await self._payments.record_adjustment(
                changed,
                proration.proration_amount,
                new_plan.currency,
                transaction_type,
                plan_id=new_plan.id,
                previous_plan_id=old_plan.id,
            )
            return PlanChange(subscription=changed, previous_plan_id=old_plan.id, proration=proration)

        try:
            customer = await self._get_customer(changed.user_id)
            charge = await self._payments.initialize_charge(
                changed,
                proration.proration_amount,
                new_plan.currency,
                transaction_type,
                customer,
                description=f"Change to {new_plan.name} ({period.value}, prorated)",
                plan_id=new_plan.id,
                previous_plan_id=old_plan.id,
                timeout=timeout,
            )
        except Exception:
            await self._restore_plan(changed, old_plan)
            raise

        if charge.status == PaymentOutcome.SUCCESSFUL:
            application = await self.apply_payment_outcome(charge.reference, timeout=timeout)
            changed = application.subscription

        return PlanChange(
            subscription=changed,
            previous_plan_id=old_plan.id,
            proration=proration,
            payment_link=charge.payment_link,
            reference=charge.reference,
        )

    async def _restore_plan(self, subscription: Subscription, plan: Plan) -> None:
        """Undo a plan change whose charge never started."""
        try:
            await self._save(subscription.model_copy(update={"plan_id": plan.id}), subscription)
            logger.warning(f"Subscription {subscription.id} restored to plan {plan.name}: charge not started")
        except InvalidStateError:
            logger.warning(f"Subscription {subscription.id} changed before its plan could be restored")

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel_subscription(
        self,
        subscription_id: str,
        *,
        immediate: bool = False,
        reason: Optional[str] = None,
    ) -> Subscription:
        """
        Cancel now, or at the end of the current period.

        A deferred cancellation only sets ``cancel_at_period_end``; status
        and access are untouched until the period ends. No refund is made.

        Raises:
            SubscriptionNotFoundError
            InvalidStateError: already terminal, already scheduled, or a
                deferred cancel of a pending subscription
        """
        subscription = await self.get_subscription(subscription_id)
        if subscription.status.is_terminal:
            raise InvalidStateError(
                f"Subscription is already {subscription.status.value}",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="cancel",
            )

        if immediate:
            update = {
                "status": SubscriptionStatus.CANCELLED,
                "is_active": False,
                "cancelled_at": self._clock(),
                "cancellation_reason": reason,
            }
        else:
            if subscription.status == SubscriptionStatus.PENDING:
                raise InvalidStateError(
                    "A pending subscription has no paid period to run out; cancel it immediately",
                    subscription_id=subscription.id,
                    status=subscription.status.value,
                    operation="cancel",
                )
            if subscription.cancel_at_period_end:
                raise InvalidStateError(
                    "Subscription is already scheduled to cancel at period end",
                    subscription_id=subscription.id,
                    status=subscription.status.value,
                    operation="cancel",
                )
            update = {"cancel_at_period_end": True, "cancellation_reason": reason}

        cancelled = await self._save(subscription.model_copy(update=update), subscription)
        logger.info(
            f"Cancelled subscription {cancelled.id} "
            f"({'immediately' if immediate else 'at period end'})"
        )

        plan = await self._get_plan(cancelled.plan_id)
        await self._notify(self._notifications.send_cancellation_email, cancelled, plan)
        return cancelled

    async def complete_deferred_cancellation(self, subscription: Subscription) -> Subscription:
        """Period end reached with cancel_at_period_end set."""
        cancelled = await self._save(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELLED,
                    "is_active": False,
                    "cancelled_at": self._clock(),
                }
            ),
            subscription,
        )
        logger.info(f"Subscription {cancelled.id} ended at period end")

        plan = await self._get_plan(cancelled.plan_id)
        await self._notify(self._notifications.send_cancellation_email, cancelled, plan)
        return cancelled

    # =========================================================================
    # Renewal
    # =========================================================================

    async def process_renewal(
        self,
        subscription_id: str,
        outcome: PaymentOutcome,
        *,
        amount: Optional[int] = None,
        paid_at: Optional[datetime] = None,
    ) -> Subscription:
        """
        Apply the outcome of a renewal payment.

        successful: the next period starts where the current one ended and
            any grace state is cleared.
        failed: one more failed attempt; an active subscription enters grace.
        pending: not a payment; nothing changes.

        Raises:
            SubscriptionNotFoundError
            InvalidStateError: subscription is not active or in grace, or a
                successful renewal of one scheduled to cancel at period end
        """
        subscription = await self.get_subscription(subscription_id)
        if not subscription.status.grants_access:
            raise InvalidStateError(
                f"Cannot renew a {subscription.status.value} subscription",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="renew",
            )

        if outcome == PaymentOutcome.PENDING:
            return subscription

        plan = await self._get_plan(subscription.plan_id)
        if outcome == PaymentOutcome.FAILED:
            return await self._record_payment_failure(subscription, plan)

        if subscription.cancel_at_period_end:
            raise InvalidStateError(
                "Subscription is scheduled to cancel at period end and cannot be renewed",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="renew",
            )

        new_start = subscription.current_period_end
        renewed = await self._save(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE,
                    "is_active": True,
                    "current_period_start": new_start,
                    "current_period_end": add_billing_period(new_start, subscription.billing_period),
                    "last_payment_date": paid_at or self._clock(),
                    "last_payment_amount": (
                        amount if amount is not None else plan.price_for(subscription.billing_period)
                    ),
                    "failed_payment_attempts": 0,
                    "grace_period_end": None,
                }
            ),
            subscription,
        )
        logger.info(f"Renewed subscription {renewed.id} until {renewed.current_period_end.isoformat()}")
        await self._notify(self._notifications.send_renewal_reminder, renewed, plan)
        return renewed

    async def _record_payment_failure(self, subscription: Subscription, plan: Plan) -> Subscription:
        now = self._clock()
        attempts = subscription.failed_payment_attempts + 1
        update = {"failed_payment_attempts": attempts}

        if subscription.status == SubscriptionStatus.ACTIVE:
            update.update(
                status=SubscriptionStatus.GRACE,
                is_active=True,
                grace_period_end=self._grace_policy.grace_deadline(now),
            )
        if self._grace_policy.attempts_exhausted(attempts):
            # Next grace sweep expires it
            update["grace_period_end"] = now

        failed = await self._save(subscription.model_copy(update=update), subscription)
        logger.warning(
            f"Payment failed for subscription {failed.id} "
            f"(attempt {attempts}, grace until {failed.grace_period_end.isoformat()})"
        )
        await self._notify(self._notifications.send_payment_failed_email, failed, plan)
        return failed

    async def start_renewal(
        self,
        subscription_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> RenewalStart:
        """
        Handle a subscription whose period has ended.

        Completes a scheduled cancellation, or starts the renewal charge for
        the period that just ended. A renewal charge already waiting for
        payment is returned instead of starting a second one.

        Raises:
            SubscriptionNotFoundError
            InvalidStateError: not active or in grace, or period not over yet
            PaymentGatewayError
        """
        subscription = await self.get_subscription(subscription_id)
        if not subscription.status.grants_access:
            raise InvalidStateError(
                f"Cannot renew a {subscription.status.value} subscription",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="renew",
            )
        if self._clock() < subscription.current_period_end:
            raise InvalidStateError(
                f"Subscription is not due until {subscription.current_period_end.isoformat()}",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="renew",
            )

        if subscription.cancel_at_period_end:
            cancelled = await self.complete_deferred_cancellation(subscription)
            return RenewalStart(subscription=cancelled)

        waiting = await self._open_renewal_charge(subscription)
        if waiting is not None:
            return RenewalStart(subscription=subscription, reference=waiting.gateway_reference)

        plan = await self._get_plan(subscription.plan_id)
        amount = plan.price_for(subscription.billing_period)
        if amount == 0:
            await self._payments.record_adjustment(
                subscription, 0, plan.currency, TransactionType.SUBSCRIPTION_RENEWAL
            )
            renewed = await self.process_renewal(subscription.id, PaymentOutcome.SUCCESSFUL, amount=0)
            return RenewalStart(subscription=renewed, created=True)

        customer = await self._get_customer(subscription.user_id)
        charge = await self._payments.initialize_charge(
            subscription,
            amount,
            plan.currency,
            TransactionType.SUBSCRIPTION_RENEWAL,
            customer,
            description=f"{plan.name} renewal ({subscription.billing_period.value})",
            renews_period_end=subscription.current_period_end,
            timeout=timeout,
        )
        if charge.status == PaymentOutcome.SUCCESSFUL:
            application = await self.apply_payment_outcome(charge.reference, timeout=timeout)
            subscription = application.subscription

        return RenewalStart(
            subscription=subscription,
            reference=charge.reference,
            payment_link=charge.payment_link,
            created=True,
        )

    async def _open_renewal_charge(self, subscription: Subscription) -> Optional[Transaction]:
        ledger = await self._payments.ledger(subscription.id)
        settled = {
            row.gateway_reference for row in ledger if row.status != TransactionStatus.PENDING
        }
        for row in ledger:
            if (
                row.type == TransactionType.SUBSCRIPTION_RENEWAL
                and row.status == TransactionStatus.PENDING
                and row.renews_period_end == subscription.current_period_end
                and row.gateway_reference not in settled
            ):
                return row
        return None

    # =========================================================================
    # Grace Expiry
    # =========================================================================

    async def check_grace_expiry(self, subscription_id: str) -> Subscription:
        """
        Expire a grace subscription whose window has closed.

        The only path into ``expired``. Subscriptions that are not in grace,
        or whose window is still open, are returned unchanged.

        Raises:
            SubscriptionNotFoundError
            InvalidStateError: subscription is already terminal
        """
        subscription = await self.get_subscription(subscription_id)
        if subscription.status.is_terminal:
            raise InvalidStateError(
                f"Subscription is already {subscription.status.value}",
                subscription_id=subscription.id,
                status=subscription.status.value,
                operation="check_grace_expiry",
            )

        now = self._clock()
        if subscription.status != SubscriptionStatus.GRACE or not self._grace_policy.is_expired(
            subscription.grace_period_end, now
        ):
            return subscription

        expired = await self._save(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.EXPIRED,
                    "is_active": False,
                    "expired_at": now,
                }
            ),
            subscription,
        )
        logger.info(f"Subscription {expired.id} expired after grace period")

        plan = await self._get_plan(expired.plan_id)
        await self._notify(self._notifications.send_expired_email, expired, plan)
        return expired

    # =========================================================================
    # Payments
    # =========================================================================

    async def apply_payment_outcome(
        self,
        reference: str,
        *,
        timeout: Optional[float] = None,
    ) -> PaymentApplication:
        """
        Settle a gateway reference and apply it to its subscription.

        Shared by webhooks and explicit verification. A reference is
        applied at most once; replays come back with ``applied=False``.
        If applying the outcome fails, the claim is released and the error
        raised, so a redelivery applies it instead.

        Raises:
            TransactionNotFoundError: unknown reference
            PaymentGatewayError
        """
        settlement = await self._payments.settle(reference, timeout=timeout)
        charge = settlement.charge
        subscription = await self.get_subscription(charge.subscription_id)

        if not settlement.is_final or settlement.already_processed:
            return PaymentApplication(subscription=subscription, settlement=settlement, applied=False)

        if charge.type == TransactionType.SUBSCRIPTION_RENEWAL and not self._renewal_applies(
            subscription, settlement
        ):
            logger.warning(
                f"Ignoring stale renewal charge {reference} for subscription {subscription.id}"
            )
            return PaymentApplication(subscription=subscription, settlement=settlement, applied=False)

        try:
            if charge.type == TransactionType.NEW_SUBSCRIPTION:
                subscription = await self._apply_initial_payment(subscription, settlement)
            elif charge.type == TransactionType.SUBSCRIPTION_RENEWAL:
                subscription = await self.process_renewal(
                    subscription.id,
                    settlement.outcome,
                    amount=charge.amount,
                )
            else:
                subscription = await self._apply_plan_change_payment(subscription, settlement)
        except Exception:
            # Claimed but not applied; the next delivery or verify retries it
            await self._payments.release(settlement)
            raise

        return PaymentApplication(subscription=subscription, settlement=settlement, applied=True)

    def _renewal_applies(self, subscription: Subscription, settlement: Settlement) -> bool:
        if not subscription.status.grants_access:
            return False
        if settlement.charge.renews_period_end != subscription.current_period_end:
            return False
        # A scheduled cancellation wins over a late successful renewal
        return not (
            settlement.outcome == PaymentOutcome.SUCCESSFUL and subscription.cancel_at_period_end
        )

    async def _apply_initial_payment(self, subscription: Subscription, settlement: Settlement) -> Subscription:
        if subscription.status != SubscriptionStatus.PENDING:
            logger.warning(
                f"Initial payment {settlement.charge.gateway_reference} arrived for "
                f"{subscription.status.value} subscription {subscription.id}"
            )
            return subscription

        plan = await self._get_plan(subscription.plan_id)
        if settlement.outcome == PaymentOutcome.SUCCESSFUL:
            return await self._activate(subscription, plan, amount=settlement.charge.amount)

        failed = await self._save(
            subscription.model_copy(
                update={"failed_payment_attempts": subscription.failed_payment_attempts + 1}
            ),
            subscription,
        )
        logger.warning(f"Initial payment failed for subscription {failed.id}: {settlement.error}")
        await self._notify(self._notifications.send_payment_failed_email, failed, plan)
        return failed

    async def _apply_plan_change_payment(self, subscription: Subscription, settlement: Settlement) -> Subscription:
        charge = settlement.charge
        if not subscription.status.grants_access:
            return subscription

        if settlement.outcome == PaymentOutcome.SUCCESSFUL:
            return await self._save(
                subscription.model_copy(
                    update={
                        "last_payment_date": self._clock(),
                        "last_payment_amount": charge.amount,
                    }
                ),
                subscription,
            )

        # Unpaid upgrade: back to the plan the customer was paying for
        if charge.previous_plan_id is None or subscription.plan_id != charge.plan_id:
            logger.warning(
                f"Plan change charge {charge.gateway_reference} failed but "
                f"subscription {subscription.id} has moved on; leaving plan as is"
            )
            return subscription

        reverted = await self._save(
            subscription.model_copy(update={"plan_id": charge.previous_plan_id}),
            subscription,
        )
        logger.warning(
            f"Plan change charge {charge.gateway_reference} failed; "
            f"subscription {reverted.id} reverted to plan {reverted.plan_id}"
        )
        plan = await self._get_plan(reverted.plan_id)
        await self._notify(self._notifications.send_payment_failed_email, reverted, plan)
        return reverted

    # =========================================================================
    # Sweeps (driven by an external scheduler)
    # =========================================================================

    async def sweep_grace_expiries(self, limit: Optional[int] = None) -> List[Subscription]:
        """Expire every grace subscription whose window has closed."""
        expired = []
        candidates = await self._subscriptions.find_grace_expired(
            self._clock(), limit or self._sweep_batch_size
        )
        for subscription in candidates:
            try:
                expired.append(await self.check_grace_expiry(subscription.id))
            except InvalidStateError as e:
                logger.info(f"Skipping grace expiry of {subscription.id}: {e.message}")
        logger.info(f"Grace sweep expired {len(expired)} of {len(candidates)} candidates")
        return expired

    async def run_due_renewals(
        self,
        limit: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> List[RenewalStart]:
        """Start renewals and complete scheduled cancellations for ended periods."""
        started = []
        candidates = await self._subscriptions.find_due_for_renewal(
            self._clock(), limit or self._sweep_batch_size
        )
        for subscription in candidates:
            try:
                started.append(await self.start_renewal(subscription.id, timeout=timeout))
            except InvalidStateError as e:
                logger.info(f"Skipping renewal of {subscription.id}: {e.message}")
            except PaymentGatewayError as e:
                logger.warning(f"Renewal of {subscription.id} deferred: {e.message}")
        logger.info(f"Renewal sweep handled {len(started)} of {len(candidates)} due subscriptions")
        return started

    async def send_renewal_reminders(self, within_days: int = 7, limit: Optional[int] = None) -> int:
        """Remind subscribers whose period ends in the next ``within_days`` days."""
        now = self._clock()
        upcoming = await self._subscriptions.find_renewing_between(
            now, now + timedelta(days=within_days), limit or self._sweep_batch_size
        )
        plans: Dict[str, Plan] = {}
        for subscription in upcoming:
            if subscription.plan_id not in plans:
                plans[subscription.plan_id] = await self._get_plan(subscription.plan_id)
            await self._notify(
                self._notifications.send_renewal_reminder, subscription, plans[subscription.plan_id]
            )
        return len(upcoming)

    # =========================================================================
    # Feature Access
    # =========================================================================

    async def get_feature_limits(self, user_id: str) -> FeatureLimits:
        """Limits granted by the user's active or grace subscription; empty otherwise."""
        subscription = await self._subscriptions.get_open_for_user(user_id)
        if subscription is None or not subscription.is_active:
            return FeatureLimits()
        plan = await self._get_plan(subscription.plan_id)
        return FeatureLimits(plan=plan, features=dict(plan.features))

    async def check_feature_access(self, user_id: str, feature: str, usage: int = 0) -> FeatureAccess:
        limits = await self.get_feature_limits(user_id)
        limit = limits.features.get(feature)
        return FeatureAccess(
            feature=feature,
            allowed=limit is not None and limit.allows(usage),
            limit=limit,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _save(self, updated: Subscription, current: Subscription) -> Subscription:
        return await self._subscriptions.update_if_status(updated, current.status, current.version)

    async def _get_customer(self, user_id: str) -> Customer:
        customer = await self._users.get_customer(user_id)
        if customer is None:
            raise UserNotFoundError(user_id)
        return customer

    async def _get_plan(self, plan_id: str) -> Plan:
        plan = await self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def _get_active_plan(self, plan_id: str) -> Plan:
        plan = await self._get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFoundError(plan_id, f"Plan {plan_id} is not available")
        return plan

    async def _notify(
        self,
        send: Callable[[Subscription, Plan], Awaitable[None]],
        subscription: Subscription,
        plan: Plan,
    ) -> None:
        try:
            await send(subscription, plan)
        except Exception:
            logger.exception(f"Notification {send.__name__} failed for subscription {subscription.id}")
