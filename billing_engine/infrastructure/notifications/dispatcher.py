"""
Notification Dispatcher

Default adapter for lifecycle notifications. Template rendering and email
delivery belong to the messaging service; this adapter records each event
in the application log so deployments without a mailer still see them.
"""

import logging

from billing_engine.domain.interfaces import NotificationDispatcher
from billing_engine.domain.plans import Plan
from billing_engine.domain.subscription import Subscription


logger = logging.getLogger(__name__)


class LoggingNotificationDispatcher(NotificationDispatcher):

    async def send_welcome_email(self, subscription: Subscription, plan: Plan) -> None:
        logger.info(
            f"[NOTIFY] welcome user={subscription.user_id} plan={plan.name} "
            f"period_end={subscription.current_period_end.isoformat()}"
        )

    async def send_renewal_reminder(self, subscription: Subscription, plan: Plan) -> None:
        logger.info(
            f"[NOTIFY] renewal_reminder user={subscription.user_id} plan={plan.name} "
            f"renews_at={subscription.current_period_end.isoformat()} "
            f"amount={plan.price_for(subscription.billing_period)} {plan.currency}"
        )

    async def send_cancellation_email(self, subscription: Subscription, plan: Plan) -> None:
        effective = (
            subscription.current_period_end
            if subscription.cancel_at_period_end and subscription.cancelled_at is None
            else subscription.cancelled_at
        )
        logger.info(
            f"[NOTIFY] cancellation user={subscription.user_id} plan={plan.name} "
            f"effective={effective.isoformat() if effective else 'now'}"
        )

    async def send_payment_failed_email(self, subscription: Subscription, plan: Plan) -> None:
        logger.info(
            f"[NOTIFY] payment_failed user={subscription.user_id} plan={plan.name} "
            f"attempts={subscription.failed_payment_attempts} "
            f"grace_until={subscription.grace_period_end.isoformat() if subscription.grace_period_end else '-'}"
        )

    async def send_expired_email(self, subscription: Subscription, plan: Plan) -> None:
        logger.info(f"[NOTIFY] expired user={subscription.user_id} plan={plan.name}")
