"""
Subscription Repository

Data access layer for subscription persistence.
The one-open-subscription rule and per-subscription ordering are enforced
by the database: a partial unique index on insert and a status/version
guard on every update.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from billing_engine.domain.interfaces import SubscriptionStore
from billing_engine.domain.plans import BillingPeriod
from billing_engine.domain.subscription import (
    NON_TERMINAL_STATUSES,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from billing_engine.infrastructure.db.database import session_scope
from billing_engine.infrastructure.db.models.subscription import SubscriptionModel
from billing_engine.infrastructure.exceptions import (
    ConcurrentModificationError,
    DuplicateActiveSubscriptionError,
    SubscriptionNotFoundError,
)


logger = logging.getLogger(__name__)

_OPEN = [status.value for status in NON_TERMINAL_STATUSES]


class SubscriptionRepository(SubscriptionStore):
    """
    Repository for subscription data access.

    Each call is its own unit of work; returned objects are detached
    domain entities.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        async with session_scope(self._session_factory) as session:
            model = await session.get(SubscriptionModel, subscription_id)
            return self._to_domain(model) if model else None

    async def get_open_for_user(self, user_id: str) -> Optional[Subscription]:
        async with session_scope(self._session_factory) as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.user_id == user_id,
                SubscriptionModel.status.in_(_OPEN),
            )
            result = await session.execute(statement)
            model = result.scalars().first()
            return self._to_domain(model) if model else None

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        async with session_scope(self._session_factory) as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.user_id == user_id)
                .order_by(SubscriptionModel.created_at.desc())
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def find_grace_expired(self, now: datetime, limit: int) -> List[Subscription]:
        """Grace subscriptions whose window has closed at ``now``."""
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.GRACE.value,
                SubscriptionModel.grace_period_end <= now,
            )
            .order_by(SubscriptionModel.grace_period_end)
            .limit(limit)
        )
        return await self._list(statement)

    async def find_due_for_renewal(self, now: datetime, limit: int) -> List[Subscription]:
        """Active subscriptions whose current period has ended."""
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionModel.current_period_end <= now,
            )
            .order_by(SubscriptionModel.current_period_end)
            .limit(limit)
        )
        return await self._list(statement)

    async def find_renewing_between(
        self, start: datetime, end: datetime, limit: int
    ) -> List[Subscription]:
        """Active subscriptions that will renew in ``[start, end)``."""
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionModel.cancel_at_period_end.is_(False),
                SubscriptionModel.current_period_end >= start,
                SubscriptionModel.current_period_end < end,
            )
            .order_by(SubscriptionModel.current_period_end)
            .limit(limit)
        )
        return await self._list(statement)

    async def _list(self, statement) -> List[Subscription]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def insert_if_no_open(self, subscription: Subscription) -> Subscription:
        """
        Insert a new subscription.

        The partial unique index rejects the row if the user already holds a
        pending, active or grace subscription, so concurrent callers cannot
        both pass.

        Raises:
            DuplicateActiveSubscriptionError
        """
        model = self._to_model(subscription)
        try:
            async with session_scope(self._session_factory) as session:
                session.add(model)
                await session.flush()
                await session.refresh(model)
                created = self._to_domain(model)
        except IntegrityError as e:
            logger.info(f"Rejected second open subscription for user {subscription.user_id}")
            raise DuplicateActiveSubscriptionError(subscription.user_id, original_error=e)

        logger.info(f"Created subscription {created.id} for user {created.user_id}")
        return created

    async def update_if_status(
        self,
        subscription: Subscription,
        expected_status: SubscriptionStatus,
        expected_version: int,
    ) -> Subscription:
        """
        Conditionally persist a transition.

        Raises:
            SubscriptionNotFoundError: unknown id
            ConcurrentModificationError: status or version no longer match
        """
        now = utcnow()
        new_version = expected_version + 1
        values = self._values(subscription)
        values["version"] = new_version
        values["updated_at"] = now

        async with session_scope(self._session_factory) as session:
            statement = (
                update(SubscriptionModel)
                .where(
                    SubscriptionModel.id == subscription.id,
                    SubscriptionModel.status == expected_status.value,
                    SubscriptionModel.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(statement)

            if result.rowcount == 0:
                current = await session.get(SubscriptionModel, subscription.id)
                if current is None:
                    raise SubscriptionNotFoundError(subscription.id)
                raise ConcurrentModificationError(
                    f"Subscription {subscription.id} changed concurrently "
                    f"(expected {expected_status.value} v{expected_version}, "
                    f"found {current.status} v{current.version})",
                    subscription_id=subscription.id,
                    status=current.status,
                )

        return subscription.model_copy(update={"version": new_version, "updated_at": now})

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _values(self, domain: Subscription) -> dict:
        return {
            "plan_id": domain.plan_id,
            "billing_period": domain.billing_period.value,
            "status": domain.status.value,
            "is_active": domain.is_active,
            "current_period_start": domain.current_period_start,
            "current_period_end": domain.current_period_end,
            "cancel_at_period_end": domain.cancel_at_period_end,
            "cancelled_at": domain.cancelled_at,
            "cancellation_reason": domain.cancellation_reason,
            "last_payment_date": domain.last_payment_date,
            "last_payment_amount": domain.last_payment_amount,
            "failed_payment_attempts": domain.failed_payment_attempts,
            "grace_period_end": domain.grace_period_end,
            "expired_at": domain.expired_at,
        }

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=model.id,
            user_id=model.user_id,
            plan_id=model.plan_id,
            billing_period=BillingPeriod(model.billing_period),
            status=SubscriptionStatus(model.status),
            is_active=model.is_active,
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            cancel_at_period_end=model.cancel_at_period_end or False,
            cancelled_at=model.cancelled_at,
            cancellation_reason=model.cancellation_reason,
            last_payment_date=model.last_payment_date,
            last_payment_amount=model.last_payment_amount,
            failed_payment_attempts=model.failed_payment_attempts or 0,
            grace_period_end=model.grace_period_end,
            expired_at=model.expired_at,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, domain: Subscription) -> SubscriptionModel:
        """Convert domain entity to database model."""
        model = SubscriptionModel(user_id=domain.user_id, version=domain.version, **self._values(domain))
        if domain.id:
            model.id = domain.id
        return model
