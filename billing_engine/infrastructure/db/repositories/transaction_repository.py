"""
Transaction Repository

Append-only ledger access.
"""

import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from billing_engine.domain.interfaces import TransactionStore
from billing_engine.domain.subscription import (
    Transaction,
    TransactionStatus,
    TransactionType,
)
from billing_engine.infrastructure.db.database import session_scope
from billing_engine.infrastructure.db.models.transaction import TransactionModel


logger = logging.getLogger(__name__)


class TransactionRepository(TransactionStore):
    """Repository for ledger rows. There is no update or delete."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, transaction: Transaction) -> Transaction:
        async with session_scope(self._session_factory) as session:
            model = self._to_model(transaction)
            session.add(model)
            await session.flush()
            await session.refresh(model)
            return self._to_domain(model)

    async def get_charge(self, reference: str) -> Optional[Transaction]:
        async with session_scope(self._session_factory) as session:
            statement = (
                select(TransactionModel)
                .where(
                    TransactionModel.gateway_reference == reference,
                    TransactionModel.status == TransactionStatus.PENDING.value,
                )
                .order_by(TransactionModel.id)
            )
            result = await session.execute(statement)
            model = result.scalars().first()
            return self._to_domain(model) if model else None

    async def get_settlement(self, reference: str) -> Optional[Transaction]:
        async with session_scope(self._session_factory) as session:
            statement = (
                select(TransactionModel)
                .where(
                    TransactionModel.gateway_reference == reference,
                    TransactionModel.status != TransactionStatus.PENDING.value,
                )
                .order_by(TransactionModel.id)
            )
            result = await session.execute(statement)
            model = result.scalars().first()
            return self._to_domain(model) if model else None

    async def list_for_subscription(self, subscription_id: str) -> List[Transaction]:
        async with session_scope(self._session_factory) as session:
            statement = (
                select(TransactionModel)
                .where(TransactionModel.subscription_id == subscription_id)
                .order_by(TransactionModel.id)
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: TransactionModel) -> Transaction:
        return Transaction(
            id=str(model.id),
            user_id=model.user_id,
            subscription_id=model.subscription_id,
            amount=model.amount,
            currency=model.currency,
            status=TransactionStatus(model.status),
            type=TransactionType(model.type),
            plan_id=model.plan_id,
            previous_plan_id=model.previous_plan_id,
            gateway=model.gateway,
            gateway_reference=model.gateway_reference,
            error=model.error,
            processed_at=model.processed_at,
            renews_period_end=model.renews_period_end,
            created_at=model.created_at,
        )

    def _to_model(self, domain: Transaction) -> TransactionModel:
        return TransactionModel(
            user_id=domain.user_id,
            subscription_id=domain.subscription_id,
            amount=domain.amount,
            currency=domain.currency,
            status=domain.status.value,
            type=domain.type.value,
            plan_id=domain.plan_id,
            previous_plan_id=domain.previous_plan_id,
            gateway=domain.gateway,
            gateway_reference=domain.gateway_reference,
            error=domain.error,
            processed_at=domain.processed_at,
            renews_period_end=domain.renews_period_end,
        )
