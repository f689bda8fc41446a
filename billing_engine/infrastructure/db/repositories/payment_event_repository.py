"""
Processed Payment Event Repository

DB-backed claim table: the primary key makes a second claim fail
atomically, even across processes.
"""

import logging

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.domain.interfaces import ProcessedEventStore
from billing_engine.infrastructure.db.database import session_scope
from billing_engine.infrastructure.db.models.processed_payment_event import (
    ProcessedPaymentEventModel,
)


logger = logging.getLogger(__name__)


class ProcessedEventRepository(ProcessedEventStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def claim(self, event_key: str, outcome: str) -> bool:
        try:
            async with session_scope(self._session_factory) as session:
                session.add(ProcessedPaymentEventModel(event_key=event_key, outcome=outcome))
        except IntegrityError:
            logger.info(f"Payment event {event_key} already processed")
            return False
        return True

    async def release(self, event_key: str) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                delete(ProcessedPaymentEventModel).where(
                    ProcessedPaymentEventModel.event_key == event_key
                )
            )
        logger.info(f"Released payment event {event_key}")
