"""
User Repository

Read access to the user directory mirror.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.domain.interfaces import Customer, UserDirectory
from billing_engine.infrastructure.db.database import session_scope
from billing_engine.infrastructure.db.models.user_account import UserAccountModel


class UserRepository(UserDirectory):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_customer(self, user_id: str) -> Optional[Customer]:
        async with session_scope(self._session_factory) as session:
            model = await session.get(UserAccountModel, user_id)
            if model is None:
                return None
            return Customer(
                user_id=model.id,
                email=model.email,
                full_name=model.full_name,
                phone=model.phone,
            )

    async def add(self, customer: Customer) -> Customer:
        """Insert or refresh a user mirrored from the identity provider."""
        async with session_scope(self._session_factory) as session:
            await session.merge(
                UserAccountModel(
                    id=customer.user_id,
                    email=customer.email,
                    full_name=customer.full_name,
                    phone=customer.phone,
                )
            )
        return customer
