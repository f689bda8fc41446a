"""
Plan Repository

Data access layer for the plan catalog.
"""

import logging
from typing import List, Optional

from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from billing_engine.domain.interfaces import PlanStore
from billing_engine.domain.plans import FeatureLimit, Plan
from billing_engine.infrastructure.db.database import session_scope
from billing_engine.infrastructure.db.models.plan import PlanModel


logger = logging.getLogger(__name__)

_features_adapter = TypeAdapter(dict[str, FeatureLimit])


class PlanRepository(PlanStore):
    """Repository for plan data access."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, plan: Plan) -> Plan:
        async with session_scope(self._session_factory) as session:
            model = self._to_model(plan)
            session.add(model)
            await session.flush()
            await session.refresh(model)
            created = self._to_domain(model)

        logger.info(f"Created plan {created.id} ({created.name} v{created.version})")
        return created

    async def get(self, plan_id: str) -> Optional[Plan]:
        async with session_scope(self._session_factory) as session:
            model = await session.get(PlanModel, plan_id)
            return self._to_domain(model) if model else None

    async def list_all(self, include_inactive: bool = False) -> List[Plan]:
        async with session_scope(self._session_factory) as session:
            statement = select(PlanModel).order_by(PlanModel.monthly_price, PlanModel.name)
            if not include_inactive:
                statement = statement.where(PlanModel.is_active.is_(True))
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    async def deactivate(self, plan_id: str) -> Optional[Plan]:
        """Withdraw a plan from sale. The only in-place change a plan row ever gets."""
        async with session_scope(self._session_factory) as session:
            model = await session.get(PlanModel, plan_id)
            if model is None:
                return None
            model.is_active = False
            session.add(model)
            await session.flush()
            await session.refresh(model)
            return self._to_domain(model)

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: PlanModel) -> Plan:
        return Plan(
            id=model.id,
            name=model.name,
            monthly_price=model.monthly_price,
            annual_price=model.annual_price,
            currency=model.currency,
            features=_features_adapter.validate_python(model.features or {}),
            is_active=model.is_active,
            version=model.version,
            supersedes_id=model.supersedes_id,
            created_at=model.created_at,
        )

    def _to_model(self, domain: Plan) -> PlanModel:
        model = PlanModel(
            name=domain.name,
            monthly_price=domain.monthly_price,
            annual_price=domain.annual_price,
            currency=domain.currency,
            features={key: limit.model_dump() for key, limit in domain.features.items()},
            is_active=domain.is_active,
            version=domain.version,
            supersedes_id=domain.supersedes_id,
        )
        if domain.id:
            model.id = domain.id
        return model
