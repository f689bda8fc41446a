"""
Plan Catalog Service

Publishing, versioning and withdrawing plans. Existing subscriptions keep
pointing at the plan version they bought; a price revision only affects
new subscriptions and plan changes made after it.
"""

import logging
from typing import List

from billing_engine.domain.interfaces import PlanStore
from billing_engine.domain.plans import Plan, PlanCreate, PlanPriceRevision
from billing_engine.infrastructure.exceptions import PlanNotFoundError, ValidationError


logger = logging.getLogger(__name__)


class PlanCatalog:

    def __init__(self, plans: PlanStore):
        self._plans = plans

    async def create_plan(self, data: PlanCreate) -> Plan:
        plan = Plan(
            name=data.name,
            monthly_price=data.monthly_price,
            annual_price=data.annual_price,
            currency=data.currency.upper(),
            features=data.features,
        )
        return await self._plans.create(plan)

    async def get_plan(self, plan_id: str) -> Plan:
        plan = await self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def list_plans(self, include_inactive: bool = False) -> List[Plan]:
        return await self._plans.list_all(include_inactive=include_inactive)

    async def revise_plan(self, plan_id: str, revision: PlanPriceRevision) -> Plan:
        """
        Publish a new version of an active plan and withdraw the current one.

        Raises:
            PlanNotFoundError: unknown plan
            ValidationError: the plan was already superseded or withdrawn
        """
        current = await self.get_plan(plan_id)
        if not current.is_active:
            raise ValidationError(
                f"Plan {plan_id} is no longer active and cannot be revised",
                {"plan_id": plan_id},
            )

        successor = await self._plans.create(
            Plan(
                name=current.name,
                monthly_price=revision.monthly_price,
                annual_price=revision.annual_price,
                currency=current.currency,
                features=revision.features if revision.features is not None else current.features,
                version=current.version + 1,
                supersedes_id=current.id,
            )
        )
        await self._plans.deactivate(current.id)

        logger.info(f"Plan {current.name} revised: v{current.version} -> v{successor.version} ({successor.id})")
        return successor

    async def deactivate_plan(self, plan_id: str) -> Plan:
        plan = await self._plans.deactivate(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        logger.info(f"Plan {plan_id} withdrawn from sale")
        return plan
