"""
Plan Catalog API Routes

Public listing of plans on sale; publishing, revising and withdrawing plans
are admin operations.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status

from billing_engine.api.dependencies import PlanCatalogDep
from billing_engine.api.routes.admin import verify_admin_api_key
from billing_engine.domain.plans import Plan, PlanCreate, PlanPriceRevision


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/plans", response_model=List[Plan])
async def list_plans(catalog: PlanCatalogDep, include_inactive: bool = False):
    """List plans on sale. ``include_inactive`` also returns superseded and withdrawn versions."""
    return await catalog.list_plans(include_inactive=include_inactive)


@router.get("/plans/{plan_id}", response_model=Plan)
async def get_plan(plan_id: str, catalog: PlanCatalogDep):
    return await catalog.get_plan(plan_id)


@router.post(
    "/plans",
    response_model=Plan,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin_api_key)],
)
async def create_plan(request: PlanCreate, catalog: PlanCatalogDep):
    plan = await catalog.create_plan(request)
    logger.info(f"Published plan {plan.name} ({plan.id})")
    return plan


@router.post(
    "/plans/{plan_id}/revisions",
    response_model=Plan,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_admin_api_key)],
)
async def revise_plan(plan_id: str, request: PlanPriceRevision, catalog: PlanCatalogDep):
    """
    Publish a new price version of a plan.

    Existing subscribers stay on the version they bought.
    """
    return await catalog.revise_plan(plan_id, request)


@router.delete(
    "/plans/{plan_id}",
    response_model=Plan,
    dependencies=[Depends(verify_admin_api_key)],
)
async def deactivate_plan(plan_id: str, catalog: PlanCatalogDep):
    """Withdraw a plan from sale."""
    return await catalog.deactivate_plan(plan_id)
