"""
API Dependencies

Composition root: builds the repositories, the payment orchestrator and the
services once per process and hands them to routes through FastAPI
dependency injection. Tests replace any of them with
``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from billing_engine.config.settings import Settings, get_settings
from billing_engine.domain.grace import GracePolicy
from billing_engine.infrastructure.db.database import get_db_manager
from billing_engine.infrastructure.db.repositories import (
    PlanRepository,
    ProcessedEventRepository,
    SubscriptionRepository,
    TransactionRepository,
    UserRepository,
)
from billing_engine.infrastructure.notifications import LoggingNotificationDispatcher
from billing_engine.infrastructure.payments import create_payment_gateway
from billing_engine.services.payment_orchestrator import PaymentOrchestrator
from billing_engine.services.plan_catalog import PlanCatalog
from billing_engine.services.subscription_service import SubscriptionService


logger = logging.getLogger(__name__)


# =============================================================================
# Providers
# =============================================================================

@lru_cache
def get_plan_repository() -> PlanRepository:
    return PlanRepository(get_db_manager().session_factory)


@lru_cache
def get_user_repository() -> UserRepository:
    return UserRepository(get_db_manager().session_factory)


def get_grace_policy() -> GracePolicy:
    return GracePolicy.from_settings(get_settings())


@lru_cache
def get_payment_orchestrator() -> PaymentOrchestrator:
    """
    The orchestrator for the configured gateway.

    Raises:
        ConfigurationError: PAYMENT_PROVIDER is "none"
    """
    settings = get_settings()
    session_factory = get_db_manager().session_factory
    gateway = create_payment_gateway(settings)
    logger.info(f"Payment gateway: {gateway.name}")
    return PaymentOrchestrator(
        gateway=gateway,
        transactions=TransactionRepository(session_factory),
        processed_events=ProcessedEventRepository(session_factory),
        default_timeout=settings.payment_gateway_timeout_seconds,
    )


@lru_cache
def get_subscription_service() -> SubscriptionService:
    settings = get_settings()
    return SubscriptionService(
        subscriptions=SubscriptionRepository(get_db_manager().session_factory),
        plans=get_plan_repository(),
        users=get_user_repository(),
        payments=get_payment_orchestrator(),
        notifications=LoggingNotificationDispatcher(),
        grace_policy=get_grace_policy(),
        sweep_batch_size=settings.sweep_batch_size,
    )


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog(get_plan_repository())


# =============================================================================
# Type aliases for route signatures
# =============================================================================

SettingsDep = Annotated[Settings, Depends(get_settings)]
SubscriptionServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]
PaymentOrchestratorDep = Annotated[PaymentOrchestrator, Depends(get_payment_orchestrator)]
PlanCatalogDep = Annotated[PlanCatalog, Depends(get_plan_catalog)]
UserRepoDep = Annotated[UserRepository, Depends(get_user_repository)]
