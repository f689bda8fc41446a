"""
Test configuration and fixtures for the Billing Engine.

Provides shared fixtures for unit and integration tests: a temporary SQLite
database with the real schema, a controllable clock, an in-memory payment
gateway and a notification dispatcher that records what it was asked to send.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from billing_engine.config.settings import Settings
from billing_engine.domain.grace import GracePolicy
from billing_engine.domain.interfaces import (
    Customer,
    NotificationDispatcher,
    PaymentGateway,
    PaymentInitialization,
    PaymentNotification,
    PaymentVerification,
)
from billing_engine.domain.plans import FiniteLimit, Plan, PlanCreate, UnlimitedLimit
from billing_engine.domain.subscription import PaymentOutcome, Subscription
from billing_engine.infrastructure.db.database import DatabaseManager
from billing_engine.infrastructure.db.repositories import (
    PlanRepository,
    ProcessedEventRepository,
    SubscriptionRepository,
    TransactionRepository,
    UserRepository,
)
from billing_engine.infrastructure.exceptions import (
    PaymentGatewayError,
    WebhookVerificationError,
)
from billing_engine.services.payment_orchestrator import PaymentOrchestrator
from billing_engine.services.plan_catalog import PlanCatalog
from billing_engine.services.subscription_service import SubscriptionService


# 30-day billing month: April 2026
PERIOD_START = datetime(2026, 4, 1, tzinfo=timezone.utc)

ADMIN_KEY = "test-admin-key"


# =============================================================================
# Test Doubles
# =============================================================================

class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


class FakeGateway(PaymentGateway):
    """
    In-memory gateway.

    Charges start pending; tests decide how each reference settles with
    ``settle``. Webhooks are JSON bodies signed with the literal "valid".
    """

    name = "fake"
    signature_header = "x-fake-signature"

    def __init__(self):
        self.charges: Dict[str, Tuple[int, str]] = {}
        self.outcomes: Dict[str, PaymentVerification] = {}
        self.initial_status = PaymentOutcome.PENDING
        self.initialize_error: Optional[Exception] = None
        self.delay: float = 0
        self.verify_calls: List[str] = []
        self._counter = 0

    @property
    def last_reference(self) -> str:
        return f"fake_{self._counter}"

    def settle(
        self,
        reference: str,
        outcome: PaymentOutcome,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> None:
        charged, charged_currency = self.charges[reference]
        self.outcomes[reference] = PaymentVerification(
            reference=reference,
            status=outcome,
            amount=charged if amount is None else amount,
            currency=charged_currency if currency is None else currency,
            message="Card declined" if outcome == PaymentOutcome.FAILED else None,
        )

    async def initialize_payment(self, amount, currency, customer, *, description, metadata=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.initialize_error is not None:
            raise self.initialize_error
        self._counter += 1
        reference = f"fake_{self._counter}"
        self.charges[reference] = (amount, currency)
        if self.initial_status != PaymentOutcome.PENDING:
            self.settle(reference, self.initial_status)
        return PaymentInitialization(
            reference=reference,
            payment_link=f"https://pay.example.test/{reference}",
            status=self.initial_status,
        )

    async def verify_payment(self, reference):
        self.verify_calls.append(reference)
        if self.delay:
            await asyncio.sleep(self.delay)
        if reference not in self.charges:
            raise PaymentGatewayError("Unknown reference", gateway=self.name, reference=reference)
        return self.outcomes.get(
            reference,
            PaymentVerification(reference=reference, status=PaymentOutcome.PENDING),
        )

    def parse_webhook(self, payload, signature):
        if signature != "valid":
            raise WebhookVerificationError("Invalid signature", gateway=self.name)
        event = json.loads(payload)
        if event.get("type") != "charge.completed":
            return None
        return PaymentNotification(
            event_id=event["id"],
            event_type=event["type"],
            reference=event["reference"],
            raw=event,
        )


class RecordingDispatcher(NotificationDispatcher):
    """Records (kind, subscription_id) pairs; can be told to fail."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []
        self.fail = False

    def kinds(self, subscription_id: Optional[str] = None) -> List[str]:
        return [kind for kind, sid in self.sent if subscription_id is None or sid == subscription_id]

    async def _record(self, kind: str, subscription: Subscription) -> None:
        if self.fail:
            raise RuntimeError("mailer down")
        self.sent.append((kind, subscription.id))

    async def send_welcome_email(self, subscription, plan):
        await self._record("welcome", subscription)

    async def send_renewal_reminder(self, subscription, plan):
        await self._record("renewal_reminder", subscription)

    async def send_cancellation_email(self, subscription, plan):
        await self._record("cancellation", subscription)

    async def send_payment_failed_email(self, subscription, plan):
        await self._record("payment_failed", subscription)

    async def send_expired_email(self, subscription, plan):
        await self._record("expired", subscription)


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def db_manager(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """Fresh SQLite database file with the full schema."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def session_factory(db_manager):
    return db_manager.session_factory


@pytest.fixture
def clock():
    return FakeClock(PERIOD_START)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def subscription_repo(session_factory):
    return SubscriptionRepository(session_factory)


@pytest.fixture
def transaction_repo(session_factory):
    return TransactionRepository(session_factory)


@pytest.fixture
def user_repo(session_factory):
    return UserRepository(session_factory)


@pytest.fixture
def orchestrator(session_factory, gateway, clock):
    return PaymentOrchestrator(
        gateway=gateway,
        transactions=TransactionRepository(session_factory),
        processed_events=ProcessedEventRepository(session_factory),
        clock=clock,
        default_timeout=2.0,
    )


@pytest.fixture
def grace_policy():
    return GracePolicy(grace_period=timedelta(days=3))


@pytest.fixture
def service(session_factory, subscription_repo, user_repo, orchestrator, dispatcher, grace_policy, clock):
    return SubscriptionService(
        subscriptions=subscription_repo,
        plans=PlanRepository(session_factory),
        users=user_repo,
        payments=orchestrator,
        notifications=dispatcher,
        grace_policy=grace_policy,
        clock=clock,
    )


@pytest.fixture
def catalog(session_factory):
    return PlanCatalog(PlanRepository(session_factory))


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def user(user_repo) -> Customer:
    return await user_repo.add(
        Customer(user_id="user-1", email="ada@example.com", full_name="Ada Lovelace")
    )


@pytest_asyncio.fixture
async def plans(catalog) -> Dict[str, Plan]:
    """Basic ($9.99), Pro ($29.99) and Free, all USD."""
    basic = await catalog.create_plan(
        PlanCreate(
            name="Basic",
            monthly_price=999,
            annual_price=9990,
            features={"projects": FiniteLimit(value=3)},
        )
    )
    pro = await catalog.create_plan(
        PlanCreate(
            name="Pro",
            monthly_price=2999,
            annual_price=29990,
            features={"projects": UnlimitedLimit(), "priority_support": UnlimitedLimit()},
        )
    )
    free = await catalog.create_plan(
        PlanCreate(name="Free", monthly_price=0, annual_price=0, features={"projects": FiniteLimit(value=1)})
    )
    return {"basic": basic, "pro": pro, "free": free}


@pytest_asyncio.fixture
async def active_subscription(service, gateway, user, plans) -> Subscription:
    """A Basic monthly subscription paid on PERIOD_START."""
    checkout = await service.create_subscription(user.user_id, plans["basic"].id)
    gateway.settle(checkout.reference, PaymentOutcome.SUCCESSFUL)
    application = await service.apply_payment_outcome(checkout.reference)
    return application.subscription


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        admin_api_key=ADMIN_KEY,
        payment_gateway_timeout_seconds=2.0,
    )


@pytest.fixture
def app(service, orchestrator, catalog, user_repo, test_settings):
    """FastAPI application wired to the test database and fakes."""
    from billing_engine.api.dependencies import (
        get_payment_orchestrator,
        get_plan_catalog,
        get_subscription_service,
        get_user_repository,
    )
    from billing_engine.config.settings import get_settings
    from billing_engine.main import app

    app.dependency_overrides[get_subscription_service] = lambda: service
    app.dependency_overrides[get_payment_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    app.dependency_overrides[get_user_repository] = lambda: user_repo
    app.dependency_overrides[get_settings] = lambda: test_settings
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Synchronous test client, for requests that never reach the database."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async test client sharing the test's event loop with the database."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
