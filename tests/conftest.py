"""Shared fixtures: throwaway databases, a controllable clock, and service doubles."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fieldops.config import DispatchConfig, PaymentConfig
from fieldops.db import crud
from fieldops.errors import ProviderError
from fieldops.models import Base
from fieldops.models.base import utcnow
from fieldops.services.candidate_selector import Candidate, CandidateSelector
from fieldops.services.change_feed import ChangeFeed
from fieldops.services.dispatch import DispatchOrchestrator
from fieldops.services.payment_provider import PaymentProvider, ProviderAuthorization
from fieldops.services.payments import PaymentAuthorizationManager


class Clock:
    def __init__(self, start: datetime | None = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FixedOrderSelector(CandidateSelector):
    """Offers technicians in a fixed order, skipping excluded ones."""

    def __init__(self, technician_ids: list[str] | None = None):
        self.technician_ids = list(technician_ids or [])

    async def select_next_candidate(self, db, intervention, excluded_technician_ids):
        for position, tech_id in enumerate(self.technician_ids):
            if tech_id not in excluded_technician_ids:
                return Candidate(technician_id=tech_id, score=100.0 - position)
        return None


class FakeProvider(PaymentProvider):
    """In-memory payment provider recording every call."""

    def __init__(self):
        self.customers: dict[str, str] = {}
        self.intents: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()

    def _check(self, op: str):
        self.calls.append((op,))
        if op in self.fail_on:
            raise ProviderError(f"{op} failed")

    async def find_customer_by_email(self, email):
        self._check("find_customer")
        return self.customers.get(email)

    async def create_customer(self, email):
        self._check("create_customer")
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers[email] = customer_id
        return customer_id

    async def create_authorization(self, customer_id, amount_minor, currency, metadata):
        self._check("create_authorization")
        intent_id = f"pi_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "customer": customer_id, "amount": amount_minor, "currency": currency,
            "metadata": metadata, "status": "requires_capture",
        }
        return ProviderAuthorization(intent_id, f"{intent_id}_secret", "requires_payment_method")

    async def cancel_authorization(self, provider_payment_id):
        self._check("cancel_authorization")
        self.intents[provider_payment_id]["status"] = "canceled"

    async def capture_authorization(self, provider_payment_id, amount_minor):
        self._check("capture_authorization")
        self.intents[provider_payment_id]["status"] = "succeeded"
        self.intents[provider_payment_id]["captured"] = amount_minor

    async def retrieve_authorization(self, provider_payment_id):
        self._check("retrieve_authorization")
        intent = self.intents[provider_payment_id]
        return ProviderAuthorization(provider_payment_id, status=intent["status"], amount_minor=intent["amount"])

    async def increment_authorization(self, provider_payment_id, amount_minor):
        self._check("increment_authorization")
        intent = self.intents[provider_payment_id]
        intent["amount"] = amount_minor
        return ProviderAuthorization(provider_payment_id, status=intent["status"], amount_minor=amount_minor)


@pytest_asyncio.fixture
async def session_factory():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database: sessions get separate connections, for race tests."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def events(feed):
    received = []
    unsubscribe = feed.subscribe(received.append)
    yield received
    unsubscribe()


@pytest.fixture
def dispatch_config():
    return DispatchConfig(offer_window_seconds=120)


@pytest.fixture
def payment_config():
    return PaymentConfig(stripe_secret_key="sk_test", default_currency="eur")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def selector():
    return FixedOrderSelector()


@pytest.fixture
def make_orchestrator(selector, feed, dispatch_config, clock):
    def _make(session: AsyncSession) -> DispatchOrchestrator:
        return DispatchOrchestrator(session, selector=selector, feed=feed, config=dispatch_config, clock=clock)
    return _make


@pytest.fixture
def orchestrator(db, make_orchestrator):
    return make_orchestrator(db)


@pytest.fixture
def make_payments(provider, feed, payment_config, clock):
    def _make(session: AsyncSession) -> PaymentAuthorizationManager:
        return PaymentAuthorizationManager(
            session, provider=provider, feed=feed, config=payment_config, clock=clock,
        )
    return _make


@pytest.fixture
def payments(db, make_payments):
    return make_payments(db)


@pytest_asyncio.fixture
async def technicians(db, selector):
    """Three technicians, registered with the selector in offer order."""
    techs = [
        await crud.create_technician(db, name=name, email=f"{name.lower()}@example.com",
                                     skills=["plumbing"], latitude=48.85, longitude=2.35)
        for name in ("T1", "T2", "T3")
    ]
    selector.technician_ids = [t.id for t in techs]
    return techs


@pytest_asyncio.fixture
async def intervention(db):
    return await crud.create_intervention(db, "client-1", "plumbing", latitude=48.86, longitude=2.34)
