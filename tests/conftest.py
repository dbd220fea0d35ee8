"""Test fixtures."""

import asyncio
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from landedcost.api.pricing import get_assembler
from landedcost.database import Base
from landedcost.main import app
from landedcost.services.aggregator import RateAggregator
from landedcost.services.carriers import RateOption
from landedcost.services.duty import DefaultPercentTable, DutyTaxEstimator, TariffTableSource
from landedcost.services.insurance import InsuranceCalculator
from landedcost.services.landed_cost import LandedCostAssembler
from landedcost.services.multiplier import MultiplierResolver
from landedcost.services.policy_store import (
    InMemoryPolicyStore,
    InsuranceRange,
    MultiplierTier,
    TierKind,
)

# Use SQLite for tests (no external DB needed for unit tests)
TEST_DB_URL = "sqlite+aiosqlite:///./test_landedcost.db"


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh policy tables for each test that needs the database."""
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


# ── Fake carriers ────────────────────────────────────────


class StaticProvider:
    """Rate provider answering from a fixed list, optionally slow or broken."""

    def __init__(self, provider_id, options=(), error=None, delay=0.0, fail_for=()):
        self.provider_id = provider_id
        self.options = list(options)
        self.error = error
        self.delay = delay
        self.fail_for = {c.upper() for c in fail_for}
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def quote(self, destination_country, weight):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if destination_country.upper() in self.fail_for:
                raise RuntimeError(f"{self.provider_id} does not serve {destination_country}")
            return list(self.options)
        finally:
            self.active -= 1


def rate(provider_id, service_name, base_price, surcharge=0, days=5):
    return RateOption(
        provider_id=provider_id,
        service_name=service_name,
        base_price=base_price,
        surcharge=surcharge,
        estimated_days=days,
        display_name=service_name.title(),
    )


@pytest.fixture
def make_provider():
    def _make(provider_id, options=(), **kwargs):
        return StaticProvider(provider_id, options, **kwargs)
    return _make


@pytest.fixture
def make_rate():
    return rate


# ── Policy ───────────────────────────────────────────────


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    """Default 1.0, US at 1.25, one insurance band [5000, 15000] -> 300."""
    return InMemoryPolicyStore(
        tiers=[
            MultiplierTier(TierKind.GLOBAL_DEFAULT, Decimal("1.0")),
            MultiplierTier(TierKind.COUNTRY, Decimal("1.25"), scope_key="US"),
        ],
        insurance_ranges=[InsuranceRange(min_value=5000, max_value=15000, premium=300)],
    )


@pytest.fixture
def duty_estimator() -> DutyTaxEstimator:
    return DutyTaxEstimator(
        duty_sources=[TariffTableSource({"6109.10.00": Decimal("16.5")}, country="US")],
        duty_defaults=DefaultPercentTable({"US": Decimal("0")}),
        tax_defaults=DefaultPercentTable({"GB": Decimal("20"), "DE": Decimal("19")}),
        duty_countries=["US"],
        surcharge_pct=Decimal("15"),
    )


@pytest.fixture
def make_assembler(policy_store, duty_estimator):
    def _make(providers, store=None, currency_cache=None, duty=None, **kwargs):
        store = store if store is not None else policy_store
        return LandedCostAssembler(
            resolver=MultiplierResolver(store),
            aggregator=RateAggregator(providers, provider_timeout=1.0, deadline=2.0),
            insurance=InsuranceCalculator(store),
            duty=duty if duty is not None else duty_estimator,
            currency_cache=currency_cache,
            **kwargs,
        )
    return _make


@pytest.fixture
def assembler(make_assembler):
    return make_assembler([StaticProvider("acme", [rate("acme", "standard", 1000, days=5)])])


# ── HTTP ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(assembler) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_assembler] = lambda: assembler
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_assembler, None)
