"""Pricing API tests."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient

from landedcost.api.pricing import get_assembler
from landedcost.main import app
from landedcost.services.fx_rate import CurrencyRateCache
from landedcost.services.policy_store import InMemoryPolicyStore

PAYLOAD = {
    "length_cm": 30,
    "width_cm": 20,
    "height_cm": 15,
    "weight_kg": 2,
    "destination_country": "us",
}


class StaticRateSource:
    name = "central_bank"

    async def fetch_rate(self):
        return Decimal("41.25"), datetime(2026, 10, 18, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == "1.0.0"


@pytest.mark.asyncio
async def test_landed_cost(client: AsyncClient):
    resp = await client.post("/api/v1/pricing/landed-cost", json=PAYLOAD)
    assert resp.status_code == 200
    data = resp.json()
    assert data["currency"] == "USD"
    assert Decimal(data["multiplier"]["factor"]) == Decimal("1.25")
    assert data["multiplier"]["provenance"] == "country:US"
    assert Decimal(data["billable_weight"]["billable_kg"]) == Decimal("2")
    assert data["options"][0]["total"] == 1250
    assert data["insurance"] is None


@pytest.mark.asyncio
async def test_landed_cost_with_insurance_and_ddp(client: AsyncClient):
    payload = {
        **PAYLOAD,
        "declared_value": 10000,
        "insurance_requested": True,
        "hs_code": "6109.10.00.04",
        "duty_mode": "ddp",
    }
    resp = await client.post("/api/v1/pricing/landed-cost", json=payload)
    assert resp.status_code == 200
    data = resp.json()
    option = data["options"][0]
    assert option["insurance"] == 300
    assert option["duty"] == 3150
    assert option["handling_fee"] == 450
    assert option["total"] == 1250 + 300 + 3150 + 450
    assert data["duty"]["hs_code"] == "61091000"
    assert data["duty"]["hs_code_truncated"] is True


@pytest.mark.asyncio
async def test_invalid_dimensions_rejected(client: AsyncClient):
    resp = await client.post("/api/v1/pricing/landed-cost", json={**PAYLOAD, "height_cm": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_bad_country_rejected(client: AsyncClient):
    resp = await client.post("/api/v1/pricing/landed-cost", json={**PAYLOAD, "destination_country": "USA"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_no_rates_is_503(client: AsyncClient, make_assembler, make_provider):
    app.dependency_overrides[get_assembler] = lambda: make_assembler(
        [make_provider("a", error=RuntimeError("down"))]
    )
    resp = await client.post("/api/v1/pricing/landed-cost", json=PAYLOAD)
    assert resp.status_code == 503
    assert resp.json()["error"] == "no_rates_available"


@pytest.mark.asyncio
async def test_missing_default_is_500(client: AsyncClient, make_assembler, make_provider, make_rate):
    app.dependency_overrides[get_assembler] = lambda: make_assembler(
        [make_provider("a", [make_rate("a", "std", 1000)])], store=InMemoryPolicyStore()
    )
    resp = await client.post("/api/v1/pricing/landed-cost", json=PAYLOAD)
    assert resp.status_code == 500
    data = resp.json()
    assert data["error"] == "no_default_multiplier"
    assert data["detail"] == "Pricing is temporarily unavailable"


@pytest.mark.asyncio
async def test_batch(client: AsyncClient):
    resp = await client.post("/api/v1/pricing/landed-cost/batch", json={
        "items": [PAYLOAD, {**PAYLOAD, "destination_country": "DE"}],
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["succeeded"] == 2
    assert data["failed"] == 0
    assert [i["result"]["options"][0]["total"] for i in data["items"]] == [1250, 1000]


@pytest.mark.asyncio
async def test_batch_partial_failure(client: AsyncClient, make_assembler, make_provider, make_rate):
    app.dependency_overrides[get_assembler] = lambda: make_assembler(
        [make_provider("a", [make_rate("a", "std", 1000)], fail_for=["XX"])]
    )
    resp = await client.post("/api/v1/pricing/landed-cost/batch", json={
        "items": [PAYLOAD, {**PAYLOAD, "destination_country": "XX"}],
    })
    data = resp.json()
    assert data["succeeded"] == 1
    assert data["failed"] == 1
    failed = data["items"][1]
    assert failed["ok"] is False
    assert failed["error"]["error"] == "no_rates_available"


@pytest.mark.asyncio
async def test_empty_batch_rejected(client: AsyncClient):
    resp = await client.post("/api/v1/pricing/landed-cost/batch", json={"items": []})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_currency_disabled(client: AsyncClient):
    resp = await client.get("/api/v1/pricing/currency")
    assert resp.status_code == 404
    assert resp.json()["error"] == "currency_disabled"


@pytest.mark.asyncio
async def test_currency_quote_and_refresh(client: AsyncClient, make_assembler, make_provider, make_rate):
    cache = CurrencyRateCache([StaticRateSource()])
    app.dependency_overrides[get_assembler] = lambda: make_assembler(
        [make_provider("a", [make_rate("a", "std", 1000)])], currency_cache=cache
    )
    resp = await client.get("/api/v1/pricing/currency")
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["rate"]) == Decimal("41.25")
    assert data["source"] == "central_bank"
    assert data["is_fallback"] is False

    resp = await client.post("/api/v1/pricing/currency/refresh")
    assert resp.status_code == 200
    assert cache.refresh_count == 2

    resp = await client.post("/api/v1/pricing/landed-cost", json=PAYLOAD)
    option = resp.json()["options"][0]
    assert option["display_total"] == 51563  # 51562.5 rounded half up
