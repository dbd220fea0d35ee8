"""Rate aggregation tests."""

import time

import pytest
from decimal import Decimal

from landedcost.services.aggregator import RateAggregator
from landedcost.services.carriers import RateOption
from landedcost.services.dimensions import normalize, package_dimensions
from landedcost.services.errors import NoRatesAvailable

ONE = Decimal("1")


@pytest.fixture
def weight():
    return normalize(package_dimensions(30, 20, 15, 2))


class TestRateAggregator:
    @pytest.mark.asyncio
    async def test_partial_provider_failure(self, make_provider, make_rate, weight):
        providers = [
            make_provider("broken", error=RuntimeError("HTTP 500")),
            make_provider("acme", [make_rate("acme", "standard", 1200), make_rate("acme", "eco", 800)]),
            make_provider("empty"),
        ]
        options = await RateAggregator(providers).aggregate(weight, "US", ONE)
        assert [(o.provider_id, o.service_name) for o in options] == [("acme", "eco"), ("acme", "standard")]

    @pytest.mark.asyncio
    async def test_malformed_options_dropped(self, make_provider, make_rate, weight):
        already_priced = RateOption("bad", "x", base_price=900, surcharge=0, estimated_days=3, final_price=900)
        providers = [
            make_provider("good", [make_rate("good", "std", 1000)]),
            make_provider("bad", [already_priced, {"service": "y", "price": 500}, make_rate("bad", "eco", 1100)]),
        ]
        options = await RateAggregator(providers).aggregate(weight, "US", ONE)
        assert [(o.provider_id, o.service_name) for o in options] == [("good", "std"), ("bad", "eco")]

    @pytest.mark.asyncio
    async def test_only_malformed_options_is_no_rates(self, make_provider, weight):
        already_priced = RateOption("bad", "x", base_price=900, surcharge=0, estimated_days=3, final_price=900)
        with pytest.raises(NoRatesAvailable):
            await RateAggregator([make_provider("bad", [already_priced])]).aggregate(weight, "US", ONE)

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, make_provider, weight):
        providers = [
            make_provider("a", error=RuntimeError("down")),
            make_provider("b", error=ValueError("bad payload")),
        ]
        with pytest.raises(NoRatesAvailable):
            await RateAggregator(providers).aggregate(weight, "US", ONE)

    @pytest.mark.asyncio
    async def test_no_providers(self, weight):
        with pytest.raises(NoRatesAvailable):
            await RateAggregator([]).aggregate(weight, "US", ONE)

    @pytest.mark.asyncio
    async def test_empty_answers(self, make_provider, weight):
        with pytest.raises(NoRatesAvailable):
            await RateAggregator([make_provider("a"), make_provider("b")]).aggregate(weight, "US", ONE)

    @pytest.mark.asyncio
    async def test_slow_provider_dropped(self, make_provider, make_rate, weight):
        slow = make_provider("slow", [make_rate("slow", "cheap", 100)], delay=5.0)
        fast = make_provider("fast", [make_rate("fast", "standard", 1000)])
        aggregator = RateAggregator([slow, fast], provider_timeout=0.1, deadline=1.0)

        started = time.monotonic()
        options = await aggregator.aggregate(weight, "US", ONE)
        assert time.monotonic() - started < 2.0
        assert [o.provider_id for o in options] == ["fast"]

    @pytest.mark.asyncio
    async def test_deadline_cuts_off_providers(self, make_provider, make_rate, weight):
        slow = make_provider("slow", [make_rate("slow", "cheap", 100)], delay=5.0)
        fast = make_provider("fast", [make_rate("fast", "standard", 1000)])
        aggregator = RateAggregator([slow, fast], provider_timeout=10.0, deadline=0.2)
        options = await aggregator.aggregate(weight, "US", ONE)
        assert [o.provider_id for o in options] == ["fast"]

    @pytest.mark.asyncio
    async def test_multiplier_applied(self, make_provider, make_rate, weight):
        providers = [make_provider("acme", [make_rate("acme", "standard", 1000)])]
        options = await RateAggregator(providers).aggregate(weight, "US", Decimal("1.25"))
        assert options[0].total_price == 1250
        assert options[0].pre_multiplier_total == 1000

    @pytest.mark.asyncio
    async def test_ties_broken_by_days_then_provider_order(self, make_provider, make_rate, weight):
        providers = [
            make_provider("first", [make_rate("first", "std", 1000, days=6)]),
            make_provider("second", [make_rate("second", "std", 1000, days=4)]),
            make_provider("third", [make_rate("third", "std", 1000, days=6)]),
        ]
        options = await RateAggregator(providers).aggregate(weight, "US", ONE)
        assert [o.provider_id for o in options] == ["second", "first", "third"]

    @pytest.mark.asyncio
    async def test_duplicate_service_keeps_cheapest(self, make_provider, make_rate, weight):
        providers = [make_provider("acme", [
            make_rate("acme", "standard", 1500),
            make_rate("acme", "standard", 1100),
            make_rate("acme", "express", 2500),
        ])]
        options = await RateAggregator(providers).aggregate(weight, "US", ONE)
        assert [(o.service_name, o.total_price) for o in options] == [("standard", 1100), ("express", 2500)]

    @pytest.mark.asyncio
    async def test_same_service_name_from_different_providers_kept(self, make_provider, make_rate, weight):
        providers = [
            make_provider("a", [make_rate("a", "standard", 1000)]),
            make_provider("b", [make_rate("b", "standard", 1100)]),
        ]
        options = await RateAggregator(providers).aggregate(weight, "US", ONE)
        assert len(options) == 2

    @pytest.mark.asyncio
    async def test_non_positive_prices_dropped(self, make_provider, make_rate, weight):
        providers = [make_provider("acme", [make_rate("acme", "free", 0), make_rate("acme", "standard", 900)])]
        options = await RateAggregator(providers).aggregate(weight, "US", ONE)
        assert [o.service_name for o in options] == ["standard"]

    @pytest.mark.asyncio
    async def test_max_options(self, make_provider, make_rate, weight):
        rates = [make_rate("acme", f"svc-{i}", 1000 + i) for i in range(6)]
        options = await RateAggregator([make_provider("acme", rates)], max_options=4).aggregate(weight, "US", ONE)
        assert [o.service_name for o in options] == ["svc-0", "svc-1", "svc-2", "svc-3"]

    @pytest.mark.asyncio
    async def test_allowed_services(self, make_provider, make_rate, weight):
        providers = [
            make_provider("acme", [make_rate("acme", "standard", 1000), make_rate("acme", "express", 2000)]),
            make_provider("other", [make_rate("other", "express", 1800)]),
        ]
        aggregator = RateAggregator(providers, allowed_services={"us": {"standard", "other:express"}})
        us = await aggregator.aggregate(weight, "US", ONE)
        assert [(o.provider_id, o.service_name) for o in us] == [("acme", "standard"), ("other", "express")]
        # no list for DE and no wildcard: everything allowed
        assert len(await aggregator.aggregate(weight, "DE", ONE)) == 3

    @pytest.mark.asyncio
    async def test_wildcard_allow_list(self, make_provider, make_rate, weight):
        providers = [make_provider("acme", [make_rate("acme", "standard", 1000), make_rate("acme", "express", 2000)])]
        aggregator = RateAggregator(providers, allowed_services={"*": {"express"}})
        options = await aggregator.aggregate(weight, "DE", ONE)
        assert [o.service_name for o in options] == ["express"]

    @pytest.mark.asyncio
    async def test_nothing_permitted(self, make_provider, make_rate, weight):
        providers = [make_provider("acme", [make_rate("acme", "standard", 1000)])]
        aggregator = RateAggregator(providers, allowed_services={"US": {"express"}})
        with pytest.raises(NoRatesAvailable):
            await aggregator.aggregate(weight, "US", ONE)

    @pytest.mark.asyncio
    async def test_providers_queried_concurrently(self, make_provider, make_rate, weight):
        providers = [
            make_provider(f"p{i}", [make_rate(f"p{i}", "standard", 1000 + i)], delay=0.2)
            for i in range(5)
        ]
        started = time.monotonic()
        options = await RateAggregator(providers, max_options=None).aggregate(weight, "US", ONE)
        assert time.monotonic() - started < 0.9
        assert len(options) == 5
