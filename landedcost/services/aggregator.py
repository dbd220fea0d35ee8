"""Carrier rate fan-out, markup and ranking."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from landedcost.services.carriers import RateOption, RateProvider
from landedcost.services.dimensions import BillableWeight
from landedcost.services.errors import NoRatesAvailable

logger = logging.getLogger(__name__)

ALL_DESTINATIONS = "*"


class RateAggregator:
    """Query every provider concurrently and rank what comes back.

    A provider that raises or misses its timeout is dropped and logged, and so
    is any single option that cannot be priced. The aggregation only fails
    when no provider produced a usable option.
    """

    def __init__(
        self,
        providers: Sequence[RateProvider],
        provider_timeout: float = 8.0,
        deadline: float = 15.0,
        max_options: Optional[int] = 4,
        allowed_services: Optional[Mapping[str, set[str]]] = None,
    ):
        self.providers = list(providers)
        self.provider_timeout = provider_timeout
        self.deadline = deadline
        self.max_options = max_options
        # {"US": {"house-standard", "shipentegra:ups-express"}, "*": {...}}
        self.allowed_services = {
            k.upper(): set(v) for k, v in (allowed_services or {}).items()
        }

    def is_permitted(self, option: RateOption, destination_country: str) -> bool:
        allowed = self.allowed_services.get(destination_country.upper())
        if allowed is None:
            allowed = self.allowed_services.get(ALL_DESTINATIONS)
        if allowed is None:
            return True
        return (
            option.service_name in allowed
            or f"{option.provider_id}:{option.service_name}" in allowed
        )

    async def _call(
        self, provider: RateProvider, destination_country: str, weight: BillableWeight
    ) -> Optional[list[RateOption]]:
        try:
            return await asyncio.wait_for(
                provider.quote(destination_country, weight),
                timeout=min(self.provider_timeout, self.deadline),
            )
        except asyncio.TimeoutError:
            logger.warning("Rate provider %s timed out", provider.provider_id)
        except Exception:
            # provider isolation boundary: one broken adapter never aborts the others
            logger.exception("Rate provider %s failed", provider.provider_id)
        return None

    async def collect(
        self, destination_country: str, weight: BillableWeight
    ) -> list[tuple[int, list[RateOption]]]:
        """Raw (provider index, options) for each provider that answered in time."""
        tasks = [
            asyncio.create_task(self._call(p, destination_country, weight))
            for p in self.providers
        ]
        if not tasks:
            return []
        done, pending = await asyncio.wait(tasks, timeout=self.deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("%d rate provider(s) missed the request deadline", len(pending))

        results = []
        for index, task in enumerate(tasks):
            if task in done and not task.cancelled() and task.result():
                results.append((index, task.result()))
        return results

    async def aggregate(
        self,
        weight: BillableWeight,
        destination_country: str,
        multiplier: Decimal,
    ) -> list[RateOption]:
        """Ranked options, cheapest first; raises NoRatesAvailable if none are usable."""
        country = destination_country.strip().upper()
        responses = await self.collect(country, weight)

        best: dict[tuple[str, str], tuple[tuple, RateOption]] = {}
        for provider_index, options in responses:
            for position, raw in enumerate(options):
                try:
                    if not self.is_permitted(raw, country):
                        continue
                    priced = raw.with_multiplier(multiplier)
                except Exception:
                    logger.exception(
                        "Dropping malformed option %r from %s",
                        raw, self.providers[provider_index].provider_id,
                    )
                    continue
                if priced.total_price <= 0:
                    logger.info(
                        "Dropping %s/%s: non-positive price %s",
                        priced.provider_id, priced.service_name, priced.total_price,
                    )
                    continue
                rank = (priced.total_price, priced.estimated_days, provider_index, position)
                key = (priced.provider_id, priced.service_name)
                if key not in best or rank < best[key][0]:
                    best[key] = (rank, priced)

        ranked = [opt for _, opt in sorted(best.values(), key=lambda item: item[0])]
        if not ranked:
            raise NoRatesAvailable(
                f"No usable rates for {country} at {weight.billable_weight_kg}kg "
                f"({len(responses)}/{len(self.providers)} providers answered)"
            )
        if self.max_options:
            ranked = ranked[: self.max_options]
        logger.info(
            "%d rate option(s) for %s from %d provider(s)", len(ranked), country, len(responses)
        )
        return ranked
