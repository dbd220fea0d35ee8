"""Insurance premium from declared value."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from landedcost.services.errors import PolicyStoreError
from landedcost.services.money import percent_of
from landedcost.services.policy_store import InsuranceRange, PolicyStore

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PCT = Decimal("2")
DEFAULT_MIN_PREMIUM = 500  # minor units


@dataclass(frozen=True)
class InsuranceQuote:
    premium: int
    declared_value: int
    source: str  # "range", "fallback" or "not_requested"
    matched_range: Optional[InsuranceRange] = None


class InsuranceCalculator:
    """Banded premium lookup with a percentage fallback for configuration gaps."""

    def __init__(
        self,
        store: PolicyStore,
        fallback_pct: Decimal = DEFAULT_FALLBACK_PCT,
        min_premium: int = DEFAULT_MIN_PREMIUM,
    ):
        self._store = store
        self.fallback_pct = fallback_pct
        self.min_premium = min_premium

    def fallback_premium(self, declared_value: int) -> int:
        return max(percent_of(declared_value, self.fallback_pct), self.min_premium)

    async def quote(self, declared_value: int, requested: bool = True) -> InsuranceQuote:
        """Premium for ``declared_value``; zero when insurance was not requested."""
        if declared_value < 0:
            raise ValueError(f"Declared value must be non-negative, got {declared_value}")
        if not requested:
            return InsuranceQuote(premium=0, declared_value=declared_value, source="not_requested")

        try:
            ranges = await self._store.list_insurance_ranges()
        except PolicyStoreError as e:
            logger.warning("Insurance ranges unavailable, using fallback formula: %s", e)
            ranges = []
        except Exception:
            logger.exception("Insurance range lookup raised, using fallback formula")
            ranges = []

        for rng in ranges:
            if rng.contains(declared_value):
                return InsuranceQuote(
                    premium=rng.premium,
                    declared_value=declared_value,
                    source="range",
                    matched_range=rng,
                )

        premium = self.fallback_premium(declared_value)
        logger.info(
            "No insurance range covers %s, fallback premium %s", declared_value, premium
        )
        return InsuranceQuote(premium=premium, declared_value=declared_value, source="fallback")

    async def premium(self, declared_value: int, requested: bool = True) -> int:
        return (await self.quote(declared_value, requested)).premium
