"""Effective price multiplier resolution.

Tiers form a precedence chain, not a product: user > country > weight range >
global default. The first tier that applies wins and nothing else is stacked
on top of it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from landedcost.services.errors import NoDefaultMultiplierConfigured, PolicyStoreError
from landedcost.services.policy_store import MultiplierTier, PolicyStore, TierKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedMultiplier:
    factor: Decimal
    source: TierKind
    tier: MultiplierTier

    @property
    def provenance(self) -> str:
        return self.tier.provenance


class MultiplierResolver:
    """Resolve the single multiplier for a (user, destination, weight) triple."""

    def __init__(self, store: PolicyStore):
        self._store = store

    async def resolve(
        self,
        destination_country: str,
        billable_weight_kg: Decimal,
        user_id: Optional[str] = None,
    ) -> ResolvedMultiplier:
        country = destination_country.strip().upper()

        if user_id is not None and str(user_id) != "":
            tier = await self._lookup(TierKind.USER, self._store.get_user_tier(str(user_id)))
            if tier is not None and tier.is_active:
                return self._resolved(tier)

        tier = await self._lookup(TierKind.COUNTRY, self._store.get_country_tier(country))
        if tier is not None and tier.is_active:
            return self._resolved(tier)

        weight_tiers = await self._lookup(TierKind.WEIGHT_RANGE, self._store.list_weight_tiers())
        for tier in weight_tiers or []:
            if tier.is_active and tier.matches_weight(billable_weight_kg):
                return self._resolved(tier)

        try:
            default = await self._store.get_default_tier()
        except Exception as e:
            raise NoDefaultMultiplierConfigured(f"Global default multiplier unreadable: {e}") from e
        if default is None or not default.is_active:
            raise NoDefaultMultiplierConfigured("No active global default multiplier configured")
        return self._resolved(default)

    @staticmethod
    async def _lookup(kind: TierKind, pending):
        """Await a store lookup; a failing tier falls through to the next one."""
        try:
            return await pending
        except PolicyStoreError as e:
            logger.warning("Multiplier tier %s lookup failed, falling through: %s", kind.value, e)
            return None
        except Exception:
            logger.exception("Multiplier tier %s lookup raised, falling through", kind.value)
            return None

    @staticmethod
    def _resolved(tier: MultiplierTier) -> ResolvedMultiplier:
        logger.debug("Resolved multiplier %s from %s", tier.factor, tier.provenance)
        return ResolvedMultiplier(factor=tier.factor, source=tier.kind, tier=tier)
