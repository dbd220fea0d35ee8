"""Read access to the pricing policy tables.

The engine never writes policy. ``InMemoryPolicyStore`` is used for tests,
the CLI and static deployments; ``SQLPolicyStore`` reads the admin-managed
tables in ``landedcost.models``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from landedcost.models import InsuranceRangeRow, MultiplierRule
from landedcost.services.errors import InsuranceRangeOverlap, PolicyStoreError

logger = logging.getLogger(__name__)


class TierKind(str, Enum):
    """Multiplier layers, most specific first."""
    USER = "user"
    COUNTRY = "country"
    WEIGHT_RANGE = "weight_range"
    GLOBAL_DEFAULT = "global_default"


@dataclass(frozen=True)
class MultiplierTier:
    kind: TierKind
    factor: Decimal
    scope_key: str = ""
    min_weight_kg: Optional[Decimal] = None
    max_weight_kg: Optional[Decimal] = None
    is_active: bool = True

    def __post_init__(self):
        if not self.factor > 0:
            raise ValueError(f"Multiplier factor must be positive, got {self.factor}")

    def matches_weight(self, weight_kg: Decimal) -> bool:
        lo = self.min_weight_kg if self.min_weight_kg is not None else Decimal("0")
        if weight_kg < lo:
            return False
        return self.max_weight_kg is None or weight_kg <= self.max_weight_kg

    @property
    def provenance(self) -> str:
        if self.scope_key:
            return f"{self.kind.value}:{self.scope_key}"
        return self.kind.value


@dataclass(frozen=True)
class InsuranceRange:
    """Inclusive [min_value, max_value] band, all amounts in minor units."""
    min_value: int
    max_value: int
    premium: int
    id: Optional[int] = None
    is_active: bool = True

    def __post_init__(self):
        if self.min_value < 0 or self.premium < 0:
            raise ValueError("Insurance range values must be non-negative")
        if self.min_value > self.max_value:
            raise ValueError(
                f"Insurance range min {self.min_value} is above max {self.max_value}"
            )

    def contains(self, value: int) -> bool:
        return self.min_value <= value <= self.max_value

    def overlaps(self, other: "InsuranceRange") -> bool:
        return self.min_value <= other.max_value and other.min_value <= self.max_value


def find_overlapping_ranges(
    existing: Iterable[InsuranceRange],
    candidate: InsuranceRange,
    exclude_id: Optional[int] = None,
) -> list[InsuranceRange]:
    """Ranges in ``existing`` that share at least one value with ``candidate``."""
    return [
        r for r in existing
        if r.is_active
        and (exclude_id is None or r.id != exclude_id)
        and r.overlaps(candidate)
    ]


class PolicyStore(Protocol):
    async def get_user_tier(self, user_id: str) -> Optional[MultiplierTier]: ...

    async def get_country_tier(self, country_code: str) -> Optional[MultiplierTier]: ...

    async def list_weight_tiers(self) -> list[MultiplierTier]: ...

    async def get_default_tier(self) -> Optional[MultiplierTier]: ...

    async def list_insurance_ranges(self) -> list[InsuranceRange]: ...


class InMemoryPolicyStore:
    """Policy tables held in process memory."""

    def __init__(
        self,
        tiers: Iterable[MultiplierTier] = (),
        insurance_ranges: Iterable[InsuranceRange] = (),
    ):
        self._tiers: dict[tuple[TierKind, str], MultiplierTier] = {}
        self._ranges: list[InsuranceRange] = []
        self._next_range_id = 1
        for tier in tiers:
            self._tiers[(tier.kind, _scope(tier))] = tier
        for r in insurance_ranges:
            self.add_insurance_range(r)

    def add_insurance_range(self, rng: InsuranceRange) -> InsuranceRange:
        """Create a range; rejects any overlap with an active range."""
        conflicts = find_overlapping_ranges(self._ranges, rng)
        if conflicts:
            raise InsuranceRangeOverlap(
                f"Range [{rng.min_value}, {rng.max_value}] overlaps "
                + ", ".join(f"[{c.min_value}, {c.max_value}]" for c in conflicts)
            )
        if rng.id is None:
            rng = replace(rng, id=self._next_range_id)
        self._next_range_id = max(self._next_range_id, rng.id) + 1
        self._ranges.append(rng)
        self._ranges.sort(key=lambda r: r.min_value)
        return rng

    def update_insurance_range(self, range_id: int, rng: InsuranceRange) -> InsuranceRange:
        if not any(r.id == range_id for r in self._ranges):
            raise ValueError(f"Insurance range not found: {range_id}")
        conflicts = find_overlapping_ranges(self._ranges, rng, exclude_id=range_id)
        if conflicts:
            raise InsuranceRangeOverlap(
                f"Range [{rng.min_value}, {rng.max_value}] overlaps "
                + ", ".join(f"[{c.min_value}, {c.max_value}]" for c in conflicts)
            )
        updated = replace(rng, id=range_id)
        self._ranges = [updated if r.id == range_id else r for r in self._ranges]
        self._ranges.sort(key=lambda r: r.min_value)
        return updated

    async def get_user_tier(self, user_id: str) -> Optional[MultiplierTier]:
        return self._tiers.get((TierKind.USER, str(user_id)))

    async def get_country_tier(self, country_code: str) -> Optional[MultiplierTier]:
        return self._tiers.get((TierKind.COUNTRY, country_code.upper()))

    async def list_weight_tiers(self) -> list[MultiplierTier]:
        tiers = [t for (kind, _), t in self._tiers.items() if kind == TierKind.WEIGHT_RANGE]
        return sorted(tiers, key=lambda t: t.min_weight_kg or Decimal("0"))

    async def get_default_tier(self) -> Optional[MultiplierTier]:
        return self._tiers.get((TierKind.GLOBAL_DEFAULT, ""))

    async def list_insurance_ranges(self) -> list[InsuranceRange]:
        return [r for r in self._ranges if r.is_active]


def _scope(tier: MultiplierTier) -> str:
    if tier.kind == TierKind.COUNTRY:
        return tier.scope_key.upper()
    if tier.kind == TierKind.GLOBAL_DEFAULT:
        return ""
    return tier.scope_key


def _tier_from_row(row: MultiplierRule) -> MultiplierTier:
    return MultiplierTier(
        kind=TierKind(row.kind),
        factor=Decimal(str(row.price_multiplier)),
        scope_key=row.scope_key or "",
        min_weight_kg=Decimal(str(row.min_weight_kg)) if row.min_weight_kg is not None else None,
        max_weight_kg=Decimal(str(row.max_weight_kg)) if row.max_weight_kg is not None else None,
        is_active=bool(row.is_active),
    )


class SQLPolicyStore:
    """Policy tables read through an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _rules(self, kind: TierKind, scope_key: Optional[str] = None) -> list[MultiplierRule]:
        stmt = select(MultiplierRule).where(MultiplierRule.kind == kind.value)
        if scope_key is not None:
            stmt = stmt.where(MultiplierRule.scope_key == scope_key)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise PolicyStoreError(f"Failed to read {kind.value} multiplier rules: {e}") from e

    async def get_user_tier(self, user_id: str) -> Optional[MultiplierTier]:
        rows = await self._rules(TierKind.USER, str(user_id))
        return _tier_from_row(rows[0]) if rows else None

    async def get_country_tier(self, country_code: str) -> Optional[MultiplierTier]:
        rows = await self._rules(TierKind.COUNTRY, country_code.upper())
        return _tier_from_row(rows[0]) if rows else None

    async def list_weight_tiers(self) -> list[MultiplierTier]:
        rows = await self._rules(TierKind.WEIGHT_RANGE)
        tiers = [_tier_from_row(r) for r in rows]
        return sorted(tiers, key=lambda t: t.min_weight_kg or Decimal("0"))

    async def get_default_tier(self) -> Optional[MultiplierTier]:
        rows = await self._rules(TierKind.GLOBAL_DEFAULT)
        active = [r for r in rows if r.is_active]
        return _tier_from_row(active[0]) if active else None

    async def list_insurance_ranges(self) -> list[InsuranceRange]:
        stmt = (
            select(InsuranceRangeRow)
            .where(InsuranceRangeRow.is_active.is_(True))
            .order_by(InsuranceRangeRow.min_value)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = list(result.scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise PolicyStoreError(f"Failed to read insurance ranges: {e}") from e

        ranges: list[InsuranceRange] = []
        for row in rows:
            rng = InsuranceRange(
                min_value=row.min_value,
                max_value=row.max_value,
                premium=row.insurance_cost,
                id=row.id,
            )
            conflicts = find_overlapping_ranges(ranges, rng)
            if conflicts:
                logger.warning(
                    "Skipping insurance range %s [%s, %s]: overlaps an earlier range",
                    row.id, row.min_value, row.max_value,
                )
                continue
            ranges.append(rng)
        return ranges
