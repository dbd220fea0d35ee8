"""Import duty / tax estimation.

For duty destinations the estimate is tariff-stacked: a classification
specific base rate plus a standing policy surcharge that applies regardless
of classification. VAT destinations resolve a single tax percent through the
same kind of source chain. Estimation never fails: when every source is
exhausted the destination default percent is used.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Mapping, Optional, Protocol, Sequence

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from landedcost.models import HtsDutyRate
from landedcost.services.errors import ProviderError
from landedcost.services.money import percent_of

logger = logging.getLogger(__name__)

HS_CODE_DIGITS = 8
DEFAULT_SURCHARGE_PCT = Decimal("15")

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")


class DutyRegime(str, Enum):
    DUTY = "duty"
    VAT = "vat"
    NOT_APPLICABLE = "not_applicable"


class RateSource(str, Enum):
    OFFICIAL = "official"
    ESTIMATED = "estimated"
    DEFAULT = "default"
    UNCLASSIFIED = "unclassified"  # no HS code given
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class CanonicalHsCode:
    code: str
    original: str
    truncated: bool


def canonicalize_hs_code(raw: Optional[str], digits: int = HS_CODE_DIGITS) -> Optional[CanonicalHsCode]:
    """Strip separators and truncate (never round) to ``digits`` digits."""
    if raw is None:
        return None
    clean = re.sub(r"\D", "", str(raw))
    if not clean:
        return None
    truncated = len(clean) > digits
    if truncated:
        logger.debug("Truncating HS code %s to %d digits", clean, digits)
    return CanonicalHsCode(code=clean[:digits], original=str(raw), truncated=truncated)


def parse_rate_text(text: Optional[str]) -> Optional[Decimal]:
    """'Free' -> 0, '5.5%' -> 5.5; anything else (specific/compound duties) -> None."""
    if text is None:
        return None
    t = str(text).strip().lower()
    if not t:
        return None
    if t == "free":
        return Decimal("0")
    m = _PERCENT_RE.search(t)
    if not m:
        return None
    return Decimal(m.group(1))


@dataclass(frozen=True)
class DutyRateRecord:
    hs_code: str
    base_rate_pct: Decimal
    source: RateSource


class DutyRateLookup(Protocol):
    name: str

    async def lookup(self, hs_code: str, country: str) -> Optional[DutyRateRecord]: ...


class TariffTableSource:
    """Static tariff table for one destination, keyed by canonical HS code."""

    def __init__(
        self,
        rates: Mapping[str, Decimal],
        country: str = "US",
        source: RateSource = RateSource.OFFICIAL,
        name: str = "tariff_table",
        digits: int = HS_CODE_DIGITS,
    ):
        self.name = name
        self.country = country.upper()
        self.source = source
        self._rates: dict[str, Decimal] = {}
        for code, pct in rates.items():
            canonical = canonicalize_hs_code(code, digits)
            if canonical is not None:
                self._rates[canonical.code] = Decimal(str(pct))

    async def lookup(self, hs_code: str, country: str) -> Optional[DutyRateRecord]:
        if country.upper() != self.country:
            return None
        pct = self._rates.get(hs_code)
        if pct is None:
            return None
        return DutyRateRecord(hs_code=hs_code, base_rate_pct=pct, source=self.source)


class SQLTariffSource:
    """Official schedule lines stored in ``hts_duty_rates``."""

    name = "hts_database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], country: str = "US"):
        self._session_factory = session_factory
        self.country = country.upper()

    async def lookup(self, hs_code: str, country: str) -> Optional[DutyRateRecord]:
        if country.upper() != self.country:
            return None
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(HtsDutyRate).where(HtsDutyRate.hs_code == hs_code)
                )
                row = result.scalars().first()
        except (SQLAlchemyError, OSError) as e:
            raise ProviderError(self.name, str(e)) from e
        if row is None:
            return None
        pct = row.base_rate_pct
        pct = Decimal(str(pct)) if pct is not None else parse_rate_text(row.general_rate_text)
        if pct is None:
            return None
        return DutyRateRecord(hs_code=hs_code, base_rate_pct=pct, source=RateSource.OFFICIAL)


class EstimationApiSource:
    """Secondary HTTP estimation provider.

    Expects ``GET <url>?hs_code=...&country=...`` to answer with
    ``{"rate_pct": 5.5}`` or ``{"rate_text": "5.5%"}``; 404 means not found.
    """

    name = "estimation_api"

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def lookup(self, hs_code: str, country: str) -> Optional[DutyRateRecord]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(
                    self.url,
                    params={"hs_code": hs_code, "country": country.upper()},
                    headers=headers,
                )
                if resp.status_code == 404:
                    return None
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(self.name, str(e)) from e

        pct: Optional[Decimal] = None
        if isinstance(data, dict):
            if data.get("rate_pct") is not None:
                try:
                    pct = Decimal(str(data["rate_pct"]))
                except InvalidOperation:
                    raise ProviderError(self.name, f"bad rate_pct {data['rate_pct']!r}")
            else:
                pct = parse_rate_text(data.get("rate_text"))
        if pct is None:
            return None
        if not pct.is_finite() or pct < 0:
            raise ProviderError(self.name, f"bad rate {pct}")
        return DutyRateRecord(hs_code=hs_code, base_rate_pct=pct, source=RateSource.ESTIMATED)


class DefaultPercentTable:
    """Destination-level default percent; always answers."""

    def __init__(self, percents: Mapping[str, Decimal], fallback_pct: Decimal = Decimal("0")):
        self._percents = {k.upper(): Decimal(str(v)) for k, v in percents.items()}
        self.fallback_pct = fallback_pct

    def has(self, country: str) -> bool:
        return country.upper() in self._percents

    def get(self, country: str) -> Decimal:
        pct = self._percents.get(country.upper())
        if pct is None:
            logger.warning("No default percent for %s, using %s", country, self.fallback_pct)
            return self.fallback_pct
        return pct


@dataclass(frozen=True)
class DutyEstimate:
    regime: DutyRegime
    customs_value: int
    base_amount: int
    surcharge_amount: int
    total_amount: int
    rate_source: RateSource
    base_rate_pct: Decimal = Decimal("0")
    surcharge_pct: Decimal = Decimal("0")
    hs_code: Optional[str] = None
    hs_code_truncated: bool = False

    @property
    def is_applicable(self) -> bool:
        return self.regime != DutyRegime.NOT_APPLICABLE

    @property
    def is_estimated(self) -> bool:
        return self.rate_source in (RateSource.ESTIMATED, RateSource.DEFAULT)


class DutyTaxEstimator:
    """Resolve duty (base + standing surcharge) or VAT for a destination."""

    def __init__(
        self,
        duty_sources: Sequence[DutyRateLookup] = (),
        duty_defaults: Optional[DefaultPercentTable] = None,
        tax_sources: Sequence[DutyRateLookup] = (),
        tax_defaults: Optional[DefaultPercentTable] = None,
        duty_countries: Sequence[str] = ("US",),
        surcharge_pct: Decimal = DEFAULT_SURCHARGE_PCT,
        origin_country: str = "TR",
        hs_code_digits: int = HS_CODE_DIGITS,
    ):
        self.duty_sources = list(duty_sources)
        self.duty_defaults = duty_defaults or DefaultPercentTable({})
        self.tax_sources = list(tax_sources)
        self.tax_defaults = tax_defaults or DefaultPercentTable({})
        self.duty_countries = {c.upper() for c in duty_countries}
        self.surcharge_pct = surcharge_pct
        self.origin_country = origin_country.upper()
        self.hs_code_digits = hs_code_digits

    def regime_for(self, country: str) -> DutyRegime:
        c = country.upper()
        if c == self.origin_country:
            return DutyRegime.NOT_APPLICABLE
        if c in self.duty_countries:
            return DutyRegime.DUTY
        if self.tax_defaults.has(c):
            return DutyRegime.VAT
        return DutyRegime.NOT_APPLICABLE

    async def estimate(
        self,
        customs_value: int,
        destination_country: str,
        hs_code: Optional[str] = None,
    ) -> DutyEstimate:
        country = destination_country.strip().upper()
        regime = self.regime_for(country)
        if regime == DutyRegime.NOT_APPLICABLE:
            return DutyEstimate(
                regime=regime,
                customs_value=customs_value,
                base_amount=0,
                surcharge_amount=0,
                total_amount=0,
                rate_source=RateSource.NOT_APPLICABLE,
            )

        canonical = canonicalize_hs_code(hs_code, self.hs_code_digits)

        if regime == DutyRegime.VAT:
            if canonical is None:
                pct, source = self.tax_defaults.get(country), RateSource.DEFAULT
            else:
                pct, source = await self._resolve(
                    canonical.code, country, self.tax_sources, self.tax_defaults
                )
            tax = percent_of(customs_value, pct)
            return DutyEstimate(
                regime=regime,
                customs_value=customs_value,
                base_amount=tax,
                surcharge_amount=0,
                total_amount=tax,
                rate_source=source,
                base_rate_pct=pct,
                hs_code=canonical.code if canonical else None,
                hs_code_truncated=canonical.truncated if canonical else False,
            )

        if canonical is None:
            base_pct, source = Decimal("0"), RateSource.UNCLASSIFIED
        else:
            base_pct, source = await self._resolve(
                canonical.code, country, self.duty_sources, self.duty_defaults
            )

        # Rounded independently so each component is auditable on its own
        base_amount = percent_of(customs_value, base_pct)
        surcharge_amount = percent_of(customs_value, self.surcharge_pct)
        return DutyEstimate(
            regime=regime,
            customs_value=customs_value,
            base_amount=base_amount,
            surcharge_amount=surcharge_amount,
            total_amount=base_amount + surcharge_amount,
            rate_source=source,
            base_rate_pct=base_pct,
            surcharge_pct=self.surcharge_pct,
            hs_code=canonical.code if canonical else None,
            hs_code_truncated=canonical.truncated if canonical else False,
        )

    async def _resolve(
        self,
        hs_code: str,
        country: str,
        sources: Sequence[DutyRateLookup],
        defaults: DefaultPercentTable,
    ) -> tuple[Decimal, RateSource]:
        for src in sources:
            try:
                record = await src.lookup(hs_code, country)
            except ProviderError as e:
                logger.warning("Duty source %s failed for %s: %s", src.name, hs_code, e)
                continue
            except Exception:
                logger.exception("Duty source %s raised for %s", src.name, hs_code)
                continue
            if record is not None:
                logger.debug("HS %s -> %s%% from %s", hs_code, record.base_rate_pct, src.name)
                return record.base_rate_pct, record.source
        logger.warning(
            "No rate found for HS %s in %s, using destination default", hs_code, country
        )
        return defaults.get(country), RateSource.DEFAULT
