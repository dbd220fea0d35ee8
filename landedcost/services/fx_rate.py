"""Currency exchange rate cache.

Holds one base->target quote (USD->TRY by default) for display conversion,
refreshed from an ordered list of sources. Currency is advisory: when every
source fails the cache hands out a conservative constant instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Protocol, Sequence

import httpx

from landedcost.services.errors import ProviderError
from landedcost.services.money import round_minor

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"
_DEFAULT_TTL_SECONDS = 3600  # 1 hour
_FALLBACK_RETRY_SECONDS = 60


@dataclass(frozen=True)
class CurrencyQuote:
    """A base->target rate as captured from one source."""
    rate: Decimal
    captured_at: datetime
    source: str
    ttl_seconds: int
    base_currency: str = "USD"
    target_currency: str = "TRY"

    @property
    def is_fallback(self) -> bool:
        return self.source == FALLBACK_SOURCE

    def convert(self, amount_minor: int) -> int:
        """Convert a base-currency minor amount to target-currency minor units."""
        return round_minor(Decimal(amount_minor) * self.rate)


class CurrencySource(Protocol):
    name: str

    async def fetch_rate(self) -> tuple[Decimal, datetime]: ...


def _parse_rate(raw, source: str) -> Decimal:
    try:
        rate = Decimal(str(raw).strip().replace(",", "."))
    except (InvalidOperation, ValueError, TypeError):
        raise ProviderError(source, f"unparseable rate {raw!r}")
    if not rate.is_finite() or rate <= 0:
        raise ProviderError(source, f"non-positive rate {raw!r}")
    return rate


class CentralBankSource:
    """TCMB daily XML feed (TRY per unit of ``currency``)."""

    name = "central_bank"

    def __init__(
        self,
        url: str = "https://www.tcmb.gov.tr/kurlar/today.xml",
        currency: str = "USD",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.currency = currency.upper()
        self.timeout = timeout
        self._transport = transport

    async def fetch_rate(self) -> tuple[Decimal, datetime]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.url)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(self.name, str(e)) from e

        try:
            root = ET.fromstring(resp.text)
        except ET.ParseError as e:
            raise ProviderError(self.name, f"malformed XML: {e}") from e

        for node in root.iter("Currency"):
            if node.get("CurrencyCode") != self.currency:
                continue
            selling = node.findtext("BanknoteSelling") or node.findtext("ForexSelling")
            if not selling:
                break
            return _parse_rate(selling, self.name), self._as_of(root)
        raise ProviderError(self.name, f"no {self.currency} rate in feed")

    @staticmethod
    def _as_of(root: ET.Element) -> datetime:
        raw = root.get("Date")
        if raw:
            try:
                return datetime.strptime(raw, "%m/%d/%Y").replace(tzinfo=timezone.utc)
            except ValueError:
                pass
        return datetime.now(timezone.utc)


class ExchangeRateApiSource:
    """exchangerate-api.com style JSON feed: ``{"rates": {"TRY": 40.1, ...}}``."""

    name = "aggregator"

    def __init__(
        self,
        url: str = "https://api.exchangerate-api.com/v4/latest/{base}",
        base_currency: str = "USD",
        target_currency: str = "TRY",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.format(base=base_currency.upper())
        self.target_currency = target_currency.upper()
        self.timeout = timeout
        self._transport = transport

    async def fetch_rate(self) -> tuple[Decimal, datetime]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(self.name, str(e)) from e

        rates = data.get("rates") if isinstance(data, dict) else None
        if not rates or self.target_currency not in rates:
            raise ProviderError(self.name, f"no {self.target_currency} rate in response")
        as_of = datetime.now(timezone.utc)
        if data.get("time_last_updated"):
            try:
                as_of = datetime.fromtimestamp(int(data["time_last_updated"]), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                pass
        return _parse_rate(rates[self.target_currency], self.name), as_of


class CurrencyRateCache:
    """Time-bounded single-quote cache with coalesced refreshes.

    Concurrent ``get()`` calls that race on an expired quote share one
    in-flight sweep over the sources. Readers never see a half-built quote:
    the cached value is replaced by a single attribute assignment.
    """

    def __init__(
        self,
        sources: Sequence[CurrencySource],
        ttl_seconds: int = _DEFAULT_TTL_SECONDS,
        fallback_rate: Decimal = Decimal("40.0"),
        base_currency: str = "USD",
        target_currency: str = "TRY",
        fallback_retry_seconds: int = _FALLBACK_RETRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sources = list(sources)
        self.ttl_seconds = ttl_seconds
        self.fallback_rate = fallback_rate
        self.base_currency = base_currency.upper()
        self.target_currency = target_currency.upper()
        self.fallback_retry_seconds = fallback_retry_seconds
        self._clock = clock
        self._quote: Optional[CurrencyQuote] = None
        self._fetched_at: float = 0.0
        self._inflight: Optional[asyncio.Future] = None
        self._refresh_count = 0

    @property
    def refresh_count(self) -> int:
        """Number of source sweeps started so far."""
        return self._refresh_count

    @property
    def cached(self) -> Optional[CurrencyQuote]:
        return self._quote

    def _is_fresh(self) -> bool:
        if self._quote is None:
            return False
        return self._clock() - self._fetched_at < self._quote.ttl_seconds

    async def get(self) -> CurrencyQuote:
        if self._is_fresh():
            return self._quote
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._sweep())
        # shield: a cancelled caller must not cancel the sweep other callers await
        return await asyncio.shield(self._inflight)

    def clear(self) -> None:
        """Invalidate the cached quote immediately."""
        self._quote = None
        self._fetched_at = 0.0

    async def refresh(self) -> CurrencyQuote:
        """Manual refresh: drop the cached quote and fetch a new one."""
        self.clear()
        return await self.get()

    async def convert(self, amount_minor: int) -> int:
        return (await self.get()).convert(amount_minor)

    async def _sweep(self) -> CurrencyQuote:
        try:
            self._refresh_count += 1
            for source in self.sources:
                try:
                    rate, as_of = await source.fetch_rate()
                except ProviderError as e:
                    logger.warning("Currency source %s failed: %s", source.name, e)
                    continue
                except Exception:
                    logger.exception("Currency source %s raised", source.name)
                    continue
                quote = CurrencyQuote(
                    rate=rate,
                    captured_at=as_of,
                    source=source.name,
                    ttl_seconds=self.ttl_seconds,
                    base_currency=self.base_currency,
                    target_currency=self.target_currency,
                )
                self._commit(quote)
                logger.info(
                    "%s->%s rate %s from %s",
                    self.base_currency, self.target_currency, rate, source.name,
                )
                return quote

            logger.warning(
                "All currency sources failed, using fallback rate %s", self.fallback_rate
            )
            quote = CurrencyQuote(
                rate=self.fallback_rate,
                captured_at=datetime.now(timezone.utc),
                source=FALLBACK_SOURCE,
                ttl_seconds=self.fallback_retry_seconds,
                base_currency=self.base_currency,
                target_currency=self.target_currency,
            )
            self._commit(quote)
            return quote
        finally:
            self._inflight = None

    def _commit(self, quote: CurrencyQuote) -> None:
        self._fetched_at = self._clock()
        self._quote = quote


def build_currency_cache(settings) -> CurrencyRateCache:
    """Central bank first, general aggregator second."""
    sources = [
        CentralBankSource(
            url=settings.fx_central_bank_url,
            currency=settings.base_currency,
            timeout=settings.fx_http_timeout,
        ),
        ExchangeRateApiSource(
            url=settings.fx_aggregator_url,
            base_currency=settings.base_currency,
            target_currency=settings.display_currency,
            timeout=settings.fx_http_timeout,
        ),
    ]
    return CurrencyRateCache(
        sources,
        ttl_seconds=settings.fx_ttl_seconds,
        fallback_rate=settings.fx_fallback_rate,
        base_currency=settings.base_currency,
        target_currency=settings.display_currency,
    )
