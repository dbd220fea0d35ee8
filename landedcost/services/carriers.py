"""Carrier rate providers.

Every provider maps its own response shape into ``RateOption`` at the
boundary; the aggregator only ever sees ``RateOption``.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, Decimal
from enum import Enum
from typing import Optional, Protocol

import httpx

from landedcost.services.dimensions import BillableWeight
from landedcost.services.errors import ProviderError
from landedcost.services.money import apply_factor, percent_of, round_minor, to_minor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateOption:
    """One carrier service quote.

    ``base_price`` and ``surcharge`` are the carrier's own (pre-multiplier)
    figures; ``final_price`` is set once by the aggregator.
    """
    provider_id: str
    service_name: str
    base_price: int
    surcharge: int
    estimated_days: int
    display_name: str = ""
    estimated_days_max: Optional[int] = None
    multiplier: Decimal = Decimal("1")
    final_price: Optional[int] = None

    @property
    def pre_multiplier_total(self) -> int:
        return self.base_price + self.surcharge

    @property
    def total_price(self) -> int:
        if self.final_price is None:
            return self.pre_multiplier_total
        return self.final_price

    @property
    def is_priced(self) -> bool:
        return self.final_price is not None

    def with_multiplier(self, factor: Decimal) -> "RateOption":
        """Apply the markup once: round(base*f) + round(surcharge*f)."""
        if self.is_priced:
            raise ValueError(f"Multiplier already applied to {self.provider_id}/{self.service_name}")
        final = apply_factor(self.base_price, factor) + apply_factor(self.surcharge, factor)
        return replace(self, multiplier=factor, final_price=final)


class RateProvider(Protocol):
    provider_id: str

    async def quote(self, destination_country: str, weight: BillableWeight) -> list[RateOption]: ...


# ── House tariff table ──────────────────────────────────


class ShippingZone(str, Enum):
    """Destination zones for the house tariff."""
    US = "US"
    EU = "EU"
    UK = "UK"
    CA = "CA"
    AU = "AU"
    ME = "ME"    # Middle East
    ASIA = "ASIA"
    ROW = "ROW"  # rest of world

    @classmethod
    def from_country(cls, country_code: str) -> "ShippingZone":
        """Map ISO 3166-1 alpha-2 to zone."""
        mapping = {
            "US": cls.US, "PR": cls.US,
            "CA": cls.CA,
            "GB": cls.UK,
            "DE": cls.EU, "FR": cls.EU, "IT": cls.EU, "ES": cls.EU, "NL": cls.EU,
            "BE": cls.EU, "PL": cls.EU, "SE": cls.EU, "AT": cls.EU, "PT": cls.EU,
            "IE": cls.EU, "DK": cls.EU, "FI": cls.EU, "GR": cls.EU, "CZ": cls.EU,
            "AU": cls.AU, "NZ": cls.AU,
            "AE": cls.ME, "SA": cls.ME, "QA": cls.ME, "KW": cls.ME, "JO": cls.ME,
            "BH": cls.ME, "OM": cls.ME, "IL": cls.ME,
            "JP": cls.ASIA, "KR": cls.ASIA, "SG": cls.ASIA, "CN": cls.ASIA, "HK": cls.ASIA,
        }
        return mapping.get(country_code.upper(), cls.ROW)


@dataclass(frozen=True)
class ZoneRate:
    """First-kg price plus per additional half kilo, all in minor units."""
    first_kg: int
    per_half_kg: int
    estimated_days_min: int
    estimated_days_max: int
    fuel_surcharge_pct: Decimal = Decimal("0")
    max_weight_kg: Decimal = Decimal("30")

    def cargo_price(self, weight_kg: Decimal) -> int:
        if weight_kg > self.max_weight_kg:
            raise ValueError(f"Weight {weight_kg}kg exceeds max {self.max_weight_kg}kg")
        extra = max(Decimal("0"), weight_kg - 1)
        halves = int((extra * 2).to_integral_value(rounding=ROUND_CEILING))
        return round_minor(self.first_kg + halves * self.per_half_kg)


@dataclass(frozen=True)
class TableService:
    service_name: str
    display_name: str
    zones: dict[ShippingZone, ZoneRate] = field(default_factory=dict)


_HOUSE_TABLE: list[TableService] = [
    TableService(
        service_name="house-eco",
        display_name="Economy",
        zones={
            ShippingZone.US: ZoneRate(1150, 320, 8, 14, Decimal("12")),
            ShippingZone.CA: ZoneRate(1300, 360, 8, 15, Decimal("12")),
            ShippingZone.EU: ZoneRate(950, 260, 6, 12, Decimal("10")),
            ShippingZone.UK: ZoneRate(990, 270, 6, 12, Decimal("10")),
            ShippingZone.ME: ZoneRate(1050, 300, 7, 14, Decimal("12")),
        },
    ),
    TableService(
        service_name="house-standard",
        display_name="Standard",
        zones={
            ShippingZone.US: ZoneRate(1650, 420, 5, 8, Decimal("18")),
            ShippingZone.CA: ZoneRate(1850, 460, 5, 9, Decimal("18")),
            ShippingZone.EU: ZoneRate(1350, 340, 4, 7, Decimal("15")),
            ShippingZone.UK: ZoneRate(1400, 350, 4, 7, Decimal("15")),
            ShippingZone.AU: ZoneRate(2400, 620, 6, 10, Decimal("18")),
            ShippingZone.ME: ZoneRate(1450, 380, 4, 8, Decimal("15")),
            ShippingZone.ASIA: ZoneRate(2100, 540, 5, 9, Decimal("18")),
            ShippingZone.ROW: ZoneRate(2900, 750, 7, 14, Decimal("20")),
        },
    ),
    TableService(
        service_name="house-express",
        display_name="Express",
        zones={
            ShippingZone.US: ZoneRate(2900, 650, 2, 4, Decimal("25")),
            ShippingZone.EU: ZoneRate(2500, 560, 2, 3, Decimal("25")),
            ShippingZone.UK: ZoneRate(2550, 570, 2, 3, Decimal("25")),
            ShippingZone.ME: ZoneRate(2600, 600, 2, 4, Decimal("25")),
        },
    ),
]


class TableRateProvider:
    """Carrier priced from a static zone tariff."""

    def __init__(self, provider_id: str = "house", table: Optional[list[TableService]] = None):
        self.provider_id = provider_id
        self._table = _HOUSE_TABLE if table is None else table

    async def quote(self, destination_country: str, weight: BillableWeight) -> list[RateOption]:
        zone = ShippingZone.from_country(destination_country)
        options: list[RateOption] = []
        for service in self._table:
            rate = service.zones.get(zone)
            if rate is None:
                continue
            try:
                cargo = rate.cargo_price(weight.billable_weight_kg)
            except ValueError:
                continue
            options.append(RateOption(
                provider_id=self.provider_id,
                service_name=service.service_name,
                display_name=service.display_name,
                base_price=cargo,
                surcharge=percent_of(cargo, rate.fuel_surcharge_pct),
                estimated_days=rate.estimated_days_min,
                estimated_days_max=rate.estimated_days_max,
            ))
        return options

    def supported_zones(self) -> list[str]:
        zones = set()
        for service in self._table:
            zones.update(z.value for z in service.zones)
        return sorted(zones)


# ── Shipentegra HTTP adapter ────────────────────────────

_DAYS_RE = re.compile(r"(\d+)\s*(?:-|–|to)\s*(\d+)")
_DEFAULT_DAYS = {"express": 3, "standard": 7, "eco": 10}


class ShipentegraProvider:
    """Multi-carrier reseller API (prices in USD major units)."""

    provider_id = "shipentegra"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://publicapi.shipentegra.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        if self._token and self._token_expires_at > time.monotonic():
            return self._token
        if not self.client_id or not self.client_secret:
            raise ProviderError(self.provider_id, "missing API credentials")

        resp = await client.post(
            f"{self.base_url}/auth/token",
            json={"clientId": self.client_id, "clientSecret": self.client_secret},
        )
        resp.raise_for_status()
        body = resp.json()
        token = (body.get("data") or {}).get("accessToken")
        if body.get("status") != "success" or not token:
            raise ProviderError(self.provider_id, f"token request rejected: {body.get('message')}")
        expires_in = int((body.get("data") or {}).get("expiresIn") or 3600)
        self._token = token
        # renew a minute early
        self._token_expires_at = time.monotonic() + max(0, expires_in - 60)
        return token

    async def quote(self, destination_country: str, weight: BillableWeight) -> list[RateOption]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token = await self._access_token(client)
                resp = await client.post(
                    f"{self.base_url}/tools/calculate/all",
                    json={
                        "country": destination_country.upper(),
                        "kgDesi": float(weight.billable_weight_kg),
                        "isAmazonShipment": 0,
                    },
                    headers={"Authorization": f"Bearer {token}"},
                )
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(self.provider_id, str(e)) from e

        if body.get("status") != "success":
            raise ProviderError(self.provider_id, f"pricing rejected: {body.get('message')}")

        options = []
        for price in (body.get("data") or {}).get("prices") or []:
            try:
                options.append(self._to_option(price))
            except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                logger.warning("Skipping malformed %s price %r: %s", self.provider_id, price, e)
        return options

    def _to_option(self, price: dict) -> RateOption:
        service_type = str(price.get("serviceType") or "").lower()
        days_min, days_max = _DEFAULT_DAYS.get(service_type, 7), None
        match = _DAYS_RE.search(str(price.get("additionalDescription") or ""))
        if match:
            days_min, days_max = int(match.group(1)), int(match.group(2))
        return RateOption(
            provider_id=self.provider_id,
            service_name=str(price["serviceName"]),
            display_name=str(price.get("clearServiceName") or price["serviceName"]),
            base_price=to_minor(price["cargoPrice"]),
            surcharge=to_minor(price.get("fuelCost") or 0) + to_minor(price.get("additionalFee") or 0),
            estimated_days=days_min,
            estimated_days_max=days_max,
        )
