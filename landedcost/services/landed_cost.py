"""Landed cost assembly: shipping options + insurance + duty/tax.

The engine entry point used by the HTTP layer and the CLI.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from landedcost.services.aggregator import RateAggregator
from landedcost.services.carriers import RateOption, RateProvider, ShipentegraProvider, TableRateProvider
from landedcost.services.dimensions import BillableWeight, Measure, normalize, package_dimensions
from landedcost.services.duty import (
    DefaultPercentTable,
    DutyEstimate,
    DutyRateLookup,
    DutyTaxEstimator,
    EstimationApiSource,
)
from landedcost.services.errors import NoDefaultMultiplierConfigured, PricingError
from landedcost.services.fx_rate import CurrencyQuote, CurrencyRateCache
from landedcost.services.insurance import InsuranceCalculator, InsuranceQuote
from landedcost.services.multiplier import MultiplierResolver, ResolvedMultiplier
from landedcost.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)


class DutyMode(str, Enum):
    DAP = "dap"  # duty collected from the recipient, reported alongside
    DDP = "ddp"  # delivered duty paid: duty + handling fee folded into the total


@dataclass(frozen=True)
class LandedCostRequest:
    length_cm: Measure
    width_cm: Measure
    height_cm: Measure
    weight_kg: Measure
    destination_country: str
    user_id: Optional[str] = None
    declared_value: Optional[int] = None  # minor units
    customs_value: Optional[int] = None   # defaults to declared_value
    hs_code: Optional[str] = None
    insurance_requested: bool = False
    duty_mode: DutyMode = DutyMode.DAP

    def __post_init__(self):
        if not self.destination_country or not self.destination_country.strip():
            raise ValueError("Destination country is required")
        if self.declared_value is not None and self.declared_value < 0:
            raise ValueError(f"Declared value must be non-negative, got {self.declared_value}")
        if self.customs_value is not None and self.customs_value < 0:
            raise ValueError(f"Customs value must be non-negative, got {self.customs_value}")

    @property
    def effective_customs_value(self) -> Optional[int]:
        return self.customs_value if self.customs_value is not None else self.declared_value


@dataclass(frozen=True)
class PricedOption:
    """A ranked rate option with everything the customer pays for it."""
    rate: RateOption
    shipping: int
    insurance: int
    duty: int
    handling_fee: int
    total: int
    display_total: Optional[int] = None


@dataclass
class LandedCostBreakdown:
    ranked_options: list[PricedOption]
    billable_weight: BillableWeight
    multiplier: ResolvedMultiplier
    duty_mode: DutyMode
    currency: str
    insurance: Optional[InsuranceQuote] = None
    duty: Optional[DutyEstimate] = None
    currency_quote: Optional[CurrencyQuote] = None

    @property
    def best_option(self) -> PricedOption:
        return self.ranked_options[0]

    @property
    def is_estimated(self) -> bool:
        """True when any component came from a fallback or estimate."""
        return bool(
            (self.insurance is not None and self.insurance.source == "fallback")
            or (self.duty is not None and self.duty.is_estimated)
            or (self.currency_quote is not None and self.currency_quote.is_fallback)
        )

    def to_dict(self) -> dict:
        out = {
            "currency": self.currency,
            "duty_mode": self.duty_mode.value,
            "is_estimated": self.is_estimated,
            "billable_weight": {
                "actual_kg": str(self.billable_weight.actual_weight_kg),
                "volumetric_kg": str(self.billable_weight.volumetric_weight_kg),
                "billable_kg": str(self.billable_weight.billable_weight_kg),
            },
            "multiplier": {
                "factor": str(self.multiplier.factor),
                "source": self.multiplier.source.value,
                "provenance": self.multiplier.provenance,
            },
            "options": [
                {
                    "provider_id": o.rate.provider_id,
                    "service_name": o.rate.service_name,
                    "display_name": o.rate.display_name,
                    "estimated_days": o.rate.estimated_days,
                    "estimated_days_max": o.rate.estimated_days_max,
                    "base_price": o.rate.base_price,
                    "surcharge": o.rate.surcharge,
                    "pre_multiplier_total": o.rate.pre_multiplier_total,
                    "shipping": o.shipping,
                    "insurance": o.insurance,
                    "duty": o.duty,
                    "handling_fee": o.handling_fee,
                    "total": o.total,
                    "display_total": o.display_total,
                }
                for o in self.ranked_options
            ],
            "insurance": None,
            "duty": None,
            "fx": None,
        }
        if self.insurance is not None:
            out["insurance"] = {"premium": self.insurance.premium, "source": self.insurance.source}
        if self.duty is not None:
            out["duty"] = {
                "regime": self.duty.regime.value,
                "base": self.duty.base_amount,
                "surcharge": self.duty.surcharge_amount,
                "total": self.duty.total_amount,
                "rate_source": self.duty.rate_source.value,
                "base_rate_pct": str(self.duty.base_rate_pct),
                "surcharge_pct": str(self.duty.surcharge_pct),
                "hs_code": self.duty.hs_code,
                "hs_code_truncated": self.duty.hs_code_truncated,
            }
        if self.currency_quote is not None:
            out["fx"] = {
                "rate": str(self.currency_quote.rate),
                "source": self.currency_quote.source,
                "target_currency": self.currency_quote.target_currency,
                "captured_at": self.currency_quote.captured_at.isoformat(),
            }
        return out


@dataclass
class BatchItemResult:
    index: int
    breakdown: Optional[LandedCostBreakdown] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.breakdown is not None


class LandedCostAssembler:
    """Compose billable weight, multiplier, rates, insurance, duty and FX."""

    def __init__(
        self,
        resolver: MultiplierResolver,
        aggregator: RateAggregator,
        insurance: InsuranceCalculator,
        duty: DutyTaxEstimator,
        currency_cache: Optional[CurrencyRateCache] = None,
        currency: str = "USD",
        ddp_handling_fee: int = 450,
        batch_concurrency: int = 4,
    ):
        self.resolver = resolver
        self.aggregator = aggregator
        self.insurance = insurance
        self.duty = duty
        self.currency_cache = currency_cache
        self.currency = currency
        self.ddp_handling_fee = ddp_handling_fee
        self.batch_concurrency = max(1, batch_concurrency)

    async def _insurance(self, req: LandedCostRequest) -> Optional[InsuranceQuote]:
        if req.declared_value is None:
            return None
        return await self.insurance.quote(req.declared_value, req.insurance_requested)

    async def _duty(self, req: LandedCostRequest) -> Optional[DutyEstimate]:
        customs_value = req.effective_customs_value
        if customs_value is None:
            return None
        return await self.duty.estimate(customs_value, req.destination_country, req.hs_code)

    async def _currency(self) -> Optional[CurrencyQuote]:
        if self.currency_cache is None:
            return None
        return await self.currency_cache.get()

    async def price(self, req: LandedCostRequest) -> LandedCostBreakdown:
        country = req.destination_country.strip().upper()
        billable = normalize(package_dimensions(req.length_cm, req.width_cm, req.height_cm, req.weight_kg))

        try:
            multiplier = await self.resolver.resolve(country, billable.billable_weight_kg, req.user_id)
        except NoDefaultMultiplierConfigured:
            logger.error("Pricing blocked: no global default multiplier configured")
            raise

        # insurance, duty and FX need nothing from the carriers
        side_tasks = [
            asyncio.create_task(self._insurance(req)),
            asyncio.create_task(self._duty(req)),
            asyncio.create_task(self._currency()),
        ]
        try:
            options = await self.aggregator.aggregate(billable, country, multiplier.factor)
            insurance, duty, quote = await asyncio.gather(*side_tasks)
        except BaseException:
            for task in side_tasks:
                task.cancel()
            await asyncio.gather(*side_tasks, return_exceptions=True)
            raise

        premium = insurance.premium if insurance is not None else 0
        ddp = req.duty_mode == DutyMode.DDP and duty is not None and duty.is_applicable
        duty_amount = duty.total_amount if ddp else 0
        handling_fee = self.ddp_handling_fee if ddp else 0

        priced = []
        for option in options:
            total = option.total_price + premium + duty_amount + handling_fee
            priced.append(PricedOption(
                rate=option,
                shipping=option.total_price,
                insurance=premium,
                duty=duty_amount,
                handling_fee=handling_fee,
                total=total,
                display_total=quote.convert(total) if quote is not None else None,
            ))

        return LandedCostBreakdown(
            ranked_options=priced,
            billable_weight=billable,
            multiplier=multiplier,
            duty_mode=req.duty_mode,
            currency=self.currency,
            insurance=insurance,
            duty=duty,
            currency_quote=quote,
        )

    async def price_batch(self, requests: Sequence[LandedCostRequest]) -> list[BatchItemResult]:
        """Price many shipments; each item succeeds or fails on its own."""
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def run(index: int, req: LandedCostRequest) -> BatchItemResult:
            async with semaphore:
                try:
                    return BatchItemResult(index=index, breakdown=await self.price(req))
                except PricingError as e:
                    logger.info("Batch item %d failed: %s", index, e)
                    return BatchItemResult(index=index, error_code=e.code, error_message=str(e))
                except ValueError as e:
                    return BatchItemResult(index=index, error_code="invalid_request", error_message=str(e))
                except Exception:
                    logger.exception("Batch item %d raised", index)
                    return BatchItemResult(
                        index=index, error_code="internal_error", error_message="Unexpected pricing failure",
                    )

        return list(await asyncio.gather(*(run(i, r) for i, r in enumerate(requests))))


def build_assembler(
    settings,
    store: PolicyStore,
    providers: Optional[Sequence[RateProvider]] = None,
    official_duty_sources: Sequence[DutyRateLookup] = (),
    currency_cache: Optional[CurrencyRateCache] = None,
) -> LandedCostAssembler:
    """Wire the engine from settings; explicit arguments override the defaults."""
    if providers is None:
        providers = [TableRateProvider()]
        if settings.shipentegra_client_id and settings.shipentegra_client_secret:
            providers.append(ShipentegraProvider(
                settings.shipentegra_client_id,
                settings.shipentegra_client_secret,
                base_url=settings.shipentegra_base_url,
                timeout=settings.provider_timeout,
            ))
    # official table first, secondary estimation provider second
    duty_sources = list(official_duty_sources)
    if settings.duty_estimation_url:
        duty_sources.append(EstimationApiSource(
            settings.duty_estimation_url, api_key=settings.duty_estimation_api_key
        ))

    return LandedCostAssembler(
        resolver=MultiplierResolver(store),
        aggregator=RateAggregator(
            providers,
            provider_timeout=settings.provider_timeout,
            deadline=settings.request_deadline,
            max_options=settings.max_rate_options,
            allowed_services={k: set(v) for k, v in settings.allowed_services.items()},
        ),
        insurance=InsuranceCalculator(
            store,
            fallback_pct=settings.insurance_fallback_pct,
            min_premium=settings.insurance_min_premium,
        ),
        duty=DutyTaxEstimator(
            duty_sources=duty_sources,
            duty_defaults=DefaultPercentTable(settings.default_duty_pct),
            tax_defaults=DefaultPercentTable(settings.vat_countries),
            duty_countries=settings.duty_countries,
            surcharge_pct=settings.duty_surcharge_pct,
            origin_country=settings.origin_country,
            hs_code_digits=settings.hs_code_digits,
        ),
        currency_cache=currency_cache,
        currency=settings.base_currency,
        ddp_handling_fee=settings.ddp_handling_fee,
        batch_concurrency=settings.batch_concurrency,
    )
