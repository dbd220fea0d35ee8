"""Pydantic schemas for the pricing API."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from landedcost.services.landed_cost import DutyMode, LandedCostRequest


# ── Request ──────────────────────────────────────────────
class LandedCostIn(BaseModel):
    length_cm: Decimal = Field(..., gt=0)
    width_cm: Decimal = Field(..., gt=0)
    height_cm: Decimal = Field(..., gt=0)
    weight_kg: Decimal = Field(..., gt=0)
    destination_country: str = Field(..., min_length=2, max_length=2)
    user_id: Optional[str] = None
    declared_value: Optional[int] = Field(None, ge=0, description="Minor units (cents)")
    customs_value: Optional[int] = Field(None, ge=0, description="Defaults to declared_value")
    hs_code: Optional[str] = Field(None, max_length=20)
    insurance_requested: bool = False
    duty_mode: DutyMode = DutyMode.DAP

    def to_request(self) -> LandedCostRequest:
        return LandedCostRequest(
            length_cm=self.length_cm,
            width_cm=self.width_cm,
            height_cm=self.height_cm,
            weight_kg=self.weight_kg,
            destination_country=self.destination_country.upper(),
            user_id=self.user_id,
            declared_value=self.declared_value,
            customs_value=self.customs_value,
            hs_code=self.hs_code,
            insurance_requested=self.insurance_requested,
            duty_mode=self.duty_mode,
        )


class LandedCostBatchIn(BaseModel):
    items: list[LandedCostIn] = Field(..., min_length=1, max_length=200)


# ── Response ─────────────────────────────────────────────
class BillableWeightOut(BaseModel):
    actual_kg: Decimal
    volumetric_kg: Decimal
    billable_kg: Decimal


class MultiplierOut(BaseModel):
    factor: Decimal
    source: str
    provenance: str


class OptionOut(BaseModel):
    provider_id: str
    service_name: str
    display_name: str
    estimated_days: int
    estimated_days_max: Optional[int] = None
    base_price: int
    surcharge: int
    pre_multiplier_total: int
    shipping: int
    insurance: int
    duty: int
    handling_fee: int
    total: int
    display_total: Optional[int] = None


class InsuranceOut(BaseModel):
    premium: int
    source: str


class DutyOut(BaseModel):
    regime: str
    base: int
    surcharge: int
    total: int
    rate_source: str
    base_rate_pct: Decimal
    surcharge_pct: Decimal
    hs_code: Optional[str] = None
    hs_code_truncated: bool = False


class FxOut(BaseModel):
    rate: Decimal
    source: str
    target_currency: str
    captured_at: str


class LandedCostOut(BaseModel):
    currency: str
    duty_mode: DutyMode
    is_estimated: bool
    billable_weight: BillableWeightOut
    multiplier: MultiplierOut
    options: list[OptionOut]
    insurance: Optional[InsuranceOut] = None
    duty: Optional[DutyOut] = None
    fx: Optional[FxOut] = None


class ErrorOut(BaseModel):
    error: str
    detail: str


class BatchItemOut(BaseModel):
    index: int
    ok: bool
    result: Optional[LandedCostOut] = None
    error: Optional[ErrorOut] = None


class BatchOut(BaseModel):
    succeeded: int
    failed: int
    items: list[BatchItemOut]


class CurrencyQuoteOut(BaseModel):
    base_currency: str
    target_currency: str
    rate: Decimal
    source: str
    captured_at: str
    ttl_seconds: int
    is_fallback: bool
