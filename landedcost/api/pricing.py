"""Landed cost API routes.

A thin caller of the engine: validation, mapping and error translation only.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from landedcost.schemas import (
    BatchItemOut,
    BatchOut,
    CurrencyQuoteOut,
    ErrorOut,
    LandedCostBatchIn,
    LandedCostIn,
    LandedCostOut,
)
from landedcost.services.errors import (
    InvalidDimensions,
    NoDefaultMultiplierConfigured,
    NoRatesAvailable,
    PricingError,
)
from landedcost.services.fx_rate import CurrencyQuote
from landedcost.services.landed_cost import LandedCostAssembler

router = APIRouter(prefix="/pricing", tags=["pricing"])

_STATUS = {
    InvalidDimensions: 422,
    NoRatesAvailable: 503,
    NoDefaultMultiplierConfigured: 500,
}


def get_assembler(request: Request) -> LandedCostAssembler:
    return request.app.state.assembler


def error_response(exc: Exception) -> JSONResponse:
    status = 400
    for cls, code in _STATUS.items():
        if isinstance(exc, cls):
            status = code
            break
    code = exc.code if isinstance(exc, PricingError) else "invalid_request"
    detail = str(exc)
    if isinstance(exc, NoDefaultMultiplierConfigured):
        detail = "Pricing is temporarily unavailable"
    return JSONResponse(status_code=status, content={"error": code, "detail": detail})


def _quote_out(quote: CurrencyQuote) -> CurrencyQuoteOut:
    return CurrencyQuoteOut(
        base_currency=quote.base_currency,
        target_currency=quote.target_currency,
        rate=quote.rate,
        source=quote.source,
        captured_at=quote.captured_at.isoformat(),
        ttl_seconds=quote.ttl_seconds,
        is_fallback=quote.is_fallback,
    )


@router.post("/landed-cost", response_model=LandedCostOut)
async def landed_cost(
    body: LandedCostIn,
    assembler: LandedCostAssembler = Depends(get_assembler),
):
    try:
        breakdown = await assembler.price(body.to_request())
    except (PricingError, ValueError) as e:
        return error_response(e)
    return breakdown.to_dict()


@router.post("/landed-cost/batch", response_model=BatchOut)
async def landed_cost_batch(
    body: LandedCostBatchIn,
    assembler: LandedCostAssembler = Depends(get_assembler),
):
    results = await assembler.price_batch([item.to_request() for item in body.items])
    items = []
    for r in results:
        if r.ok:
            items.append(BatchItemOut(index=r.index, ok=True, result=r.breakdown.to_dict()))
        else:
            items.append(BatchItemOut(
                index=r.index,
                ok=False,
                error=ErrorOut(error=r.error_code, detail=r.error_message or ""),
            ))
    succeeded = sum(1 for r in results if r.ok)
    return BatchOut(succeeded=succeeded, failed=len(results) - succeeded, items=items)


@router.get("/currency", response_model=CurrencyQuoteOut)
async def currency_rate(assembler: LandedCostAssembler = Depends(get_assembler)):
    if assembler.currency_cache is None:
        return JSONResponse(
            status_code=404,
            content={"error": "currency_disabled", "detail": "No currency cache configured"},
        )
    return _quote_out(await assembler.currency_cache.get())


@router.post("/currency/refresh", response_model=CurrencyQuoteOut)
async def refresh_currency_rate(assembler: LandedCostAssembler = Depends(get_assembler)):
    if assembler.currency_cache is None:
        return JSONResponse(
            status_code=404,
            content={"error": "currency_disabled", "detail": "No currency cache configured"},
        )
    return _quote_out(await assembler.currency_cache.refresh())
