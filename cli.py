"""LandedCost-Engine CLI.

Usage:
    python -m cli weight --length 30 --width 20 --height 15 --weight 2
    python -m cli quote --length 30 --width 20 --height 15 --weight 2 --country US
    python -m cli quote ... --country US --value 10000 --hs-code 6109.10.00.04 --insurance --ddp
    python -m cli duty --hs-code 6109100004 --value 10000 --country US
    python -m cli insurance --value 10000
    python -m cli fx
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from decimal import Decimal

from landedcost.config import get_settings
from landedcost.services.dimensions import normalize, package_dimensions
from landedcost.services.errors import PricingError
from landedcost.services.fx_rate import build_currency_cache
from landedcost.services.landed_cost import DutyMode, LandedCostRequest, build_assembler
from landedcost.services.money import format_minor
from landedcost.services.policy_store import InMemoryPolicyStore, MultiplierTier, TierKind


def _store(args) -> InMemoryPolicyStore:
    """Local policy: a global default plus an optional country override."""
    tiers = [MultiplierTier(TierKind.GLOBAL_DEFAULT, Decimal(str(args.multiplier)))]
    if getattr(args, "country_multiplier", None):
        tiers.append(MultiplierTier(
            TierKind.COUNTRY, Decimal(str(args.country_multiplier)), scope_key=args.country,
        ))
    return InMemoryPolicyStore(tiers)


def _add_dimension_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--length", required=True, help="Length (cm)")
    p.add_argument("--width", required=True, help="Width (cm)")
    p.add_argument("--height", required=True, help="Height (cm)")
    p.add_argument("--weight", required=True, help="Actual weight (kg)")


def main():
    parser = argparse.ArgumentParser(
        prog="landed-cost",
        description="LandedCost-Engine CLI",
    )
    sub = parser.add_subparsers(dest="command", help="Top-level command")

    # ── Weight ───────────────────────────────────────────
    weight = sub.add_parser("weight", help="Billable weight")
    _add_dimension_args(weight)

    # ── Quote ────────────────────────────────────────────
    quote = sub.add_parser("quote", help="Landed cost quote")
    _add_dimension_args(quote)
    quote.add_argument("--country", required=True, help="Destination country code")
    quote.add_argument("--value", type=int, help="Declared value (cents)")
    quote.add_argument("--hs-code", help="HS / HTS code")
    quote.add_argument("--insurance", action="store_true", help="Add insurance")
    quote.add_argument("--ddp", action="store_true", help="Delivered duty paid")
    quote.add_argument("--user", help="User id")
    quote.add_argument("--multiplier", default="1", help="Global default multiplier")
    quote.add_argument("--country-multiplier", help="Multiplier for --country")
    quote.add_argument("--no-fx", action="store_true", help="Skip currency lookup")
    quote.add_argument("--json", action="store_true", help="JSON output")

    # ── Duty ─────────────────────────────────────────────
    duty = sub.add_parser("duty", help="Duty / tax estimate")
    duty.add_argument("--value", type=int, required=True, help="Customs value (cents)")
    duty.add_argument("--country", required=True, help="Destination country code")
    duty.add_argument("--hs-code", help="HS / HTS code")

    # ── Insurance ────────────────────────────────────────
    ins = sub.add_parser("insurance", help="Insurance premium")
    ins.add_argument("--value", type=int, required=True, help="Declared value (cents)")

    # ── FX ───────────────────────────────────────────────
    sub.add_parser("fx", help="Current display exchange rate")

    args = parser.parse_args()

    handlers = {
        "weight": handle_weight,
        "quote": handle_quote,
        "duty": handle_duty,
        "insurance": handle_insurance,
        "fx": handle_fx,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    try:
        handler(args)
    except (PricingError, ValueError) as e:
        print(f"❌ {e}")
        sys.exit(2)


def handle_weight(args):
    bw = normalize(package_dimensions(args.length, args.width, args.height, args.weight))
    print(f"  Actual:      {bw.actual_weight_kg} kg")
    print(f"  Volumetric:  {bw.volumetric_weight_kg} kg")
    print(f"  Billable:    {bw.billable_weight_kg} kg{' (volumetric)' if bw.is_volumetric else ''}")


def handle_quote(args):
    settings = get_settings()
    assembler = build_assembler(
        settings,
        _store(args),
        currency_cache=None if args.no_fx else build_currency_cache(settings),
    )
    req = LandedCostRequest(
        length_cm=args.length,
        width_cm=args.width,
        height_cm=args.height,
        weight_kg=args.weight,
        destination_country=args.country.upper(),
        user_id=args.user,
        declared_value=args.value,
        hs_code=args.hs_code,
        insurance_requested=args.insurance,
        duty_mode=DutyMode.DDP if args.ddp else DutyMode.DAP,
    )
    breakdown = asyncio.run(assembler.price(req))

    if args.json:
        print(json.dumps(breakdown.to_dict(), indent=2, ensure_ascii=False))
        return

    cur = breakdown.currency
    print(f"Billable weight: {breakdown.billable_weight.billable_weight_kg} kg "
          f"(multiplier {breakdown.multiplier.factor} from {breakdown.multiplier.provenance})")
    print(f"{'Service':<28} {'Shipping':<14} {'Total':<14} {'Days'}")
    print("-" * 64)
    for o in breakdown.ranked_options:
        days = f"{o.rate.estimated_days}"
        if o.rate.estimated_days_max:
            days += f"-{o.rate.estimated_days_max}"
        name = o.rate.display_name or o.rate.service_name
        print(f"{name:<28} {format_minor(o.shipping, cur):<14} {format_minor(o.total, cur):<14} {days}")
    if breakdown.insurance is not None:
        print(f"Insurance: {format_minor(breakdown.insurance.premium, cur)} ({breakdown.insurance.source})")
    if breakdown.duty is not None and breakdown.duty.is_applicable:
        d = breakdown.duty
        print(f"Duty/tax:  {format_minor(d.total_amount, cur)} "
              f"(base {format_minor(d.base_amount, cur)} + surcharge {format_minor(d.surcharge_amount, cur)}, "
              f"{d.rate_source.value})")
    if breakdown.currency_quote is not None:
        q = breakdown.currency_quote
        print(f"FX: 1 {q.base_currency} = {q.rate} {q.target_currency} ({q.source})")
    if breakdown.is_estimated:
        print("⚠️  Some figures are estimates")


def handle_duty(args):
    settings = get_settings()
    assembler = build_assembler(settings, InMemoryPolicyStore())
    est = asyncio.run(assembler.duty.estimate(args.value, args.country, args.hs_code))
    print(json.dumps({
        "regime": est.regime.value,
        "hs_code": est.hs_code,
        "hs_code_truncated": est.hs_code_truncated,
        "base_rate_pct": str(est.base_rate_pct),
        "surcharge_pct": str(est.surcharge_pct),
        "base": est.base_amount,
        "surcharge": est.surcharge_amount,
        "total": est.total_amount,
        "rate_source": est.rate_source.value,
    }, indent=2))


def handle_insurance(args):
    settings = get_settings()
    assembler = build_assembler(settings, InMemoryPolicyStore())
    q = asyncio.run(assembler.insurance.quote(args.value))
    print(f"Premium: {format_minor(q.premium, settings.base_currency)} ({q.source})")


def handle_fx(args):
    settings = get_settings()
    cache = build_currency_cache(settings)
    q = asyncio.run(cache.get())
    status = "⚠️  fallback" if q.is_fallback else "✅"
    print(f"{status} 1 {q.base_currency} = {q.rate} {q.target_currency} "
          f"(source: {q.source}, as of {q.captured_at.isoformat()})")


if __name__ == "__main__":
    main()
