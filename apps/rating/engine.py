from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional, Tuple

from pydantic import BaseModel

from apps.common.errors import ValidationError
from apps.common.pydantic_compat import DecimalStr

from .plans import PricingMode, RatePlan

_RATE_QUANT = Decimal("0.000001")


class UsageResult(BaseModel):
    usage: DecimalStr
    billed_usage: DecimalStr


class ChargeLine(BaseModel):
    from_units: DecimalStr
    to_units: Optional[DecimalStr] = None  # None = open-ended bracket
    units: DecimalStr
    rate_cents: int
    amount: DecimalStr  # unrounded cents


class ChargeResult(BaseModel):
    amount_cents: int
    usage_cents: int
    demand_fee_cents: int = 0
    minimum_applied: bool = False
    applied_rate_per_unit: DecimalStr
    items: List[ChargeLine]


class Quote(BaseModel):
    usage: UsageResult
    charge: ChargeResult
    rate_plan_id: str


def _dec(value, name: str) -> Decimal:
    if isinstance(value, Decimal):
        out = value
    else:
        try:
            out = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"{name}: not a number ({value!r})") from exc
    if not out.is_finite():
        raise ValidationError(f"{name}: not finite")
    return out


def compute_usage(last_value, new_value, multiplier) -> UsageResult:
    """usage = max(0, new - last); billed_usage = usage * multiplier.

    A decreasing reading yields zero usage whatever the multiplier
    (rollover/replacement is not reconciled here).
    """
    last = _dec(last_value, "last_value")
    new = _dec(new_value, "new_value")
    mult = _dec(multiplier, "multiplier")
    if mult <= 0:
        raise ValidationError("multiplier must be > 0")
    usage = max(Decimal(0), new - last)
    return UsageResult(usage=usage, billed_usage=usage * mult)


def _brackets(plan: RatePlan) -> List[Tuple[Decimal, Optional[Decimal], int]]:
    if plan.pricing_mode != PricingMode.TIERED or not plan.tiers:
        return [(Decimal(0), None, plan.base_rate_cents)]
    out: List[Tuple[Decimal, Optional[Decimal], int]] = []
    first = plan.tiers[0].threshold_units
    if first > 0:
        # units below the first threshold are priced at the base rate
        out.append((Decimal(0), first, plan.base_rate_cents))
    for i, tier in enumerate(plan.tiers):
        upper = plan.tiers[i + 1].threshold_units if i + 1 < len(plan.tiers) else None
        out.append((tier.threshold_units, upper, tier.rate_cents))
    return out


def compute_charge(billed_usage, plan: RatePlan) -> ChargeResult:
    billed = _dec(billed_usage, "billed_usage")
    if billed < 0:
        raise ValidationError("billed_usage must be >= 0")

    brackets = _brackets(plan)
    items: List[ChargeLine] = []
    raw = Decimal(0)
    for lower, upper, rate in brackets:
        top = billed if upper is None else min(billed, upper)
        units = max(Decimal(0), top - lower)
        if units == 0:
            continue
        amount = units * rate
        raw += amount
        items.append(ChargeLine(from_units=lower, to_units=upper, units=units, rate_cents=rate, amount=amount))

    usage_cents = int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if billed > 0:
        applied_rate = (raw / billed).quantize(_RATE_QUANT, rounding=ROUND_HALF_UP)
    else:
        applied_rate = Decimal(plan.base_rate_cents)

    demand_fee = plan.demand_fee_cents or 0
    total = usage_cents + demand_fee
    minimum_applied = False
    if plan.minimum_cents is not None and total < plan.minimum_cents:
        total = plan.minimum_cents
        minimum_applied = True

    return ChargeResult(
        amount_cents=total,
        usage_cents=usage_cents,
        demand_fee_cents=demand_fee,
        minimum_applied=minimum_applied,
        applied_rate_per_unit=applied_rate,
        items=items,
    )


def quote(last_value, new_value, multiplier, plan: RatePlan) -> Quote:
    """Usage + charge for one pair of readings. Shared by billing and preview."""
    usage = compute_usage(last_value, new_value, multiplier)
    return Quote(usage=usage, charge=compute_charge(usage.billed_usage, plan), rate_plan_id=plan.id)


__all__ = ["UsageResult", "ChargeLine", "ChargeResult", "Quote", "compute_usage", "compute_charge", "quote"]
