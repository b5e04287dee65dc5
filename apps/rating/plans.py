from __future__ import annotations

import datetime as dt
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from apps.common.clock import ensure_utc
from apps.common.pydantic_compat import DecimalStr, parse_model
from apps.metering.schema import MeterType


class PricingMode(str, Enum):
    FLAT = "flat"
    TIERED = "tiered"


class RateTier(BaseModel):
    model_config = ConfigDict(frozen=True)

    threshold_units: DecimalStr = Field(ge=0)  # lower bound of the bracket, in billed units
    rate_cents: int = Field(ge=0)       # per unit


class RatePlan(BaseModel):
    """Effective-dated pricing rule for one meter type.

    Active over the half-open window ``[effective_from, effective_to)``;
    ``effective_to=None`` means open-ended.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    type: MeterType
    pricing_mode: PricingMode = PricingMode.FLAT
    base_rate_cents: int = Field(ge=0, default=0)
    tiers: List[RateTier] = Field(default_factory=list)
    demand_fee_cents: Optional[int] = Field(default=None, ge=0)
    minimum_cents: Optional[int] = Field(default=None, ge=0)
    effective_from: dt.datetime
    effective_to: Optional[dt.datetime] = None

    @field_validator("effective_from", "effective_to")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v) if v is not None else v

    @field_validator("tiers")
    @classmethod
    def _sorted_tiers(cls, v: List[RateTier]) -> List[RateTier]:
        tiers = sorted(v, key=lambda t: t.threshold_units)
        thresholds = [t.threshold_units for t in tiers]
        if len(set(thresholds)) != len(thresholds):
            raise ValueError("tier thresholds must be unique")
        return tiers

    @model_validator(mode="after")
    def _window(self):
        if self.effective_to is not None and self.effective_to <= self.effective_from:
            raise ValueError("effective_to must be after effective_from")
        return self

    def is_effective(self, as_of: dt.datetime) -> bool:
        as_of = ensure_utc(as_of)
        if as_of < self.effective_from:
            return False
        return self.effective_to is None or as_of < self.effective_to


def load_rate_plans(path: Path | str) -> List[RatePlan]:
    """Rate plans are owned by the pricing admin; this reads their YAML export.

    rate_plans:
      - {id: rp-power-2024, type: power, pricing_mode: flat, base_rate_cents: 15,
         effective_from: "2024-01-01T00:00:00Z"}
    """
    doc = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return [parse_model(RatePlan, item) for item in doc.get("rate_plans", [])]


__all__ = ["PricingMode", "RateTier", "RatePlan", "load_rate_plans"]
