from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from apps.common.clock import ensure_utc, now_utc
from apps.common.errors import ValidationError
from apps.common.pydantic_compat import DecimalStr


class MeterType(str, Enum):
    POWER = "power"
    WATER = "water"
    SEWER = "sewer"


class BillingMode(str, Enum):
    CYCLE = "cycle"
    PER_READING = "per_reading"
    ANNUAL = "annual"
    MANUAL = "manual"


class BillTo(str, Enum):
    RESERVATION = "reservation"
    GUEST = "guest"


class Meter(BaseModel):
    """A utility counter bound to a site.

    The configurable fields (billing_mode, bill_to, multiplier, rate_plan_id,
    auto_email) are optional: ``None`` inherits from the site class, then from
    the system defaults.
    """

    id: str = Field(default_factory=lambda: f"mtr_{uuid4().hex[:12]}")
    site_id: str = Field(min_length=1)
    type: MeterType
    billing_mode: Optional[BillingMode] = None
    bill_to: Optional[BillTo] = None
    multiplier: Optional[DecimalStr] = Field(default=None, gt=0)
    rate_plan_id: Optional[str] = None
    auto_email: Optional[bool] = None
    active: bool = True
    serial_number: Optional[str] = None
    last_billed_read_at: Optional[dt.datetime] = None
    created_at: dt.datetime = Field(default_factory=now_utc)


def coerce_meter_type(value) -> MeterType:
    try:
        return MeterType(value)
    except ValueError as exc:
        raise ValidationError(f"unknown_meter_type:{value}") from exc


class MeterCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: MeterType
    billing_mode: Optional[BillingMode] = None
    bill_to: Optional[BillTo] = None
    multiplier: Optional[DecimalStr] = Field(default=None, gt=0)
    rate_plan_id: Optional[str] = None
    auto_email: Optional[bool] = None
    serial_number: Optional[str] = None


class MeterPatch(BaseModel):
    """Partial update. Only fields present in the payload are applied;
    an explicit ``None`` clears an override."""

    model_config = ConfigDict(extra="forbid")

    billing_mode: Optional[BillingMode] = None
    bill_to: Optional[BillTo] = None
    multiplier: Optional[DecimalStr] = Field(default=None, gt=0)
    rate_plan_id: Optional[str] = None
    auto_email: Optional[bool] = None
    serial_number: Optional[str] = None
    active: Optional[bool] = None

    @field_validator("active")
    @classmethod
    def _active_not_null(cls, v):
        if v is None:
            raise ValueError("active cannot be null")
        return v

    def changes(self) -> dict:
        return {name: getattr(self, name) for name in self.model_fields_set}


class MeterFilter(BaseModel):
    site_id: Optional[str] = None
    type: Optional[MeterType] = None
    active: Optional[bool] = None

    def matches(self, meter: Meter) -> bool:
        if self.site_id is not None and meter.site_id != self.site_id:
            return False
        if self.type is not None and meter.type != self.type:
            return False
        if self.active is not None and meter.active != self.active:
            return False
        return True


class MeterRead(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"rd_{uuid4().hex[:12]}")
    meter_id: str
    reading_value: DecimalStr = Field(ge=0)
    read_at: dt.datetime
    note: Optional[str] = None
    read_by: Optional[str] = None
    source: str = "manual"
    seq: int = 0  # insertion order, assigned by the store

    @field_validator("read_at")
    @classmethod
    def _utc(cls, v: dt.datetime) -> dt.datetime:
        return ensure_utc(v)

    def sort_key(self):
        return (self.read_at, self.seq)


__all__ = [
    "MeterType",
    "coerce_meter_type",
    "BillingMode",
    "BillTo",
    "Meter",
    "MeterCreate",
    "MeterPatch",
    "MeterFilter",
    "MeterRead",
]
