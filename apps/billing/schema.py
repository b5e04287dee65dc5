from __future__ import annotations

import datetime as dt
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from apps.common.clock import now_utc
from apps.common.pydantic_compat import DecimalStr
from apps.metering.schema import BillTo, MeterRead


class BillingEvent(BaseModel):
    """One bill for one reading. Keyed by (meter_id, read_id)."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"be_{uuid4().hex[:12]}")
    meter_id: str
    read_id: str
    start_read_id: str
    usage: DecimalStr
    billed_usage: DecimalStr
    amount_cents: int
    applied_rate_per_unit: DecimalStr
    rate_plan_id: str
    bill_to: BillTo
    created_at: dt.datetime = Field(default_factory=now_utc)

    @property
    def idempotency_key(self) -> tuple[str, str]:
        return (self.meter_id, self.read_id)


class BillOutcome(BaseModel):
    event: BillingEvent
    already_billed: bool = False
    notify: bool = False


class InvoiceNotification(BaseModel):
    meter_id: str
    read_id: str
    event_id: str
    bill_to: BillTo
    amount_cents: int
    requested_at: dt.datetime = Field(default_factory=now_utc)

    @classmethod
    def for_event(cls, event: BillingEvent) -> "InvoiceNotification":
        return cls(
            meter_id=event.meter_id,
            read_id=event.read_id,
            event_id=event.id,
            bill_to=event.bill_to,
            amount_cents=event.amount_cents,
        )


class ReadResult(BaseModel):
    read: MeterRead
    billing: Optional[BillingEvent] = None
    already_billed: bool = False


class ImportFailure(BaseModel):
    index: int
    meter_id: Optional[str] = None
    kind: str
    message: str


class ImportReport(BaseModel):
    imported: int = 0
    skipped: int = 0
    failures: List[ImportFailure] = Field(default_factory=list)


class BillDueResult(BaseModel):
    meter_id: str
    event: Optional[BillingEvent] = None
    already_billed: bool = False
    error: Optional[dict] = None


__all__ = [
    "BillingEvent",
    "BillOutcome",
    "InvoiceNotification",
    "ReadResult",
    "ImportFailure",
    "ImportReport",
    "BillDueResult",
]
