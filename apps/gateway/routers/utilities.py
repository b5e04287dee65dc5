from __future__ import annotations

import datetime as dt
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from apps.billing.service import MeteringService, build_service
from apps.common.pydantic_compat import model_to_dict
from apps.metering.schema import BillingMode, BillTo, MeterType

router = APIRouter(prefix="/api/v1", tags=["utilities"])


@lru_cache(maxsize=1)
def get_service() -> MeteringService:
    return build_service()


class MeterCreateBody(BaseModel):
    site_id: str
    type: MeterType
    billing_mode: Optional[BillingMode] = None
    bill_to: Optional[BillTo] = None
    multiplier: Optional[Decimal] = None
    rate_plan_id: Optional[str] = None
    auto_email: Optional[bool] = None
    serial_number: Optional[str] = None


class ActiveBody(BaseModel):
    active: bool


class ReadBody(BaseModel):
    reading_value: Decimal
    read_at: Optional[dt.datetime] = None
    note: Optional[str] = None
    read_by: Optional[str] = None
    bill_now: bool = False


class ImportRow(BaseModel):
    meter_id: Optional[str] = None
    reading_value: Decimal
    read_at: Optional[dt.datetime] = None
    note: Optional[str] = None
    read_by: Optional[str] = None


class ImportBody(BaseModel):
    rows: List[ImportRow] = Field(default_factory=list)


@router.post("/meters", status_code=201)
def create_meter(body: MeterCreateBody, svc: MeteringService = Depends(get_service)):
    config = body.model_dump(exclude={"site_id"}, exclude_none=True)
    return model_to_dict(svc.create_meter(body.site_id, config))


@router.get("/meters")
def list_meters(
    site_id: Optional[str] = None,
    type: Optional[MeterType] = None,
    active: Optional[bool] = None,
    svc: MeteringService = Depends(get_service),
):
    meters = svc.list_meters({"site_id": site_id, "type": type, "active": active})
    return [model_to_dict(m) for m in meters]


@router.patch("/meters/{meter_id}")
def update_meter(meter_id: str, patch: dict, svc: MeteringService = Depends(get_service)):
    # raw dict keeps "field absent" apart from "field: null"
    return model_to_dict(svc.update_meter(meter_id, patch))


@router.post("/meters/{meter_id}/active")
def set_active(meter_id: str, body: ActiveBody, svc: MeteringService = Depends(get_service)):
    return model_to_dict(svc.set_active(meter_id, body.active))


@router.post("/meters/{meter_id}/reads", status_code=201)
def append_read(meter_id: str, body: ReadBody, svc: MeteringService = Depends(get_service)):
    result = svc.append_read(
        meter_id,
        body.reading_value,
        body.read_at,
        note=body.note,
        read_by=body.read_by,
        bill_now=body.bill_now,
    )
    return model_to_dict(result)


@router.get("/meters/{meter_id}/reads")
def list_reads(
    meter_id: str,
    start: Optional[dt.datetime] = None,
    end: Optional[dt.datetime] = None,
    svc: MeteringService = Depends(get_service),
):
    return [model_to_dict(r) for r in svc.list_reads(meter_id, start=start, end=end)]


@router.post("/meters/import")
def import_reads(body: ImportBody, svc: MeteringService = Depends(get_service)):
    rows = [row.model_dump() for row in body.rows]
    return model_to_dict(svc.import_reads(rows))


@router.post("/meters/{meter_id}/bill")
def bill_meter(meter_id: str, svc: MeteringService = Depends(get_service)):
    outcome = svc.bill_now(meter_id)
    return {"event": model_to_dict(outcome.event), "already_billed": outcome.already_billed}


@router.get("/meters/{meter_id}/billing-events")
def list_billing_events(meter_id: str, svc: MeteringService = Depends(get_service)):
    return [model_to_dict(e) for e in svc.list_billing_events(meter_id)]


@router.get("/meters/{meter_id}/effective-config")
def effective_config(meter_id: str, svc: MeteringService = Depends(get_service)):
    return model_to_dict(svc.effective_config(meter_id))


@router.get("/meters/{meter_id}/preview")
def preview(
    meter_id: str,
    reading_value: Decimal,
    as_of: Optional[dt.datetime] = None,
    svc: MeteringService = Depends(get_service),
):
    return model_to_dict(svc.preview(meter_id, reading_value, as_of))


@router.get("/rate-plans")
def list_rate_plans(type: Optional[MeterType] = None, svc: MeteringService = Depends(get_service)):
    return [model_to_dict(p) for p in svc.list_rate_plans(type)]


@router.get("/rate-plans/resolve")
def resolve_rate_plan(
    type: MeterType,
    as_of: Optional[dt.datetime] = None,
    plan_id: Optional[str] = None,
    svc: MeteringService = Depends(get_service),
):
    return model_to_dict(svc.resolve_rate_plan(type, as_of, plan_id))


@router.post("/site-classes/{site_class_id}/meters/seed")
def seed_meters(site_class_id: str, svc: MeteringService = Depends(get_service)):
    return model_to_dict(svc.seed_meters_for_site_class(site_class_id))
