from __future__ import annotations

import datetime as dt
import logging
from typing import List, Optional

from apps.common.clock import ensure_utc
from apps.common.errors import NoRatePlanFound, NotFoundError, RatePlanInactive, ValidationError
from apps.metering.schema import MeterType, coerce_meter_type
from apps.metering.store import MeteringStore

from .plans import RatePlan

log = logging.getLogger(__name__)


class RatePlanResolver:
    """Effective-dated plan lookup. Every call reads the store; nothing is cached."""

    def __init__(self, store: MeteringStore) -> None:
        self.store = store

    def resolve(self, type: MeterType | str, as_of: dt.datetime, explicit_plan_id: Optional[str] = None) -> RatePlan:
        mtype = coerce_meter_type(type)
        as_of = ensure_utc(as_of)

        if explicit_plan_id:
            plan = self.store.get_rate_plan(explicit_plan_id)
            if plan is None:
                raise NotFoundError(f"rate_plan_not_found:{explicit_plan_id}")
            if plan.type != mtype:
                raise ValidationError(f"rate_plan_type_mismatch:{plan.type.value}!={mtype.value}")
            if not plan.is_effective(as_of):
                raise RatePlanInactive(f"rate plan {plan.id} not effective at {as_of.isoformat()}")
            return plan

        candidates = [p for p in self.store.list_rate_plans(mtype) if p.is_effective(as_of)]
        if not candidates:
            raise NoRatePlanFound(f"no {mtype.value} rate plan effective at {as_of.isoformat()}")
        if len(candidates) > 1:
            # overlapping windows: most recent effective_from wins, then the greater id
            log.debug("rate_plan_overlap", extra={"type": mtype.value, "candidates": [p.id for p in candidates]})
        return max(candidates, key=lambda p: (p.effective_from, p.id))

    def list_rate_plans(self, type: MeterType | str | None = None) -> List[RatePlan]:
        mtype = coerce_meter_type(type) if type is not None else None
        plans = self.store.list_rate_plans(mtype)
        return sorted(plans, key=lambda p: (p.effective_from, p.id), reverse=True)


__all__ = ["RatePlanResolver"]
