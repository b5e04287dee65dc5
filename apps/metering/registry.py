from __future__ import annotations

import logging
from typing import Any, List, Mapping

from apps.common.errors import DuplicateActiveMeter, NotFoundError, ValidationError
from apps.common.pydantic_compat import parse_model

from .schema import Meter, MeterCreate, MeterFilter, MeterPatch, MeterType
from .store import MeteringStore

log = logging.getLogger(__name__)


class MeterRegistry:
    """Meter lifecycle. Meters are never deleted, only deactivated."""

    def __init__(self, store: MeteringStore) -> None:
        self.store = store

    def create_meter(self, site_id: str, config: MeterCreate | Mapping[str, Any]) -> Meter:
        if not site_id:
            raise ValidationError("site_id_required")
        cfg = parse_model(MeterCreate, config)
        with self.store.transaction():
            self._ensure_no_active_duplicate(site_id, cfg.type)
            meter = Meter(site_id=site_id, **cfg.model_dump())
            self.store.save_meter(meter)
        log.info("meter_created", extra={"meter_id": meter.id, "site_id": site_id, "type": meter.type.value})
        return meter

    def get_meter(self, meter_id: str) -> Meter:
        meter = self.store.get_meter(meter_id)
        if meter is None:
            raise NotFoundError(f"meter_not_found:{meter_id}")
        return meter

    def update_meter(self, meter_id: str, patch: MeterPatch | Mapping[str, Any]) -> Meter:
        changes = parse_model(MeterPatch, patch).changes()
        with self.store.transaction():
            meter = self.get_meter(meter_id)
            if changes.get("active") and not meter.active:
                self._ensure_no_active_duplicate(meter.site_id, meter.type, exclude=meter.id)
            updated = meter.model_copy(update=changes)
            self.store.save_meter(updated)
        if changes:
            log.info("meter_updated", extra={"meter_id": meter_id, "fields": sorted(changes)})
        return updated

    def set_active(self, meter_id: str, active: bool) -> Meter:
        return self.update_meter(meter_id, {"active": active})

    def list_meters(self, filter: MeterFilter | Mapping[str, Any] | None = None) -> List[Meter]:
        flt = parse_model(MeterFilter, filter or {})
        meters = [m for m in self.store.list_meters() if flt.matches(m)]
        return sorted(meters, key=lambda m: (m.site_id, m.type.value, m.id))

    def has_active_meter(self, site_id: str, type: MeterType) -> bool:
        return bool(self.store.find_active_meters(site_id, type))

    def _ensure_no_active_duplicate(self, site_id: str, type: MeterType, exclude: str | None = None) -> None:
        clash = [m for m in self.store.find_active_meters(site_id, type) if m.id != exclude]
        if clash:
            raise DuplicateActiveMeter(f"site {site_id} already has active {type.value} meter {clash[0].id}")


__all__ = ["MeterRegistry"]
