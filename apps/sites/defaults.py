"""
Effective meter configuration: meter value, else site-class default, else
system default. Pure and read-only; billing and previews both go through it.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field

from apps.common.pydantic_compat import DecimalStr, parse_model
from apps.metering.schema import BillingMode, BillTo, Meter, MeterType

from .directory import SiteClassMeteringDefaults, SiteDirectory

log = logging.getLogger(__name__)

CONFIG_FIELDS = ("billing_mode", "bill_to", "multiplier", "rate_plan_id", "auto_email")


class SystemDefaults(BaseModel):
    billing_mode: BillingMode = BillingMode.CYCLE
    bill_to: BillTo = BillTo.RESERVATION
    multiplier: DecimalStr = Field(default=Decimal("1"), gt=0)
    rate_plan_id: Optional[str] = None
    auto_email: bool = False


def load_system_defaults(path: Path | str | None = None) -> SystemDefaults:
    if path is None or not Path(path).exists():
        return SystemDefaults()
    doc = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return parse_model(SystemDefaults, doc)


class EffectiveMeterConfig(BaseModel):
    meter_id: str
    type: MeterType
    billing_mode: BillingMode
    bill_to: BillTo
    multiplier: DecimalStr
    rate_plan_id: Optional[str] = None  # None: pick by meter type at billing time
    auto_email: bool
    sources: Dict[str, str]  # field -> "meter" | "site_class" | "system"


class DefaultsResolver:
    def __init__(self, directory: SiteDirectory, system: SystemDefaults | None = None) -> None:
        self.directory = directory
        self.system = system or SystemDefaults()

    def class_defaults_for(self, meter: Meter) -> Optional[SiteClassMeteringDefaults]:
        """Class layer applies only to metered classes whose type (if any) matches the meter."""
        site = self.directory.get_site(meter.site_id)
        if site is None or not site.site_class_id:
            return None
        site_class = self.directory.get_site_class(site.site_class_id)
        if site_class is None:
            log.warning("site_class_missing", extra={"site_id": site.id, "site_class_id": site.site_class_id})
            return None
        defaults = site_class.metering
        if not defaults.metered_enabled:
            return None
        if defaults.metered_type is not None and defaults.metered_type != meter.type:
            return None
        return defaults

    def effective_config(self, meter: Meter) -> EffectiveMeterConfig:
        layers = [("meter", meter), ("site_class", self.class_defaults_for(meter)), ("system", self.system)]
        values: Dict[str, object] = {}
        sources: Dict[str, str] = {}
        for name in CONFIG_FIELDS:
            values[name], sources[name] = None, "system"
            for layer_name, layer in layers:
                value = getattr(layer, name) if layer is not None else None
                if value is not None:
                    values[name], sources[name] = value, layer_name
                    break
        return EffectiveMeterConfig(meter_id=meter.id, type=meter.type, sources=sources, **values)


__all__ = ["SystemDefaults", "load_system_defaults", "EffectiveMeterConfig", "DefaultsResolver", "CONFIG_FIELDS"]
