from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field

from apps.common.pydantic_compat import DecimalStr
from apps.metering.schema import BillingMode, BillTo, MeterType


class SiteClassMeteringDefaults(BaseModel):
    metered_enabled: bool = False
    metered_type: Optional[MeterType] = None
    billing_mode: Optional[BillingMode] = None
    bill_to: Optional[BillTo] = None
    multiplier: Optional[DecimalStr] = Field(default=None, gt=0)
    rate_plan_id: Optional[str] = None
    auto_email: Optional[bool] = None


class SiteClass(BaseModel):
    id: str
    name: str = ""
    metering: SiteClassMeteringDefaults = Field(default_factory=SiteClassMeteringDefaults)


class Site(BaseModel):
    id: str
    site_class_id: Optional[str] = None
    name: Optional[str] = None


class SiteDirectory(ABC):
    """Read-only view of sites and site classes owned by the reservations system."""

    @abstractmethod
    def get_site(self, site_id: str) -> Optional[Site]: ...
    @abstractmethod
    def get_site_class(self, site_class_id: str) -> Optional[SiteClass]: ...
    @abstractmethod
    def list_sites(self, site_class_id: str) -> List[Site]: ...


class InMemorySiteDirectory(SiteDirectory):
    def __init__(self, site_classes: Iterable[SiteClass] = (), sites: Iterable[Site] = ()) -> None:
        self._classes: Dict[str, SiteClass] = {c.id: c for c in site_classes}
        self._sites: Dict[str, Site] = {s.id: s for s in sites}

    @classmethod
    def from_yaml(cls, path: Path) -> "InMemorySiteDirectory":
        """
        site_classes:
          - id: sc-full-hookup
            metering: {metered_enabled: true, metered_type: power, multiplier: "1.0"}
        sites:
          - {id: A1, site_class_id: sc-full-hookup}
        """
        doc = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        return cls(
            site_classes=[SiteClass.model_validate(c) for c in doc.get("site_classes", [])],
            sites=[Site.model_validate(s) for s in doc.get("sites", [])],
        )

    def add_site_class(self, site_class: SiteClass) -> None:
        self._classes[site_class.id] = site_class

    def add_site(self, site: Site) -> None:
        self._sites[site.id] = site

    def get_site(self, site_id: str) -> Optional[Site]:
        return self._sites.get(site_id)

    def get_site_class(self, site_class_id: str) -> Optional[SiteClass]:
        return self._classes.get(site_class_id)

    def list_sites(self, site_class_id: str) -> List[Site]:
        return sorted((s for s in self._sites.values() if s.site_class_id == site_class_id), key=lambda s: s.id)


__all__ = ["SiteClassMeteringDefaults", "SiteClass", "Site", "SiteDirectory", "InMemorySiteDirectory"]
