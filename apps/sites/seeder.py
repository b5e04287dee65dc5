from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from apps.common.errors import DuplicateActiveMeter, MeteringError, NotFoundError, ValidationError
from apps.metering.schema import Meter, MeterType

from .directory import Site, SiteClassMeteringDefaults, SiteDirectory

log = logging.getLogger(__name__)


class SeedFailure(BaseModel):
    site_id: str
    kind: str
    message: str


class SeedReport(BaseModel):
    site_class_id: str
    created: int = 0
    total_sites: int = 0
    skipped: int = 0
    failures: List[SeedFailure] = Field(default_factory=list)


def meter_config_from_class(defaults: SiteClassMeteringDefaults) -> dict:
    cfg = {
        "type": defaults.metered_type,
        "billing_mode": defaults.billing_mode,
        "bill_to": defaults.bill_to,
        "multiplier": defaults.multiplier,
        "rate_plan_id": defaults.rate_plan_id,
        "auto_email": defaults.auto_email,
    }
    return {k: v for k, v in cfg.items() if v is not None}


class MeterSeeder:
    """Provisions one meter per site of a metered site class.

    Sites are independent, so creation fans out over a bounded pool; a
    failing site is reported and never aborts the batch.
    """

    def __init__(
        self,
        directory: SiteDirectory,
        create_meter: Callable[[str, dict], Meter],
        has_active_meter: Callable[[str, MeterType], bool],
        max_workers: int = 4,
    ) -> None:
        self.directory = directory
        self.create_meter = create_meter
        self.has_active_meter = has_active_meter
        self.max_workers = max(1, max_workers)

    def seed(self, site_class_id: str) -> SeedReport:
        site_class = self.directory.get_site_class(site_class_id)
        if site_class is None:
            raise NotFoundError(f"site_class_not_found:{site_class_id}")
        defaults = site_class.metering
        if not defaults.metered_enabled or defaults.metered_type is None:
            raise ValidationError(f"site class {site_class_id} is not marked as metered")

        sites = self.directory.list_sites(site_class_id)
        report = SeedReport(site_class_id=site_class_id, total_sites=len(sites))
        if not sites:
            return report

        config = meter_config_from_class(defaults)
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(sites))) as pool:
            results = list(pool.map(lambda s: self._seed_site(s, defaults.metered_type, config), sites))

        for status, failure in results:
            if status == "created":
                report.created += 1
            elif status == "skipped":
                report.skipped += 1
            else:
                report.failures.append(failure)
        report.failures.sort(key=lambda f: f.site_id)
        log.info(
            "site_class_seeded",
            extra={
                "site_class_id": site_class_id,
                "created": report.created,
                "skipped": report.skipped,
                "failed": len(report.failures),
            },
        )
        return report

    def _seed_site(self, site: Site, type: MeterType, config: dict) -> Tuple[str, Optional[SeedFailure]]:
        try:
            if self.has_active_meter(site.id, type):
                return "skipped", None
            self.create_meter(site.id, dict(config))
            return "created", None
        except DuplicateActiveMeter:
            return "skipped", None
        except MeteringError as exc:
            return "failed", SeedFailure(site_id=site.id, kind=exc.kind, message=exc.message)
        except Exception as exc:
            log.exception("seed_site_failed", extra={"site_id": site.id})
            return "failed", SeedFailure(site_id=site.id, kind="internal_error", message=str(exc))


__all__ = ["SeedFailure", "SeedReport", "MeterSeeder", "meter_config_from_class"]
