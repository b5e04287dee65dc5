"""
Metering service: the single entry point used by the HTTP layer, the
scheduler and the importer.

Every mutation of a meter runs inside that meter's critical section
(``meter:{id}``); meter creation is serialized per ``site:{site_id}:{type}``.
Lock contention surfaces as ``ConcurrencyConflict`` and is retried with
backoff before it reaches the caller. Invoice notifications are dispatched
only after the store transaction committed.
"""
from __future__ import annotations

import datetime as dt
import logging
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, TypeVar

from apps.common.clock import now_utc
from apps.common.errors import ConcurrencyConflict, InsufficientReadHistory, MeteringError, ValidationError
from apps.common.locks import KeyedLocks, retry_on_conflict
from apps.common.pydantic_compat import parse_model
from apps.config.settings import Settings, settings as default_settings
from apps.metering.factory import build_store
from apps.metering.ledger import ReadLedger
from apps.metering.registry import MeterRegistry
from apps.metering.schema import (
    BillingMode,
    Meter,
    MeterCreate,
    MeterFilter,
    MeterPatch,
    MeterRead,
    MeterType,
    coerce_meter_type,
)
from apps.metering.store import MeteringStore
from apps.rating.engine import Quote, quote
from apps.rating.plans import RatePlan, load_rate_plans
from apps.rating.resolver import RatePlanResolver
from apps.sites.defaults import DefaultsResolver, EffectiveMeterConfig, SystemDefaults, load_system_defaults
from apps.sites.directory import InMemorySiteDirectory, SiteDirectory
from apps.sites.seeder import MeterSeeder, SeedReport

from .notify import InMemoryNotificationOutbox, InvoiceNotifier, dispatch
from .schema import (
    BillDueResult,
    BillingEvent,
    BillOutcome,
    ImportFailure,
    ImportReport,
    InvoiceNotification,
    ReadResult,
)
from .state_machine import BillingState
from .trigger import BillingTrigger

log = logging.getLogger(__name__)

T = TypeVar("T")


class MeteringService:
    def __init__(
        self,
        store: MeteringStore,
        directory: SiteDirectory | None = None,
        notifier: InvoiceNotifier | None = None,
        system_defaults: SystemDefaults | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.store = store
        self.directory = directory or InMemorySiteDirectory()
        self.notifier = notifier or InMemoryNotificationOutbox()
        self.registry = MeterRegistry(store)
        self.ledger = ReadLedger(store, self.registry)
        self.resolver = RatePlanResolver(store)
        self.defaults = DefaultsResolver(self.directory, system_defaults)
        self.trigger = BillingTrigger(store, self.registry, self.ledger, self.resolver, self.defaults)
        self.seeder = MeterSeeder(
            self.directory,
            create_meter=self.create_meter,
            has_active_meter=self.registry.has_active_meter,
            max_workers=self.cfg.SEED_MAX_WORKERS,
        )
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------ locking

    def _serialized(self, keys: List[str], fn: Callable[[], T], timeout: float | None = None) -> T:
        """Run ``fn`` holding every lock in ``keys``, within ``timeout`` seconds overall.

        The budget is split evenly across attempts so a released lock can
        still be picked up after a backoff; the last attempt gets whatever
        time is left.
        """
        budget = self.cfg.LOCK_TIMEOUT_SEC if timeout is None else timeout
        retries = self.cfg.CONFLICT_RETRIES
        deadline = time.monotonic() + budget
        share = budget / (retries + 1)
        attempts = [0]

        def attempt() -> T:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConcurrencyConflict(f"timeout:{budget}s")
            last = attempts[0] >= retries
            attempts[0] += 1
            wait = remaining if last else min(share, remaining)
            return self._run_locked(keys, fn, time.monotonic() + wait)

        return retry_on_conflict(
            attempt,
            retries=retries,
            initial_ms=self.cfg.BACKOFF_BASE_MS,
            max_ms=self.cfg.BACKOFF_MAX_MS,
            deadline=deadline,
        )

    def _run_locked(self, keys: List[str], fn: Callable[[], T], until: float) -> T:
        if not keys:
            return fn()
        with self._locks.hold(keys[0], until - time.monotonic()):
            return self._run_locked(keys[1:], fn, until)

    @staticmethod
    def _meter_key(meter_id: str) -> str:
        return f"meter:{meter_id}"

    @staticmethod
    def _site_key(site_id: str, type: MeterType) -> str:
        return f"site:{site_id}:{type.value}"

    def _notify(self, outcome: Optional[BillOutcome]) -> None:
        if outcome is None or outcome.already_billed or not outcome.notify:
            return
        dispatch(self.notifier, InvoiceNotification.for_event(outcome.event))

    # ------------------------------------------------------------------ meters

    def create_meter(self, site_id: str, config: MeterCreate | Mapping[str, Any], timeout: float | None = None) -> Meter:
        cfg = parse_model(MeterCreate, config)
        return self._serialized(
            [self._site_key(site_id, cfg.type)],
            lambda: self.registry.create_meter(site_id, cfg),
            timeout,
        )

    def update_meter(self, meter_id: str, patch: MeterPatch | Mapping[str, Any], timeout: float | None = None) -> Meter:
        meter = self.registry.get_meter(meter_id)
        # site and type never change, so the site key is stable
        keys = [self._meter_key(meter_id), self._site_key(meter.site_id, meter.type)]
        return self._serialized(keys, lambda: self.registry.update_meter(meter_id, patch), timeout)

    def set_active(self, meter_id: str, active: bool, timeout: float | None = None) -> Meter:
        return self.update_meter(meter_id, {"active": active}, timeout)

    def get_meter(self, meter_id: str) -> Meter:
        return self.registry.get_meter(meter_id)

    def list_meters(self, filter: MeterFilter | Mapping[str, Any] | None = None) -> List[Meter]:
        return self.registry.list_meters(filter)

    def seed_meters_for_site_class(self, site_class_id: str) -> SeedReport:
        return self.seeder.seed(site_class_id)

    # ------------------------------------------------------------------ reads

    def append_read(
        self,
        meter_id: str,
        value: Decimal | int | float | str,
        read_at: dt.datetime | None = None,
        note: str | None = None,
        read_by: str | None = None,
        source: str = "manual",
        bill_now: bool = False,
        timeout: float | None = None,
    ) -> ReadResult:
        """Append a reading and, for per-reading meters (or ``bill_now``), bill it.

        Read and billing event commit together: if billing fails the read is
        rolled back too. The first read of a meter is stored unbilled.
        """
        at = read_at or now_utc()

        def run() -> tuple:
            outcome: Optional[BillOutcome] = None
            with self.store.transaction():
                read = self.ledger.append_read(meter_id, value, at, note=note, read_by=read_by, source=source)
                meter = self.registry.get_meter(meter_id)
                wants_bill = bill_now or self.trigger.should_auto_bill(meter)
                if wants_bill and self.ledger.count(meter_id) >= 2:
                    outcome = self.trigger.bill_meter(meter_id)
            return read, outcome

        read, outcome = self._serialized([self._meter_key(meter_id)], run, timeout)
        self._notify(outcome)
        return ReadResult(
            read=read,
            billing=outcome.event if outcome else None,
            already_billed=outcome.already_billed if outcome else False,
        )

    def list_reads(self, meter_id: str, start: dt.datetime | None = None, end: dt.datetime | None = None) -> List[MeterRead]:
        return self.ledger.list_reads(meter_id, start=start, end=end)

    def latest_read(self, meter_id: str) -> Optional[MeterRead]:
        self.registry.get_meter(meter_id)
        return self.ledger.latest_read(meter_id)

    def import_reads(self, rows: Iterable[Mapping[str, Any]]) -> ImportReport:
        """Bulk reads from an external file. Unknown meters are skipped,
        rejected rows are reported, neither stops the batch."""
        report = ImportReport()
        for index, row in enumerate(rows):
            meter_id = row.get("meter_id")
            if not meter_id or self.store.get_meter(meter_id) is None:
                report.skipped += 1
                continue
            try:
                self.append_read(
                    meter_id,
                    row.get("reading_value"),
                    row.get("read_at"),
                    note=row.get("note"),
                    read_by=row.get("read_by"),
                    source=row.get("source") or "import",
                )
            except MeteringError as exc:
                report.failures.append(ImportFailure(index=index, meter_id=meter_id, kind=exc.kind, message=exc.message))
                continue
            report.imported += 1
        log.info(
            "reads_imported",
            extra={"imported": report.imported, "skipped": report.skipped, "failed": len(report.failures)},
        )
        return report

    # ------------------------------------------------------------------ billing

    def bill_meter(self, meter_id: str, timeout: float | None = None) -> BillOutcome:
        outcome = self._serialized([self._meter_key(meter_id)], lambda: self.trigger.bill_meter(meter_id), timeout)
        self._notify(outcome)
        return outcome

    def bill_now(self, meter_id: str, timeout: float | None = None) -> BillOutcome:
        """Explicit billing request; ignores the meter's billing mode."""
        return self.bill_meter(meter_id, timeout)

    def bill_due(self, meter_ids: Iterable[str]) -> List[BillDueResult]:
        """Scheduler entry point. Manual meters are refused; one failing
        meter never stops the run."""
        results: List[BillDueResult] = []
        for meter_id in meter_ids:
            try:
                meter = self.registry.get_meter(meter_id)
                if self.defaults.effective_config(meter).billing_mode == BillingMode.MANUAL:
                    raise ValidationError(f"manual_billing_mode:{meter_id}")
                outcome = self.bill_meter(meter_id)
            except MeteringError as exc:
                results.append(BillDueResult(meter_id=meter_id, error=exc.to_dict()))
                continue
            results.append(BillDueResult(meter_id=meter_id, event=outcome.event, already_billed=outcome.already_billed))
        return results

    def list_billing_events(self, meter_id: str) -> List[BillingEvent]:
        self.registry.get_meter(meter_id)
        return self.store.list_billing_events(meter_id)

    def billing_state(self, meter_id: str, read_id: str) -> BillingState:
        return self.trigger.billing_state(meter_id, read_id)

    # ------------------------------------------------------------------ rating

    def load_rate_plans(self, plans: Iterable[RatePlan | Mapping[str, Any]]) -> List[RatePlan]:
        out = []
        for plan in plans:
            out.append(self.store.save_rate_plan(parse_model(RatePlan, plan)))
        return out

    def resolve_rate_plan(self, type: MeterType | str, as_of: dt.datetime | None = None, plan_id: str | None = None) -> RatePlan:
        return self.resolver.resolve(coerce_meter_type(type), as_of or now_utc(), plan_id)

    def list_rate_plans(self, type: MeterType | str | None = None) -> List[RatePlan]:
        return self.resolver.list_rate_plans(type)

    def effective_config(self, meter_id: str) -> EffectiveMeterConfig:
        return self.defaults.effective_config(self.registry.get_meter(meter_id))

    def preview(self, meter_id: str, new_value: Decimal | int | float | str, as_of: dt.datetime | None = None) -> Quote:
        """Advisory charge for a prospective reading. Nothing is persisted."""
        meter = self.registry.get_meter(meter_id)
        latest = self.ledger.latest_read(meter_id)
        if latest is None:
            raise InsufficientReadHistory(f"meter {meter_id} has no prior read")
        cfg = self.defaults.effective_config(meter)
        plan = self.resolver.resolve(meter.type, as_of or now_utc(), cfg.rate_plan_id)
        return quote(latest.reading_value, new_value, cfg.multiplier, plan)


def build_service(
    cfg: Settings | None = None,
    directory: SiteDirectory | None = None,
    notifier: InvoiceNotifier | None = None,
) -> MeteringService:
    cfg = cfg or default_settings
    system = load_system_defaults(Path(cfg.SYSTEM_DEFAULTS_PATH))
    if directory is None and Path(cfg.SITE_DIRECTORY_PATH).exists():
        directory = InMemorySiteDirectory.from_yaml(Path(cfg.SITE_DIRECTORY_PATH))
    service = MeteringService(build_store(cfg), directory=directory, notifier=notifier, system_defaults=system, cfg=cfg)
    if Path(cfg.RATE_PLANS_PATH).exists():
        plans = service.load_rate_plans(load_rate_plans(cfg.RATE_PLANS_PATH))
        log.info("rate_plans_loaded", extra={"count": len(plans), "path": cfg.RATE_PLANS_PATH})
    return service


__all__ = ["MeteringService", "build_service"]
