from __future__ import annotations

import logging

from apps.common.errors import InsufficientReadHistory, NotFoundError, ValidationError
from apps.common.metrics import BILLS_CREATED, BILLS_DEDUPED
from apps.metering.ledger import ReadLedger
from apps.metering.registry import MeterRegistry
from apps.metering.schema import BillingMode, Meter
from apps.metering.store import MeteringStore
from apps.rating.engine import quote
from apps.rating.resolver import RatePlanResolver
from apps.sites.defaults import DefaultsResolver

from .schema import BillingEvent, BillOutcome
from .state_machine import BillingState, derive_state

log = logging.getLogger(__name__)


class BillingTrigger:
    """Turns the latest reading of a meter into exactly one billing event.

    Callers must hold the meter's critical section; the (meter_id, read_id)
    uniqueness in the store is the last line against duplicates.
    """

    def __init__(
        self,
        store: MeteringStore,
        registry: MeterRegistry,
        ledger: ReadLedger,
        resolver: RatePlanResolver,
        defaults: DefaultsResolver,
    ) -> None:
        self.store = store
        self.registry = registry
        self.ledger = ledger
        self.resolver = resolver
        self.defaults = defaults

    def should_auto_bill(self, meter: Meter) -> bool:
        if not meter.active:
            return False
        return self.defaults.effective_config(meter).billing_mode == BillingMode.PER_READING

    def bill_meter(self, meter_id: str) -> BillOutcome:
        meter = self.registry.get_meter(meter_id)
        if not meter.active:
            raise ValidationError(f"meter_inactive:{meter_id}")

        reads = self.ledger.last_reads(meter_id, 2)
        if len(reads) < 2:
            raise InsufficientReadHistory(f"meter {meter_id} has {len(reads)} read(s); two are needed")
        start, end = reads

        existing = self.store.get_billing_event(meter_id, end.id)
        if existing is not None:
            BILLS_DEDUPED.inc()
            return BillOutcome(event=existing, already_billed=True)

        cfg = self.defaults.effective_config(meter)
        plan = self.resolver.resolve(meter.type, end.read_at, cfg.rate_plan_id)
        q = quote(start.reading_value, end.reading_value, cfg.multiplier, plan)

        event = BillingEvent(
            meter_id=meter_id,
            read_id=end.id,
            start_read_id=start.id,
            usage=q.usage.usage,
            billed_usage=q.usage.billed_usage,
            amount_cents=q.charge.amount_cents,
            applied_rate_per_unit=q.charge.applied_rate_per_unit,
            rate_plan_id=plan.id,
            bill_to=cfg.bill_to,
        )
        with self.store.transaction():
            stored, created = self.store.insert_billing_event(event)
            if created:
                self.store.save_meter(meter.model_copy(update={"last_billed_read_at": end.read_at}))
        if not created:
            BILLS_DEDUPED.inc()
            return BillOutcome(event=stored, already_billed=True)

        BILLS_CREATED.inc()
        log.info(
            "meter_billed",
            extra={
                "meter_id": meter_id,
                "read_id": end.id,
                "rate_plan_id": plan.id,
                "amount_cents": stored.amount_cents,
            },
        )
        return BillOutcome(event=stored, notify=cfg.auto_email)

    def billing_state(self, meter_id: str, read_id: str) -> BillingState:
        reads = self.ledger.list_reads(meter_id)
        for idx, read in enumerate(reads):
            if read.id == read_id:
                billed = self.store.get_billing_event(meter_id, read_id) is not None
                return derive_state(has_predecessor=idx > 0, billed=billed)
        raise NotFoundError(f"read_not_found:{read_id}")


__all__ = ["BillingTrigger"]
