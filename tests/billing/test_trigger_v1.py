import datetime as dt
import threading
from decimal import Decimal

import pytest

from apps.billing.notify import InvoiceNotifier
from apps.billing.service import MeteringService
from apps.billing.state_machine import BillingState
from apps.common.errors import InsufficientReadHistory, NotFoundError, OutOfOrderRead, ValidationError
from apps.metering.schema import BillTo

pytestmark = [pytest.mark.gate_billing]


def _at(month, day, hour=0):
    return dt.datetime(2024, month, day, hour, tzinfo=dt.timezone.utc)


@pytest.fixture
def water(service):
    # site without a class: system defaults apply (cycle, reservation, x1)
    return service.create_meter("X9", {"type": "water"})


@pytest.fixture
def rv_power(service):
    # sc-rv: per_reading, guest, x2, auto email
    return service.create_meter("A1", {"type": "power"})


def test_bill_meter_creates_one_event(service, water):
    service.append_read(water.id, 100, _at(6, 1))
    result = service.append_read(water.id, 130, _at(6, 30))
    assert result.billing is None  # cycle meters wait for the scheduler

    outcome = service.bill_meter(water.id)
    event = outcome.event
    assert outcome.already_billed is False
    assert event.usage == Decimal("30")
    assert event.billed_usage == Decimal("30")
    assert event.amount_cents == 90
    assert event.rate_plan_id == "rp-water"
    assert event.bill_to == BillTo.RESERVATION
    assert event.read_id == result.read.id
    assert service.get_meter(water.id).last_billed_read_at == _at(6, 30)


def test_bill_meter_twice_is_idempotent(service, water):
    service.append_read(water.id, 100, _at(6, 1))
    service.append_read(water.id, 130, _at(6, 30))
    first = service.bill_meter(water.id)
    second = service.bill_meter(water.id)
    assert second.already_billed is True
    assert second.event == first.event
    assert len(service.list_billing_events(water.id)) == 1


def test_bill_meter_needs_two_reads(service, water):
    with pytest.raises(InsufficientReadHistory):
        service.bill_meter(water.id)
    service.append_read(water.id, 100, _at(6, 1))
    with pytest.raises(InsufficientReadHistory):
        service.bill_meter(water.id)
    assert service.list_billing_events(water.id) == []


def test_bill_inactive_meter_is_rejected(service, water):
    service.append_read(water.id, 1, _at(6, 1))
    service.append_read(water.id, 2, _at(6, 2))
    service.set_active(water.id, False)
    with pytest.raises(ValidationError):
        service.bill_meter(water.id)


def test_per_reading_bills_every_append(service, outbox, rv_power):
    first = service.append_read(rv_power.id, 100, _at(7, 1))
    assert first.billing is None  # nothing to diff against yet

    second = service.append_read(rv_power.id, 150, _at(7, 2))
    assert second.billing is not None
    assert second.billing.read_id == second.read.id
    assert second.billing.billed_usage == Decimal("100")  # 50 units x2
    assert second.billing.amount_cents == 1000
    assert second.billing.bill_to == BillTo.GUEST

    notes = outbox.list_all()
    assert [n.event_id for n in notes] == [second.billing.id]
    assert notes[0].amount_cents == 1000


def test_per_reading_billing_failure_rolls_back_the_read(service, rv_power):
    service.update_meter(rv_power.id, {"rate_plan_id": "rp-missing"})
    service.append_read(rv_power.id, 100, _at(7, 1))
    with pytest.raises(NotFoundError):
        service.append_read(rv_power.id, 150, _at(7, 2))
    assert len(service.list_reads(rv_power.id)) == 1
    assert service.list_billing_events(rv_power.id) == []


def test_bill_now_on_append_ignores_mode(service, water):
    service.update_meter(water.id, {"billing_mode": "manual"})
    service.append_read(water.id, 10, _at(6, 1))
    result = service.append_read(water.id, 20, _at(6, 2), bill_now=True)
    assert result.billing is not None
    assert result.billing.amount_cents == 30


def test_concurrent_bill_meter_produces_one_event(service, water):
    service.append_read(water.id, 0, _at(6, 1))
    service.append_read(water.id, 50, _at(6, 2))
    outcomes = []
    guard = threading.Lock()

    def worker():
        outcome = service.bill_meter(water.id)
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == 8
    assert len({o.event.id for o in outcomes}) == 1
    assert sum(1 for o in outcomes if not o.already_billed) == 1
    assert len(service.list_billing_events(water.id)) == 1


def test_notifier_failure_does_not_fail_billing(store, directory, fast_settings):
    class Broken(InvoiceNotifier):
        def enqueue(self, request):
            raise RuntimeError("smtp down")

    svc = MeteringService(store, directory=directory, notifier=Broken(), cfg=fast_settings)
    svc.load_rate_plans([{"id": "rp", "type": "power", "base_rate_cents": 1, "effective_from": _at(1, 1)}])
    meter = svc.create_meter("A1", {"type": "power"})
    svc.append_read(meter.id, 1, _at(6, 1))
    result = svc.append_read(meter.id, 2, _at(6, 2))
    assert result.billing is not None
    assert len(svc.list_billing_events(meter.id)) == 1


def test_bill_due_collects_per_meter_results(service, water):
    manual = service.create_meter("X9", {"type": "sewer", "billing_mode": "manual"})
    service.append_read(water.id, 1, _at(6, 1))
    service.append_read(water.id, 3, _at(6, 2))

    results = {r.meter_id: r for r in service.bill_due([water.id, manual.id, "mtr_missing"])}
    assert results[water.id].event is not None
    assert results[water.id].error is None
    assert results[manual.id].error["kind"] == "validation_error"
    assert results["mtr_missing"].error["kind"] == "not_found"


def test_billing_state_per_read(service, water):
    r1 = service.append_read(water.id, 1, _at(6, 1)).read
    r2 = service.append_read(water.id, 4, _at(6, 2)).read
    assert service.billing_state(water.id, r1.id) == BillingState.IDLE
    assert service.billing_state(water.id, r2.id) == BillingState.PENDING_BILL
    service.bill_meter(water.id)
    assert service.billing_state(water.id, r2.id) == BillingState.BILLED
    with pytest.raises(NotFoundError):
        service.billing_state(water.id, "rd_missing")


def test_preview_is_advisory(service, water):
    service.append_read(water.id, 100, _at(6, 1))
    q = service.preview(water.id, 110, as_of=_at(6, 2))
    assert q.charge.amount_cents == 30
    assert len(service.list_reads(water.id)) == 1
    assert service.list_billing_events(water.id) == []


def test_import_reads_reports_partial_success(service, water):
    service.append_read(water.id, 100, _at(6, 10))
    report = service.import_reads(
        [
            {"meter_id": water.id, "reading_value": "120", "read_at": _at(6, 11)},
            {"meter_id": "mtr_unknown", "reading_value": "1", "read_at": _at(6, 11)},
            {"meter_id": water.id, "reading_value": "90", "read_at": _at(6, 1)},
        ]
    )
    assert report.imported == 1
    assert report.skipped == 1
    assert [(f.index, f.kind) for f in report.failures] == [(2, OutOfOrderRead.kind)]
    assert service.list_reads(water.id)[-1].source == "import"
