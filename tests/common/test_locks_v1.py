import datetime as dt
import threading
import time

import pytest

from apps.billing.service import MeteringService
from apps.common.errors import ConcurrencyConflict
from apps.common.locks import KeyedLocks, retry_on_conflict
from apps.common.metrics import CONFLICTS_RETRIED
from apps.config.settings import Settings

pytestmark = [pytest.mark.gate_common]


def _at(day):
    return dt.datetime(2024, 6, day, tzinfo=dt.timezone.utc)


@pytest.fixture
def contended(store, directory, outbox):
    cfg = Settings(_env_file=None, LOCK_TIMEOUT_SEC=5.0, CONFLICT_RETRIES=3, BACKOFF_BASE_MS=1, BACKOFF_MAX_MS=5)
    svc = MeteringService(store, directory=directory, notifier=outbox, cfg=cfg)
    svc.load_rate_plans([{"id": "rp-water", "type": "water", "base_rate_cents": 3, "effective_from": _at(1)}])
    meter = svc.create_meter("X9", {"type": "water"})
    svc.append_read(meter.id, 10, _at(2))
    svc.append_read(meter.id, 20, _at(3))
    return svc, meter.id


def _hold_in_background(svc, key, seconds):
    held = threading.Event()

    def run():
        with svc._locks.hold(key, 1.0):
            held.set()
            time.sleep(seconds)

    thread = threading.Thread(target=run)
    thread.start()
    assert held.wait(1.0)
    return thread


def test_lock_released_during_backoff_is_picked_up(contended):
    svc, meter_id = contended
    before = CONFLICTS_RETRIED.get()
    # 0.8s over 4 attempts: the first attempt gives up after ~0.2s, the holder leaves at 0.3s
    holder = _hold_in_background(svc, f"meter:{meter_id}", 0.3)
    try:
        outcome = svc.bill_meter(meter_id, timeout=0.8)
    finally:
        holder.join()
    assert outcome.already_billed is False
    assert outcome.event.amount_cents == 30
    assert CONFLICTS_RETRIED.get() > before


def test_conflict_surfaces_within_caller_timeout(contended):
    svc, meter_id = contended
    with svc._locks.hold(f"meter:{meter_id}", 1.0):
        started = time.monotonic()
        with pytest.raises(ConcurrencyConflict):
            svc.bill_meter(meter_id, timeout=0.3)
        elapsed = time.monotonic() - started
    assert elapsed < 0.3 + 0.15
    assert svc.list_billing_events(meter_id) == []


def test_retry_stops_before_sleeping_past_deadline():
    calls = []

    def always_busy():
        calls.append(1)
        raise ConcurrencyConflict("lock_busy:k")

    with pytest.raises(ConcurrencyConflict):
        retry_on_conflict(always_busy, retries=10, initial_ms=200, max_ms=200, deadline=time.monotonic() + 0.05)
    assert len(calls) == 1


def test_retry_returns_after_transient_conflicts():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConcurrencyConflict("lock_busy:k")
        return "ok"

    assert retry_on_conflict(flaky, retries=3, initial_ms=1, max_ms=2) == "ok"
    assert len(calls) == 3


def test_keyed_locks_are_evicted_when_idle():
    locks = KeyedLocks()
    with locks.hold("meter:a", 0.1):
        assert len(locks) == 1
        with pytest.raises(ConcurrencyConflict):
            with locks.hold("meter:a", 0.01):
                pass
        assert len(locks) == 1
    assert len(locks) == 0
    for i in range(50):
        with locks.hold(f"meter:{i}", 0.1):
            pass
    assert len(locks) == 0
