from __future__ import annotations

import datetime as dt
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from apps.billing.schema import BillingEvent
from apps.common.clock import ensure_utc, to_epoch_us
from apps.rating.plans import RatePlan

from .schema import Meter, MeterRead, MeterType


class MeteringStore(ABC):
    """Transactional record store for meters, reads, rate plans and billing events.

    ``transaction()`` is re-entrant: nested blocks join the outermost one and
    only the outermost commit/rollback takes effect.
    """

    @abstractmethod
    def transaction(self) -> Iterator[None]: ...

    # meters
    @abstractmethod
    def get_meter(self, meter_id: str) -> Optional[Meter]: ...
    @abstractmethod
    def save_meter(self, meter: Meter) -> Meter: ...
    @abstractmethod
    def list_meters(self) -> List[Meter]: ...

    def find_active_meters(self, site_id: str, type: MeterType) -> List[Meter]:
        return [m for m in self.list_meters() if m.site_id == site_id and m.type == type and m.active]

    # reads
    @abstractmethod
    def append_read(self, read: MeterRead) -> MeterRead: ...
    @abstractmethod
    def list_reads(self, meter_id: str, start: dt.datetime | None = None, end: dt.datetime | None = None) -> List[MeterRead]: ...
    @abstractmethod
    def last_reads(self, meter_id: str, n: int) -> List[MeterRead]: ...

    def count_reads(self, meter_id: str) -> int:
        return len(self.list_reads(meter_id))

    # rate plans
    @abstractmethod
    def save_rate_plan(self, plan: RatePlan) -> RatePlan: ...
    @abstractmethod
    def get_rate_plan(self, plan_id: str) -> Optional[RatePlan]: ...
    @abstractmethod
    def list_rate_plans(self, type: MeterType | None = None) -> List[RatePlan]: ...

    # billing events
    @abstractmethod
    def get_billing_event(self, meter_id: str, read_id: str) -> Optional[BillingEvent]: ...
    @abstractmethod
    def insert_billing_event(self, event: BillingEvent) -> Tuple[BillingEvent, bool]:
        """Returns (stored_event, created). A second insert for the same
        (meter_id, read_id) returns the existing record with created=False."""
    @abstractmethod
    def list_billing_events(self, meter_id: str) -> List[BillingEvent]: ...

    def close(self) -> None: pass  # optional


class InMemoryMeteringStore(MeteringStore):
    def __init__(self) -> None:
        self._meters: Dict[str, Meter] = {}
        self._reads: Dict[str, List[MeterRead]] = {}
        self._plans: Dict[str, RatePlan] = {}
        self._events: Dict[Tuple[str, str], BillingEvent] = {}
        self._seq = 0
        self._lock = threading.RLock()
        self._depth = 0

    def _snapshot(self):
        return (
            dict(self._meters),
            {k: list(v) for k, v in self._reads.items()},
            dict(self._plans),
            dict(self._events),
            self._seq,
        )

    def _restore(self, snap) -> None:
        self._meters, self._reads, self._plans, self._events, self._seq = snap

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snap = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if snap is not None:
                    self._restore(snap)
                raise
            self._depth -= 1

    def get_meter(self, meter_id: str) -> Optional[Meter]:
        with self._lock:
            return self._meters.get(meter_id)

    def save_meter(self, meter: Meter) -> Meter:
        with self._lock:
            self._meters[meter.id] = meter
            return meter

    def list_meters(self) -> List[Meter]:
        with self._lock:
            return list(self._meters.values())

    def append_read(self, read: MeterRead) -> MeterRead:
        with self._lock:
            self._seq += 1
            stored = read.model_copy(update={"seq": self._seq})
            self._reads.setdefault(read.meter_id, []).append(stored)
            return stored

    def list_reads(self, meter_id: str, start: dt.datetime | None = None, end: dt.datetime | None = None) -> List[MeterRead]:
        with self._lock:
            reads = sorted(self._reads.get(meter_id, []), key=lambda r: r.sort_key())
        if start is not None:
            start = ensure_utc(start)
            reads = [r for r in reads if r.read_at >= start]
        if end is not None:
            end = ensure_utc(end)
            reads = [r for r in reads if r.read_at <= end]
        return reads

    def last_reads(self, meter_id: str, n: int) -> List[MeterRead]:
        reads = self.list_reads(meter_id)
        return reads[-n:] if n > 0 else []

    def save_rate_plan(self, plan: RatePlan) -> RatePlan:
        with self._lock:
            self._plans[plan.id] = plan
            return plan

    def get_rate_plan(self, plan_id: str) -> Optional[RatePlan]:
        with self._lock:
            return self._plans.get(plan_id)

    def list_rate_plans(self, type: MeterType | None = None) -> List[RatePlan]:
        with self._lock:
            plans = list(self._plans.values())
        if type is not None:
            plans = [p for p in plans if p.type == type]
        return plans

    def get_billing_event(self, meter_id: str, read_id: str) -> Optional[BillingEvent]:
        with self._lock:
            return self._events.get((meter_id, read_id))

    def insert_billing_event(self, event: BillingEvent) -> Tuple[BillingEvent, bool]:
        with self._lock:
            existing = self._events.get(event.idempotency_key)
            if existing is not None:
                return existing, False
            self._events[event.idempotency_key] = event
            return event, True

    def list_billing_events(self, meter_id: str) -> List[BillingEvent]:
        with self._lock:
            events = [e for (mid, _), e in self._events.items() if mid == meter_id]
        return sorted(events, key=lambda e: e.created_at)


class SQLiteMeteringStore(MeteringStore):
    """
    File-backed store. UNIQUE(meter_id, read_id) guarantees at most one
    billing event per reading, also across store instances on the same file.
    """
    def __init__(self, path: str = "var/metering/campmeter.sqlite") -> None:
        if os.path.dirname(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
        self._conn = sqlite3.connect(path, timeout=30, check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS meters(
              id TEXT PRIMARY KEY,
              site_id TEXT NOT NULL,
              type TEXT NOT NULL,
              active INTEGER NOT NULL,
              body TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS meter_reads(
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              meter_id TEXT NOT NULL,
              read_at_us INTEGER NOT NULL,
              body TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_reads_meter ON meter_reads(meter_id, read_at_us, seq);
            CREATE TABLE IF NOT EXISTS rate_plans(
              id TEXT PRIMARY KEY,
              type TEXT NOT NULL,
              body TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS billing_events(
              meter_id TEXT NOT NULL,
              read_id TEXT NOT NULL,
              created_at_us INTEGER NOT NULL,
              body TEXT NOT NULL,
              PRIMARY KEY(meter_id, read_id)
            );
        """)
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple = ()) -> list:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    @staticmethod
    def _read_from_row(row) -> MeterRead:
        seq, body = row
        return MeterRead.model_validate_json(body).model_copy(update={"seq": seq})

    def get_meter(self, meter_id: str) -> Optional[Meter]:
        rows = self._query("SELECT body FROM meters WHERE id=?", (meter_id,))
        return Meter.model_validate_json(rows[0][0]) if rows else None

    def save_meter(self, meter: Meter) -> Meter:
        with self.transaction():
            self._conn.execute(
                "INSERT OR REPLACE INTO meters(id, site_id, type, active, body) VALUES (?,?,?,?,?)",
                (meter.id, meter.site_id, meter.type.value, int(meter.active), meter.model_dump_json()),
            )
        return meter

    def list_meters(self) -> List[Meter]:
        return [Meter.model_validate_json(r[0]) for r in self._query("SELECT body FROM meters")]

    def find_active_meters(self, site_id: str, type: MeterType) -> List[Meter]:
        rows = self._query(
            "SELECT body FROM meters WHERE site_id=? AND type=? AND active=1", (site_id, type.value)
        )
        return [Meter.model_validate_json(r[0]) for r in rows]

    def append_read(self, read: MeterRead) -> MeterRead:
        with self.transaction():
            cur = self._conn.execute(
                "INSERT INTO meter_reads(id, meter_id, read_at_us, body) VALUES (?,?,?,?)",
                (read.id, read.meter_id, to_epoch_us(read.read_at), read.model_dump_json()),
            )
            seq = cur.lastrowid
        return read.model_copy(update={"seq": seq})

    def list_reads(self, meter_id: str, start: dt.datetime | None = None, end: dt.datetime | None = None) -> List[MeterRead]:
        sql = "SELECT seq, body FROM meter_reads WHERE meter_id=?"
        params: list = [meter_id]
        if start is not None:
            sql += " AND read_at_us >= ?"
            params.append(to_epoch_us(start))
        if end is not None:
            sql += " AND read_at_us <= ?"
            params.append(to_epoch_us(end))
        sql += " ORDER BY read_at_us ASC, seq ASC"
        return [self._read_from_row(r) for r in self._query(sql, tuple(params))]

    def last_reads(self, meter_id: str, n: int) -> List[MeterRead]:
        if n <= 0:
            return []
        rows = self._query(
            "SELECT seq, body FROM meter_reads WHERE meter_id=? ORDER BY read_at_us DESC, seq DESC LIMIT ?",
            (meter_id, n),
        )
        return [self._read_from_row(r) for r in reversed(rows)]

    def count_reads(self, meter_id: str) -> int:
        return self._query("SELECT COUNT(*) FROM meter_reads WHERE meter_id=?", (meter_id,))[0][0]

    def save_rate_plan(self, plan: RatePlan) -> RatePlan:
        with self.transaction():
            self._conn.execute(
                "INSERT OR REPLACE INTO rate_plans(id, type, body) VALUES (?,?,?)",
                (plan.id, plan.type.value, plan.model_dump_json()),
            )
        return plan

    def get_rate_plan(self, plan_id: str) -> Optional[RatePlan]:
        rows = self._query("SELECT body FROM rate_plans WHERE id=?", (plan_id,))
        return RatePlan.model_validate_json(rows[0][0]) if rows else None

    def list_rate_plans(self, type: MeterType | None = None) -> List[RatePlan]:
        if type is None:
            rows = self._query("SELECT body FROM rate_plans")
        else:
            rows = self._query("SELECT body FROM rate_plans WHERE type=?", (type.value,))
        return [RatePlan.model_validate_json(r[0]) for r in rows]

    def get_billing_event(self, meter_id: str, read_id: str) -> Optional[BillingEvent]:
        rows = self._query(
            "SELECT body FROM billing_events WHERE meter_id=? AND read_id=?", (meter_id, read_id)
        )
        return BillingEvent.model_validate_json(rows[0][0]) if rows else None

    def insert_billing_event(self, event: BillingEvent) -> Tuple[BillingEvent, bool]:
        with self.transaction():
            try:
                self._conn.execute(
                    "INSERT INTO billing_events(meter_id, read_id, created_at_us, body) VALUES (?,?,?,?)",
                    (event.meter_id, event.read_id, to_epoch_us(event.created_at), event.model_dump_json()),
                )
                return event, True
            except sqlite3.IntegrityError:
                existing = self.get_billing_event(event.meter_id, event.read_id)
                return existing, False

    def list_billing_events(self, meter_id: str) -> List[BillingEvent]:
        rows = self._query(
            "SELECT body FROM billing_events WHERE meter_id=? ORDER BY created_at_us ASC", (meter_id,)
        )
        return [BillingEvent.model_validate_json(r[0]) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


__all__ = ["MeteringStore", "InMemoryMeteringStore", "SQLiteMeteringStore"]
