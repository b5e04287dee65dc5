from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import List, Optional

from apps.common.errors import OutOfOrderRead
from apps.common.metrics import READS_APPENDED
from apps.common.pydantic_compat import parse_model

from .registry import MeterRegistry
from .schema import MeterRead
from .store import MeteringStore

log = logging.getLogger(__name__)


class ReadLedger:
    """Append-only, per-meter ordered readings.

    Reads are never reordered or backfilled: a read older than the meter's
    latest one is rejected and the ledger is left untouched.
    """

    def __init__(self, store: MeteringStore, registry: MeterRegistry) -> None:
        self.store = store
        self.registry = registry

    def append_read(
        self,
        meter_id: str,
        value: Decimal | int | float | str,
        read_at: dt.datetime,
        note: str | None = None,
        read_by: str | None = None,
        source: str = "manual",
    ) -> MeterRead:
        self.registry.get_meter(meter_id)
        read = parse_model(MeterRead, {
            "meter_id": meter_id,
            "reading_value": value,
            "read_at": read_at,
            "note": note,
            "read_by": read_by,
            "source": source,
        })
        with self.store.transaction():
            latest = self.latest_read(meter_id)
            if latest is not None and read.read_at < latest.read_at:
                raise OutOfOrderRead(
                    f"read_at {read.read_at.isoformat()} precedes latest {latest.read_at.isoformat()}"
                )
            stored = self.store.append_read(read)
        READS_APPENDED.inc()
        log.info("read_appended", extra={"meter_id": meter_id, "read_id": stored.id, "seq": stored.seq})
        return stored

    def latest_read(self, meter_id: str) -> Optional[MeterRead]:
        reads = self.store.last_reads(meter_id, 1)
        return reads[-1] if reads else None

    def last_reads(self, meter_id: str, n: int) -> List[MeterRead]:
        return self.store.last_reads(meter_id, n)

    def list_reads(self, meter_id: str, start: dt.datetime | None = None, end: dt.datetime | None = None) -> List[MeterRead]:
        self.registry.get_meter(meter_id)
        return self.store.list_reads(meter_id, start=start, end=end)

    def count(self, meter_id: str) -> int:
        return self.store.count_reads(meter_id)


__all__ = ["ReadLedger"]
