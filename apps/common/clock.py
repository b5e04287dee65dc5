from __future__ import annotations

from datetime import datetime, timedelta, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def to_epoch_us(ts: datetime) -> int:
    # floor division keeps pre-1970 keys ordered
    return (ensure_utc(ts) - EPOCH) // timedelta(microseconds=1)


__all__ = ["EPOCH", "now_utc", "ensure_utc", "to_epoch_us"]
