import datetime as dt

import pytest

from apps.common.clock import ensure_utc, to_epoch_us

pytestmark = [pytest.mark.gate_common]

UTC = dt.timezone.utc


def test_epoch_us_is_exact():
    assert to_epoch_us(dt.datetime(1970, 1, 1, tzinfo=UTC)) == 0
    assert to_epoch_us(dt.datetime(1970, 1, 1, 0, 0, 1, 500, tzinfo=UTC)) == 1_000_500


def test_epoch_us_orders_pre_1970_timestamps():
    earlier = dt.datetime(1969, 12, 31, 23, 59, 59, 100_000, tzinfo=UTC)
    later = dt.datetime(1969, 12, 31, 23, 59, 59, 900_000, tzinfo=UTC)
    assert to_epoch_us(earlier) == -900_000
    assert to_epoch_us(earlier) < to_epoch_us(later) < 0


def test_naive_is_utc_and_offsets_convert():
    naive = dt.datetime(2024, 6, 1, 12)
    shifted = dt.datetime(2024, 6, 1, 14, tzinfo=dt.timezone(dt.timedelta(hours=2)))
    assert ensure_utc(naive) == ensure_utc(shifted)
    assert to_epoch_us(naive) == to_epoch_us(shifted)
