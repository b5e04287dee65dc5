import datetime as dt
import os
import sys

import pytest

repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from apps.billing.notify import InMemoryNotificationOutbox  # noqa: E402
from apps.billing.service import MeteringService  # noqa: E402
from apps.config.settings import Settings  # noqa: E402
from apps.metering.store import InMemoryMeteringStore  # noqa: E402
from apps.sites.directory import InMemorySiteDirectory, Site, SiteClass, SiteClassMeteringDefaults  # noqa: E402


def _at(month: int, day: int, hour: int = 0, year: int = 2024) -> dt.datetime:
    return dt.datetime(year, month, day, hour, tzinfo=dt.timezone.utc)


@pytest.fixture
def fast_settings():
    return Settings(LOCK_TIMEOUT_SEC=0.5, CONFLICT_RETRIES=2, BACKOFF_BASE_MS=1, BACKOFF_MAX_MS=5, SEED_MAX_WORKERS=4)


@pytest.fixture
def store():
    return InMemoryMeteringStore()


@pytest.fixture
def directory():
    return InMemorySiteDirectory(
        site_classes=[
            SiteClass(
                id="sc-rv",
                name="Full hookup RV",
                metering=SiteClassMeteringDefaults(
                    metered_enabled=True,
                    metered_type="power",
                    billing_mode="per_reading",
                    bill_to="guest",
                    multiplier="2",
                    auto_email=True,
                ),
            ),
            SiteClass(id="sc-tent", name="Tent"),
        ],
        sites=[
            Site(id="A1", site_class_id="sc-rv"),
            Site(id="A2", site_class_id="sc-rv"),
            Site(id="A3", site_class_id="sc-rv"),
            Site(id="T1", site_class_id="sc-tent"),
            Site(id="X9"),
        ],
    )


@pytest.fixture
def outbox():
    return InMemoryNotificationOutbox()


@pytest.fixture
def service(store, directory, outbox, fast_settings):
    svc = MeteringService(store, directory=directory, notifier=outbox, cfg=fast_settings)
    svc.load_rate_plans(
        [
            {
                "id": "rp-power",
                "type": "power",
                "pricing_mode": "flat",
                "base_rate_cents": 10,
                "effective_from": _at(1, 1),
            },
            {
                "id": "rp-water",
                "type": "water",
                "pricing_mode": "flat",
                "base_rate_cents": 3,
                "effective_from": _at(1, 1),
            },
        ]
    )
    return svc
