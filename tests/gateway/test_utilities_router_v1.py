import pytest
from fastapi.testclient import TestClient

from apps.gateway.main import app
from apps.gateway.routers.utilities import get_service

pytestmark = [pytest.mark.gate_api]


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _meter(client, site_id="X9", **extra):
    resp = client.post("/api/v1/meters", json={"site_id": site_id, "type": "water", **extra})
    assert resp.status_code == 201
    return resp.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}


def test_create_and_list_meters(client):
    created = _meter(client, multiplier="1.5")
    assert created["multiplier"] == "1.5"
    listed = client.get("/api/v1/meters", params={"type": "water"}).json()
    assert [m["id"] for m in listed] == [created["id"]]


def test_error_kinds_map_to_status(client):
    _meter(client)
    dup = client.post("/api/v1/meters", json={"site_id": "X9", "type": "water"})
    assert dup.status_code == 409
    assert dup.json()["error"]["kind"] == "duplicate_active_meter"

    missing = client.get("/api/v1/meters/mtr_nope/effective-config")
    assert missing.status_code == 404
    assert missing.json()["error"]["kind"] == "not_found"

    bad = client.post("/api/v1/meters", json={"site_id": "X9", "type": "sewer", "multiplier": "0"})
    assert bad.status_code == 422


def test_reads_billing_and_events(client):
    meter = _meter(client)
    mid = meter["id"]
    r1 = client.post(f"/api/v1/meters/{mid}/reads", json={"reading_value": "100", "read_at": "2024-06-01T00:00:00Z"})
    assert r1.status_code == 201
    assert r1.json()["billing"] is None

    early = client.post(f"/api/v1/meters/{mid}/reads", json={"reading_value": "5", "read_at": "2024-05-01T00:00:00Z"})
    assert early.status_code == 409

    premature = client.post(f"/api/v1/meters/{mid}/bill")
    assert premature.status_code == 409
    assert premature.json()["error"]["kind"] == "insufficient_read_history"

    client.post(f"/api/v1/meters/{mid}/reads", json={"reading_value": "110", "read_at": "2024-06-02T00:00:00Z"})
    billed = client.post(f"/api/v1/meters/{mid}/bill").json()
    assert billed["already_billed"] is False
    assert billed["event"]["amount_cents"] == 30
    again = client.post(f"/api/v1/meters/{mid}/bill").json()
    assert again["already_billed"] is True
    assert again["event"]["id"] == billed["event"]["id"]

    events = client.get(f"/api/v1/meters/{mid}/billing-events").json()
    assert len(events) == 1
    reads = client.get(f"/api/v1/meters/{mid}/reads").json()
    assert [r["reading_value"] for r in reads] == ["100", "110"]


def test_patch_active_and_effective_config(client):
    mid = _meter(client, billing_mode="manual")["id"]
    patched = client.patch(f"/api/v1/meters/{mid}", json={"billing_mode": None}).json()
    assert patched["billing_mode"] is None
    cfg = client.get(f"/api/v1/meters/{mid}/effective-config").json()
    assert cfg["billing_mode"] == "cycle"
    assert cfg["sources"]["billing_mode"] == "system"

    off = client.post(f"/api/v1/meters/{mid}/active", json={"active": False}).json()
    assert off["active"] is False


def test_rate_plans_preview_and_seed(client):
    plans = client.get("/api/v1/rate-plans", params={"type": "power"}).json()
    assert [p["id"] for p in plans] == ["rp-power"]
    resolved = client.get("/api/v1/rate-plans/resolve", params={"type": "power", "as_of": "2024-07-01T00:00:00Z"})
    assert resolved.json()["id"] == "rp-power"
    none = client.get("/api/v1/rate-plans/resolve", params={"type": "sewer"})
    assert none.status_code == 404
    assert none.json()["error"]["kind"] == "no_rate_plan_found"

    mid = _meter(client)["id"]
    client.post(f"/api/v1/meters/{mid}/reads", json={"reading_value": "10", "read_at": "2024-06-01T00:00:00Z"})
    preview = client.get(f"/api/v1/meters/{mid}/preview", params={"reading_value": "20"}).json()
    assert preview["charge"]["amount_cents"] == 30

    seeded = client.post("/api/v1/site-classes/sc-rv/meters/seed").json()
    assert seeded["created"] == 3
    assert seeded["total_sites"] == 3


def test_import_endpoint(client):
    mid = _meter(client)["id"]
    body = {
        "rows": [
            {"meter_id": mid, "reading_value": "1", "read_at": "2024-06-01T00:00:00Z"},
            {"meter_id": "mtr_other", "reading_value": "1", "read_at": "2024-06-01T00:00:00Z"},
        ]
    }
    report = client.post("/api/v1/meters/import", json=body).json()
    assert report == {"imported": 1, "skipped": 1, "failures": []}


def test_metrics_text(client):
    text = client.get("/metrics").text
    assert "campmeter_reads_appended_total" in text
