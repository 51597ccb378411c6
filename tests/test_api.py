# tests/test_api.py
"""HTTP-level tests: routers, error mapping and API-key middleware."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient
from crowdpass.config import Settings
from crowdpass.database import get_db
from crowdpass.main import create_app
from crowdpass.services.collaborators import SeededPaymentProcessor
from crowdpass.services.runtime import build_services

START = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)
AADHAAR = "123456789012"


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_client(api_key=None, payment_success=1.0):
    clock = Clock(START)
    settings = Settings(_env_file=None, API_KEY=api_key)
    services = build_services(settings, payments=SeededPaymentProcessor(success_rate=payment_success),
                              clock=clock)
    app = create_app(services=services, settings=settings, start_background=False)
    app.dependency_overrides[get_db] = lambda: MagicMock()
    return TestClient(app), services, clock


def issue(client, members=()):
    resp = client.post("/api/v1/passes", json={
        "holder_identifier": AADHAAR,
        "group_members": list(members),
        "slot_start": START.isoformat(),
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def scan(client, token, scan_type, zone="Zone_A"):
    return client.post("/api/v1/passes/scan", json={
        "token": token, "checkpoint_id": "GATE-1", "zone_id": zone, "scan_type": scan_type,
    })


class TestPassEndpoints:
    def setup_method(self):
        self.client, self.services, self.clock = make_client()

    def test_issue_hides_holder_identifier(self):
        body = issue(self.client, [{"name": "Sita", "age": 41, "relation": "spouse"}])
        assert body["group_size"] == 2
        assert body["status"] == "active"
        assert "holder_identifier" not in body
        assert AADHAAR not in body["token"]

    def test_invalid_holder_is_400(self):
        resp = self.client.post("/api/v1/passes", json={"holder_identifier": "1234",
                                                        "slot_start": START.isoformat()})
        assert resp.status_code == 400
        assert resp.json()["error"] == "InvalidHolderIdentifier"

    def test_group_too_large_is_400(self):
        members = [{"name": f"M{i}", "age": 20} for i in range(10)]
        resp = self.client.post("/api/v1/passes", json={"holder_identifier": AADHAAR,
                                                        "group_members": members,
                                                        "slot_start": START.isoformat()})
        assert resp.status_code == 400
        assert resp.json()["error"] == "GroupSizeExceeded"

    def test_entry_then_exit(self):
        p = issue(self.client)
        self.clock.advance(minutes=20)
        entry = scan(self.client, p["token"], "entry")
        assert entry.status_code == 200
        assert entry.json()["entry_count"] == 1

        self.clock.advance(hours=3)
        exit_ = scan(self.client, p["token"], "exit")
        assert exit_.status_code == 200
        assert exit_.json()["status"] == "used"

        again = scan(self.client, p["token"], "entry")
        assert again.status_code == 409
        assert again.json()["error"] == "PassNotActive"

    def test_malformed_token_is_400(self):
        resp = scan(self.client, "definitely-not-a-token", "entry")
        assert resp.status_code == 400
        assert resp.json()["error"] == "MalformedToken"

    def test_late_entry_is_409(self):
        p = issue(self.client)
        self.clock.advance(hours=3)
        resp = scan(self.client, p["token"], "entry")
        assert resp.status_code == 409
        assert resp.json()["error"] == "EntrySlotExpired"

    def test_unknown_pass_is_404(self):
        assert self.client.get("/api/v1/passes/PASS_0_NOPE").status_code == 404

    def test_extend_and_quote(self):
        p = issue(self.client)
        quote = self.client.get(f"/api/v1/passes/{p['pass_id']}/extension-quote",
                                params={"hours": 2, "tent": True})
        assert quote.json()["amount"] == 2200

        resp = self.client.post(f"/api/v1/passes/{p['pass_id']}/extend",
                                json={"additional_hours": 3, "tent_booking": False})
        assert resp.status_code == 200
        assert resp.json()["amount_charged"] == 300

    def test_declined_extension_is_402(self):
        client, _, _ = make_client(payment_success=0.0)
        p = issue(client)
        resp = client.post(f"/api/v1/passes/{p['pass_id']}/extend", json={"additional_hours": 1})
        assert resp.status_code == 402
        assert client.get(f"/api/v1/passes/{p['pass_id']}").json()["extensions"] == []

    def test_late_exit_penalty_and_payment(self):
        p = issue(self.client)
        self.clock.advance(hours=26)
        exit_ = scan(self.client, p["token"], "exit").json()
        assert exit_["status"] == "expired"
        assert exit_["penalty_amount"] == 1000

        unpaid = self.client.get("/api/v1/penalties", params={"unpaid_only": True}).json()
        assert [pen["pass_id"] for pen in unpaid] == [p["pass_id"]]

        paid = self.client.post(f"/api/v1/passes/{p['pass_id']}/penalty/pay")
        assert paid.status_code == 200
        assert paid.json()["paid"] is True

    def test_cancel(self):
        p = issue(self.client)
        resp = self.client.post(f"/api/v1/passes/{p['pass_id']}/cancel", json={"reason": "weather"})
        assert resp.json()["status"] == "cancelled"


class TestSensorAndZoneEndpoints:
    def setup_method(self):
        self.client, self.services, self.clock = make_client()
        self.services.aggregator.start()

    def test_ingest_then_zone_snapshot(self):
        resp = self.client.post("/api/v1/sensors/data", json={
            "zone_id": "Zone_A", "sensor_type": "people_counter", "sensor_id": "PC-A1",
            "data": {"count": 190}, "connectivity": "online",
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"

        self.clock.advance(seconds=1)
        self.services.aggregator.tick()
        zone = self.client.get("/api/v1/zones/Zone_A").json()
        assert zone["current_density"] == 95.0

        self.services.alerts.evaluate()
        open_alerts = self.client.get("/api/v1/alerts/open").json()
        assert [a["severity"] for a in open_alerts] == ["high"]

    def test_incomplete_sensor_record_is_422(self):
        resp = self.client.post("/api/v1/sensors/data", json={
            "zone_id": "Zone_A", "sensor_type": "people_counter", "sensor_id": "PC-A1", "data": {},
        })
        assert resp.status_code == 422
        assert resp.json()["error"] == "SensorDataIncomplete"

    def test_batch_ingest(self):
        resp = self.client.post("/api/v1/sensors/data/batch", json=[
            {"zone_id": "Zone_A", "sensor_type": "sound_monitor", "sensor_id": "SM-1", "data": {"sound_level": 60}},
            {"zone_id": "Zone_A", "sensor_type": "qr_scanner", "sensor_id": "QR-1", "data": {}},
        ])
        assert resp.json()["accepted"] == 1
        assert resp.json()["rejected"][0]["index"] == 1

    def test_route_suggestion(self):
        for zone, count in (("Zone_A", 190), ("Zone_B", 30), ("Zone_C", 100), ("Zone_D", 160)):
            self.client.post("/api/v1/sensors/data", json={
                "zone_id": zone, "sensor_type": "people_counter", "sensor_id": f"PC-{zone}",
                "data": {"count": count},
            })
        self.clock.advance(seconds=1)
        self.services.aggregator.tick()

        resp = self.client.get("/api/v1/zones/route", params={"from_zone": "Zone_A", "to_zone": "Zone_D"})
        assert resp.status_code == 200
        body = resp.json()
        assert [w["zone_id"] for w in body["via"]] == ["Zone_B", "Zone_C"]
        assert body["destination_crowded"] is True

        zone = self.client.get("/api/v1/zones/Zone_A").json()
        assert zone["recommended_action"] == "immediate_diversion"
        assert zone["risk_level"] == "critical"

    def test_unknown_zone_is_404(self):
        assert self.client.get("/api/v1/zones/Nowhere").status_code == 404

    def test_capacity_update(self):
        resp = self.client.put("/api/v1/zones/Zone_A/capacity", json={"max_capacity": 500})
        assert resp.status_code == 200
        assert self.services.aggregator.capacity("Zone_A") == 500

    def test_stats_and_health(self):
        issue(self.client)
        stats = self.client.get("/api/v1/stats").json()
        assert stats["total_passes"] == 1
        health = self.client.get("/api/v1/health").json()
        assert health["status"] == "ok"
        assert health["aggregator"] == "running"


class TestApiKey:
    def test_key_required_when_configured(self):
        client, _, _ = make_client(api_key="secret")
        assert client.get("/api/v1/stats").status_code == 401
        assert client.get("/api/v1/stats", headers={"X-API-Key": "secret"}).status_code == 200

    def test_sensor_ingest_is_open(self):
        client, _, _ = make_client(api_key="secret")
        resp = client.post("/api/v1/sensors/data", json={
            "zone_id": "Zone_A", "sensor_type": "sound_monitor", "sensor_id": "SM-1",
            "data": {"sound_level": 60},
        })
        assert resp.status_code == 200
