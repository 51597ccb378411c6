# tests/test_collaborators.py
"""Unit tests for payment and sensor-source collaborators."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import json
import httpx
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock
from crowdpass.services.collaborators import (
    HttpPaymentProcessor, HttpStreamSensorSource, SeededPaymentProcessor,
    SeededSensorSource, pump_readings,
)
from crowdpass.services.crowd_aggregator import CrowdAggregator
from crowdpass.services.sensor_ingest import SensorIngestGateway

NOW = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)
ZONES = {
    "Zone_A": [("PC-A1", "people_counter"), ("TC-A1", "thermal_camera"), ("SM-A1", "sound_monitor")],
    "Zone_B": [("PC-B1", "people_counter"), ("QR-B1", "qr_scanner"), ("RF-B1", "rfid_reader")],
}


class TestPayments:
    def test_seeded_processor_is_deterministic(self):
        a = SeededPaymentProcessor(seed=7)
        b = SeededPaymentProcessor(seed=7)
        outcomes_a = [a.charge(f"REF{i}", 100) for i in range(20)]
        outcomes_b = [b.charge(f"REF{i}", 100) for i in range(20)]
        assert outcomes_a == outcomes_b
        assert len(a.charges) == 20

    def test_seeded_processor_declines_listed_references(self):
        processor = SeededPaymentProcessor(success_rate=1.0, declined_references={"EXT_X"})
        assert processor.charge("EXT_Y", 100) is True
        assert processor.charge("EXT_X", 100) is False

    def test_http_processor_approves(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        processor = HttpPaymentProcessor("http://pay.local/charge", transport=httpx.MockTransport(handler))
        assert processor.charge("PEN_1", 500) is True
        assert seen == {"reference": "PEN_1", "amount": 500}

    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={"success": False}),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, text="not json"),
    ])
    def test_http_processor_declines(self, response):
        processor = HttpPaymentProcessor("http://pay.local/charge",
                                         transport=httpx.MockTransport(lambda request: response))
        assert processor.charge("PEN_1", 500) is False

    def test_http_processor_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        processor = HttpPaymentProcessor("http://pay.local/charge", transport=httpx.MockTransport(handler))
        assert processor.charge("PEN_1", 500) is False


class TestSensorSources:
    def test_seeded_round_is_ingestible(self):
        source = SeededSensorSource(ZONES, seed=3, clock=lambda: NOW)
        gateway = SensorIngestGateway()
        records = source.generate_round()
        assert records
        for record in records:
            gateway.ingest(record)

    def test_seeded_source_is_reproducible(self):
        first = SeededSensorSource(ZONES, seed=11, clock=lambda: NOW).generate_round()
        second = SeededSensorSource(ZONES, seed=11, clock=lambda: NOW).generate_round()
        assert first == second

    @pytest.mark.asyncio
    async def test_http_stream_yields_ndjson_records(self):
        lines = [
            {"zone_id": "Zone_A", "sensor_type": "people_counter", "sensor_id": "PC-A1", "data": {"count": 12}},
            "garbage line",
            {"zone_id": "Zone_A", "sensor_type": "sound_monitor", "sensor_id": "SM-A1", "data": {"sound_level": 61}},
        ]
        body = "\n".join(json.dumps(l) if isinstance(l, dict) else l for l in lines) + "\n"
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text=body))
        source = HttpStreamSensorSource("http://sensors.local/stream", transport=transport)

        stop = asyncio.Event()
        received = []
        async for record in source.readings(stop):
            received.append(record)
            if len(received) == 2:
                stop.set()
                break

        assert [r["sensor_id"] for r in received] == ["PC-A1", "SM-A1"]

    @pytest.mark.asyncio
    async def test_pump_feeds_aggregator_and_log(self):
        source = SeededSensorSource(ZONES, seed=5, interval=0.01, rounds=2, clock=lambda: NOW)
        aggregator = CrowdAggregator(clock=lambda: NOW)
        store = MagicMock()

        accepted = await pump_readings(source, SensorIngestGateway(), aggregator, store)

        assert accepted > 0
        assert store.log_reading.call_count == accepted
        assert set(aggregator.zones()) <= {"Zone_A", "Zone_B"}
        assert aggregator.zones()
