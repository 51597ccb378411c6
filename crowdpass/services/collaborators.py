# crowdpass/services/collaborators.py
"""
Pluggable outside-world integrations.

PaymentProcessor.charge(reference, amount) → bool
  SeededPaymentProcessor   deterministic test double (seeded RNG, ~90% success)
  HttpPaymentProcessor     POSTs to a payment gateway via httpx

SensorSource.readings(stop_event) → async iterator of raw ingest records
  SeededSensorSource       deterministic simulated sensors
  HttpStreamSensorSource   NDJSON stream over HTTP, reconnects with backoff

pump_readings() moves records from a source through the ingest gateway
into the aggregator (and the sensor log).
"""

import asyncio
import random
from datetime import datetime
from typing import AsyncIterator, Callable, Optional
import httpx
from crowdpass.errors import SensorDataIncomplete
from crowdpass.utils.clock import utcnow
from crowdpass.utils.json_parser import safe_parse_json
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)

# Reconnect delay in seconds (doubles on each failure, max 60s)
_MIN_BACKOFF = 3
_MAX_BACKOFF = 60


# ── Payments ─────────────────────────────────────────────────────────────────
class PaymentProcessor:
    def charge(self, reference: str, amount: int) -> bool:
        raise NotImplementedError


class SeededPaymentProcessor(PaymentProcessor):
    """Same seed, same sequence of outcomes."""

    def __init__(self, seed: int = 0, success_rate: float = 0.9,
                 declined_references: Optional[set[str]] = None):
        self._rng = random.Random(seed)
        self.success_rate = success_rate
        self.declined_references = set(declined_references or ())
        self.charges: list[tuple[str, int, bool]] = []

    def charge(self, reference: str, amount: int) -> bool:
        roll = self._rng.random()
        ok = amount > 0 and reference not in self.declined_references and roll < self.success_rate
        self.charges.append((reference, amount, ok))
        logger.info(f"[PAYMENT] {reference}: {amount} → {'approved' if ok else 'declined'} (seeded)")
        return ok


class HttpPaymentProcessor(PaymentProcessor):
    """
    Gateway contract: POST {url} with {"reference", "amount"}; a 2xx JSON
    body with "success": true approves the charge. Anything else declines.
    """

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        headers = {"X-API-Key": api_key} if api_key else {}
        self.url = url
        self._client = httpx.Client(headers=headers, timeout=timeout, transport=transport)

    def charge(self, reference: str, amount: int) -> bool:
        try:
            resp = self._client.post(self.url, json={"reference": reference, "amount": amount})
        except httpx.HTTPError as e:
            logger.error(f"[PAYMENT] {reference}: gateway unreachable: {e}")
            return False
        if resp.status_code // 100 != 2:
            logger.warning(f"[PAYMENT] {reference}: gateway returned HTTP {resp.status_code}")
            return False
        body = safe_parse_json(resp.content) or {}
        ok = body.get("success") is True
        logger.info(f"[PAYMENT] {reference}: {amount} → {'approved' if ok else 'declined'}")
        return ok

    def close(self):
        self._client.close()


# ── Sensors ──────────────────────────────────────────────────────────────────
class SensorSource:
    def readings(self, stop_event: asyncio.Event) -> AsyncIterator[dict]:
        raise NotImplementedError


class SeededSensorSource(SensorSource):
    """
    Simulated sensor network. Each round emits one record per sensor:
      people_counter 5-35, thermal_camera 5-20 persons, sound_monitor 40-80 dB,
      qr_scanner / rfid_reader only when a tag was read. ~5% of records offline.
    """

    def __init__(self, zones: dict[str, list[tuple[str, str]]], seed: int = 0,
                 interval: float = 5.0, rounds: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.zones = zones          # zone_id -> [(sensor_id, sensor_type)]
        self.interval = interval
        self.rounds = rounds
        self.clock = clock
        self._rng = random.Random(seed)

    def generate_round(self) -> list[dict]:
        now = self.clock().isoformat()
        records = []
        for zone_id, sensors in self.zones.items():
            for sensor_id, sensor_type in sensors:
                record = {"zone_id": zone_id, "sensor_type": sensor_type, "sensor_id": sensor_id,
                          "captured_at": now, "connectivity": "online", "data": {}}
                if self._rng.random() < 0.05:
                    record["connectivity"] = "offline"
                    records.append(record)
                    continue
                data = self._data_for(sensor_type)
                if data is None:
                    continue
                record["data"] = data
                records.append(record)
        return records

    def _data_for(self, sensor_type: str) -> Optional[dict]:
        rng = self._rng
        if sensor_type == "people_counter":
            return {"count": rng.randint(5, 35)}
        if sensor_type == "thermal_camera":
            return {"detections": [
                {"class": "person", "confidence": round(0.75 + rng.random() * 0.2, 3),
                 "bounding_box": {"x": rng.random() * 1920, "y": rng.random() * 1080,
                                  "width": 60 + rng.random() * 40, "height": 120 + rng.random() * 60}}
                for _ in range(rng.randint(5, 20))
            ]}
        if sensor_type == "sound_monitor":
            return {"sound_level": round(40 + rng.random() * 40, 1)}
        if sensor_type == "qr_scanner":
            return {"qr_code": f"QR_{rng.getrandbits(32):08x}"} if rng.random() > 0.7 else None
        if sensor_type == "rfid_reader":
            return {"rfid_tag": f"RFID_{rng.getrandbits(24):06x}"} if rng.random() > 0.8 else None
        return None

    async def readings(self, stop_event: asyncio.Event) -> AsyncIterator[dict]:
        emitted = 0
        while not stop_event.is_set() and (self.rounds is None or emitted < self.rounds):
            for record in self.generate_round():
                yield record
            emitted += 1
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue


class HttpStreamSensorSource(SensorSource):
    """
    Long-lived GET on a sensor gateway that streams one JSON ingest record per
    line. Reconnects automatically, backing off from 3s up to 60s.
    """

    def __init__(self, url: str, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.headers = {"X-API-Key": api_key} if api_key else {}
        self.transport = transport

    async def readings(self, stop_event: asyncio.Event) -> AsyncIterator[dict]:
        backoff = _MIN_BACKOFF
        while not stop_event.is_set():
            logger.info(f"📡 Connecting to sensor stream: {self.url}")
            try:
                async with httpx.AsyncClient(headers=self.headers, timeout=None,
                                             transport=self.transport) as client:
                    async with client.stream("GET", self.url) as response:
                        if response.status_code != 200:
                            logger.warning(f"⚠️  Sensor stream returned HTTP {response.status_code}")
                        else:
                            logger.info("✅ Sensor stream connected — listening for readings...")
                            backoff = _MIN_BACKOFF  # reset on success
                            async for line in response.aiter_lines():
                                if stop_event.is_set():
                                    return
                                if not line.strip():
                                    continue
                                record = safe_parse_json(line)
                                if record is None:
                                    logger.warning(f"[STREAM] Skipping unparseable line: {line[:120]}")
                                    continue
                                yield record
                            logger.info("Sensor stream closed by server. Reconnecting...")
            except httpx.ConnectError:
                logger.warning(f"❌ Sensor stream — connection refused. Retry in {backoff}s")
            except httpx.ReadTimeout:
                logger.warning("⏱  Sensor stream — read timeout. Reconnecting...")
            except httpx.HTTPError as e:
                logger.error(f"❌ Sensor stream — HTTP error: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=backoff)
            except asyncio.TimeoutError:
                pass
            backoff = min(backoff * 2, _MAX_BACKOFF)


async def pump_readings(source: SensorSource, gateway, aggregator,
                        store=None, stop_event: Optional[asyncio.Event] = None) -> int:
    """Feed source → gateway → aggregator until the source ends or stop is set. Returns readings accepted."""
    if stop_event is None:
        stop_event = asyncio.Event()
    accepted = 0
    async for record in source.readings(stop_event):
        try:
            reading = gateway.ingest(record)
        except SensorDataIncomplete as e:
            logger.warning(f"[INGEST] Rejected record from {record.get('sensor_id')}: {e.message}")
            continue
        if not aggregator.add_reading(reading):
            continue
        accepted += 1
        if store is not None:
            try:
                await asyncio.to_thread(store.log_reading, reading)
            except Exception as e:
                logger.error(f"Failed to log reading from {reading.sensor_id}: {e}")
    return accepted
