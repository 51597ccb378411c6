# crowdpass/services/sensor_ingest.py
"""
Normalizes raw sensor records into SensorReading.

Required data per sensor type:
  people_counter  → count
  thermal_camera  → detections[]   (YOLO-style: class, confidence, bounding_box)
  sound_monitor   → sound_level
  rfid_reader     → tag_id   (also accepted as rfid_tag / rfidTag)
  qr_scanner      → tag_id   (also accepted as qr_code / qrCode)

Camel-case keys from the field gateways (soundLevel, yoloDetections) are accepted too.

An offline record may omit its data: it is a connectivity report, and the
aggregator needs it to judge sensor health.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional
from pydantic import ValidationError
from crowdpass.errors import SensorDataIncomplete
from crowdpass.schemas.sensor import Detection, SensorIngestRecord, SensorReading, SENSOR_TYPES
from crowdpass.utils.clock import utcnow, ensure_utc, parse_iso
from crowdpass.utils.json_parser import first_present
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)

TAG_ALIASES = {
    "rfid_reader": ("tag_id", "rfid_tag", "rfidTag"),
    "qr_scanner": ("tag_id", "qr_code", "qrCode"),
}


class SensorIngestGateway:
    def __init__(self, sensor_directions: Optional[dict[str, str]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.sensor_directions = dict(sensor_directions or {})
        self.clock = clock

    def ingest(self, record: dict | SensorIngestRecord,
               received_at: Optional[datetime] = None) -> SensorReading:
        """Validate one record. Raises SensorDataIncomplete."""
        received_at = ensure_utc(received_at) if received_at else self.clock()
        if isinstance(record, dict):
            record = self._parse_record(record)

        if record.sensor_type not in SENSOR_TYPES:
            raise SensorDataIncomplete(f"Unknown sensor type: {record.sensor_type}",
                                       sensor_id=record.sensor_id)

        data = record.data or {}
        fields = {}
        if record.connectivity == "online" or data:
            fields = self._extract(record.sensor_type, record.sensor_id, data)

        direction = (record.direction
                     or self.sensor_directions.get(record.sensor_id)
                     or data.get("direction"))
        if direction not in (None, "entry", "exit"):
            raise SensorDataIncomplete(f"Invalid direction: {direction}", sensor_id=record.sensor_id)

        captured_at = record.captured_at or self._timestamp_from(data) or received_at
        reading = SensorReading(
            sensor_id=record.sensor_id,
            zone_id=record.zone_id,
            sensor_type=record.sensor_type,
            captured_at=captured_at,
            received_at=received_at,
            connectivity=record.connectivity,
            direction=direction,
            **fields,
        )
        logger.debug(f"[INGEST] {reading.sensor_type} {reading.sensor_id} → {reading.zone_id} "
                     f"people={reading.people} dir={reading.direction} {reading.connectivity}")
        return reading

    def ingest_batch(self, records: Iterable[dict]) -> tuple[list[SensorReading], list[dict]]:
        """Ingest many records; invalid ones are reported, not raised."""
        readings, rejected = [], []
        for index, record in enumerate(records):
            try:
                readings.append(self.ingest(record))
            except SensorDataIncomplete as e:
                logger.warning(f"[INGEST] Rejected record #{index}: {e.message}")
                rejected.append({"index": index, "error": e.message})
        return readings, rejected

    # ── Helpers ───────────────────────────────────────────────────────────
    @staticmethod
    def _parse_record(raw: dict) -> SensorIngestRecord:
        raw = dict(raw)
        if raw.get("captured_at") is None and raw.get("timestamp") is not None:
            raw["captured_at"] = raw.pop("timestamp")
        try:
            return SensorIngestRecord.model_validate(raw)
        except ValidationError as e:
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise SensorDataIncomplete(f"Invalid sensor record: {', '.join(missing)}",
                                       sensor_id=raw.get("sensor_id")) from e

    @staticmethod
    def _timestamp_from(data: dict) -> Optional[datetime]:
        value = first_present(data, "captured_at", "timestamp")
        if value is None:
            return None
        try:
            return parse_iso(value) if isinstance(value, str) else ensure_utc(value)
        except (ValueError, TypeError, AttributeError):
            return None

    def _extract(self, sensor_type: str, sensor_id: str, data: dict) -> dict:
        if sensor_type == "people_counter":
            count = data.get("count")
            if not _is_count(count):
                raise SensorDataIncomplete("people_counter requires a non-negative integer count",
                                           sensor_id=sensor_id)
            return {"count": int(count)}

        if sensor_type == "thermal_camera":
            detections = first_present(data, "detections", "yoloDetections")
            if not isinstance(detections, list):
                raise SensorDataIncomplete("thermal_camera requires detections", sensor_id=sensor_id)
            try:
                parsed = tuple(Detection.model_validate(d) for d in detections)
            except ValidationError as e:
                raise SensorDataIncomplete(f"Invalid detection record: {e.errors()[0]['msg']}",
                                           sensor_id=sensor_id) from e
            return {"detections": parsed}

        if sensor_type == "sound_monitor":
            level = first_present(data, "sound_level", "soundLevel")
            if isinstance(level, bool) or not isinstance(level, (int, float)):
                raise SensorDataIncomplete("sound_monitor requires sound_level", sensor_id=sensor_id)
            return {"sound_level": float(level)}

        tag = first_present(data, *TAG_ALIASES[sensor_type])
        if not tag:
            raise SensorDataIncomplete(f"{sensor_type} requires tag_id", sensor_id=sensor_id)
        fields = {"tag_id": str(tag)}
        if _is_count(data.get("count")):
            fields["count"] = int(data["count"])
        return fields


def _is_count(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return isinstance(value, int) and value >= 0
