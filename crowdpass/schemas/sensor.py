# crowdpass/schemas/sensor.py
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Literal, Optional
from crowdpass.utils.clock import ensure_utc

SensorType = Literal["people_counter", "rfid_reader", "qr_scanner", "thermal_camera", "sound_monitor"]
SENSOR_TYPES = ("people_counter", "rfid_reader", "qr_scanner", "thermal_camera", "sound_monitor")
Direction = Literal["entry", "exit"]


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float

    class Config:
        frozen = True


class Detection(BaseModel):
    """One object-detection record as produced upstream by the camera pipeline."""
    label: str = Field(alias="class")     # only "person" is counted
    confidence: float = Field(ge=0, le=1)
    bounding_box: Optional[BoundingBox] = None

    class Config:
        frozen = True
        populate_by_name = True


class SensorIngestRecord(BaseModel):
    """Raw ingest record as posted by a sensor or relayed by a gateway."""
    zone_id: str = Field(min_length=1)
    sensor_type: str
    sensor_id: str = Field(min_length=1)
    data: dict = {}
    connectivity: Literal["online", "offline"] = "online"
    captured_at: Optional[datetime] = None
    direction: Optional[Direction] = None


class SensorReading(BaseModel):
    """Normalized reading. Immutable once ingested."""
    sensor_id: str
    zone_id: str
    sensor_type: SensorType
    captured_at: datetime
    received_at: datetime
    connectivity: Literal["online", "offline"] = "online"
    direction: Optional[Direction] = None
    count: Optional[int] = Field(default=None, ge=0)
    detections: tuple[Detection, ...] = ()
    sound_level: Optional[float] = None
    tag_id: Optional[str] = None

    class Config:
        frozen = True

    @field_validator("captured_at", "received_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def people(self) -> Optional[int]:
        """Head count carried by this reading, or None when it carries none."""
        if self.count is not None:
            return self.count
        if self.sensor_type == "thermal_camera":
            return sum(1 for d in self.detections if d.label == "person")
        return None

    @property
    def is_online(self) -> bool:
        return self.connectivity == "online"
