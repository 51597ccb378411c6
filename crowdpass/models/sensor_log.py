# crowdpass/models/sensor_log.py
"""
Raw sensor reading log table.
Stores every normalized reading received from all sensors, regardless of type.
Used for audit trail, debugging, and replay into the aggregator.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, Text
from crowdpass.database import Base


class SensorLog(Base):
    __tablename__ = "sensor_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sensor_id = Column(String(100), nullable=False, index=True)
    zone_id = Column(String(100), nullable=False, index=True)
    sensor_type = Column(String(50), nullable=False)
    direction = Column(String(10))             # entry | exit | NULL
    connectivity = Column(String(10), nullable=False)
    count = Column(Integer)
    sound_level = Column(Float)
    tag_id = Column(String(100))
    raw_payload = Column(Text)                 # full reading as JSON
    captured_at = Column(DateTime(timezone=True), nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<SensorLog {self.id} sensor={self.sensor_id} zone={self.zone_id}>"
