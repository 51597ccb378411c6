# crowdpass/models/zone_aggregate.py
"""
Zone aggregate state table.
One row per zone, upserted by the crowd aggregator on every tick.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float
from crowdpass.database import Base


class ZoneAggregateRecord(Base):
    __tablename__ = "zone_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    zone_id = Column(String(100), unique=True, nullable=False, index=True)
    current_density = Column(Float, default=0, nullable=False)
    predicted_density = Column(Float, default=0, nullable=False)
    flow_direction = Column(String(10), default="stable", nullable=False)
    bottleneck_risk = Column(Float, default=0, nullable=False)
    entry_rate = Column(Float, default=0)
    exit_rate = Column(Float, default=0)
    avg_dwell_time = Column(Float, default=0)
    occupancy = Column(Float, default=0)
    capacity = Column(Integer, default=0)
    sensor_health = Column(Float, default=1)
    low_confidence = Column(Integer, default=0, nullable=False)
    last_updated = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<ZoneAggregateRecord {self.zone_id} density={self.current_density}>"
