# crowdpass/models/alert.py
"""
Alerts table — stores every alert emitted by the alert engine
(crowd density, bottleneck risk, zone capacity, sensor health).
Resolution closes the row in place; a superseding condition inserts a new row.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text
from crowdpass.database import Base


class AlertRecord(Base):
    __tablename__ = "alerts"

    id = Column(String(64), primary_key=True)
    alert_type = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False)
    zone_id = Column(String(100), index=True)
    message = Column(Text)
    dedup_key = Column(String(200), nullable=False, index=True)
    is_resolved = Column(Integer, default=0, nullable=False)
    triggered_at = Column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<AlertRecord {self.id} type={self.alert_type} resolved={self.is_resolved}>"
