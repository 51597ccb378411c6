# crowdpass/models/pass_record.py
"""
Passes table — one row per issued pass, never deleted.
Terminal passes (used / expired / cancelled) stay for audit.
Scan and extension histories are stored as JSON documents on the row.
"""

from sqlalchemy import Column, Integer, String, DateTime, Float, Text, JSON
from crowdpass.database import Base


class PassRecord(Base):
    __tablename__ = "passes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pass_id = Column(String(64), unique=True, nullable=False, index=True)
    holder_identifier = Column(String(12), nullable=False, index=True)
    holder_hash = Column(String(32), nullable=False)
    group_size = Column(Integer, nullable=False)
    group_members = Column(JSON, default=list)
    slot_start = Column(DateTime(timezone=True), nullable=False, index=True)
    exit_deadline = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    entry_scans = Column(JSON, default=list)
    exit_scans = Column(JSON, default=list)
    extensions = Column(JSON, default=list)
    base_price = Column(Integer, nullable=False)
    surge_multiplier = Column(Float, nullable=False, default=1.0)
    final_price = Column(Integer, nullable=False)
    token = Column(Text)
    cancel_reason = Column(String(200))
    issued_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<PassRecord {self.pass_id} status={self.status} group={self.group_size}>"
