# crowdpass/models/penalty.py
"""
Penalties table — one row per late exit or missing exit scan.
"""

from sqlalchemy import Column, Integer, String, DateTime
from crowdpass.database import Base


class PenaltyRecord(Base):
    __tablename__ = "penalties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pass_id = Column(String(64), unique=True, nullable=False, index=True)
    holder_hash = Column(String(32), nullable=False, index=True)
    hours_late = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String(20), nullable=False)   # late_exit | no_exit_scan
    paid = Column(Integer, default=0, nullable=False)
    assessed_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True))

    def __repr__(self):
        return f"<PenaltyRecord {self.pass_id} amount={self.amount} paid={self.paid}>"
