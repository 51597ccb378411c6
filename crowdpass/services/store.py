# crowdpass/services/store.py
"""
Persistence sink shared by the engines.

The engines own their in-memory state; this store writes an audit copy of
every pass, penalty, sensor reading, zone aggregate and alert to the
database. Each call uses a fresh session and commits immediately; on
failure it rolls back and re-raises so callers can keep their state intact.
"""

from contextlib import contextmanager
from typing import Optional
from sqlalchemy.orm import Session, sessionmaker
from crowdpass.models.alert import AlertRecord
from crowdpass.models.pass_record import PassRecord
from crowdpass.models.penalty import PenaltyRecord
from crowdpass.models.sensor_log import SensorLog
from crowdpass.models.zone_aggregate import ZoneAggregateRecord
from crowdpass.schemas.alert import AlertEvent
from crowdpass.schemas.credential import Pass, Penalty
from crowdpass.schemas.sensor import SensorReading
from crowdpass.schemas.zone_aggregate import ZoneAggregate
from crowdpass.utils.clock import utcnow
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)


class SqlStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Passes ────────────────────────────────────────────────────────────
    def save_pass(self, pass_: Pass):
        with self._session() as db:
            row = db.query(PassRecord).filter(PassRecord.pass_id == pass_.pass_id).first()
            if not row:
                row = PassRecord(pass_id=pass_.pass_id, issued_at=pass_.issued_at)
                db.add(row)
            row.holder_identifier = pass_.holder_identifier
            row.holder_hash = pass_.holder_hash
            row.group_size = pass_.group_size
            row.group_members = [m.model_dump() for m in pass_.group_members]
            row.slot_start = pass_.slot_start
            row.exit_deadline = pass_.exit_deadline
            row.status = pass_.status
            row.entry_scans = [s.model_dump(mode="json") for s in pass_.entry_scans]
            row.exit_scans = [s.model_dump(mode="json") for s in pass_.exit_scans]
            row.extensions = [e.model_dump(mode="json") for e in pass_.extensions]
            row.base_price = pass_.pricing.base_price
            row.surge_multiplier = pass_.pricing.surge_multiplier
            row.final_price = pass_.pricing.final_price
            row.token = pass_.token
            row.cancel_reason = pass_.cancel_reason
            row.updated_at = utcnow()

    def save_penalty(self, penalty: Penalty):
        with self._session() as db:
            row = db.query(PenaltyRecord).filter(PenaltyRecord.pass_id == penalty.pass_id).first()
            if not row:
                row = PenaltyRecord(pass_id=penalty.pass_id)
                db.add(row)
            row.holder_hash = penalty.holder_hash
            row.hours_late = penalty.hours_late
            row.amount = penalty.amount
            row.reason = penalty.reason
            row.paid = int(penalty.paid)
            row.assessed_at = penalty.assessed_at
            row.paid_at = penalty.paid_at

    # ── Sensors & zones ───────────────────────────────────────────────────
    def log_reading(self, reading: SensorReading):
        with self._session() as db:
            db.add(SensorLog(
                sensor_id=reading.sensor_id,
                zone_id=reading.zone_id,
                sensor_type=reading.sensor_type,
                direction=reading.direction,
                connectivity=reading.connectivity,
                count=reading.count,
                sound_level=reading.sound_level,
                tag_id=reading.tag_id,
                raw_payload=reading.model_dump_json(by_alias=True),
                captured_at=reading.captured_at,
                received_at=reading.received_at,
            ))

    def upsert_zone_aggregate(self, agg: ZoneAggregate):
        with self._session() as db:
            row = db.query(ZoneAggregateRecord).filter(ZoneAggregateRecord.zone_id == agg.zone_id).first()
            if not row:
                row = ZoneAggregateRecord(zone_id=agg.zone_id)
                db.add(row)
            row.current_density = agg.current_density
            row.predicted_density = agg.predicted_density
            row.flow_direction = agg.flow_direction
            row.bottleneck_risk = agg.bottleneck_risk
            row.entry_rate = agg.entry_rate
            row.exit_rate = agg.exit_rate
            row.avg_dwell_time = agg.avg_dwell_time
            row.occupancy = agg.occupancy
            row.capacity = agg.capacity
            row.sensor_health = agg.sensor_health
            row.low_confidence = int(agg.low_confidence)
            row.last_updated = agg.last_updated

    # ── Alerts ────────────────────────────────────────────────────────────
    def save_alert(self, event: AlertEvent):
        """Insert an opened alert, or close the stored row of a resolved one."""
        with self._session() as db:
            row = db.query(AlertRecord).filter(AlertRecord.id == event.id).first()
            if not row:
                row = AlertRecord(id=event.id, alert_type=event.type, severity=event.severity,
                                  zone_id=event.zone_id, message=event.message,
                                  dedup_key=event.dedup_key, is_resolved=0,
                                  triggered_at=event.emitted_at)
                db.add(row)
            if event.state == "resolved":
                row.is_resolved = 1
                row.resolved_at = event.resolved_at or utcnow()

    def list_alerts(self, alert_type: Optional[str] = None, is_resolved: Optional[int] = None,
                    limit: int = 50) -> list[AlertRecord]:
        db: Session = self.session_factory()
        try:
            q = db.query(AlertRecord)
            if alert_type:
                q = q.filter(AlertRecord.alert_type == alert_type)
            if is_resolved is not None:
                q = q.filter(AlertRecord.is_resolved == is_resolved)
            return q.order_by(AlertRecord.triggered_at.desc()).limit(limit).all()
        finally:
            db.close()
