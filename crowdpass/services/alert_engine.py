# crowdpass/services/alert_engine.py
"""
Threshold rules over zone snapshots and registry occupancy.

Rules, per zone per tick:
  crowd_density    critical above ALERT_CRITICAL_THRESHOLD, high above ALERT_HIGH_THRESHOLD
  bottleneck_risk  high when risk exceeds ALERT_RISK_THRESHOLD
  zone_capacity    medium when admitted people reach OCCUPANCY_ALERT_THRESHOLD of capacity
  sensor_health    low while the aggregate is flagged low_confidence

At most one alert is open per dedup key (type:zone_id). While the condition
holds nothing is re-emitted; when it clears the open alert is resolved. A
severity change resolves the open alert and opens a superseding one.
"""

import threading
import uuid
from datetime import datetime
from typing import Callable, Optional
from crowdpass.schemas.alert import Alert, AlertEvent
from crowdpass.schemas.zone_aggregate import ZoneAggregate
from crowdpass.utils.clock import utcnow, ensure_utc
from crowdpass.utils.logger import audit, get_logger

logger = get_logger(__name__)

Subscriber = Callable[[AlertEvent], None]


def dedup_key(alert_type: str, zone_id: str) -> str:
    return f"{alert_type}:{zone_id}"


class AlertEngine:
    def __init__(
        self,
        aggregator,
        registry=None,
        high_threshold: float = 85.0,
        critical_threshold: float = 95.0,
        risk_threshold: float = 0.7,
        occupancy_threshold: float = 0.90,
        store=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.aggregator = aggregator
        self.registry = registry
        self.high_threshold = high_threshold
        self.critical_threshold = critical_threshold
        self.risk_threshold = risk_threshold
        self.occupancy_threshold = occupancy_threshold
        self.store = store
        self.clock = clock

        self._open: dict[str, Alert] = {}
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, aggregator, registry=None, store=None, clock=utcnow) -> "AlertEngine":
        return cls(
            aggregator, registry,
            high_threshold=settings.ALERT_HIGH_THRESHOLD,
            critical_threshold=settings.ALERT_CRITICAL_THRESHOLD,
            risk_threshold=settings.ALERT_RISK_THRESHOLD,
            occupancy_threshold=settings.OCCUPANCY_ALERT_THRESHOLD,
            store=store,
            clock=clock,
        )

    # ── Subscribers ───────────────────────────────────────────────────────
    def subscribe(self, callback: Subscriber):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # ── Evaluation ────────────────────────────────────────────────────────
    def evaluate(self, now: Optional[datetime] = None) -> list[AlertEvent]:
        """Run every rule for every zone. Returns the events emitted this tick."""
        now = ensure_utc(now) if now else self.clock()
        snapshots = self.aggregator.snapshots()
        occupancy = self.registry.occupancy_by_zone() if self.registry is not None else {}

        events: list[AlertEvent] = []
        with self._lock:
            for zone_id in sorted(set(snapshots) | set(occupancy)):
                try:
                    events.extend(self._evaluate_zone(zone_id, snapshots.get(zone_id),
                                                      occupancy.get(zone_id, 0), now))
                except Exception as e:
                    logger.error(f"[ALERT] Evaluation failed for {zone_id}: {e}", exc_info=True)

        for event in events:
            self._publish(event)
        return events

    tick = evaluate

    def _evaluate_zone(self, zone_id: str, agg: Optional[ZoneAggregate],
                       people_inside: int, now: datetime) -> list[AlertEvent]:
        events = []
        if agg is not None:
            density = agg.current_density
            advice = {"recommended_action": agg.recommended_action,
                      "recommendations": list(agg.recommendations)}
            if density > self.critical_threshold:
                events += self._condition("crowd_density", zone_id, "critical", now,
                                          f"Zone {zone_id} density {density:.1f}% exceeds "
                                          f"critical threshold {self.critical_threshold:.0f}%", **advice)
            elif density > self.high_threshold:
                events += self._condition("crowd_density", zone_id, "high", now,
                                          f"Zone {zone_id} density {density:.1f}% exceeds "
                                          f"high threshold {self.high_threshold:.0f}%", **advice)
            else:
                events += self._condition("crowd_density", zone_id, None, now)

            if agg.bottleneck_risk > self.risk_threshold:
                events += self._condition("bottleneck_risk", zone_id, "high", now,
                                          f"Bottleneck risk {agg.bottleneck_risk:.2f} in zone {zone_id} "
                                          f"(flow {agg.flow_direction}, in {agg.entry_rate}/min, "
                                          f"out {agg.exit_rate}/min)",
                                          recommended_action="immediate_diversion",
                                          recommendations=list(agg.recommendations))
            else:
                events += self._condition("bottleneck_risk", zone_id, None, now)

            if agg.low_confidence:
                events += self._condition("sensor_health", zone_id, "low", now,
                                          f"Only {agg.sensor_health:.0%} of sensors online in zone "
                                          f"{zone_id}; density estimate has reduced confidence")
            else:
                events += self._condition("sensor_health", zone_id, None, now)

        if self.registry is not None:
            capacity = self.aggregator.capacity(zone_id)
            if capacity and people_inside / capacity >= self.occupancy_threshold:
                events += self._condition("zone_capacity", zone_id, "medium", now,
                                          f"Zone {zone_id} at {people_inside}/{capacity} admitted "
                                          f"({people_inside / capacity:.0%})",
                                          recommended_action="immediate_diversion")
            else:
                events += self._condition("zone_capacity", zone_id, None, now)
        return events

    def _condition(self, alert_type: str, zone_id: str, severity: Optional[str],
                   now: datetime, message: str = "", recommended_action: Optional[str] = None,
                   recommendations: Optional[list[str]] = None) -> list[AlertEvent]:
        # Caller holds _lock.
        key = dedup_key(alert_type, zone_id)
        current = self._open.get(key)

        if severity is None:
            if current is None:
                return []
            del self._open[key]
            return [self._resolved(current, now)]

        if current is not None and current.severity == severity:
            return []

        events = []
        if current is not None:
            events.append(self._resolved(current, now))
        alert = Alert(
            id=f"ALERT_{uuid.uuid4().hex[:12].upper()}",
            type=alert_type,
            severity=severity,
            zone_id=zone_id,
            message=message,
            emitted_at=now,
            dedup_key=key,
            recommended_action=recommended_action,
            recommendations=recommendations or [],
        )
        self._open[key] = alert
        events.append(AlertEvent(**alert.model_dump(), state="open"))
        return events

    @staticmethod
    def _resolved(alert: Alert, now: datetime) -> AlertEvent:
        return AlertEvent(**alert.model_dump(), state="resolved", resolved_at=now)

    # ── Manual resolution ─────────────────────────────────────────────────
    def resolve(self, alert_id: str, now: Optional[datetime] = None) -> Optional[AlertEvent]:
        """Operator close. If the condition still holds, the next tick opens a new alert."""
        now = ensure_utc(now) if now else self.clock()
        with self._lock:
            key = next((k for k, a in self._open.items() if a.id == alert_id), None)
            if key is None:
                return None
            event = self._resolved(self._open.pop(key), now)
        self._publish(event)
        return event

    def open_alerts(self, zone_id: Optional[str] = None) -> list[Alert]:
        with self._lock:
            alerts = list(self._open.values())
        return [a for a in alerts if zone_id is None or a.zone_id == zone_id]

    # ── Publishing ────────────────────────────────────────────────────────
    def _publish(self, event: AlertEvent):
        if event.state == "open":
            logger.warning(f"[ALERT][{event.type.upper()}] {event.severity}: {event.message}")
        else:
            logger.info(f"[ALERT][{event.type.upper()}] resolved {event.id} ({event.zone_id})")
        audit(f"alert.{event.state}", alert_id=event.id, type=event.type, zone=event.zone_id,
              severity=event.severity, action=event.recommended_action)

        if self.store is not None:
            try:
                self.store.save_alert(event)
            except Exception as e:
                logger.error(f"[ALERT] Failed to persist {event.id}: {e}")

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"[ALERT] Subscriber {callback!r} failed on {event.id}: {e}", exc_info=True)
