# crowdpass/services/crowd_aggregator.py
"""
Per-zone crowd density, flow and bottleneck aggregation.

Readings are buffered per zone, ordered by captured_at (never by arrival).
Each tick(now) looks at the window [now - window, now] and produces one
frozen ZoneAggregate per zone:

  density    latest count of every occupancy sensor (non-directional
             people_counter, thermal_camera persons), summed and normalised
             by zone capacity. A sensor that went silent keeps its last known
             count until it is forgotten after the lateness horizon.
  rates      directional readings (entry/exit) per minute, weighted by count.
  flow       in  if entry_rate > exit_rate
             out if exit_rate > 1.2 × entry_rate
             stable otherwise
  predicted  current density extrapolated by the trend over the last two windows.
  risk       0 below the density threshold with healthy sensors. Above it:
               d    = (density - T) / (100 - T)
               surge = entry/exit imbalance × persistence (consecutive ticks, capped at 3)
               risk = d × (0.7 + 0.3 × surge)
             plus 0.2 × (1 - health) when sensor health is low.
  dwell      mean minutes between an entry and exit scan of the same tag;
             Little's law (occupancy / exit_rate) when no pairs are known.

  advice     risk level, recommendations and diversion action (crowd_advice).

Late readings (arrived after their window was last aggregated) are folded
into the current window. Readings older than MAX_READING_LATENESS_WINDOWS
windows are dropped with a warning.

A tick holds the ingest lock only while it cuts each zone's window; the
aggregate math runs after the lock is released, so add_reading() is never
stalled behind a full aggregation pass.
"""

import bisect
import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from crowdpass.schemas.sensor import SensorReading
from crowdpass.schemas.zone_aggregate import ZoneAggregate
from crowdpass.services.crowd_advice import recommendations_for, recommended_action, risk_level
from crowdpass.utils.clock import utcnow, ensure_utc
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)

OUTFLOW_MARGIN = 1.2
PERSISTENCE_TICKS = 3
UNCERTAINTY_WEIGHT = 0.2
OPEN_TAG_TTL = timedelta(hours=24)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def flow_direction(entry_rate: float, exit_rate: float) -> str:
    if entry_rate > exit_rate:
        return "in"
    if exit_rate > OUTFLOW_MARGIN * entry_rate:
        return "out"
    return "stable"


def bottleneck_risk(density: float, entry_rate: float, exit_rate: float, streak: int,
                    threshold: float, health: float = 1.0, low_confidence: bool = False) -> float:
    density_term = 0.0
    if density > threshold:
        density_term = (density - threshold) / (100.0 - threshold) if threshold < 100 else 1.0

    surge = 0.0
    if entry_rate > exit_rate:
        imbalance = (entry_rate - exit_rate) / (entry_rate + exit_rate)
        surge = imbalance * min(1.0, streak / PERSISTENCE_TICKS)

    risk = density_term * (0.7 + 0.3 * surge)
    if low_confidence:
        risk += UNCERTAINTY_WEIGHT * (1.0 - health)
    return clamp(risk, 0.0, 1.0)


def is_occupancy_sensor(reading: SensorReading) -> bool:
    return reading.direction is None and reading.sensor_type in ("people_counter", "thermal_camera")


@dataclass
class _ZoneState:
    readings: list = field(default_factory=list)                  # sorted (captured_at, seq, reading)
    latest_counts: dict = field(default_factory=dict)             # sensor_id -> (captured_at, people)
    sensors: dict = field(default_factory=dict)                   # sensor_id -> (captured_at, online)
    open_tags: dict = field(default_factory=dict)                 # tag_id -> entry captured_at
    dwell_samples: deque = field(default_factory=lambda: deque(maxlen=500))  # (exit_at, minutes)
    history: deque = field(default_factory=deque)                 # (tick_at, density)
    imbalance_streak: int = 0
    last_seq: int = -1                                            # highest seq already aggregated


@dataclass
class _ZoneView:
    """What one tick needs from a zone, copied out while producers are held off."""
    in_window: list
    late: int
    counts: list
    sensors: list
    dwell_samples: list


class CrowdAggregator:
    def __init__(
        self,
        window: timedelta = timedelta(seconds=60),
        default_capacity: int = 200,
        capacities: Optional[dict[str, int]] = None,
        bottleneck_threshold: float = 80.0,
        health_threshold: float = 0.8,
        max_lateness_windows: int = 5,
        store=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.window = window
        self.default_capacity = default_capacity
        self.capacities = dict(capacities or {})
        self.bottleneck_threshold = bottleneck_threshold
        self.health_threshold = health_threshold
        self.max_lateness_windows = max_lateness_windows
        self.store = store
        self.clock = clock

        self._zones: dict[str, _ZoneState] = {}
        self._snapshots: dict[str, ZoneAggregate] = {}
        self._seq = itertools.count()
        self._last_tick: Optional[datetime] = None
        self._lock = threading.Lock()        # zone buffers, shared with producers
        self._tick_lock = threading.Lock()   # one tick at a time; owns history and streaks
        self._running = False

    @classmethod
    def from_settings(cls, settings, store=None, clock=utcnow) -> "CrowdAggregator":
        return cls(
            window=timedelta(seconds=settings.AGGREGATION_WINDOW_SECONDS),
            default_capacity=settings.DEFAULT_ZONE_CAPACITY,
            capacities=settings.ZONE_CAPACITIES,
            bottleneck_threshold=settings.BOTTLENECK_DENSITY_THRESHOLD,
            health_threshold=settings.SENSOR_HEALTH_THRESHOLD,
            max_lateness_windows=settings.MAX_READING_LATENESS_WINDOWS,
            store=store,
            clock=clock,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────
    def start(self):
        self._running = True
        logger.info(f"[AGG] Aggregator started (window={self.window.total_seconds():.0f}s)")

    def stop(self):
        self._running = False
        logger.info("[AGG] Aggregator stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ── Capacity ──────────────────────────────────────────────────────────
    def capacity(self, zone_id: str) -> int:
        return self.capacities.get(zone_id, self.default_capacity)

    def set_capacity(self, zone_id: str, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        with self._lock:
            self.capacities[zone_id] = capacity
            self._zones.setdefault(zone_id, _ZoneState())
        logger.info(f"[AGG] Capacity for {zone_id} set to {capacity}")

    # ── Input ─────────────────────────────────────────────────────────────
    def add_reading(self, reading: SensorReading) -> bool:
        """Buffer a reading. Returns False when it is too late to be used."""
        with self._lock:
            if self._last_tick is not None and reading.captured_at < self._horizon(self._last_tick):
                logger.warning(f"[AGG] Dropped reading from {reading.sensor_id} in {reading.zone_id}: "
                               f"captured {reading.captured_at.isoformat()} is beyond the lateness limit")
                return False

            state = self._zones.setdefault(reading.zone_id, _ZoneState())
            bisect.insort(state.readings, (reading.captured_at, next(self._seq), reading))

            seen = state.sensors.get(reading.sensor_id)
            if seen is None or reading.captured_at >= seen[0]:
                state.sensors[reading.sensor_id] = (reading.captured_at, reading.is_online)

            if reading.is_online and is_occupancy_sensor(reading) and reading.people is not None:
                latest = state.latest_counts.get(reading.sensor_id)
                if latest is None or reading.captured_at >= latest[0]:
                    state.latest_counts[reading.sensor_id] = (reading.captured_at, reading.people)

            if reading.tag_id and reading.direction:
                self._track_tag(state, reading)
        return True

    @staticmethod
    def _track_tag(state: _ZoneState, reading: SensorReading):
        if reading.direction == "entry":
            state.open_tags[reading.tag_id] = reading.captured_at
            return
        entered = state.open_tags.pop(reading.tag_id, None)
        if entered is not None and reading.captured_at >= entered:
            minutes = (reading.captured_at - entered).total_seconds() / 60.0
            state.dwell_samples.append((reading.captured_at, minutes))

    # ── Aggregation ───────────────────────────────────────────────────────
    def tick(self, now: Optional[datetime] = None) -> dict[str, ZoneAggregate]:
        """Aggregate every zone. Returns the new snapshots."""
        if not self._running:
            logger.debug("[AGG] tick() while stopped — ignored")
            return {}
        now = ensure_utc(now) if now else self.clock()

        with self._tick_lock:
            # Phase 1, under the ingest lock: cut each zone's window and prune buffers.
            views = {}
            with self._lock:
                for zone_id, state in self._zones.items():
                    try:
                        views[zone_id] = (state, self._collect(zone_id, state, now))
                    except Exception as e:
                        logger.error(f"[AGG] Aggregation failed for {zone_id}: {e}", exc_info=True)

            # Phase 2, lock-free for producers: compute aggregates from the views.
            snapshots = dict(self._snapshots)
            for zone_id, (state, view) in views.items():
                try:
                    snapshots[zone_id] = self._aggregate_zone(zone_id, state, view, now)
                except Exception as e:
                    logger.error(f"[AGG] Aggregation failed for {zone_id}: {e}", exc_info=True)

            with self._lock:
                self._snapshots = snapshots
                self._last_tick = now

        if self.store is not None:
            for agg in snapshots.values():
                try:
                    self.store.upsert_zone_aggregate(agg)
                except Exception as e:
                    logger.error(f"[AGG] Failed to persist aggregate for {agg.zone_id}: {e}")
        return snapshots

    def _horizon(self, now: datetime) -> datetime:
        return now - self.window * (self.max_lateness_windows + 1)

    def _collect(self, zone_id: str, state: _ZoneState, now: datetime) -> "_ZoneView":
        # Caller holds _lock.
        window_start = now - self.window
        horizon = self._horizon(now)

        # Window by captured_at; fold in late arrivals the last tick never saw.
        in_window, late, max_seq = [], 0, state.last_seq
        has_ticked = self._last_tick is not None
        for captured_at, seq, reading in state.readings:
            if captured_at > now:
                break
            max_seq = max(max_seq, seq)
            if captured_at >= window_start:
                in_window.append(reading)
            elif has_ticked and seq > state.last_seq and captured_at >= horizon:
                in_window.append(reading)
                late += 1
        if late:
            logger.info(f"[AGG] {zone_id}: folded {late} late reading(s) into the current window")
        state.last_seq = max_seq
        del state.readings[:bisect.bisect_left(state.readings, (window_start,))]

        # Forget sensors beyond the lateness horizon
        for sensor_id in [s for s, (seen, _) in state.sensors.items() if seen < horizon]:
            del state.sensors[sensor_id]
            state.latest_counts.pop(sensor_id, None)
        for tag in [t for t, entered in state.open_tags.items() if entered < now - OPEN_TAG_TTL]:
            del state.open_tags[tag]

        return _ZoneView(
            in_window=in_window,
            late=late,
            counts=[people for _, people in state.latest_counts.values()],
            sensors=list(state.sensors.values()),
            dwell_samples=list(state.dwell_samples),
        )

    def _aggregate_zone(self, zone_id: str, state: _ZoneState, view: "_ZoneView",
                        now: datetime) -> ZoneAggregate:
        # Caller holds _tick_lock; only ticks touch history and imbalance_streak.
        window_start = now - self.window
        horizon = self._horizon(now)
        minutes = self.window.total_seconds() / 60.0

        # Density
        capacity = self.capacity(zone_id)
        occupancy = float(sum(view.counts))
        density = clamp(occupancy / capacity * 100.0)

        # Sensor health: known sensors that reported online within the window
        known = len(view.sensors)
        online = sum(1 for seen, is_online in view.sensors
                     if is_online and seen >= window_start)
        health = online / known if known else 0.0
        low_confidence = health < self.health_threshold

        # Rates and flow
        entries = sum(_weight(r) for r in view.in_window if r.direction == "entry")
        exits = sum(_weight(r) for r in view.in_window if r.direction == "exit")
        entry_rate, exit_rate = entries / minutes, exits / minutes
        flow = flow_direction(entry_rate, exit_rate)
        state.imbalance_streak = state.imbalance_streak + 1 if entry_rate > exit_rate else 0

        predicted = self._predict(state, now, density)
        risk = bottleneck_risk(density, entry_rate, exit_rate, state.imbalance_streak,
                               self.bottleneck_threshold, health, low_confidence)
        dwell = self._dwell_minutes(view.dwell_samples, horizon, occupancy, exit_rate)
        level = risk_level(predicted)

        if low_confidence:
            logger.warning(f"[AGG] {zone_id}: low sensor confidence ({online}/{known} online)")

        return ZoneAggregate(
            zone_id=zone_id,
            current_density=round(density, 2),
            predicted_density=round(predicted, 2),
            flow_direction=flow,
            bottleneck_risk=round(risk, 3),
            entry_rate=round(entry_rate, 2),
            exit_rate=round(exit_rate, 2),
            avg_dwell_time=round(dwell, 2),
            occupancy=occupancy,
            capacity=capacity,
            sensor_health=round(health, 3),
            low_confidence=low_confidence,
            late_readings=view.late,
            risk_level=level,
            recommendations=recommendations_for(level),
            recommended_action=recommended_action(density),
            last_updated=now,
        )

    def _predict(self, state: _ZoneState, now: datetime, density: float) -> float:
        oldest_kept = now - 2 * self.window
        while state.history and state.history[0][0] < oldest_kept:
            state.history.popleft()
        predicted = density
        if state.history:
            then, past_density = state.history[0]
            windows_elapsed = (now - then) / self.window
            if windows_elapsed > 0:
                predicted = density + (density - past_density) / windows_elapsed
        state.history.append((now, density))
        return clamp(predicted)

    @staticmethod
    def _dwell_minutes(dwell_samples: list, horizon: datetime, occupancy: float, exit_rate: float) -> float:
        samples = [m for exit_at, m in dwell_samples if exit_at >= horizon]
        if samples:
            return sum(samples) / len(samples)
        if exit_rate > 0:
            return occupancy / exit_rate
        return 0.0

    # ── Read side ─────────────────────────────────────────────────────────
    def snapshot(self, zone_id: str) -> Optional[ZoneAggregate]:
        return self._snapshots.get(zone_id)

    def snapshots(self) -> dict[str, ZoneAggregate]:
        return dict(self._snapshots)

    def zones(self) -> list[str]:
        with self._lock:
            return sorted(self._zones)


def _weight(reading: SensorReading) -> int:
    people = reading.people
    return people if people is not None else 1
