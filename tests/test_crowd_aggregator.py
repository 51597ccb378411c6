# tests/test_crowd_aggregator.py
"""Unit tests for windowed density, flow and bottleneck aggregation."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import threading
import time
import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError
from crowdpass.schemas.sensor import SensorReading
from crowdpass.services.crowd_aggregator import CrowdAggregator, bottleneck_risk, flow_direction

NOW = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)


def reading(sensor_id, at, count=None, direction=None, sensor_type="people_counter",
            connectivity="online", tag_id=None, zone_id="Zone_A"):
    return SensorReading(sensor_id=sensor_id, zone_id=zone_id, sensor_type=sensor_type,
                         captured_at=at, received_at=at, connectivity=connectivity,
                         direction=direction, count=count, tag_id=tag_id)


def stream(agg, sensor_id, direction, per_minute, end=NOW):
    """per_minute single-person readings spread over the minute before `end`."""
    step = 60 / per_minute
    for i in range(per_minute):
        agg.add_reading(reading(sensor_id, end - timedelta(seconds=1 + i * step),
                                count=1, direction=direction))


def make_aggregator(**kwargs):
    agg = CrowdAggregator(clock=lambda: NOW, **kwargs)
    agg.start()
    return agg


class TestFlow:
    def test_entry_dominant_is_in(self):
        agg = make_aggregator()
        stream(agg, "IN-1", "entry", 10)
        stream(agg, "OUT-1", "exit", 4)
        snap = agg.tick(NOW)["Zone_A"]
        assert snap.entry_rate == 10
        assert snap.exit_rate == 4
        assert snap.flow_direction == "in"

    def test_exit_dominant_is_out(self):
        agg = make_aggregator()
        stream(agg, "IN-1", "entry", 4)
        stream(agg, "OUT-1", "exit", 10)
        assert agg.tick(NOW)["Zone_A"].flow_direction == "out"

    def test_near_equal_rates_are_stable(self):
        assert flow_direction(10, 11) == "stable"
        assert flow_direction(10, 12.5) == "out"
        assert flow_direction(0, 0) == "stable"


class TestDensity:
    def test_latest_count_per_sensor_summed(self):
        agg = make_aggregator(default_capacity=200)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=100))
        agg.add_reading(reading("C1", NOW - timedelta(seconds=40), count=10))   # older, arrives late
        agg.add_reading(reading("C2", NOW - timedelta(seconds=20), count=50))
        snap = agg.tick(NOW)["Zone_A"]
        assert snap.occupancy == 150
        assert snap.current_density == 75.0
        assert snap.capacity == 200

    def test_density_is_clamped(self):
        agg = make_aggregator(default_capacity=100)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=250))
        assert agg.tick(NOW)["Zone_A"].current_density == 100.0

    def test_thermal_persons_count_toward_density(self):
        agg = make_aggregator(default_capacity=10)
        agg.add_reading(SensorReading(
            sensor_id="CAM-1", zone_id="Zone_A", sensor_type="thermal_camera",
            captured_at=NOW - timedelta(seconds=3), received_at=NOW,
            detections=[{"class": "person", "confidence": 0.9}, {"class": "person", "confidence": 0.8}],
        ))
        assert agg.tick(NOW)["Zone_A"].current_density == 20.0

    def test_silent_sensor_is_not_zero_filled(self):
        agg = make_aggregator(default_capacity=200)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=30), count=180))
        agg.tick(NOW)
        later = agg.tick(NOW + timedelta(seconds=90))["Zone_A"]
        assert later.current_density == 90.0
        assert later.low_confidence
        assert later.sensor_health == 0.0

    def test_dropout_flags_low_confidence_but_keeps_estimate(self):
        agg = make_aggregator(default_capacity=200)
        for sid in ("C1", "C2", "C3"):
            agg.add_reading(reading(sid, NOW - timedelta(seconds=10), count=40))
        for sid in ("C4", "C5"):
            agg.add_reading(reading(sid, NOW - timedelta(seconds=10), connectivity="offline"))
        snap = agg.tick(NOW)["Zone_A"]
        assert snap.sensor_health == 0.6
        assert snap.low_confidence
        assert snap.current_density == 60.0

    def test_capacity_override(self):
        agg = make_aggregator(default_capacity=200)
        agg.set_capacity("Zone_A", 100)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=50))
        assert agg.tick(NOW)["Zone_A"].current_density == 50.0

    def test_predicted_density_follows_trend(self):
        agg = make_aggregator(default_capacity=100)
        for minute, count in enumerate((30, 40, 50)):
            at = NOW + timedelta(minutes=minute)
            agg.add_reading(reading("C1", at - timedelta(seconds=1), count=count))
            snap = agg.tick(at)["Zone_A"]
        assert snap.current_density == 50.0
        assert snap.predicted_density == 60.0


class TestLateReadings:
    def test_late_reading_folded_into_next_window(self):
        agg = make_aggregator()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=10), count=20))
        agg.tick(NOW)

        assert agg.add_reading(reading("IN-1", NOW - timedelta(seconds=70), count=1, direction="entry"))
        snap = agg.tick(NOW + timedelta(seconds=5))["Zone_A"]
        assert snap.late_readings == 1
        assert snap.entry_rate == 1.0

        after = agg.tick(NOW + timedelta(seconds=10))["Zone_A"]
        assert after.late_readings == 0
        assert after.entry_rate == 0.0

    def test_reading_beyond_lateness_limit_dropped(self):
        agg = make_aggregator(max_lateness_windows=5)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=10), count=20))
        agg.tick(NOW)
        assert not agg.add_reading(reading("IN-1", NOW - timedelta(minutes=7), count=1, direction="entry"))


class TestBottleneckRisk:
    def test_zero_below_threshold_when_healthy(self):
        assert bottleneck_risk(79.9, 20, 1, streak=5, threshold=80) == 0.0

    def test_monotonic_in_density(self):
        low = bottleneck_risk(85, 10, 10, streak=0, threshold=80)
        high = bottleneck_risk(95, 10, 10, streak=0, threshold=80)
        assert 0 < low < high <= 1

    def test_monotonic_in_imbalance(self):
        balanced = bottleneck_risk(90, 10, 10, streak=3, threshold=80)
        skewed = bottleneck_risk(90, 20, 5, streak=3, threshold=80)
        assert skewed > balanced

    def test_persistence_raises_risk(self):
        first = bottleneck_risk(90, 20, 5, streak=1, threshold=80)
        sustained = bottleneck_risk(90, 20, 5, streak=3, threshold=80)
        assert sustained > first

    def test_unhealthy_sensors_add_uncertainty(self):
        assert bottleneck_risk(50, 0, 0, streak=0, threshold=80, health=0.5, low_confidence=True) > 0

    def test_aggregate_risk_zero_in_quiet_zone(self):
        agg = make_aggregator()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=20))
        assert agg.tick(NOW)["Zone_A"].bottleneck_risk == 0.0


class TestDwellTime:
    def test_dwell_from_tag_pairs(self):
        agg = make_aggregator()
        agg.add_reading(reading("RF-IN", NOW - timedelta(seconds=50), sensor_type="rfid_reader",
                                direction="entry", tag_id="RFID_1"))
        agg.add_reading(reading("RF-OUT", NOW - timedelta(seconds=20), sensor_type="rfid_reader",
                                direction="exit", tag_id="RFID_1"))
        assert agg.tick(NOW)["Zone_A"].avg_dwell_time == 0.5

    def test_littles_law_fallback(self):
        agg = make_aggregator()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=100))
        agg.add_reading(reading("OUT-1", NOW - timedelta(seconds=10), count=4, direction="exit"))
        snap = agg.tick(NOW)["Zone_A"]
        assert snap.exit_rate == 4.0
        assert snap.avg_dwell_time == 25.0


class TestLifecycle:
    def test_tick_while_stopped_does_nothing(self):
        agg = CrowdAggregator(clock=lambda: NOW)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=10))
        assert agg.tick(NOW) == {}
        agg.start()
        assert "Zone_A" in agg.tick(NOW)
        agg.stop()
        assert not agg.running

    def test_snapshots_are_immutable(self):
        agg = make_aggregator()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=10))
        agg.tick(NOW)
        snap = agg.snapshot("Zone_A")
        with pytest.raises(ValidationError):
            snap.current_density = 0
        assert agg.snapshot("Zone_B") is None

    def test_aggregates_persisted(self):
        from unittest.mock import MagicMock
        store = MagicMock()
        agg = make_aggregator(store=store)
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=10))
        agg.tick(NOW)
        store.upsert_zone_aggregate.assert_called_once()


class TestTickLocking:
    def test_add_reading_not_blocked_by_aggregation(self):
        entered, release = threading.Event(), threading.Event()

        class SlowAggregator(CrowdAggregator):
            def _aggregate_zone(self, zone_id, state, view, now):
                entered.set()
                release.wait(2)
                return super()._aggregate_zone(zone_id, state, view, now)

        agg = SlowAggregator(clock=lambda: NOW)
        agg.start()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=40))
        ticker = threading.Thread(target=agg.tick, args=(NOW,))
        ticker.start()
        try:
            assert entered.wait(1)
            started = time.monotonic()
            accepted = agg.add_reading(reading("C2", NOW - timedelta(seconds=2), count=20))
            elapsed = time.monotonic() - started
        finally:
            release.set()
            ticker.join()

        assert accepted is True
        assert elapsed < 0.5
        # The reading that arrived mid-tick is picked up by the next one
        assert agg.tick(NOW + timedelta(seconds=5))["Zone_A"].occupancy == 60


class TestAdvice:
    def test_snapshot_carries_risk_level_and_recommendations(self):
        agg = make_aggregator()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=186))
        snap = agg.tick(NOW)["Zone_A"]
        assert snap.current_density == 93.0
        assert snap.risk_level == "critical"
        assert "Immediate entry restrictions" in snap.recommendations
        assert snap.recommended_action == "immediate_diversion"

    def test_quiet_zone_has_no_diversion(self):
        agg = make_aggregator()
        agg.add_reading(reading("C1", NOW - timedelta(seconds=5), count=40))
        snap = agg.tick(NOW)["Zone_A"]
        assert snap.risk_level == "low"
        assert snap.recommendations == ["Normal operations", "Regular monitoring sufficient"]
        assert snap.recommended_action is None
