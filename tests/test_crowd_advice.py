# tests/test_crowd_advice.py
"""Unit tests for risk recommendations and route suggestions."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from datetime import datetime, timezone
from crowdpass.schemas.zone_aggregate import ZoneAggregate
from crowdpass.services.crowd_advice import (
    recommendations_for, recommended_action, risk_level, suggest_route,
)

NOW = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)


def agg(zone_id, density):
    return ZoneAggregate(zone_id=zone_id, current_density=density, predicted_density=density,
                         last_updated=NOW)


class TestRiskLevels:
    @pytest.mark.parametrize("predicted,level", [
        (80.5, "critical"), (80.0, "high"), (61, "high"), (60, "medium"), (41, "medium"), (40, "low"), (0, "low"),
    ])
    def test_levels(self, predicted, level):
        assert risk_level(predicted) == level

    def test_every_level_has_recommendations(self):
        for level in ("low", "medium", "high", "critical"):
            assert recommendations_for(level)
        assert recommendations_for("critical")[-1] == "Redirect crowd to alternate routes"

    def test_diversion_at_ninety_percent(self):
        assert recommended_action(90.0) == "immediate_diversion"
        assert recommended_action(89.9) is None


class TestRouteSuggestion:
    def setup_method(self):
        self.snapshots = {
            "Ghat_1": agg("Ghat_1", 95),
            "Zone_A": agg("Zone_A", 65),
            "Zone_B": agg("Zone_B", 20),
            "Zone_C": agg("Zone_C", 20),
            "Zone_D": agg("Zone_D", 45),
            "Zone_E": agg("Zone_E", 70),
            "Temple": agg("Temple", 88),
        }

    def test_least_crowded_first_under_ceiling(self):
        route = suggest_route(self.snapshots, "Ghat_1", "Temple")
        assert [w["zone_id"] for w in route["via"]] == ["Zone_B", "Zone_C", "Zone_D"]
        assert route["via"][2]["crowd_level"] == "medium"

    def test_zones_at_ceiling_are_excluded(self):
        route = suggest_route(self.snapshots, "Ghat_1", "Temple", limit=10)
        assert "Zone_E" not in [w["zone_id"] for w in route["via"]]

    def test_origin_and_destination_are_not_waypoints(self):
        route = suggest_route(self.snapshots, "Zone_B", "Zone_C")
        assert [w["zone_id"] for w in route["via"]] == ["Zone_D", "Zone_A"]

    def test_destination_crowding_reported(self):
        route = suggest_route(self.snapshots, "Zone_B", "Temple")
        assert route["destination_density"] == 88
        assert route["destination_crowded"] is True

    def test_unknown_destination(self):
        route = suggest_route({}, "Zone_A", "Nowhere")
        assert route["via"] == []
        assert route["destination_density"] is None
        assert route["destination_crowded"] is False
