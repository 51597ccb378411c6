# crowdpass/services/crowd_advice.py
"""
Operator advice derived from zone aggregates.

  risk level       from predicted density: > 80 critical, > 60 high, > 40 medium, else low
  recommendations  fixed checklist per risk level
  action           "immediate_diversion" once a zone is at or above 90% of capacity
  route            least-crowded zones under the route ceiling (70% density)
"""

from typing import Literal, Optional
from crowdpass.schemas.zone_aggregate import ZoneAggregate

RiskLevel = Literal["low", "medium", "high", "critical"]

DIVERSION_DENSITY = 90.0
ROUTE_DENSITY_CEILING = 70.0

RISK_RECOMMENDATIONS: dict[str, tuple[str, ...]] = {
    "critical": (
        "Immediate entry restrictions",
        "Deploy additional volunteers",
        "Activate emergency protocols",
        "Redirect crowd to alternate routes",
    ),
    "high": (
        "Monitor closely",
        "Prepare crowd control measures",
        "Alert nearby zones",
        "Consider entry slowdown",
    ),
    "medium": (
        "Continue monitoring",
        "Maintain current flow",
        "Keep volunteers alert",
    ),
    "low": (
        "Normal operations",
        "Regular monitoring sufficient",
    ),
}


def risk_level(predicted_density: float) -> RiskLevel:
    if predicted_density > 80:
        return "critical"
    if predicted_density > 60:
        return "high"
    if predicted_density > 40:
        return "medium"
    return "low"


def recommendations_for(level: str) -> list[str]:
    return list(RISK_RECOMMENDATIONS.get(level, RISK_RECOMMENDATIONS["low"]))


def recommended_action(density: float, threshold: float = DIVERSION_DENSITY) -> Optional[str]:
    return "immediate_diversion" if density >= threshold else None


def suggest_route(snapshots: dict[str, ZoneAggregate], from_zone: str, to_zone: str,
                  ceiling: float = ROUTE_DENSITY_CEILING, limit: int = 3) -> dict:
    """
    Pick up to `limit` intermediate zones below `ceiling` density, least crowded
    first (ties by zone id). Origin and destination are never waypoints.
    """
    candidates = sorted(
        (agg for zone_id, agg in snapshots.items()
         if zone_id not in (from_zone, to_zone) and agg.current_density < ceiling),
        key=lambda agg: (agg.current_density, agg.zone_id),
    )
    destination = snapshots.get(to_zone)
    return {
        "from_zone": from_zone,
        "to_zone": to_zone,
        "via": [
            {
                "zone_id": agg.zone_id,
                "current_density": agg.current_density,
                "crowd_level": risk_level(agg.current_density),
                "low_confidence": agg.low_confidence,
            }
            for agg in candidates[:limit]
        ],
        "destination_density": destination.current_density if destination else None,
        "destination_crowded": bool(destination and destination.current_density >= ceiling),
    }
