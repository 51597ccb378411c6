# crowdpass/routers/stats.py
"""Dashboard statistics — passes, penalties, zones and alerts in one call."""

from fastapi import APIRouter, Depends
from crowdpass.services.runtime import Services, get_services
from crowdpass.utils.clock import utcnow

router = APIRouter()


@router.get("/stats", summary="Dashboard summary")
def get_stats(services: Services = Depends(get_services)):
    snapshots = services.aggregator.snapshots().values()
    open_alerts = services.alerts.open_alerts()
    return {
        **services.registry.stats(),
        "zones_tracked": len(snapshots),
        "avg_density": round(sum(s.current_density for s in snapshots) / len(snapshots), 1) if snapshots else 0.0,
        "zones_low_confidence": sum(1 for s in snapshots if s.low_confidence),
        "open_alerts": len(open_alerts),
        "critical_alerts": sum(1 for a in open_alerts if a.severity == "critical"),
        "timestamp": utcnow().isoformat(),
    }
