# crowdpass/routers/alerts.py
from fastapi import APIRouter, Depends, HTTPException
from crowdpass.schemas.alert import Alert, AlertEvent, AlertOut
from crowdpass.services.runtime import Services, get_services
from typing import Optional

router = APIRouter()


@router.get("/alerts", response_model=list[AlertOut], summary="Alert history — filterable by type")
def get_all_alerts(
    alert_type: Optional[str] = None,
    is_resolved: Optional[int] = None,
    limit: int = 50,
    services: Services = Depends(get_services),
):
    """Persisted alerts, newest first. Filter by alert_type or is_resolved."""
    if services.store is None:
        return []
    return services.store.list_alerts(alert_type, is_resolved, limit)


@router.get("/alerts/open", response_model=list[Alert], summary="Currently open alerts")
def get_open_alerts(zone_id: Optional[str] = None, services: Services = Depends(get_services)):
    return services.alerts.open_alerts(zone_id)


@router.put("/alerts/{alert_id}/resolve", response_model=AlertEvent, summary="Resolve an open alert")
def resolve_alert(alert_id: str, services: Services = Depends(get_services)):
    """Operator close. If the condition persists, the next alert tick opens a new alert."""
    event = services.alerts.resolve(alert_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Open alert not found")
    return event
