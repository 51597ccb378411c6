# crowdpass/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + aggregation loop + payment gateway reachability.
"""

import requests
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from crowdpass.database import get_db
from crowdpass.services.runtime import Services, get_services
from crowdpass.utils.clock import utcnow

router = APIRouter()


@router.get("/health", summary="System health check")
def health_check(db: Session = Depends(get_db), services: Services = Depends(get_services)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Aggregator / periodic task state
    - Payment gateway reachability (when configured)
    """
    result = {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "aggregator": "running" if services.aggregator.running else "stopped",
        "tasks": {t.name: ("running" if t.running else "stopped") for t in services.scheduler.tasks},
        "payment_gateway": "seeded",
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        result["database"] = "ok"
    except Exception as e:
        result["database"] = f"error: {str(e)}"
        result["status"] = "degraded"

    # Ping payment gateway
    url = services.settings.PAYMENT_GATEWAY_URL
    if url:
        try:
            resp = requests.head(url, timeout=3)
            result["payment_gateway"] = "ok" if resp.status_code < 500 else f"http_{resp.status_code}"
        except requests.exceptions.ConnectionError:
            result["payment_gateway"] = "unreachable"
            result["status"] = "degraded"
        except requests.exceptions.RequestException as e:
            result["payment_gateway"] = f"error: {str(e)}"

    return result
