# crowdpass/schemas/alert.py
from pydantic import BaseModel
from datetime import datetime
from typing import Literal, Optional

Severity = Literal["low", "medium", "high", "critical"]


class Alert(BaseModel):
    id: str
    type: str
    severity: Severity
    zone_id: str
    message: str
    emitted_at: datetime
    dedup_key: str
    recommended_action: Optional[str] = None
    recommendations: list[str] = []

    class Config:
        frozen = True


class AlertEvent(Alert):
    """Alert pushed to subscribers, flagged open or resolved."""
    state: Literal["open", "resolved"] = "open"
    resolved_at: Optional[datetime] = None


class AlertOut(BaseModel):
    id: str
    alert_type: str
    severity: str
    zone_id: Optional[str]
    message: Optional[str]
    dedup_key: str
    is_resolved: int
    triggered_at: datetime
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True
