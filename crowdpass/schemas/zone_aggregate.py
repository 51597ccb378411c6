# crowdpass/schemas/zone_aggregate.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Literal, Optional

FlowDirection = Literal["in", "out", "stable"]


class ZoneAggregate(BaseModel):
    """Read model for dashboards and the alert engine. Frozen: readers never mutate it."""
    zone_id: str
    current_density: float = Field(ge=0, le=100)
    predicted_density: float = Field(ge=0, le=100)
    flow_direction: FlowDirection = "stable"
    bottleneck_risk: float = Field(default=0.0, ge=0, le=1)
    entry_rate: float = Field(default=0.0, ge=0)      # people per minute
    exit_rate: float = Field(default=0.0, ge=0)
    avg_dwell_time: float = Field(default=0.0, ge=0)  # minutes
    occupancy: float = Field(default=0.0, ge=0)
    capacity: int = Field(default=0, ge=0)
    sensor_health: float = Field(default=1.0, ge=0, le=1)
    low_confidence: bool = False
    late_readings: int = 0
    risk_level: Literal["low", "medium", "high", "critical"] = "low"
    recommendations: list[str] = []
    recommended_action: Optional[str] = None     # "immediate_diversion" near capacity
    last_updated: datetime

    class Config:
        frozen = True
        from_attributes = True


class ZoneCapacityUpdate(BaseModel):
    max_capacity: int = Field(gt=0)
