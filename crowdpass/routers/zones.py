# crowdpass/routers/zones.py
"""Zone density snapshots + capacity management endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from crowdpass.schemas.zone_aggregate import ZoneAggregate, ZoneCapacityUpdate
from crowdpass.services.crowd_advice import suggest_route
from crowdpass.services.runtime import Services, get_services

router = APIRouter()


@router.get("/zones", response_model=list[ZoneAggregate])
def get_all_zones(services: Services = Depends(get_services)):
    """Latest aggregate for every zone."""
    snapshots = services.aggregator.snapshots()
    return [snapshots[z] for z in sorted(snapshots)]


@router.get("/zones/occupancy", summary="People admitted per zone (from pass scans)")
def get_admitted_occupancy(services: Services = Depends(get_services)):
    occupancy = services.registry.occupancy_by_zone()
    return [
        {
            "zone_id": zone_id,
            "people_inside": count,
            "capacity": services.aggregator.capacity(zone_id),
            "occupancy_percent": round(count / services.aggregator.capacity(zone_id) * 100, 1),
        }
        for zone_id, count in sorted(occupancy.items())
    ]


@router.get("/zones/route", summary="Suggest less crowded zones between two zones")
def get_route(from_zone: str, to_zone: str, services: Services = Depends(get_services)):
    """
    Up to three waypoints under ROUTE_DENSITY_CEILING, least crowded first,
    plus how crowded the destination currently is.
    """
    return suggest_route(services.aggregator.snapshots(), from_zone, to_zone,
                         ceiling=services.settings.ROUTE_DENSITY_CEILING)


@router.get("/zones/{zone_id}", response_model=ZoneAggregate)
def get_zone(zone_id: str, services: Services = Depends(get_services)):
    snapshot = services.aggregator.snapshot(zone_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Zone '{zone_id}' not found")
    return snapshot


@router.put("/zones/{zone_id}/capacity", summary="Set max capacity for a zone")
def set_zone_capacity(zone_id: str, body: ZoneCapacityUpdate, services: Services = Depends(get_services)):
    """
    Update the maximum people capacity for a zone.
    Takes effect from the next aggregation tick.
    """
    services.aggregator.set_capacity(zone_id, body.max_capacity)
    return {"zone_id": zone_id, "max_capacity": body.max_capacity, "status": "updated"}
