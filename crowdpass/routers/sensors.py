# crowdpass/routers/sensors.py
"""
Sensor ingest endpoints.
POST /sensors/data        — one ingest record
POST /sensors/data/batch  — many records; invalid ones are reported, not fatal
"""

from fastapi import APIRouter, Body, Depends
from crowdpass.services.runtime import Services, get_services
from crowdpass.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


def _accept(services: Services, reading) -> bool:
    accepted = services.aggregator.add_reading(reading)
    if accepted and services.store is not None:
        try:
            services.store.log_reading(reading)
        except Exception as e:
            logger.error(f"Failed to log reading from {reading.sensor_id}: {e}")
    return accepted


@router.post("/sensors/data", summary="Ingest one sensor reading")
def ingest_reading(record: dict = Body(...), services: Services = Depends(get_services)):
    reading = services.gateway.ingest(record)
    accepted = _accept(services, reading)
    return {
        "status": "accepted" if accepted else "dropped",
        "sensor_id": reading.sensor_id,
        "zone_id": reading.zone_id,
        "captured_at": reading.captured_at.isoformat(),
        "people": reading.people,
    }


@router.post("/sensors/data/batch", summary="Ingest a batch of sensor readings")
def ingest_batch(records: list[dict] = Body(...), services: Services = Depends(get_services)):
    readings, rejected = services.gateway.ingest_batch(records)
    accepted = sum(1 for r in readings if _accept(services, r))
    logger.info(f"[INGEST] Batch: {accepted} accepted, {len(readings) - accepted} dropped, "
                f"{len(rejected)} rejected")
    return {
        "accepted": accepted,
        "dropped": len(readings) - accepted,
        "rejected": rejected,
    }
