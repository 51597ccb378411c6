# crowdpass/services/runtime.py
"""
Explicit wiring of one running system.

build_services() constructs every engine from a Settings object and returns
them in a Services bundle; nothing is a module-level singleton. start()/stop()
drive the periodic tasks on the running event loop.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from fastapi import Request
from crowdpass.services.alert_engine import AlertEngine
from crowdpass.services.collaborators import (
    HttpPaymentProcessor, HttpStreamSensorSource, PaymentProcessor,
    SeededPaymentProcessor, SensorSource, pump_readings,
)
from crowdpass.services.credential_codec import CredentialCodec
from crowdpass.services.crowd_aggregator import CrowdAggregator
from crowdpass.services.pass_registry import PassRegistry
from crowdpass.services.penalty_calculator import PenaltyCalculator
from crowdpass.services.scheduler import IntervalTickSource, PeriodicTask, Scheduler
from crowdpass.services.sensor_ingest import SensorIngestGateway
from crowdpass.utils.clock import utcnow
from crowdpass.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class Services:
    settings: object
    codec: CredentialCodec
    calculator: PenaltyCalculator
    registry: PassRegistry
    gateway: SensorIngestGateway
    aggregator: CrowdAggregator
    alerts: AlertEngine
    payments: PaymentProcessor
    sensor_source: Optional[SensorSource] = None
    store: object = None
    scheduler: Scheduler = field(default_factory=Scheduler)

    def start(self):
        """Start the aggregator and spawn the periodic tasks. Needs a running event loop."""
        self.aggregator.start()
        budget = self.settings.TICK_BUDGET_SECONDS
        self.scheduler.add(PeriodicTask("aggregation", self.aggregator.tick,
                                        IntervalTickSource(self.settings.AGGREGATION_INTERVAL_SECONDS),
                                        budget))
        self.scheduler.add(PeriodicTask("alerts", self.alerts.evaluate,
                                        IntervalTickSource(self.settings.ALERT_INTERVAL_SECONDS),
                                        budget))
        self.scheduler.add(PeriodicTask("expiry_sweep", self.registry.expiry_sweep,
                                        IntervalTickSource(self.settings.EXPIRY_SWEEP_INTERVAL_SECONDS),
                                        budget))
        if self.sensor_source is not None:
            self.scheduler.add_background(self._pump)
        self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()
        self.scheduler = Scheduler()
        self.aggregator.stop()
        if isinstance(self.payments, HttpPaymentProcessor):
            self.payments.close()

    async def _pump(self, stop_event: asyncio.Event):
        count = await pump_readings(self.sensor_source, self.gateway, self.aggregator,
                                    self.store, stop_event)
        logger.info(f"Sensor pump finished after {count} readings")


def build_services(settings, store=None, payments: Optional[PaymentProcessor] = None,
                   sensor_source: Optional[SensorSource] = None,
                   clock: Callable[[], datetime] = utcnow) -> Services:
    codec = CredentialCodec(max_token_age=timedelta(days=settings.TOKEN_MAX_AGE_DAYS), clock=clock)
    calculator = PenaltyCalculator(settings.PENALTY_RATE_PER_HOUR, settings.MAX_PENALTY_HOURS)
    registry = PassRegistry.from_settings(settings, codec, calculator, store=store, clock=clock)
    gateway = SensorIngestGateway(settings.SENSOR_DIRECTIONS, clock=clock)
    aggregator = CrowdAggregator.from_settings(settings, store=store, clock=clock)
    alerts = AlertEngine.from_settings(settings, aggregator, registry, store=store, clock=clock)

    if payments is None:
        if settings.PAYMENT_GATEWAY_URL:
            payments = HttpPaymentProcessor(settings.PAYMENT_GATEWAY_URL, api_key=settings.API_KEY)
        else:
            logger.warning("PAYMENT_GATEWAY_URL not set — using seeded payment processor")
            payments = SeededPaymentProcessor(seed=settings.PAYMENT_SEED)

    if sensor_source is None and settings.SENSOR_STREAM_URL:
        sensor_source = HttpStreamSensorSource(settings.SENSOR_STREAM_URL, api_key=settings.API_KEY)

    return Services(
        settings=settings,
        codec=codec,
        calculator=calculator,
        registry=registry,
        gateway=gateway,
        aggregator=aggregator,
        alerts=alerts,
        payments=payments,
        sensor_source=sensor_source,
        store=store,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency — the Services bundle attached to the app."""
    return request.app.state.services
