# crowdpass/config.py
"""
Application configuration using Pydantic-Settings.
All settings can be overridden via environment variables or .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ── Database ──────────────────────────────────────────────────────────
    DATABASE_URL: str = "sqlite:///./crowdpass.db"

    # ── Network ───────────────────────────────────────────────────────────
    BACKEND_IP: str = "0.0.0.0"
    BACKEND_PORT: int = 8080

    # ── Security ──────────────────────────────────────────────────────────
    API_KEY: Optional[str] = None   # Set in .env to enable auth on API endpoints

    # ── Pass pricing ──────────────────────────────────────────────────────
    BASE_PASS_PRICE: int = 50
    DEFAULT_SURGE_MULTIPLIER: float = 1.0
    EXTENSION_HOURLY_RATE: int = 100
    TENT_FLAT_FEE: int = 2000

    # ── Penalties ─────────────────────────────────────────────────────────
    PENALTY_RATE_PER_HOUR: int = 500
    MAX_PENALTY_HOURS: int = 24          # Charged when a group never scans out

    # ── Pass timing ───────────────────────────────────────────────────────
    DEFAULT_PASS_DURATION_HOURS: int = 24
    ENTRY_GRACE_HOURS: float = 2.0       # Admission slot after slot_start
    CANCELLATION_GRACE_HOURS: float = 6.0
    TOKEN_MAX_AGE_DAYS: int = 7
    MAX_GROUP_SIZE: int = 10

    # ── Crowd aggregation ─────────────────────────────────────────────────
    AGGREGATION_WINDOW_SECONDS: int = 60
    AGGREGATION_INTERVAL_SECONDS: float = 5.0
    ALERT_INTERVAL_SECONDS: float = 10.0
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = 60.0
    TICK_BUDGET_SECONDS: float = 2.0
    DEFAULT_ZONE_CAPACITY: int = 200
    ZONE_CAPACITIES: dict[str, int] = {}          # JSON in env, e.g. {"Zone_A": 500}
    SENSOR_DIRECTIONS: dict[str, str] = {}        # sensor_id -> "entry" | "exit"
    BOTTLENECK_DENSITY_THRESHOLD: float = 80.0
    SENSOR_HEALTH_THRESHOLD: float = 0.8
    MAX_READING_LATENESS_WINDOWS: int = 5

    # ── Alert thresholds ──────────────────────────────────────────────────
    ALERT_HIGH_THRESHOLD: float = 85.0
    ALERT_CRITICAL_THRESHOLD: float = 95.0
    ALERT_RISK_THRESHOLD: float = 0.7
    OCCUPANCY_ALERT_THRESHOLD: float = 0.90     # Alert at 90% of zone capacity
    ROUTE_DENSITY_CEILING: float = 70.0         # Route waypoints must be below this density

    # ── Collaborators ─────────────────────────────────────────────────────
    PAYMENT_GATEWAY_URL: Optional[str] = None     # Unset → seeded test double
    PAYMENT_SEED: int = 2028
    SENSOR_STREAM_URL: Optional[str] = None       # NDJSON stream of ingest records

    # ── Logging ───────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None               # Unset → <repo>/logs
    LOG_MAX_BYTES: int = 5 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 10

    def zone_capacity(self, zone_id: str) -> int:
        return self.ZONE_CAPACITIES.get(zone_id, self.DEFAULT_ZONE_CAPACITY)

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
