# crowdpass/database.py
"""
Database connection, session management, and table creation.
Uses SQLAlchemy (SQLite by default, PostgreSQL in production). All models are
auto-imported here so create_tables() creates every table in one call.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from crowdpass.config import settings


def make_engine(url: str):
    """Build an engine; SQLite URLs get thread-safe settings, servers get a pool."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool   # One shared in-memory DB across threads
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        pool_pre_ping=True,          # Auto-reconnect if DB connection drops
        pool_size=10,
        max_overflow=20,
        echo=False,                  # Set True to log all SQL queries (debug only)
    )


engine = make_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency — yields a DB session and closes it after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables(bind=None):
    """
    Creates all DB tables on startup. Safe to call multiple times.
    Import all models here so SQLAlchemy knows about them.
    """
    from crowdpass.models.pass_record import PassRecord          # noqa
    from crowdpass.models.penalty import PenaltyRecord           # noqa
    from crowdpass.models.sensor_log import SensorLog            # noqa
    from crowdpass.models.zone_aggregate import ZoneAggregateRecord  # noqa
    from crowdpass.models.alert import AlertRecord               # noqa

    Base.metadata.create_all(bind=bind or engine)
