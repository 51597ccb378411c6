# crowdpass/utils/logger.py
"""
Logging setup for the crowd-pass service.

Two streams:
  - crowdpass.log — everything, also echoed to the console
  - audit.log     — one line per pass lifecycle change or alert transition,
                    written by the "crowdpass.audit" logger only

Audit lines are `event key=value ...` so they can be grepped per pass or zone.
Holder identifiers never reach either file; registry code logs pass ids.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from crowdpass.config import settings

LOG_LEVEL = settings.LOG_LEVEL.upper()
LOG_DIR = settings.LOG_DIR or os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")
os.makedirs(LOG_DIR, exist_ok=True)

AUDIT_LOGGER_NAME = "crowdpass.audit"
AUDIT_LOG_FILE = os.path.join(LOG_DIR, "audit.log")

_configured = False
_audit_configured = False


def _rotating(filename: str, level, fmt: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=filename,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(fmt)
    return handler


def _configure_root_logger():
    global _configured
    if _configured:
        return
    _configured = True

    fmt = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setLevel(LOG_LEVEL)
    console.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)
    root.addHandler(console)
    root.addHandler(_rotating(os.path.join(LOG_DIR, "crowdpass.log"), LOG_LEVEL, fmt))


def _configure_audit_logger() -> logging.Logger:
    global _audit_configured
    audit = logging.getLogger(AUDIT_LOGGER_NAME)
    if _audit_configured:
        return audit
    _audit_configured = True

    # Audit trail is kept whatever LOG_LEVEL says
    fmt = logging.Formatter(fmt="%(asctime)s | %(message)s", datefmt="%Y-%m-%dT%H:%M:%S%z")
    audit.setLevel(logging.INFO)
    audit.addHandler(_rotating(AUDIT_LOG_FILE, logging.INFO, fmt))
    audit.propagate = False
    return audit


def get_logger(name: str) -> logging.Logger:
    """Get a named logger. Call this at the top of every module."""
    _configure_root_logger()
    return logging.getLogger(name)


def get_audit_logger() -> logging.Logger:
    return _configure_audit_logger()


def audit(event: str, **fields):
    """Write one audit line: `event k1=v1 k2=v2`, keys sorted, None values dropped."""
    parts = [event]
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            continue
        text = str(value)
        if " " in text or not text:
            text = f'"{text}"'
        parts.append(f"{key}={text}")
    get_audit_logger().info(" ".join(parts))
