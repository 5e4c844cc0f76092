"""
Shared helpers: logger factory and UTC time handling.
"""
import logging
import sys
from datetime import datetime, timezone

from app.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _configure_root() -> logging.Logger:
    root = logging.getLogger("app")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(config.LOG_LEVEL)
        root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger under the shared "app" hierarchy.

    Usage:
        log = get_logger(__name__)
        log.info("Something happened")
    """
    _configure_root()
    if name == "__main__" or not name.startswith("app"):
        name = f"app.{name}"
    return logging.getLogger(name)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes even for DateTime(timezone=True) columns;
    everything stored by this app is UTC, so naive values are tagged as such.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
