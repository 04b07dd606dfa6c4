"""
Shared helpers used across features.
"""
import logging
from datetime import datetime, timezone

from app.core import config


LOG_FORMAT = "%(levelname)s : %(asctime)s | %(name)s  | %(message)s"


def get_logger(name: str = "edunexa") -> logging.Logger:
    """
    Get a module logger with the service's stream handler attached.

    Usage:
        from app.utils import get_logger

        log = get_logger(__name__)
        log.info("Role %s created", role.id)
    """
    logger = logging.getLogger(name)
    logger.setLevel(config.LOG_LEVEL)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes; those are stored as UTC, so a naive value is
    tagged rather than converted.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
