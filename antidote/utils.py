import sys
from datetime import datetime, timezone

from loguru import logger


def mask_token(value: str | None, visible_chars: int = 4) -> str:
    """
    Mask a credential for logging.

    Keeps the first ``visible_chars`` characters and replaces the rest with
    ``*``. Values no longer than ``visible_chars`` are masked entirely.
    """
    if value is None:
        return "<None>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp, the default clock for cache and token expiry."""
    return datetime.now(timezone.utc)


def configure_logging(level: str = "INFO") -> None:
    """Route loguru output to stderr at the given level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
