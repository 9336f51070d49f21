from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .config import LLM_DEBUG, LOG_LEVEL


def _log_debug(message: str) -> None:
    if LLM_DEBUG:
        print(message, flush=True)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or LOG_LEVEL),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    cleaned = value.strip()
    return cleaned or None


def to_utc(value: str) -> datetime:
    """Parse an offset-qualified ISO instant and convert it to UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def as_aware_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
