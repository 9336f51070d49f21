"""
Turns the vision model's loose date/time/location text into a CanonicalEvent.

Pure functions only: the caller passes the timezone, and optionally "today",
so nothing here touches the network, the database or the wall clock beyond
the fallback for an unparseable start date.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dateutil_parser
from pydantic import ValidationError as PydanticValidationError

from ..config import (
    DEFAULT_EVENT_TITLE,
    DEFAULT_TIMEZONE,
    DESCRIPTION_FOOTER,
    FALLBACK_TIMEZONE_OFFSET,
    ISO_DATE_RE,
    SLASH_DATE_RE,
    TIME_12_RE,
    TIME_24_RE,
    TIMEZONE_OFFSETS,
)
from ..errors import ValidationError
from ..models import CanonicalEvent, RawExtraction
from ..utils import _clean_optional_str

logger = logging.getLogger(__name__)

_MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5,
    "june": 6, "july": 7, "august": 8, "september": 9, "october": 10,
    "november": 11, "december": 12,
}
_MONTH_ALIASES = dict(_MONTHS)
_MONTH_ALIASES.update({name[:3]: num for name, num in _MONTHS.items()})
_MONTH_ALIASES["sept"] = 9

_LONG_DATE_RE = re.compile(
    r"^(" + "|".join(sorted(_MONTH_ALIASES, key=len, reverse=True)) + r")\.?"
    r"\s+(\d{1,2})(?:st|nd|rd|th)?(?:,?\s*(\d{4}))?$",
    re.IGNORECASE,
)

_TIME_WORDS = {"noon": "12:00", "midnight": "00:00"}


def _safe_date(year: int, month: int, day: int) -> Optional[str]:
  try:
    return date(year, month, day).isoformat()
  except ValueError:
    return None


def _parse_date_fallback(cleaned: str, default_year: int) -> Optional[str]:
  # Parse against two different defaults; if month or day moves with the
  # default, the text never named them.
  try:
    first = dateutil_parser.parse(cleaned, default=datetime(default_year, 1, 1))
    second = dateutil_parser.parse(cleaned, default=datetime(default_year, 2, 2))
  except (ValueError, OverflowError):
    return None
  if (first.month, first.day) != (second.month, second.day):
    return None
  return first.date().isoformat()


def parse_date(value: Optional[str], default_year: Optional[int] = None) -> Optional[str]:
  """Return ``YYYY-MM-DD`` for the first matching date pattern, else None."""
  if not isinstance(value, str):
    return None
  cleaned = value.strip()
  if not cleaned:
    return None
  year = default_year or date.today().year

  if ISO_DATE_RE.match(cleaned):
    try:
      date.fromisoformat(cleaned)
    except ValueError:
      return None
    return cleaned

  slash = SLASH_DATE_RE.match(cleaned)
  if slash:
    month, day, raw_year = slash.groups()
    full_year = 2000 + int(raw_year) if len(raw_year) == 2 else int(raw_year)
    return _safe_date(full_year, int(month), int(day))

  long_form = _LONG_DATE_RE.match(cleaned)
  if long_form:
    month_name, day, raw_year = long_form.groups()
    month = _MONTH_ALIASES[month_name.lower()]
    return _safe_date(int(raw_year) if raw_year else year, month, int(day))

  return _parse_date_fallback(cleaned, year)


def parse_time(value: Optional[str]) -> Optional[str]:
  """Return ``HH:MM`` (24-hour) or None."""
  if not isinstance(value, str):
    return None
  cleaned = value.strip().lower()
  if not cleaned:
    return None
  if cleaned in _TIME_WORDS:
    return _TIME_WORDS[cleaned]

  match = TIME_24_RE.match(cleaned)
  if match:
    hours, mins = int(match.group(1)), int(match.group(2))
    if hours > 23 or mins > 59:
      return None
    return f"{hours:02d}:{mins:02d}"

  match = TIME_12_RE.match(cleaned)
  if match:
    hours = int(match.group(1))
    mins = int(match.group(2) or "0")
    if not 1 <= hours <= 12 or mins > 59:
      return None
    if match.group(3) == "p" and hours != 12:
      hours += 12
    elif match.group(3) == "a" and hours == 12:
      hours = 0
    return f"{hours:02d}:{mins:02d}"
  return None


def timezone_offset(timezone_name: str) -> str:
  return TIMEZONE_OFFSETS.get(timezone_name, FALLBACK_TIMEZONE_OFFSET)


def add_one_hour(date_str: str, time_str: str) -> Tuple[str, str]:
  """Start + 1 hour; a start in the last hour of the day moves to the next date."""
  start = datetime.strptime(f"{date_str}T{time_str}", "%Y-%m-%dT%H:%M")
  end = start + timedelta(hours=1)
  return end.strftime("%Y-%m-%d"), end.strftime("%H:%M")


def build_description(raw: RawExtraction) -> str:
  parts: List[str] = []
  description = _clean_optional_str(raw.description)
  if description:
    parts.append(description)
  parts.extend(DESCRIPTION_FOOTER)
  return "\n".join(parts)


def _is_valid_zone(timezone_name: Any) -> bool:
  if not isinstance(timezone_name, str) or not timezone_name.strip():
    return False
  try:
    ZoneInfo(timezone_name)
  except (ZoneInfoNotFoundError, ValueError):
    return False
  return True


def today_in(timezone_name: str) -> date:
  zone = timezone_name if _is_valid_zone(timezone_name) else DEFAULT_TIMEZONE
  return datetime.now(ZoneInfo(zone)).date()


def _parse_instant(value: Any) -> Optional[datetime]:
  if not isinstance(value, str):
    return None
  try:
    parsed = datetime.fromisoformat(value)
  except ValueError:
    return None
  return parsed if parsed.tzinfo is not None else None


def validate_event(candidate: Dict[str, Any]) -> CanonicalEvent:
  """Check CanonicalEvent invariants. Violations are reported, never corrected."""
  errors: Dict[str, List[str]] = {}

  def fail(field: str, message: str) -> None:
    errors.setdefault(field, []).append(message)

  title = candidate.get("title")
  if not isinstance(title, str) or not title.strip():
    fail("title", "Title is required")
  if not _is_valid_zone(candidate.get("timezone")):
    fail("timezone", f"Unknown timezone: {candidate.get('timezone')!r}")

  start = _parse_instant(candidate.get("startDateTime"))
  end = _parse_instant(candidate.get("endDateTime"))
  if start is None:
    fail("startDateTime", "Expected an ISO 8601 datetime with offset")
  if end is None:
    fail("endDateTime", "Expected an ISO 8601 datetime with offset")
  if start is not None and end is not None:
    if start > end:
      fail("endDateTime", "End must not be before start")
    if candidate.get("isAllDay"):
      if (start.hour, start.minute, start.second) != (0, 0, 0):
        fail("startDateTime", "All-day events start at 00:00:00")
      if (end.hour, end.minute, end.second) != (23, 59, 59):
        fail("endDateTime", "All-day events end at 23:59:59")

  if errors:
    logger.warning("Event failed validation: %s", errors)
    raise ValidationError(errors)

  try:
    return CanonicalEvent(**candidate)
  except PydanticValidationError as exc:
    raise ValidationError({
        ".".join(str(part) for part in err["loc"]) or "event": [err["msg"]]
        for err in exc.errors()
    }) from exc


def normalize(raw: RawExtraction,
              timezone: str = DEFAULT_TIMEZONE,
              today: Optional[date] = None) -> CanonicalEvent:
  today = today or today_in(timezone)

  start_date = parse_date(raw.start_date, today.year) or today.isoformat()
  end_date = parse_date(raw.end_date, today.year) or start_date
  start_time = parse_time(raw.start_time)
  end_time = parse_time(raw.end_time)

  # No start time means all-day, even when a date was found.
  is_all_day = start_time is None
  offset = timezone_offset(timezone)

  if is_all_day:
    start_iso = f"{start_date}T00:00:00{offset}"
    end_iso = f"{end_date}T23:59:59{offset}"
  else:
    if end_time is None:
      end_date, end_time = add_one_hour(end_date, start_time)
    start_iso = f"{start_date}T{start_time}:00{offset}"
    end_iso = f"{end_date}T{end_time}:00{offset}"

  event = validate_event({
      "title": _clean_optional_str(raw.title) or DEFAULT_EVENT_TITLE,
      "startDateTime": start_iso,
      "endDateTime": end_iso,
      "isAllDay": is_all_day,
      "timezone": timezone,
      "location": _clean_optional_str(raw.location),
      "description": build_description(raw),
  })
  logger.info("Normalized event %r %s -> %s (all_day=%s)", event.title,
              event.startDateTime, event.endDateTime, event.isAllDay)
  return event
