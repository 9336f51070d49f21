"""
Conflict detection against events already stored for the user.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Union

from sqlalchemy import select
from sqlalchemy.engine import Engine

from ..config import CONFLICT_LIMIT
from ..models import ConflictRecord
from ..storage import events_table, transaction
from ..utils import to_utc


def _instant(value: Union[str, datetime]) -> datetime:
  if isinstance(value, datetime):
    return to_utc(value.isoformat())
  return to_utc(value)


def find_conflicts(engine: Engine,
                   user_id: str,
                   start: Union[str, datetime],
                   end: Union[str, datetime],
                   limit: int = CONFLICT_LIMIT) -> List[ConflictRecord]:
  """
  Stored events overlapping ``[start, end)``, earliest first.

  Overlap is strict: ``stored.start < end AND stored.end > start``, so an
  event that ends exactly when the candidate starts is not a conflict.
  Comparison happens on UTC-normalized columns, not on the offset strings.
  """
  start_utc = _instant(start)
  end_utc = _instant(end)
  query = (select(events_table.c.title,
                  events_table.c.start_datetime,
                  events_table.c.end_datetime,
                  events_table.c.google_event_id)
           .where(events_table.c.user_id == user_id,
                  events_table.c.start_utc < end_utc,
                  events_table.c.end_utc > start_utc)
           .order_by(events_table.c.start_utc)
           .limit(limit))
  with transaction(engine) as conn:
    rows = conn.execute(query).all()
  return [
      ConflictRecord(title=title,
                     start=start_value,
                     end=end_value,
                     googleEventId=google_event_id)
      for title, start_value, end_value, google_event_id in rows
  ]
