from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from ..models import (
    CalendarResult,
    CanonicalEvent,
    RunContext,
    StoredEventRecord,
)
from ..storage import EventStore, RunCache
from ..utils import to_utc, utcnow

logger = logging.getLogger(__name__)

_RECORD_NAMESPACE = uuid.UUID("5f0c6a52-9a1e-4a57-9d55-2f3b1f6e8c41")


class ObjectStore(Protocol):

  def get(self, key: str) -> Optional[bytes]:
    ...

  def put(self, key: str, data: bytes, content_type: str) -> None:
    ...

  def delete(self, key: str) -> None:
    ...


def run_cache_key(run_id: str) -> str:
  return f"workflow:{run_id}:event"


def record_id_for_run(run_id: str) -> str:
  """One stored event per run, however often save-and-cleanup is replayed."""
  return str(uuid.uuid5(_RECORD_NAMESPACE, run_id))


class PersistenceManager:
  """Records what earlier steps decided; never re-derives the event."""

  def __init__(self,
               event_store: EventStore,
               object_store: ObjectStore,
               run_cache: RunCache,
               clock: Callable[[], datetime] = utcnow,
               id_factory: Callable[[str], str] = record_id_for_run):
    self.event_store = event_store
    self.object_store = object_store
    self.run_cache = run_cache
    self.clock = clock
    self.id_factory = id_factory

  def commit(self, ctx: RunContext, event: CanonicalEvent,
             calendar_result: CalendarResult) -> StoredEventRecord:
    now = self.clock()
    record = StoredEventRecord(
        id=self.id_factory(ctx.run_id),
        user_id=ctx.user_id,
        title=event.title,
        start_datetime=event.startDateTime,
        end_datetime=event.endDateTime,
        is_all_day=event.isAllDay,
        timezone=event.timezone,
        location=event.location,
        description=event.description,
        google_event_id=calendar_result.externalId,
        google_calendar_link=calendar_result.link,
        image_key=ctx.image_key,
        created_at=now,
        updated_at=now,
    )
    inserted = self.event_store.insert(record,
                                       start_utc=to_utc(event.startDateTime),
                                       end_utc=to_utc(event.endDateTime))
    if not inserted:
      # A replay after the row was written but before the step was journaled.
      record = self.event_store.get(record.id) or record
    outcome = self.cleanup(ctx)
    logger.info("%s event %s for user %s (run %s), cleanup %s",
                "Saved" if inserted else "Already stored", record.id,
                ctx.user_id, ctx.run_id, outcome)
    return record

  def cleanup(self, ctx: RunContext) -> Dict[str, Any]:
    """Best-effort deletes; failures are logged and reported, not raised."""
    outcome: Dict[str, Any] = {"image_deleted": False, "cache_cleared": False}
    try:
      self.object_store.delete(ctx.image_key)
      outcome["image_deleted"] = True
    except Exception:
      logger.exception("Could not delete image %s (run %s)", ctx.image_key,
                       ctx.run_id)
    try:
      self.run_cache.delete(run_cache_key(ctx.run_id))
      outcome["cache_cleared"] = True
    except Exception:
      logger.exception("Could not clear run cache for %s", ctx.run_id)
    return outcome
