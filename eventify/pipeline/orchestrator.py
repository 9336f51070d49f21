"""
Durable image -> calendar workflow.

Steps run strictly in order and each one is journaled by StepRunner, so a
run resumed with the same run id picks up after the last completed step.
extract-event-data, validate-event and create-calendar-event are fatal on
failure; check-conflicts and save-and-cleanup only degrade the result.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import TypeAdapter
from sqlalchemy.engine import Engine

from ..blobs import LocalObjectStore
from ..config import DEFAULT_TIMEZONE, GOOGLE_CALENDAR_ID, RUN_CACHE_TTL_SECONDS
from ..errors import (
    CredentialExpired,
    CredentialMissing,
    ResourceNotFound,
    WorkflowFailed,
)
from ..gcal import GoogleCalendarPublisher, event_id_for_run
from ..llm import OpenAIVisionService
from ..models import (
    CalendarResult,
    CanonicalEvent,
    ConflictRecord,
    CredentialRecord,
    PipelineResult,
    RawExtraction,
    RunContext,
    StoredEventRecord,
    WorkflowStatus,
)
from ..storage import (
    CredentialStore,
    EventStore,
    RunCache,
    RunStore,
    StepJournal,
    create_db_engine,
    init_db,
)
from ..utils import utcnow
from .conflicts import find_conflicts
from .normalizer import normalize
from .persistence import ObjectStore, PersistenceManager, run_cache_key
from .steps import StepRunner
from .vision import VisionService, extract_event_from_image

logger = logging.getLogger(__name__)

STEP_EXTRACT = "extract-event-data"
STEP_VALIDATE = "validate-event"
STEP_CONFLICTS = "check-conflicts"
STEP_CREATE = "create-calendar-event"
STEP_SAVE = "save-and-cleanup"

_RAW = TypeAdapter(RawExtraction)
_EVENT = TypeAdapter(CanonicalEvent)
_CONFLICTS = TypeAdapter(List[ConflictRecord])
_CALENDAR = TypeAdapter(CalendarResult)
_STORED = TypeAdapter(StoredEventRecord)


class EventPipeline:

  def __init__(self,
               engine: Engine,
               object_store: ObjectStore,
               vision: VisionService,
               publisher: GoogleCalendarPublisher,
               step_runner: Optional[StepRunner] = None,
               clock: Callable[[], datetime] = utcnow,
               cache_ttl_seconds: int = RUN_CACHE_TTL_SECONDS):
    self.engine = engine
    self.object_store = object_store
    self.vision = vision
    self.publisher = publisher
    self.clock = clock
    self.cache_ttl_seconds = cache_ttl_seconds
    self.journal = StepJournal(engine, clock=clock)
    self.runs = RunStore(engine, clock=clock)
    self.run_cache = RunCache(engine, clock=clock)
    self.credentials = CredentialStore(engine, clock=clock)
    self.steps = step_runner or StepRunner(self.journal)
    self.persistence = PersistenceManager(EventStore(engine), object_store,
                                          self.run_cache, clock=clock)

  # -------------------------
  # Public API
  # -------------------------
  async def run(self,
                image_key: str,
                user_id: str,
                timezone: Optional[str] = None,
                calendar_id: str = GOOGLE_CALENDAR_ID,
                run_id: Optional[str] = None) -> PipelineResult:
    ctx = RunContext(
        run_id=run_id or uuid.uuid4().hex,
        image_key=image_key,
        user_id=user_id,
        timezone=timezone or DEFAULT_TIMEZONE,
        calendar_id=calendar_id or GOOGLE_CALENDAR_ID,
    )
    logger.info("[Workflow] Starting run %s for user %s, image %s", ctx.run_id,
                ctx.user_id, ctx.image_key)
    await asyncio.to_thread(self.runs.start, ctx)
    try:
      result, stored_id = await self._execute(ctx)
    except WorkflowFailed as exc:
      logger.error("[Workflow] Run %s failed at %s: %s", ctx.run_id, exc.step,
                   exc.cause)
      await asyncio.to_thread(self.runs.fail, ctx.run_id, exc.step,
                              str(exc.cause))
      raise
    await asyncio.to_thread(self.runs.complete, ctx.run_id,
                            result.model_dump(mode="json", exclude_none=True),
                            stored_id)
    logger.info("[Workflow] Run %s complete", ctx.run_id)
    return result

  def get_status(self, run_id: str) -> Optional[WorkflowStatus]:
    row = self.runs.get(run_id)
    if row is None:
      return None
    return WorkflowStatus(id=row["id"],
                          status=row["status"],
                          output=row.get("output"),
                          error=row.get("error_message"),
                          step=row.get("step"))

  # -------------------------
  # Step sequencing
  # -------------------------
  async def _execute(self, ctx: RunContext) -> Tuple[PipelineResult, Optional[str]]:
    event = await self._canonical_event(ctx)
    conflicts = await self._check_conflicts(ctx, event)
    calendar = await self._fatal_step(ctx, STEP_CREATE,
                                      lambda: self._create_calendar_event(ctx, event),
                                      _CALENDAR)
    stored_id = await self._save_and_cleanup(ctx, event, calendar)
    result = PipelineResult(
        success=True,
        event=event,
        calendarLink=calendar.link,
        conflicts=conflicts or None,
    )
    return result, stored_id

  async def _canonical_event(self, ctx: RunContext) -> CanonicalEvent:
    memo = await asyncio.to_thread(self.journal.lookup, ctx.run_id, STEP_VALIDATE)
    if memo is None:
      cached = await self._cached_event(ctx)
      if cached is not None:
        logger.info("run=%s recovered canonical event from cache", ctx.run_id)
        await asyncio.to_thread(self.journal.record, ctx.run_id, STEP_VALIDATE,
                                _EVENT.dump_python(cached, mode="json"))
        return cached
      raw = await self._fatal_step(ctx, STEP_EXTRACT,
                                   lambda: self._extract(ctx), _RAW)
      return await self._fatal_step(ctx, STEP_VALIDATE,
                                    lambda: self._validate(ctx, raw), _EVENT)
    return _EVENT.validate_python(memo["output"])

  async def _fatal_step(self, ctx: RunContext, step: str, fn,
                        adapter: TypeAdapter) -> Any:
    try:
      return await self.steps.do(ctx.run_id, step, fn, adapter)
    except Exception as exc:
      raise WorkflowFailed(ctx.run_id, step, exc,
                           trace=await self._trace(ctx)) from exc

  async def _trace(self, ctx: RunContext) -> List[Dict[str, Any]]:
    try:
      return await asyncio.to_thread(self.journal.completed_steps, ctx.run_id)
    except Exception:
      logger.exception("Could not load step trace for run %s", ctx.run_id)
      return []

  async def _cached_event(self, ctx: RunContext) -> Optional[CanonicalEvent]:
    try:
      cached = await asyncio.to_thread(self.run_cache.get,
                                       run_cache_key(ctx.run_id))
    except Exception:
      logger.exception("Run cache lookup failed for %s", ctx.run_id)
      return None
    if cached is None:
      return None
    return _EVENT.validate_python(cached)

  # -------------------------
  # Step bodies
  # -------------------------
  async def _extract(self, ctx: RunContext) -> RawExtraction:
    image_bytes = await asyncio.to_thread(self.object_store.get, ctx.image_key)
    if image_bytes is None:
      raise ResourceNotFound(f"Image not found: {ctx.image_key}")
    content_type = None
    lookup_type = getattr(self.object_store, "content_type", None)
    if callable(lookup_type):
      content_type = await asyncio.to_thread(lookup_type, ctx.image_key)
    raw = await extract_event_from_image(self.vision, image_bytes, content_type)
    try:
      await asyncio.to_thread(self.runs.set_extracted, ctx.run_id,
                              raw.model_dump(mode="json"))
    except Exception:
      logger.exception("Could not record extracted data for run %s", ctx.run_id)
    return raw

  async def _validate(self, ctx: RunContext, raw: RawExtraction) -> CanonicalEvent:
    event = normalize(raw, ctx.timezone)
    await asyncio.to_thread(self.run_cache.put, run_cache_key(ctx.run_id),
                            _EVENT.dump_python(event, mode="json"),
                            self.cache_ttl_seconds)
    return event

  async def _check_conflicts(self, ctx: RunContext,
                             event: CanonicalEvent) -> List[ConflictRecord]:

    async def query() -> List[ConflictRecord]:
      return await asyncio.to_thread(find_conflicts, self.engine, ctx.user_id,
                                     event.startDateTime, event.endDateTime)

    try:
      conflicts = await self.steps.do(ctx.run_id, STEP_CONFLICTS, query,
                                      _CONFLICTS)
    except Exception:
      logger.exception("Conflict check failed for run %s; continuing without it",
                       ctx.run_id)
      return []
    if conflicts:
      logger.info("run=%s found %d conflicting event(s)", ctx.run_id,
                  len(conflicts))
    return conflicts

  async def _create_calendar_event(self, ctx: RunContext,
                                   event: CanonicalEvent) -> CalendarResult:
    credential = await asyncio.to_thread(self.credentials.get, ctx.user_id)
    if credential is None:
      raise CredentialMissing(
          f"No Google credentials for user {ctx.user_id}; re-authorization required")
    if self.publisher.is_expired(credential):
      logger.info("run=%s access token expired; refreshing", ctx.run_id)
      credential = await asyncio.to_thread(self.publisher.refresh_credential,
                                           credential)

    event_id = event_id_for_run(ctx.run_id)
    try:
      result = await self._publish(credential, event, ctx, event_id)
    except CredentialExpired:
      logger.info("run=%s token rejected by Google; refreshing and retrying once",
                  ctx.run_id)
      credential = await asyncio.to_thread(self.publisher.refresh_credential,
                                           credential)
      result = await self._publish(credential, event, ctx, event_id)
    return result

  async def _publish(self, credential: CredentialRecord, event: CanonicalEvent,
                     ctx: RunContext, event_id: str) -> CalendarResult:
    return await asyncio.to_thread(self.publisher.publish, credential, event,
                                   ctx.calendar_id, event_id)

  async def _save_and_cleanup(self, ctx: RunContext, event: CanonicalEvent,
                              calendar: CalendarResult) -> Optional[str]:

    async def commit() -> StoredEventRecord:
      return await asyncio.to_thread(self.persistence.commit, ctx, event,
                                     calendar)

    try:
      stored = await self.steps.do(ctx.run_id, STEP_SAVE, commit, _STORED)
    except Exception:
      logger.exception("save-and-cleanup failed for run %s (calendar event %s "
                       "was created)", ctx.run_id, calendar.externalId)
      return None
    return stored.id


def create_pipeline(engine: Optional[Engine] = None,
                    object_store: Optional[ObjectStore] = None,
                    vision: Optional[VisionService] = None,
                    publisher: Optional[GoogleCalendarPublisher] = None) -> EventPipeline:
  """Wire the pipeline to the configured database, image store and services."""
  engine = engine or create_db_engine()
  init_db(engine)
  return EventPipeline(
      engine=engine,
      object_store=object_store or LocalObjectStore(),
      vision=vision or OpenAIVisionService(),
      publisher=publisher or GoogleCalendarPublisher(CredentialStore(engine)),
  )
