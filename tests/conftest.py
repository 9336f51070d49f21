from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httplib2
import pytest
from googleapiclient.errors import HttpError
from tenacity import wait_none

from eventify.blobs import LocalObjectStore
from eventify.gcal import GoogleCalendarPublisher
from eventify.models import CredentialRecord
from eventify.pipeline.orchestrator import EventPipeline
from eventify.pipeline.steps import StepRunner
from eventify.storage import CredentialStore, StepJournal, create_db_engine, init_db

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
  return FIXED_NOW


def http_error(status: int, body: str = "{}") -> HttpError:
  return HttpError(httplib2.Response({"status": status}), body.encode("utf-8"))


class FakeVision:

  def __init__(self, response: Any = None, errors: Optional[List[Exception]] = None):
    self.response = response if response is not None else json.dumps({
        "title": "Study Group",
        "start_date": "3/5/25",
        "start_time": "2pm",
        "location": "Library Room 4",
    })
    self.errors = list(errors or [])
    self.calls = 0
    self.content_types: List[Optional[str]] = []

  async def infer(self, image_bytes: bytes, prompt: str,
                  content_type: Optional[str] = None) -> Any:
    self.calls += 1
    self.content_types.append(content_type)
    if self.errors:
      raise self.errors.pop(0)
    return self.response


class _Call:

  def __init__(self, fn):
    self._fn = fn

  def execute(self):
    return self._fn()


class FakeEvents:

  def __init__(self, service: "FakeCalendarService"):
    self.service = service

  def insert(self, calendarId: str, body: Dict[str, Any]) -> _Call:

    def run():
      self.service.insert_calls.append({
          "calendarId": calendarId,
          "body": body,
          "token": self.service.current_token,
      })
      if self.service.insert_errors:
        raise self.service.insert_errors.pop(0)
      event_id = body.get("id") or f"gcal-{len(self.service.created) + 1}"
      created = {
          "id": event_id,
          "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
          "status": "confirmed",
          "summary": body.get("summary"),
      }
      self.service.created[event_id] = created
      return created

    return _Call(run)

  def get(self, calendarId: str, eventId: str) -> _Call:

    def run():
      self.service.get_calls.append((calendarId, eventId))
      if eventId not in self.service.created:
        raise http_error(404, '{"error": "not found"}')
      return self.service.created[eventId]

    return _Call(run)


class FakeCalendarService:

  def __init__(self):
    self.insert_calls: List[Dict[str, Any]] = []
    self.get_calls: List[Any] = []
    self.insert_errors: List[Exception] = []
    self.created: Dict[str, Dict[str, Any]] = {}
    self.current_token: Optional[str] = None

  def factory(self, creds):
    self.current_token = creds.token
    return self

  def events(self) -> FakeEvents:
    return FakeEvents(self)


@pytest.fixture
def engine():
  engine = create_db_engine("sqlite://")
  init_db(engine)
  yield engine
  engine.dispose()


@pytest.fixture
def object_store(tmp_path):
  return LocalObjectStore(tmp_path / "blobs")


@pytest.fixture
def calendar_service():
  return FakeCalendarService()


@pytest.fixture
def credential_store(engine):
  return CredentialStore(engine, clock=fixed_clock)


@pytest.fixture
def publisher(credential_store, calendar_service):
  return GoogleCalendarPublisher(credential_store,
                                 service_factory=calendar_service.factory,
                                 client_id="client-id",
                                 client_secret="client-secret",
                                 clock=fixed_clock)


@pytest.fixture
def stored_credential(credential_store):
  record = CredentialRecord(
      user_id="user-1",
      access_token="access-1",
      refresh_token="refresh-1",
      expires_at=FIXED_NOW + timedelta(hours=1),
  )
  credential_store.save(record)
  return record


@pytest.fixture
def fake_refresh(monkeypatch):
  """Stand-in for the OAuth token endpoint behind Credentials.refresh."""
  from google.oauth2.credentials import Credentials

  state = {"calls": 0, "rotate": False, "error": None}

  def refresh(self, request):
    state["calls"] += 1
    if state["error"] is not None:
      raise state["error"]
    self.token = f"refreshed-{state['calls']}"
    self.expiry = (FIXED_NOW + timedelta(hours=1)).replace(tzinfo=None)
    if state["rotate"]:
      self._refresh_token = f"rotated-{state['calls']}"

  monkeypatch.setattr(Credentials, "refresh", refresh)
  return state


@pytest.fixture
def vision():
  return FakeVision()


@pytest.fixture
def pipeline(engine, object_store, vision, publisher):
  runner = StepRunner(StepJournal(engine, clock=fixed_clock),
                      max_attempts=3,
                      wait=wait_none())
  return EventPipeline(engine=engine,
                       object_store=object_store,
                       vision=vision,
                       publisher=publisher,
                       step_runner=runner,
                       clock=fixed_clock)


@pytest.fixture
def store_event(engine):
  """Insert a stored event row the way save-and-cleanup does."""
  from eventify.models import StoredEventRecord
  from eventify.storage import EventStore
  from eventify.utils import to_utc

  store = EventStore(engine)
  counter = {"n": 0}

  def add(title: str, start: str, end: str, user_id: str = "user-1",
          timezone_name: str = "America/New_York") -> StoredEventRecord:
    counter["n"] += 1
    record = StoredEventRecord(
        id=f"evt-{counter['n']}",
        user_id=user_id,
        title=title,
        start_datetime=start,
        end_datetime=end,
        timezone=timezone_name,
        google_event_id=f"g-{counter['n']}",
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
    )
    store.insert(record, to_utc(start), to_utc(end))
    return record

  return add
