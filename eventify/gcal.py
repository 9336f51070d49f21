from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import (
    GCAL_SCOPES,
    GOOGLE_CALENDAR_ID,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_TOKEN_URI,
)
from .errors import (
    CredentialExpired,
    RemoteCreateFailure,
    TransientIOFailure,
)
from .models import CalendarResult, CanonicalEvent, CredentialRecord
from .storage import CredentialStore
from .utils import as_aware_utc, utcnow

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (httplib2.HttpLib2Error, TimeoutError, ConnectionError)


# -------------------------
# Google Calendar helpers
# -------------------------
def _split_date(instant: str) -> date:
  return date.fromisoformat(instant.split("T", 1)[0])


def _compute_all_day_bounds(start_iso: str, end_iso: str) -> tuple[date, date]:
  # Google treats all-day end dates as exclusive.
  start_date = _split_date(start_iso)
  end_date = _split_date(end_iso)
  if end_date < start_date:
    end_date = start_date
  return start_date, end_date + timedelta(days=1)


def to_google_calendar_event(event: CanonicalEvent) -> Dict[str, Any]:
  body: Dict[str, Any] = {"summary": event.title}
  if event.isAllDay:
    start_date, end_exclusive = _compute_all_day_bounds(event.startDateTime,
                                                        event.endDateTime)
    body["start"] = {"date": start_date.isoformat(), "timeZone": event.timezone}
    body["end"] = {"date": end_exclusive.isoformat(), "timeZone": event.timezone}
  else:
    body["start"] = {"dateTime": event.startDateTime, "timeZone": event.timezone}
    body["end"] = {"dateTime": event.endDateTime, "timeZone": event.timezone}
  if event.location:
    body["location"] = event.location
  if event.description:
    body["description"] = event.description
  return body


def event_id_for_run(run_id: str) -> str:
  """Deterministic client-side event id; hex digits are valid base32hex."""
  return hashlib.sha1(f"eventify:{run_id}".encode("utf-8")).hexdigest()


def _error_body(exc: HttpError) -> str:
  content = getattr(exc, "content", b"")
  if isinstance(content, bytes):
    return content.decode("utf-8", errors="replace")
  return str(content)


def _translate_http_error(exc: HttpError) -> Exception:
  status = getattr(exc.resp, "status", None)
  try:
    status = int(status) if status is not None else None
  except (TypeError, ValueError):
    status = None
  body = _error_body(exc)
  if status == 401:
    return CredentialExpired("Google rejected the access token (401)")
  if status == 429 or (status is not None and status >= 500):
    return TransientIOFailure(f"Google Calendar API {status}: {body}")
  return RemoteCreateFailure(status, body)


def build_calendar_service(creds: Credentials):
  return build("calendar", "v3", credentials=creds, cache_discovery=False)


class GoogleCalendarPublisher:
  """Creates events in Google Calendar and keeps user tokens fresh."""

  def __init__(self,
               credential_store: CredentialStore,
               service_factory: Callable[[Credentials], Any] = build_calendar_service,
               client_id: Optional[str] = None,
               client_secret: Optional[str] = None,
               token_uri: str = GOOGLE_TOKEN_URI,
               clock: Callable[[], datetime] = utcnow):
    self.credential_store = credential_store
    self.service_factory = service_factory
    self.client_id = client_id or GOOGLE_CLIENT_ID
    self.client_secret = client_secret or GOOGLE_CLIENT_SECRET
    self.token_uri = token_uri
    self.clock = clock

  def _credentials(self, credential: CredentialRecord) -> Credentials:
    # google-auth compares expiry as naive UTC.
    expiry = as_aware_utc(credential.expires_at).replace(tzinfo=None)
    return Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token or None,
        token_uri=self.token_uri,
        client_id=self.client_id,
        client_secret=self.client_secret,
        scopes=GCAL_SCOPES,
        expiry=expiry,
    )

  def is_expired(self, credential: CredentialRecord) -> bool:
    return as_aware_utc(credential.expires_at) <= self.clock()

  def refresh_credential(self, credential: CredentialRecord) -> CredentialRecord:
    creds = self._credentials(credential)
    try:
      creds.refresh(GoogleRequest())
    except RefreshError as exc:
      logger.warning("Token refresh rejected for user %s: %s",
                     credential.user_id, exc)
      raise CredentialExpired(f"Failed to refresh OAuth token: {exc}") from exc
    except TransportError as exc:
      raise TransientIOFailure(f"token endpoint unreachable: {exc}") from exc

    if creds.expiry is not None:
      expires_at = creds.expiry.replace(tzinfo=timezone.utc)
    else:
      expires_at = self.clock() + timedelta(hours=1)
    updated = CredentialRecord(
        user_id=credential.user_id,
        access_token=creds.token,
        # Google does not always rotate refresh tokens.
        refresh_token=creds.refresh_token or credential.refresh_token,
        expires_at=expires_at,
    )
    self.credential_store.save(updated)
    logger.info("Refreshed OAuth token for user %s (expires %s)",
                credential.user_id, expires_at.isoformat())
    return updated

  def publish(self,
              credential: CredentialRecord,
              event: CanonicalEvent,
              calendar_id: Optional[str] = None,
              event_id: Optional[str] = None) -> CalendarResult:
    calendar_id = calendar_id or GOOGLE_CALENDAR_ID
    body = to_google_calendar_event(event)
    if event_id:
      body["id"] = event_id

    service = self.service_factory(self._credentials(credential))
    try:
      created = service.events().insert(calendarId=calendar_id,
                                        body=body).execute()
    except HttpError as exc:
      if event_id and getattr(exc.resp, "status", None) in (409, "409"):
        logger.info("Event %s already exists in %s; reusing it",
                    event_id, calendar_id)
        created = self._get_existing(service, calendar_id, event_id)
      else:
        logger.error("Google Calendar insert failed: %s", _error_body(exc))
        raise _translate_http_error(exc) from exc
    except _NETWORK_ERRORS as exc:
      raise TransientIOFailure(f"Google Calendar unreachable: {exc}") from exc

    if not isinstance(created, dict) or not created.get("id"):
      raise RemoteCreateFailure(None,
                                f"Google Calendar returned no event id: {created!r}")
    return CalendarResult(externalId=created["id"], link=created.get("htmlLink"))

  def _get_existing(self, service: Any, calendar_id: str,
                    event_id: str) -> Dict[str, Any]:
    try:
      return service.events().get(calendarId=calendar_id,
                                  eventId=event_id).execute()
    except HttpError as exc:
      raise _translate_http_error(exc) from exc
    except _NETWORK_ERRORS as exc:
      raise TransientIOFailure(f"Google Calendar unreachable: {exc}") from exc
