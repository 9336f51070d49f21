from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class RawExtraction(BaseModel):
    """Best-effort fields read off the image; nothing here is trusted."""
    model_config = ConfigDict(frozen=True)

    title: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    raw_text: Optional[str] = None


class CanonicalEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    startDateTime: str  # "YYYY-MM-DDTHH:MM:SS+HH:MM"
    endDateTime: str
    isAllDay: bool
    timezone: str
    location: Optional[str] = None
    description: Optional[str] = None


class ConflictRecord(BaseModel):
    title: str
    start: str
    end: str
    googleEventId: Optional[str] = None


class CalendarResult(BaseModel):
    externalId: str
    link: Optional[str] = None


class CredentialRecord(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime


class StoredEventRecord(BaseModel):
    id: str
    user_id: str
    title: str
    start_datetime: str
    end_datetime: str
    is_all_day: bool = False
    timezone: str
    location: Optional[str] = None
    description: Optional[str] = None
    google_event_id: Optional[str] = None
    google_calendar_link: Optional[str] = None
    image_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RunContext(BaseModel):
    run_id: str
    image_key: str
    user_id: str
    timezone: str
    calendar_id: str = "primary"


class PipelineResult(BaseModel):
    success: bool
    event: Optional[CanonicalEvent] = None
    calendarLink: Optional[str] = None
    conflicts: Optional[List[ConflictRecord]] = None
    error: Optional[str] = None


class WorkflowStatus(BaseModel):
    id: str
    status: str  # "running" | "complete" | "errored"
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    step: Optional[str] = None
