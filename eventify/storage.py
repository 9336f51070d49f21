"""
Relational storage for events, OAuth tokens and workflow bookkeeping.

SQLAlchemy Core over any database URL; SQLite by default. Every store takes
the engine explicitly so that tests can hand in an in-memory database.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL
from .errors import TransientIOFailure
from .models import CredentialRecord, RunContext, StoredEventRecord
from .utils import as_aware_utc, utcnow

logger = logging.getLogger(__name__)

metadata = MetaData()

events_table = Table(
    "events",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("title", Text, nullable=False),
    Column("start_datetime", String(32), nullable=False),
    Column("end_datetime", String(32), nullable=False),
    Column("start_utc", DateTime(timezone=True), nullable=False),
    Column("end_utc", DateTime(timezone=True), nullable=False),
    Column("is_all_day", Boolean, nullable=False, default=False),
    Column("timezone", String(64), nullable=False),
    Column("location", Text),
    Column("description", Text),
    Column("google_event_id", String(1024)),
    Column("google_calendar_link", Text),
    Column("image_key", String(512)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("idx_events_user_date", "user_id", "start_utc", "end_utc"),
    Index("idx_events_google_id", "google_event_id"),
)

user_tokens_table = Table(
    "user_tokens",
    metadata,
    Column("user_id", String(255), primary_key=True),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

workflow_steps_table = Table(
    "workflow_steps",
    metadata,
    Column("run_id", String(64), primary_key=True),
    Column("step_name", String(64), primary_key=True),
    Column("output", Text, nullable=False),
    Column("attempts", Integer, nullable=False, default=1),
    Column("completed_at", DateTime(timezone=True), nullable=False),
)

workflow_runs_table = Table(
    "workflow_runs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(255), nullable=False),
    Column("image_key", String(512), nullable=False),
    Column("status", String(16), nullable=False),
    Column("step", String(64)),
    Column("error_message", Text),
    Column("extracted_data", Text),
    Column("output", Text),
    Column("event_id", String(36)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Index("idx_processing_user", "user_id", "created_at"),
)

run_cache_table = Table(
    "run_cache",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
)


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or DATABASE_URL
    if url in ("sqlite://", "sqlite:///:memory:"):
        # A single shared connection, otherwise every checkout sees an empty db.
        return create_engine(url,
                             connect_args={"check_same_thread": False},
                             poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    try:
        with engine.begin() as conn:
            yield conn
    except OperationalError as exc:
        raise TransientIOFailure(f"database unavailable: {exc}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise TransientIOFailure(f"database connection lost: {exc}") from exc
        raise


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _load(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class EventStore:
    """Owner of the events table; rows are only ever inserted here."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def insert(self, record: StoredEventRecord, start_utc: datetime,
               end_utc: datetime) -> bool:
        """Insert the row unless its id is already stored; True when written."""
        values = record.model_dump()
        values["start_utc"] = start_utc
        values["end_utc"] = end_utc
        with transaction(self.engine) as conn:
            existing = conn.execute(
                select(events_table.c.id).where(
                    events_table.c.id == record.id)).first()
            if existing is not None:
                return False
            conn.execute(insert(events_table).values(**values))
        return True

    def get(self, event_id: str) -> Optional[StoredEventRecord]:
        with transaction(self.engine) as conn:
            row = conn.execute(
                select(events_table).where(events_table.c.id == event_id)
            ).mappings().first()
        if row is None:
            return None
        data = dict(row)
        data.pop("start_utc", None)
        data.pop("end_utc", None)
        data["created_at"] = as_aware_utc(data["created_at"])
        data["updated_at"] = as_aware_utc(data["updated_at"])
        return StoredEventRecord(**data)

    def list_for_user(self, user_id: str) -> List[StoredEventRecord]:
        with transaction(self.engine) as conn:
            ids = conn.execute(
                select(events_table.c.id)
                .where(events_table.c.user_id == user_id)
                .order_by(events_table.c.start_utc)
            ).scalars().all()
        return [record for record in (self.get(i) for i in ids) if record]


class CredentialStore:
    """Read and rewrite per-user OAuth tokens. Rows are created by the OAuth flow."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def get(self, user_id: str) -> Optional[CredentialRecord]:
        with transaction(self.engine) as conn:
            row = conn.execute(
                select(user_tokens_table).where(
                    user_tokens_table.c.user_id == user_id)
            ).mappings().first()
        if row is None:
            return None
        return CredentialRecord(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=as_aware_utc(row["expires_at"]),
        )

    def save(self, record: CredentialRecord) -> None:
        now = self.clock()
        values = {
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "expires_at": as_aware_utc(record.expires_at),
            "updated_at": now,
        }
        with transaction(self.engine) as conn:
            result = conn.execute(
                update(user_tokens_table)
                .where(user_tokens_table.c.user_id == record.user_id)
                .values(**values))
            if result.rowcount == 0:
                conn.execute(
                    insert(user_tokens_table).values(user_id=record.user_id,
                                                     created_at=now,
                                                     **values))


class StepJournal:
    """Durable (run_id, step_name) -> output memo for workflow steps."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def lookup(self, run_id: str, step_name: str) -> Optional[Dict[str, Any]]:
        """Return ``{"output": ...}`` when the step already completed, else None."""
        with transaction(self.engine) as conn:
            row = conn.execute(
                select(workflow_steps_table.c.output).where(
                    workflow_steps_table.c.run_id == run_id,
                    workflow_steps_table.c.step_name == step_name,
                )).first()
        if row is None:
            return None
        return {"output": _load(row[0])}

    def record(self, run_id: str, step_name: str, output: Any,
               attempts: int = 1) -> None:
        values = {
            "output": _dump(output),
            "attempts": attempts,
            "completed_at": self.clock(),
        }
        with transaction(self.engine) as conn:
            result = conn.execute(
                update(workflow_steps_table).where(
                    workflow_steps_table.c.run_id == run_id,
                    workflow_steps_table.c.step_name == step_name,
                ).values(**values))
            if result.rowcount == 0:
                conn.execute(
                    insert(workflow_steps_table).values(run_id=run_id,
                                                        step_name=step_name,
                                                        **values))

    def completed_steps(self, run_id: str) -> List[Dict[str, Any]]:
        with transaction(self.engine) as conn:
            rows = conn.execute(
                select(workflow_steps_table.c.step_name,
                       workflow_steps_table.c.attempts,
                       workflow_steps_table.c.completed_at)
                .where(workflow_steps_table.c.run_id == run_id)
                .order_by(workflow_steps_table.c.completed_at)
            ).all()
        return [{
            "step": name,
            "attempts": attempts,
            "completed_at": as_aware_utc(completed_at).isoformat(),
        } for name, attempts, completed_at in rows]


class RunStore:
    """One row per run instance; the source for status polling."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def start(self, ctx: RunContext) -> None:
        now = self.clock()
        with transaction(self.engine) as conn:
            existing = conn.execute(
                select(workflow_runs_table.c.id).where(
                    workflow_runs_table.c.id == ctx.run_id)).first()
            if existing is None:
                conn.execute(
                    insert(workflow_runs_table).values(
                        id=ctx.run_id,
                        user_id=ctx.user_id,
                        image_key=ctx.image_key,
                        status="running",
                        created_at=now,
                        updated_at=now,
                    ))
            else:
                conn.execute(
                    update(workflow_runs_table)
                    .where(workflow_runs_table.c.id == ctx.run_id)
                    .values(status="running", step=None, error_message=None,
                            updated_at=now))

    def _update(self, run_id: str, **values: Any) -> None:
        values["updated_at"] = self.clock()
        with transaction(self.engine) as conn:
            conn.execute(
                update(workflow_runs_table)
                .where(workflow_runs_table.c.id == run_id)
                .values(**values))

    def set_extracted(self, run_id: str, extracted: Dict[str, Any]) -> None:
        self._update(run_id, extracted_data=_dump(extracted))

    def complete(self, run_id: str, output: Dict[str, Any],
                 event_id: Optional[str]) -> None:
        self._update(run_id, status="complete", output=_dump(output),
                     event_id=event_id)

    def fail(self, run_id: str, step: Optional[str], message: str) -> None:
        self._update(run_id, status="errored", step=step, error_message=message)

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with transaction(self.engine) as conn:
            row = conn.execute(
                select(workflow_runs_table).where(
                    workflow_runs_table.c.id == run_id)).mappings().first()
        if row is None:
            return None
        data = dict(row)
        data["output"] = _load(data.get("output"))
        data["extracted_data"] = _load(data.get("extracted_data"))
        return data


class RunCache:
    """Key-value cache with expiry; expired entries read as absent."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.clock = clock

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = self.clock() + timedelta(seconds=ttl_seconds)
        with transaction(self.engine) as conn:
            conn.execute(delete(run_cache_table).where(run_cache_table.c.key == key))
            conn.execute(
                insert(run_cache_table).values(key=key,
                                               value=_dump(value),
                                               expires_at=expires_at))

    def get(self, key: str) -> Any:
        with transaction(self.engine) as conn:
            row = conn.execute(
                select(run_cache_table.c.value, run_cache_table.c.expires_at)
                .where(run_cache_table.c.key == key)).first()
        if row is None:
            return None
        value, expires_at = row
        if as_aware_utc(expires_at) <= self.clock():
            return None
        return _load(value)

    def delete(self, key: str) -> None:
        with transaction(self.engine) as conn:
            conn.execute(delete(run_cache_table).where(run_cache_table.c.key == key))
