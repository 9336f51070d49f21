from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter
from tenacity import wait_none

from eventify.errors import TransientIOFailure, ValidationError
from eventify.models import CalendarResult
from eventify.pipeline.steps import StepRunner
from eventify.storage import StepJournal

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def journal(engine):
  return StepJournal(engine, clock=lambda: NOW)


@pytest.fixture
def runner(journal):
  return StepRunner(journal, max_attempts=3, wait=wait_none())


def _flaky(failures, value):
  calls = {"n": 0}

  async def fn():
    calls["n"] += 1
    if calls["n"] <= failures:
      raise TransientIOFailure("try again")
    return value

  return fn, calls


@pytest.mark.asyncio
async def test_completed_step_is_replayed(runner, journal):
  adapter = TypeAdapter(CalendarResult)
  fn, calls = _flaky(0, CalendarResult(externalId="e1", link="https://x"))
  first = await runner.do("r1", "create-calendar-event", fn, adapter)
  second = await runner.do("r1", "create-calendar-event", fn, adapter)
  assert calls["n"] == 1
  assert first == second == CalendarResult(externalId="e1", link="https://x")
  assert journal.lookup("r1", "create-calendar-event") == {
      "output": {"externalId": "e1", "link": "https://x"}}


@pytest.mark.asyncio
async def test_transient_failures_are_retried(runner, journal):
  fn, calls = _flaky(2, "ok")
  assert await runner.do("r1", "check-conflicts", fn) == "ok"
  assert calls["n"] == 3
  assert journal.completed_steps("r1")[0]["attempts"] == 3


@pytest.mark.asyncio
async def test_retries_are_bounded(runner, journal):
  fn, calls = _flaky(5, "never")
  with pytest.raises(TransientIOFailure):
    await runner.do("r1", "check-conflicts", fn)
  assert calls["n"] == 3
  assert journal.lookup("r1", "check-conflicts") is None


@pytest.mark.asyncio
async def test_terminal_failures_are_not_retried(runner, journal):
  calls = {"n": 0}

  async def fn():
    calls["n"] += 1
    raise ValidationError({"title": ["Title is required"]})

  with pytest.raises(ValidationError):
    await runner.do("r1", "validate-event", fn)
  assert calls["n"] == 1
  assert journal.lookup("r1", "validate-event") is None
