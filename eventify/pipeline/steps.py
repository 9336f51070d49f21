from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import TypeAdapter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from ..config import STEP_BACKOFF_MAX_SECONDS, STEP_MAX_ATTEMPTS
from ..errors import PipelineError
from ..storage import StepJournal

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
  return isinstance(exc, PipelineError) and exc.retryable


def _log_retry(run_id: str, step: str) -> Callable[[RetryCallState], None]:

  def log(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning("run=%s step=%s attempt %s failed (%s); retrying in %.1fs",
                   run_id, step, retry_state.attempt_number, exc, delay)

  return log


class StepRunner:
  """
  Runs one named step of a workflow run.

  A completed step's output is written to the journal before ``do`` returns,
  and a later call for the same ``(run_id, step)`` replays that output
  without running the step again. Transient failures are retried with
  jittered exponential backoff up to ``max_attempts``.
  """

  def __init__(self,
               journal: StepJournal,
               max_attempts: int = STEP_MAX_ATTEMPTS,
               wait: Optional[wait_base] = None):
    self.journal = journal
    self.max_attempts = max(1, max_attempts)
    self.wait = wait or wait_random_exponential(multiplier=0.5,
                                                max=STEP_BACKOFF_MAX_SECONDS)

  async def do(self,
               run_id: str,
               step: str,
               fn: Callable[[], Awaitable[Any]],
               adapter: Optional[TypeAdapter] = None) -> Any:
    memo = await asyncio.to_thread(self.journal.lookup, run_id, step)
    if memo is not None:
      logger.info("run=%s step=%s replayed from journal", run_id, step)
      output = memo["output"]
      return adapter.validate_python(output) if adapter else output

    logger.info("run=%s step=%s starting", run_id, step)
    attempts = 0
    result: Any = None
    retrying = AsyncRetrying(
        stop=stop_after_attempt(self.max_attempts),
        wait=self.wait,
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry(run_id, step),
        reraise=True,
    )
    async for attempt in retrying:
      with attempt:
        attempts = attempt.retry_state.attempt_number
        result = await fn()

    output = adapter.dump_python(result, mode="json") if adapter else result
    await asyncio.to_thread(self.journal.record, run_id, step, output, attempts)
    logger.info("run=%s step=%s completed after %d attempt(s)", run_id, step,
                attempts)
    return result
