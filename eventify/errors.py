"""
Failure taxonomy for the image-to-calendar pipeline.

Only TransientIOFailure is retried by the step runner; everything else is
either terminal for the run or handled explicitly by the orchestrator.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
  retryable = False

  def __init__(self, message: str):
    super().__init__(message)
    self.message = message


class ResourceNotFound(PipelineError):
  """The image key does not resolve in the object store."""


class TransientIOFailure(PipelineError):
  retryable = True


class ValidationError(PipelineError):

  def __init__(self, errors: Dict[str, List[str]]):
    self.errors = {field: list(messages) for field, messages in errors.items()}
    parts = [f"{field}: {'; '.join(messages)}"
             for field, messages in self.errors.items()]
    super().__init__("Validation failed: " + " | ".join(parts))


class CredentialMissing(PipelineError):
  """No stored token for the user; re-authorization happens out of band."""


class CredentialExpired(PipelineError):
  """The access token was rejected, or refreshing it failed."""


class RemoteCreateFailure(PipelineError):

  def __init__(self, status: Optional[int], body: str):
    self.status = status
    self.body = body
    super().__init__(f"Google Calendar API error: {status} - {body}")


class WorkflowFailed(PipelineError):
  """Terminal error for a run, with the steps that completed before it."""

  def __init__(self,
               run_id: str,
               step: str,
               cause: BaseException,
               trace: Optional[List[Dict[str, Any]]] = None):
    self.run_id = run_id
    self.step = step
    self.cause = cause
    self.trace = list(trace or [])
    super().__init__(f"{step} failed: {cause}")
