from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request

from .config import (
    ALLOWED_IMAGE_TYPES,
    API_BASE,
    DEFAULT_TIMEZONE,
    GOOGLE_CALENDAR_ID,
    IMAGE_KEY_PREFIX,
    MAX_IMAGE_BYTES,
)
from .errors import PipelineError, WorkflowFailed
from .models import RunContext
from .pipeline.orchestrator import EventPipeline

router = APIRouter()
logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


def _get_pipeline(request: Request) -> EventPipeline:
  return request.app.state.pipeline


def _request_user_id(request: Request) -> str:
  # Session handling lives in front of this service; it forwards the user id.
  user_id = (request.headers.get("x-user-id") or "").strip()
  return user_id or ANONYMOUS_USER


async def _run_in_background(pipeline: EventPipeline, ctx: RunContext) -> None:
  try:
    await pipeline.run(ctx.image_key,
                       ctx.user_id,
                       timezone=ctx.timezone,
                       calendar_id=ctx.calendar_id,
                       run_id=ctx.run_id)
  except WorkflowFailed as exc:
    # Already recorded on the run row; the caller polls workflow-status.
    logger.info("Background run %s ended with error at %s", exc.run_id, exc.step)
  except PipelineError as exc:
    # Run bookkeeping itself failed, so the row may still read "running".
    logger.exception("Background run %s failed outside a step", ctx.run_id)
    try:
      pipeline.runs.fail(ctx.run_id, None, exc.message)
    except PipelineError:
      logger.exception("Could not mark run %s as errored", ctx.run_id)


@router.post(f"{API_BASE}/uploads")
async def upload_image(request: Request,
                       background_tasks: BackgroundTasks,
                       timezone: Optional[str] = Query(None),
                       calendar: str = Query(GOOGLE_CALENDAR_ID)) -> Dict[str, Any]:
  pipeline = _get_pipeline(request)
  content_type = (request.headers.get("content-type") or "").split(";")[0].strip().lower()
  extension = ALLOWED_IMAGE_TYPES.get(content_type)
  if not extension:
    raise HTTPException(status_code=400,
                        detail="Invalid file type. Supported: JPEG, PNG, WebP, GIF")

  body = await request.body()
  if not body:
    raise HTTPException(status_code=400, detail="No image file provided")
  if len(body) > MAX_IMAGE_BYTES:
    raise HTTPException(status_code=413, detail="Image is too large")

  ctx = RunContext(
      run_id=uuid.uuid4().hex,
      image_key=f"{IMAGE_KEY_PREFIX}/{uuid.uuid4()}.{extension}",
      user_id=_request_user_id(request),
      timezone=timezone or DEFAULT_TIMEZONE,
      calendar_id=calendar,
  )
  try:
    pipeline.object_store.put(ctx.image_key, body, content_type)
    pipeline.runs.start(ctx)
  except PipelineError as exc:
    logger.exception("Upload failed for %s", ctx.image_key)
    raise HTTPException(status_code=503, detail=exc.message) from exc

  background_tasks.add_task(_run_in_background, pipeline, ctx)
  logger.info("Accepted upload %s as run %s", ctx.image_key, ctx.run_id)
  return {"workflowId": ctx.run_id, "imageKey": ctx.image_key}


@router.get(f"{API_BASE}/workflow-status")
def workflow_status(request: Request,
                    id: Optional[str] = Query(None)) -> Dict[str, Any]:
  if not id:
    raise HTTPException(status_code=400, detail="Missing workflow ID")
  pipeline = _get_pipeline(request)
  try:
    status = pipeline.get_status(id)
  except PipelineError as exc:
    raise HTTPException(status_code=503, detail=exc.message) from exc
  if status is None:
    raise HTTPException(status_code=404, detail="Workflow not found")
  return {
      "id": status.id,
      "status": status.status,
      "output": status.output,
      "error": status.error,
  }
