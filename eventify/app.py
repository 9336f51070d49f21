from __future__ import annotations

from typing import Optional

from fastapi import FastAPI

from .pipeline.orchestrator import EventPipeline, create_pipeline
from .routes import router
from .utils import configure_logging


def create_app(pipeline: Optional[EventPipeline] = None) -> FastAPI:
  configure_logging()
  app = FastAPI(title="EventifyIt")
  app.state.pipeline = pipeline or create_pipeline()
  app.include_router(router)
  return app
