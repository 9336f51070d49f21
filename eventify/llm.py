from __future__ import annotations

import base64
import logging
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .config import (
    OPENAI_API_KEY,
    VISION_FALLBACK_MODEL,
    VISION_MODEL,
    VISION_MAX_TOKENS,
    VISION_TEMPERATURE,
)
from .errors import TransientIOFailure
from .utils import _log_debug

logger = logging.getLogger(__name__)

async_client: Optional[AsyncOpenAI] = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

_TRANSIENT_OPENAI_ERRORS = (
    openai.APIConnectionError,  # includes APITimeoutError
    openai.RateLimitError,
    openai.InternalServerError,
)


def get_async_client() -> AsyncOpenAI:
  if async_client is None:
    raise RuntimeError("OPENAI_API_KEY is not set")
  return async_client


def _image_data_url(image_bytes: bytes, content_type: Optional[str]) -> str:
  mime = content_type or "image/jpeg"
  encoded = base64.b64encode(image_bytes).decode("ascii")
  return f"data:{mime};base64,{encoded}"


def _extract_message_text(content: Any) -> str:
  if isinstance(content, str):
    return content.strip()
  if isinstance(content, list):
    chunks = []
    for item in content:
      if isinstance(item, dict):
        text_val = item.get("text")
        if isinstance(text_val, str) and text_val.strip():
          chunks.append(text_val.strip())
      elif isinstance(item, str) and item.strip():
        chunks.append(item.strip())
    return " ".join(chunks).strip()
  return ""


class OpenAIVisionService:
  """Image + prompt in, free text out. Shape tolerance lives in the adapter."""

  def __init__(self,
               client: Optional[AsyncOpenAI] = None,
               model: Optional[str] = None,
               fallback_model: Optional[str] = VISION_FALLBACK_MODEL,
               max_tokens: int = VISION_MAX_TOKENS,
               temperature: float = VISION_TEMPERATURE):
    self._client = client
    self.model = model or VISION_MODEL
    self.fallback_model = fallback_model
    self.max_tokens = max_tokens
    self.temperature = temperature

  @property
  def client(self) -> AsyncOpenAI:
    return self._client or get_async_client()

  async def infer(self,
                  image_bytes: bytes,
                  prompt: str,
                  content_type: Optional[str] = None,
                  model: Optional[str] = None) -> str:
    model_name = model or self.model
    user_parts: List[Dict[str, Any]] = [
        {
            "type": "image_url",
            "image_url": {
                "url": _image_data_url(image_bytes, content_type)
            }
        },
        {
            "type": "text",
            "text": prompt
        },
    ]
    started = time.perf_counter()
    try:
      completion = await self.client.chat.completions.create(
          model=model_name,
          messages=[{
              "role": "user",
              "content": user_parts
          }],
          max_tokens=self.max_tokens,
          temperature=self.temperature,
      )
    except _TRANSIENT_OPENAI_ERRORS as exc:
      _log_debug(f"[VISION] transient error: {exc!r}")
      raise TransientIOFailure(f"vision service unavailable: {exc}") from exc
    except (openai.NotFoundError, openai.BadRequestError) as exc:
      if not self.fallback_model or model_name == self.fallback_model:
        raise
      logger.warning("Vision model %s rejected the request (%s); retrying with %s",
                     model_name, exc, self.fallback_model)
      return await self.infer(image_bytes,
                              prompt,
                              content_type=content_type,
                              model=self.fallback_model)

    latency_ms = (time.perf_counter() - started) * 1000.0
    choice = completion.choices[0]
    raw_content = _extract_message_text(choice.message.content)
    _log_debug(f"[VISION RAW] model={model_name} latency_ms={latency_ms:.0f}")
    _log_debug(raw_content if raw_content else "(empty)")
    _log_debug("[VISION RAW END]")
    return raw_content
