from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from ..config import (
    RAW_TEXT_KEEP_CHARS,
    RAW_TEXT_PREVIEW_CHARS,
    UNKNOWN_EVENT_TITLE,
)
from ..models import RawExtraction
from ..utils import _clean_optional_str, _log_debug

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = """You are an expert at extracting event information from images of flyers, posters, invitations, and notes.

Analyze this image and extract any event details you can find.

Return ONLY a valid JSON object with the following structure (include only fields that are present):
{
  "title": "The name or title of the event",
  "start_date": "YYYY-MM-DD, or the date exactly as written if the year is not shown",
  "end_date": "Same format as start_date, only if the event spans several days",
  "start_time": "HH:MM AM/PM format (12-hour)",
  "end_time": "HH:MM AM/PM format",
  "location": "Address or venue name",
  "description": "Any additional details about the event"
}

Important rules:
1. Do NOT invent a year that is not printed on the image
2. Leave out end_date and end_time when they are not shown
3. Leave out start_time for events without a time of day
4. Do NOT include any text before or after the JSON
5. If you cannot find any event information, return: {"title": "Unknown Event"}

Return ONLY the JSON object, no other text."""

_FIELDS = ("title", "start_date", "end_date", "start_time", "end_time",
           "location", "description")

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class VisionService(Protocol):

  async def infer(self,
                  image_bytes: bytes,
                  prompt: str,
                  content_type: Optional[str] = None) -> Any:
    ...


# -------------------------
# Response shape detection
# -------------------------
def _choices_content(value: Any) -> Optional[str]:
  choices = value.get("choices")
  if not isinstance(choices, list) or not choices:
    return None
  first = choices[0]
  if not isinstance(first, dict):
    return None
  message = first.get("message")
  if isinstance(message, dict) and isinstance(message.get("content"), str):
    return message["content"]
  if isinstance(first.get("text"), str):
    return first["text"]
  return None


def _key_text(key: str) -> Callable[[Dict[str, Any]], Optional[str]]:

  def detect(value: Dict[str, Any]) -> Optional[str]:
    text = value.get(key)
    return text if isinstance(text, str) else None

  return detect


# Tried in order; the first rule that yields a string wins.
_SHAPE_RULES: List[Tuple[str, Callable[[Dict[str, Any]], Optional[str]]]] = [
    ("response", _key_text("response")),
    ("description", _key_text("description")),
    ("output_text", _key_text("output_text")),
    ("choices", _choices_content),
]


def response_text(response: Any) -> str:
  """Pull the model's free text out of whatever shape the service returned."""
  if isinstance(response, str):
    return response
  if isinstance(response, bytes):
    return response.decode("utf-8", errors="replace")
  if isinstance(response, dict):
    # A mapping that already looks like event fields is the payload itself.
    if any(key in response for key in ("title", "start_date", "start_time")):
      return json.dumps(response, ensure_ascii=False)
    for name, rule in _SHAPE_RULES:
      text = rule(response)
      if text is not None:
        logger.debug("Vision response matched shape %s", name)
        return text
  return str(response)


# -------------------------
# JSON tolerance
# -------------------------
def _json_candidates(text: str) -> List[str]:
  cleaned = text.strip()
  candidates = [cleaned]
  fence = _FENCE_RE.search(cleaned)
  if fence:
    cleaned = fence.group(1).strip()
    candidates.append(cleaned)
  left = cleaned.find("{")
  right = cleaned.rfind("}")
  if left != -1 and right > left:
    candidates.append(cleaned[left:right + 1])
  return candidates


def _load_event_object(text: str) -> Optional[Dict[str, Any]]:
  seen = set()
  for candidate in _json_candidates(text):
    if not candidate or candidate in seen:
      continue
    seen.add(candidate)
    try:
      parsed = json.loads(candidate)
    except ValueError:
      continue
    if isinstance(parsed, list):
      parsed = next((item for item in parsed if isinstance(item, dict)), None)
    if isinstance(parsed, dict):
      return parsed
  return None


def parse_event_json(response: Any) -> RawExtraction:
  text = response_text(response)
  payload = _load_event_object(text)
  if payload is None:
    logger.warning("Vision output did not contain a JSON object")
    _log_debug(f"[VISION] unparseable output: {text}")
    return RawExtraction(
        title=UNKNOWN_EVENT_TITLE,
        description=("Could not extract event details. Raw text: "
                     f"{text[:RAW_TEXT_PREVIEW_CHARS]}"),
        raw_text=text,
    )
  fields = {name: _clean_optional_str(payload.get(name)) for name in _FIELDS}
  return RawExtraction(raw_text=text[:RAW_TEXT_KEEP_CHARS], **fields)


async def extract_event_from_image(vision: VisionService,
                                   image_bytes: bytes,
                                   content_type: Optional[str] = None) -> RawExtraction:
  logger.info("Calling vision service (%d bytes)", len(image_bytes))
  response = await vision.infer(image_bytes,
                                EXTRACTION_PROMPT,
                                content_type=content_type)
  raw = parse_event_json(response)
  logger.info("Extracted fields: %s",
              sorted(name for name in _FIELDS if getattr(raw, name)))
  return raw
