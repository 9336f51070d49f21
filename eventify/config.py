from __future__ import annotations

import os
import pathlib
import re

LLM_DEBUG = os.getenv("LLM_DEBUG", "0") == "1"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SLASH_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})$")
TIME_24_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
TIME_12_RE = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\.?$")

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_EVENT_TITLE = "Untitled Event"
UNKNOWN_EVENT_TITLE = "Unknown Event"
DESCRIPTION_FOOTER = ("---", "Created by EventifyIt")

# Fixed offsets embedded into emitted instants; zones missing here fall back
# to US Eastern.
TIMEZONE_OFFSETS = {
    "America/New_York": "-05:00",
    "America/Chicago": "-06:00",
    "America/Denver": "-07:00",
    "America/Los_Angeles": "-08:00",
    "America/Phoenix": "-07:00",
    "America/Anchorage": "-09:00",
    "Pacific/Honolulu": "-10:00",
    "UTC": "+00:00",
    "Europe/London": "+00:00",
    "Europe/Paris": "+01:00",
    "Asia/Tokyo": "+09:00",
}
FALLBACK_TIMEZONE_OFFSET = "-05:00"

# -------------------------
# Storage
# -------------------------
DATABASE_URL = os.getenv("DATABASE_URL",
                         f"sqlite:///{BASE_DIR / 'eventify.db'}")
IMAGE_STORE_DIR = pathlib.Path(
    os.getenv("IMAGE_STORE_DIR", str(BASE_DIR / "image_store")))
IMAGE_KEY_PREFIX = "images"
ALLOWED_IMAGE_TYPES = {
    "image/jpeg": "jpeg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))

# -------------------------
# Vision model
# -------------------------
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
VISION_MODEL = os.getenv("VISION_MODEL", "gpt-4o-mini")
VISION_FALLBACK_MODEL = os.getenv("VISION_FALLBACK_MODEL", "").strip() or None
VISION_MAX_TOKENS = int(os.getenv("VISION_MAX_TOKENS", "1000"))
VISION_TEMPERATURE = float(os.getenv("VISION_TEMPERATURE", "0.1"))
RAW_TEXT_KEEP_CHARS = 500
RAW_TEXT_PREVIEW_CHARS = 200

# -------------------------
# Google Calendar settings
# -------------------------
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_TOKEN_URI = os.getenv("GOOGLE_TOKEN_URI",
                             "https://oauth2.googleapis.com/token")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GCAL_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
]

# -------------------------
# Workflow limits / defaults
# -------------------------
STEP_MAX_ATTEMPTS = int(os.getenv("STEP_MAX_ATTEMPTS", "3"))
STEP_BACKOFF_MAX_SECONDS = float(os.getenv("STEP_BACKOFF_MAX_SECONDS", "30"))
RUN_CACHE_TTL_SECONDS = int(os.getenv("RUN_CACHE_TTL_SECONDS",
                                      str(60 * 60 * 24)))
CONFLICT_LIMIT = int(os.getenv("CONFLICT_LIMIT", "10"))
API_BASE = os.getenv("API_BASE", "/api")
