from __future__ import annotations

import json
import logging
import pathlib
from typing import Optional

from .config import IMAGE_STORE_DIR
from .errors import TransientIOFailure

logger = logging.getLogger(__name__)

_META_SUFFIX = ".meta.json"


class LocalObjectStore:
  """Filesystem object store keyed by relative paths such as ``images/<uuid>.png``."""

  def __init__(self, root: Optional[pathlib.Path] = None):
    self.root = pathlib.Path(root or IMAGE_STORE_DIR).resolve()

  def _path(self, key: str) -> pathlib.Path:
    if not isinstance(key, str) or not key.strip():
      raise ValueError("object key is empty")
    path = (self.root / key.strip()).resolve()
    if path == self.root or self.root not in path.parents:
      raise ValueError(f"object key escapes the store root: {key!r}")
    return path

  def put(self, key: str, data: bytes, content_type: str) -> None:
    path = self._path(key)
    try:
      path.parent.mkdir(parents=True, exist_ok=True)
      path.write_bytes(data)
      meta_path = path.with_name(path.name + _META_SUFFIX)
      meta_path.write_text(json.dumps({"content_type": content_type}),
                           encoding="utf-8")
    except OSError as exc:
      raise TransientIOFailure(f"object store write failed for {key}: {exc}") from exc

  def get(self, key: str) -> Optional[bytes]:
    path = self._path(key)
    if not path.is_file():
      return None
    try:
      return path.read_bytes()
    except FileNotFoundError:
      return None
    except OSError as exc:
      raise TransientIOFailure(f"object store read failed for {key}: {exc}") from exc

  def content_type(self, key: str) -> Optional[str]:
    path = self._path(key)
    meta_path = path.with_name(path.name + _META_SUFFIX)
    try:
      data = json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
      return None
    value = data.get("content_type") if isinstance(data, dict) else None
    return value if isinstance(value, str) else None

  def delete(self, key: str) -> None:
    path = self._path(key)
    path.unlink(missing_ok=True)
    path.with_name(path.name + _META_SUFFIX).unlink(missing_ok=True)
