"""Identifier utilities."""

from __future__ import annotations

import re
import time
import uuid

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^0-9a-z]+")
_SLUG_STRIP = re.compile(r"[^a-z0-9\s-]")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
SLUG_MAX_CHARS = 80


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def generate_record_id() -> str:
  """Return a new content record identifier."""
  return str(uuid.uuid4())


def is_uuid(value: str | None) -> bool:
  """Return True when value is a well-formed hyphenated UUID."""
  return bool(value) and UUID_PATTERN.match(value) is not None


def compact_id(value: str) -> str:
  """Lowercase an identifier and drop separators so partial ids can be prefix-matched."""
  return _NON_ALNUM.sub("", value.lower())


def to_base36(value: int) -> str:
  if value < 0:
    raise ValueError("base36 encoding requires a non-negative integer")
  if value == 0:
    return "0"
  digits = []
  while value:
    value, remainder = divmod(value, 36)
    digits.append(_BASE36[remainder])
  return "".join(reversed(digits))


def build_slug(title: str, index: int, *, now_ms: int | None = None) -> str:
  """Build `{slugified-title}-{index}-{base36 millis}` with the title part capped at 80 chars."""
  base = _SLUG_STRIP.sub("", title.lower())
  base = re.sub(r"\s+", "-", base.strip())
  base = re.sub(r"-{2,}", "-", base)[:SLUG_MAX_CHARS].strip("-") or "item"
  stamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
  return f"{base}-{index}-{stamp}"
