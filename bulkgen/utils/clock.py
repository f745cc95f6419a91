"""UTC timestamp helpers shared by job bookkeeping."""

from __future__ import annotations

import time
from datetime import UTC, datetime

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def now_iso() -> str:
  return datetime.now(UTC).strftime(ISO_FORMAT)


def now_ms() -> int:
  return int(time.time() * 1000)
