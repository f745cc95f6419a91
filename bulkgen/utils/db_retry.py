"""SQLSTATE-based classification of database failures and a retry helper for idempotent reads."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNIQUE_VIOLATION = "23505"
UNDEFINED_TABLE = "42P01"


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a database failure."""

  retryable: bool
  reason: str
  sqlstate: str | None
  category: str


def extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy or driver exception."""
  candidates = [exc]
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    candidates.insert(0, exc.orig)
  for candidate in candidates:
    # asyncpg exposes sqlstate; psycopg exposes pgcode.
    for attr in ("sqlstate", "pgcode"):
      value = getattr(candidate, attr, None)
      if value:
        return str(value)
  return None


def is_unique_violation(exc: BaseException) -> bool:
  """Return True for duplicate-key failures, including drivers that only report text."""
  if extract_sqlstate(exc) == UNIQUE_VIOLATION:
    return True
  message = str(exc).lower()
  return isinstance(exc, IntegrityError) and ("duplicate" in message or "unique" in message)


def is_undefined_table(exc: BaseException) -> bool:
  message = str(exc).lower()
  return extract_sqlstate(exc) == UNDEFINED_TABLE or ("relation" in message and "does not exist" in message)


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """Classify a database failure as retryable (transient) or permanent.

  Retryable: 40001 serialization failure, 40P01 deadlock, connection drops.
  Permanent: 23xxx integrity violations, 42xxx schema errors, 28xxx auth errors,
  programming errors and anything unrecognized.
  """
  sqlstate = extract_sqlstate(exc)

  if sqlstate == "40001":
    return DBFailureClassification(retryable=True, reason="Serialization failure - transaction conflict", sqlstate=sqlstate, category="serialization_conflict")
  if sqlstate == "40P01":
    return DBFailureClassification(retryable=True, reason="Deadlock detected", sqlstate=sqlstate, category="deadlock")
  if sqlstate and sqlstate.startswith("23"):
    specific = "unique violation" if sqlstate == UNIQUE_VIOLATION else "integrity constraint violation"
    return DBFailureClassification(retryable=False, reason=f"Integrity violation: {specific}", sqlstate=sqlstate, category="integrity_error")
  if sqlstate and sqlstate.startswith("42"):
    return DBFailureClassification(retryable=False, reason="Schema/SQL error (undefined table/column, syntax error)", sqlstate=sqlstate, category="schema_error")
  if sqlstate and sqlstate.startswith("28"):
    return DBFailureClassification(retryable=False, reason="Authentication/permission error", sqlstate=sqlstate, category="permission_error")
  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation (detected by exception type)", sqlstate=sqlstate, category="integrity_error")
  if isinstance(exc, OperationalError | ConnectionError | OSError):
    message = str(exc).lower()
    if any(pattern in message for pattern in ("connection", "timeout", "reset", "network", "broken pipe", "lost connection")):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")
  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 1000, max_backoff_ms: int = 8000, jitter: bool = False, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
  """Run an idempotent database operation, retrying transient failures with exponential backoff."""
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "DB operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
      )
      if not classification.retryable or attempt >= max_attempts:
        raise
      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        backoff_ms += random.uniform(-0.25, 0.25) * backoff_ms
      await sleep(backoff_ms / 1000.0)
      continue
    if attempt > 1:
      logger.info("DB operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
