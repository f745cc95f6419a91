"""Transport that hands one job to the stage-advance endpoint."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from bulkgen.config import Settings
from bulkgen.jobs.models import JobRecord

logger = logging.getLogger(__name__)

MAX_ERROR_TEXT = 500


class SubmissionError(Exception):
  """Raised when a job could not be handed to the advance endpoint."""

  def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False, unreachable: bool = False) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.retryable = retryable
    self.unreachable = unreachable


class SubmissionTransport(Protocol):
  async def submit(self, record: JobRecord) -> dict[str, Any] | None:
    """Advance one job by one stage; return the endpoint's JSON payload if any."""


class HttpSubmissionClient:
  """POST jobs to `/internal/jobs/{id}/advance` and drain the streamed response."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    self._transport = transport

  def _should_use_asgi_transport(self, base_url: str) -> bool:
    """Route local targets in-process so dev runs do not depend on a listening socket."""
    hostname = (urlparse(base_url).hostname or "").lower()
    return hostname in {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

  def _build_client(self) -> httpx.AsyncClient:
    base_url = self._settings.submission_base_url
    timeout = httpx.Timeout(float(self._settings.batch_request_timeout_seconds), connect=30.0)
    transport = self._transport
    if transport is None and self._should_use_asgi_transport(base_url):
      from bulkgen.main import app

      transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    # Never trust environment proxy variables for internal dispatch.
    return httpx.AsyncClient(base_url=base_url, timeout=timeout, trust_env=False, transport=transport)

  async def submit(self, record: JobRecord) -> dict[str, Any] | None:
    path = f"/internal/jobs/{record.job_id}/advance"
    try:
      async with self._build_client() as client:
        async with client.stream("POST", path, json={"job": asdict(record)}) as response:
          # Read the body to completion even when it is not needed so the connection is released.
          body = await response.aread()
          status_code = response.status_code
    except httpx.ConnectError as exc:
      logger.warning("Submission endpoint unreachable for job %s: %s", record.job_id, exc)
      raise SubmissionError(f"Cannot connect to submission endpoint: {exc}", retryable=True, unreachable=True) from exc
    except httpx.TimeoutException as exc:
      logger.warning("Submission timed out for job %s: %s", record.job_id, exc)
      raise SubmissionError(f"Submission timed out: {exc}", retryable=True) from exc
    except httpx.RequestError as exc:
      logger.warning("Submission transport error for job %s: %s", record.job_id, exc)
      raise SubmissionError(f"Submission transport error: {exc}", retryable=True) from exc

    if status_code >= 400:
      text = body.decode("utf-8", errors="replace")[:MAX_ERROR_TEXT]
      retryable = status_code >= 500 or status_code == 429
      logger.warning("Submission endpoint returned %s for job %s: %s", status_code, record.job_id, text)
      raise SubmissionError(f"Submission endpoint returned {status_code}: {text}", status_code=status_code, retryable=retryable)

    try:
      payload = json.loads(body) if body else None
    except json.JSONDecodeError:
      return None
    return payload if isinstance(payload, dict) else None
