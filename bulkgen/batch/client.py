"""HTTP client for the external asynchronous batch service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from bulkgen.config import Settings

logger = logging.getLogger(__name__)

ACTIVE_BATCH_STATUSES = frozenset({"validating", "in_progress", "finalizing"})
FAILED_BATCH_STATUSES = frozenset({"failed", "expired", "cancelled"})
COMPLETED_BATCH_STATUS = "completed"
MAX_ERROR_TEXT = 500


class BatchServiceError(Exception):
  """Raised when the batch service rejects or fails a request."""

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class BatchServiceUnreachableError(BatchServiceError):
  """Raised when the batch service cannot be reached at all."""


@dataclass(frozen=True)
class BatchInfo:
  """Snapshot of one external batch."""

  id: str
  status: str
  endpoint: str | None = None
  input_file_id: str | None = None
  output_file_id: str | None = None
  error_file_id: str | None = None
  error_message: str | None = None
  request_counts: dict[str, int] = field(default_factory=dict)
  metadata: dict[str, str] = field(default_factory=dict)

  @property
  def is_active(self) -> bool:
    return self.status in ACTIVE_BATCH_STATUSES

  @property
  def is_completed(self) -> bool:
    return self.status == COMPLETED_BATCH_STATUS

  @property
  def is_failed(self) -> bool:
    return self.status in FAILED_BATCH_STATUSES

  @classmethod
  def from_payload(cls, payload: dict[str, Any]) -> BatchInfo:
    """Build a snapshot from a batch object returned by the service."""
    errors = payload.get("errors") or {}
    error_message = None
    # The service nests batch-level errors as {"data": [{"message": ...}]}.
    if isinstance(errors, dict):
      data = errors.get("data") or []
      if data and isinstance(data[0], dict):
        error_message = data[0].get("message")
      error_message = error_message or errors.get("message")
    return cls(
      id=str(payload["id"]),
      status=str(payload.get("status") or "unknown"),
      endpoint=payload.get("endpoint"),
      input_file_id=payload.get("input_file_id"),
      output_file_id=payload.get("output_file_id"),
      error_file_id=payload.get("error_file_id"),
      error_message=error_message,
      request_counts=dict(payload.get("request_counts") or {}),
      metadata=dict(payload.get("metadata") or {}),
    )


def error_text(response: httpx.Response) -> str:
  """Return the response body truncated for logs and job rows."""
  try:
    text = response.text
  except httpx.ResponseNotRead:
    text = ""
  return (text or response.reason_phrase or "")[:MAX_ERROR_TEXT]


class BatchServiceClient:
  """Thin wrapper over the files and batches endpoints. No business logic."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    self._transport = transport

  def _build_client(self) -> httpx.AsyncClient:
    api_key = self._settings.require_batch_api_key()
    timeout = httpx.Timeout(float(self._settings.batch_request_timeout_seconds), connect=30.0)
    # Never trust environment proxy variables for the batch service.
    return httpx.AsyncClient(base_url=self._settings.batch_api_base_url, headers={"authorization": f"Bearer {api_key}"}, timeout=timeout, trust_env=False, transport=self._transport)

  async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
    try:
      async with self._build_client() as client:
        response = await client.request(method, path, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
      message = error_text(exc.response)
      logger.error("Batch service %s %s returned %s: %s", method, path, exc.response.status_code, message)
      raise BatchServiceError(f"Batch service rejected request ({exc.response.status_code}): {message}", status_code=exc.response.status_code) from exc
    except httpx.ConnectError as exc:
      logger.error("Batch service unreachable for %s %s: %s", method, path, exc)
      raise BatchServiceUnreachableError(f"Batch service unreachable: {exc}") from exc
    except httpx.RequestError as exc:
      logger.error("Batch service request failed for %s %s: %s", method, path, exc)
      raise BatchServiceError(f"Batch service request failed: {exc}") from exc

  async def upload_file(self, content: str | bytes, *, filename: str = "batch_input.jsonl", purpose: str = "batch") -> str:
    """Upload a JSONL file and return its file id."""
    body = content.encode("utf-8") if isinstance(content, str) else content
    payload = await self._request("POST", "/files", data={"purpose": purpose}, files={"file": (filename, body, "application/jsonl")})
    logger.info("Uploaded batch input %s (%d bytes) as %s", filename, len(body), payload.get("id"))
    return str(payload["id"])

  async def create_batch(self, input_file_id: str, *, endpoint: str, metadata: dict[str, str] | None = None, completion_window: str = "24h") -> BatchInfo:
    """Submit an uploaded file as a new batch."""
    request_body: dict[str, Any] = {"input_file_id": input_file_id, "endpoint": endpoint, "completion_window": completion_window}
    if metadata:
      request_body["metadata"] = metadata
    batch = BatchInfo.from_payload(await self._request("POST", "/batches", json=request_body))
    logger.info("Created batch %s for file %s (endpoint=%s)", batch.id, input_file_id, endpoint)
    return batch

  async def get_batch(self, batch_id: str) -> BatchInfo:
    return BatchInfo.from_payload(await self._request("GET", f"/batches/{batch_id}"))

  async def list_batches(self, *, limit: int = 100) -> list[BatchInfo]:
    payload = await self._request("GET", "/batches", params={"limit": limit})
    return [BatchInfo.from_payload(item) for item in payload.get("data") or []]

  async def download_file(self, file_id: str) -> str:
    """Stream a file's raw content and return it as text."""
    path = f"/files/{file_id}/content"
    try:
      async with self._build_client() as client:
        async with client.stream("GET", path) as response:
          if response.is_error:
            await response.aread()
            response.raise_for_status()
          chunks = [chunk async for chunk in response.aiter_bytes()]
    except httpx.HTTPStatusError as exc:
      message = error_text(exc.response)
      logger.error("Batch service file download %s returned %s: %s", file_id, exc.response.status_code, message)
      raise BatchServiceError(f"Failed to download file {file_id} ({exc.response.status_code}): {message}", status_code=exc.response.status_code) from exc
    except httpx.ConnectError as exc:
      raise BatchServiceUnreachableError(f"Batch service unreachable: {exc}") from exc
    except httpx.RequestError as exc:
      raise BatchServiceError(f"Failed to download file {file_id}: {exc}") from exc
    # Undecodable bytes become U+FFFD; a line they break is counted as malformed by the parser.
    return b"".join(chunks).decode("utf-8", errors="replace")
