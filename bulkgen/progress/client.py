"""HTTP client for the embedding page endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from bulkgen.progress.controller import PageRequest

logger = logging.getLogger(__name__)

PAGE_PATH = "/v1/embeddings/page"


class PageRequestError(RuntimeError):
  """Raised when the page endpoint answers with an error status."""

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class HttpEmbeddingPageClient:
  """Posts one page request at a time; the controller cancels the task to abort it."""

  def __init__(self, base_url: str, *, timeout: float = 900.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, trust_env=False, transport=transport)

  async def fetch_page(self, request: PageRequest) -> dict[str, Any]:
    response = await self._client.post(PAGE_PATH, json=request.to_payload())
    if response.status_code >= 400:
      try:
        payload = response.json()
      except ValueError:
        payload = None
      detail = payload.get("detail") if isinstance(payload, dict) else None
      raise PageRequestError(f"Page request failed ({response.status_code}): {detail or response.text[:500]}", status_code=response.status_code)
    return response.json()

  async def aclose(self) -> None:
    await self._client.aclose()

  async def __aenter__(self) -> HttpEmbeddingPageClient:
    return self

  async def __aexit__(self, *exc_info: object) -> None:
    await self.aclose()
