"""Secondary pipeline: submit URLs of freshly embedded records to index endpoints."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import httpx

from bulkgen.config import Settings
from bulkgen.storage.content_repo import LiveRecord

logger = logging.getLogger(__name__)

INDEX_BATCH_SIZE = 100


@dataclass(frozen=True)
class IndexSubmission:
  submitted: int = 0
  failed: int = 0


class IndexSubmitter(Protocol):
  async def submit(self, urls: Sequence[str]) -> IndexSubmission:
    """Submit URLs and report how many were accepted."""


class NoopIndexSubmitter:
  async def submit(self, urls: Sequence[str]) -> IndexSubmission:
    return IndexSubmission()


def build_record_url(url_template: str | None, record: LiveRecord) -> str | None:
  """Render a record's public URL, or None when the template or slugs are missing."""
  if not url_template:
    return None
  if not (record.brand_slug and record.model_slug and record.generation_slug):
    return None
  try:
    url = url_template.format(brand_slug=record.brand_slug, model_slug=record.model_slug, generation_slug=record.generation_slug, slug=record.slug, language=record.language)
  except (KeyError, IndexError, ValueError):
    logger.warning("Index URL template could not be rendered for record %s", record.record_id)
    return None
  return url if url.startswith(("http://", "https://")) else None


class IndexNowSubmitter:
  """Posts URL batches to the first configured endpoint that accepts them."""

  def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._settings = settings
    self._transport = transport

  async def submit(self, urls: Sequence[str]) -> IndexSubmission:
    submitted = 0
    failed = 0
    async with httpx.AsyncClient(timeout=30.0, trust_env=False, transport=self._transport) as client:
      for start in range(0, len(urls), INDEX_BATCH_SIZE):
        batch = list(urls[start : start + INDEX_BATCH_SIZE])
        accepted = await self._submit_batch(client, batch)
        submitted += accepted
        failed += len(batch) - accepted
    logger.info("Index submission finished: submitted=%d failed=%d", submitted, failed)
    return IndexSubmission(submitted=submitted, failed=failed)

  async def _submit_batch(self, client: httpx.AsyncClient, batch: list[str]) -> int:
    payload = {"host": self._settings.index_host, "key": self._settings.index_key, "urlList": batch}
    for endpoint in self._settings.index_endpoints:
      try:
        response = await client.post(endpoint, json=payload)
      except httpx.RequestError as exc:
        logger.warning("Index endpoint %s unreachable: %s", endpoint, exc)
        continue
      if response.status_code in (200, 202):
        return len(batch)
      logger.warning("Index endpoint %s returned %s", endpoint, response.status_code)
    return 0


def get_index_submitter(settings: Settings) -> IndexSubmitter:
  if not settings.index_enabled or not settings.index_key or not settings.index_host:
    return NoopIndexSubmitter()
  return IndexNowSubmitter(settings)
