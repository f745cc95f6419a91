"""Embedding generation engine: idempotent, chunked, bounded fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from bulkgen.config import Settings
from bulkgen.embeddings.provider import EmbeddingProvider, EmbeddingProviderError
from bulkgen.storage.content_repo import ContentRepository, EmbeddingRepository, EmbeddingRow, RecordText
from bulkgen.utils.db_retry import execute_with_retry, is_unique_violation
from bulkgen.utils.ids import is_uuid

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["created", "exists", "failed"]

INVALID_ID = "Invalid UUID format"
NOT_FOUND = "Fault not found"
NO_TEXT = "No text content to embed"
ALREADY_EXISTS = "Embedding already exists"
RACE_EXISTS = "Embedding already exists (race condition)"

LARGE_RUN_THRESHOLD = 100
LARGE_RUN_CONCURRENCY = 50
SMALL_RUN_CONCURRENCY = 10


@dataclass(frozen=True)
class EmbeddingOutcome:
  record_id: str
  status: OutcomeStatus
  error: str | None = None

  @property
  def success(self) -> bool:
    return self.status != "failed"

  def to_payload(self) -> dict[str, Any]:
    return {"id": self.record_id, "success": self.success, "status": self.status, "error": self.error}


@dataclass
class EmbeddingRunResult:
  """Per-record outcomes plus aggregate counts.

  `skipped` counts records whose embedding existed before the run started;
  a record that loses an insert race to a concurrent writer counts as
  `successful`.
  """

  successful: int = 0
  failed: int = 0
  skipped: int = 0
  inserted: int = 0
  results: list[EmbeddingOutcome] = field(default_factory=list)

  @property
  def processed(self) -> int:
    return len(self.results)

  def add(self, outcome: EmbeddingOutcome, *, pre_existing: bool = False) -> None:
    self.results.append(outcome)
    if outcome.status == "failed":
      self.failed += 1
    elif pre_existing:
      self.skipped += 1
    else:
      self.successful += 1
      if outcome.status == "created":
        self.inserted += 1

  def succeeded_ids(self) -> list[str]:
    return [outcome.record_id for outcome in self.results if outcome.status == "created"]


def default_concurrency(total: int) -> int:
  return LARGE_RUN_CONCURRENCY if total > LARGE_RUN_THRESHOLD else SMALL_RUN_CONCURRENCY


def _chunks(items: Sequence[str], size: int) -> list[Sequence[str]]:
  return [items[start : start + size] for start in range(0, len(items), size)]


class EmbeddingEngine:
  """Generate and store embeddings for content records by id."""

  def __init__(self, content_repo: ContentRepository, embedding_repo: EmbeddingRepository, provider: EmbeddingProvider, settings: Settings) -> None:
    self._content_repo = content_repo
    self._embedding_repo = embedding_repo
    self._provider = provider
    self._chunk_size = settings.embedding_chunk_size
    self._fetch_size = settings.embedding_fetch_size
    self._max_concurrency = settings.embedding_max_concurrency

  async def generate(self, ids: Sequence[str], *, concurrency: int | None = None) -> EmbeddingRunResult:
    result = EmbeddingRunResult()

    # Reject malformed ids up front; they never reach the database.
    valid_ids: list[str] = []
    seen: set[str] = set()
    for record_id in ids:
      if not is_uuid(record_id):
        result.add(EmbeddingOutcome(record_id=str(record_id), status="failed", error=INVALID_ID))
        continue
      if record_id in seen:
        continue
      seen.add(record_id)
      valid_ids.append(record_id)

    limit = min(concurrency or default_concurrency(len(valid_ids)), self._max_concurrency)
    semaphore = asyncio.Semaphore(max(limit, 1))
    logger.info("Generating embeddings for %d ids (%d invalid) with concurrency %d", len(valid_ids), result.failed, limit)

    for chunk in _chunks(valid_ids, self._chunk_size):
      await self._process_chunk(chunk, semaphore, result)

    logger.info("Embedding run finished: successful=%d failed=%d skipped=%d inserted=%d", result.successful, result.failed, result.skipped, result.inserted)
    return result

  async def _fetch_texts(self, ids: Sequence[str]) -> dict[str, RecordText]:
    texts: dict[str, RecordText] = {}
    for batch in _chunks(ids, self._fetch_size):
      fetched = await execute_with_retry(operation_name="fetch_record_texts", func=lambda batch=batch: self._content_repo.fetch_texts(batch))
      texts.update(fetched)
    return texts

  async def _process_chunk(self, chunk: Sequence[str], semaphore: asyncio.Semaphore, result: EmbeddingRunResult) -> None:
    texts = await self._fetch_texts(chunk)
    existing = await execute_with_retry(operation_name="existing_embeddings", func=lambda: self._embedding_repo.existing_record_ids(chunk))

    pending: list[RecordText] = []
    for record_id in chunk:
      if record_id not in texts:
        result.add(EmbeddingOutcome(record_id=record_id, status="failed", error=NOT_FOUND))
      elif record_id in existing:
        result.add(EmbeddingOutcome(record_id=record_id, status="exists", error=ALREADY_EXISTS), pre_existing=True)
      else:
        pending.append(texts[record_id])

    async def embed_one(record: RecordText) -> EmbeddingRow | EmbeddingOutcome:
      text = record.text_content()
      if not text:
        return EmbeddingOutcome(record_id=record.record_id, status="failed", error=NO_TEXT)
      async with semaphore:
        try:
          vector = await self._provider.embed(text)
        except EmbeddingProviderError as exc:
          return EmbeddingOutcome(record_id=record.record_id, status="failed", error=str(exc))
      return EmbeddingRow(record_id=record.record_id, embedding=vector, text_content=text)

    rows: list[EmbeddingRow] = []
    for item in await asyncio.gather(*(embed_one(record) for record in pending)):
      if isinstance(item, EmbeddingOutcome):
        result.add(item)
      else:
        rows.append(item)

    if rows:
      await self._store(rows, result)

  async def _store(self, rows: list[EmbeddingRow], result: EmbeddingRunResult) -> None:
    try:
      await self._embedding_repo.insert_many(rows)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Batch embedding insert of %d rows failed, retrying per row: %s", len(rows), exc)
    else:
      for row in rows:
        result.add(EmbeddingOutcome(record_id=row.record_id, status="created"))
      return

    for row in rows:
      try:
        await self._embedding_repo.insert_one(row)
      except Exception as exc:  # noqa: BLE001
        if is_unique_violation(exc):
          result.add(EmbeddingOutcome(record_id=row.record_id, status="exists", error=RACE_EXISTS))
        else:
          logger.error("Embedding insert failed for %s: %s", row.record_id, exc)
          result.add(EmbeddingOutcome(record_id=row.record_id, status="failed", error=str(exc)))
      else:
        result.add(EmbeddingOutcome(record_id=row.record_id, status="created"))
