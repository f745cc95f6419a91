"""Import embedding batch results, resolving correlation keys to record ids."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from bulkgen.batch.client import BatchServiceClient
from bulkgen.batch.jsonl import STAGE_EMBEDDING, parse_results
from bulkgen.reconcile.resolver import IdResolver, OrdinalPair
from bulkgen.storage.content_repo import ContentRepository, EmbeddingRepository, EmbeddingRow
from bulkgen.utils.db_retry import is_unique_violation
from bulkgen.utils.ids import is_uuid

logger = logging.getLogger(__name__)

TEXT_FETCH_BATCH = 500
INSERT_BATCH = 1000
MAX_ERRORS = 50

_PREFIX = f"{STAGE_EMBEDDING}-"
_PAIR_PATTERN = re.compile(r"^(?:answer-)?(?P<group>.+)-(?P<ordinal>\d+)$")


class ImportSourceError(ValueError):
  """Raised when a referenced batch or file cannot be used as an import source."""


@dataclass
class ImportSummary:
  processed: int = 0
  inserted: int = 0
  duplicates: int = 0
  failed: int = 0
  errors: list[str] = field(default_factory=list)

  def error(self, message: str) -> None:
    self.failed += 1
    if len(self.errors) < MAX_ERRORS:
      self.errors.append(message)

  def to_payload(self) -> dict[str, Any]:
    return {"processed": self.processed, "inserted": self.inserted, "duplicates": self.duplicates, "failed": self.failed, "errors": self.errors[:MAX_ERRORS]}


def parse_embedding_key(custom_id: str) -> str | OrdinalPair | None:
  """Return a record id for `embedding-{uuid}` or an ordinal pair for `embedding-[answer-]{groupId}-{n}`."""
  if not custom_id.startswith(_PREFIX):
    return None
  key = custom_id[len(_PREFIX) :]
  if is_uuid(key):
    return key.lower()
  match = _PAIR_PATTERN.match(key)
  if match is None or int(match.group("ordinal")) < 1:
    return None
  return OrdinalPair(group_id=match.group("group"), ordinal=int(match.group("ordinal")))


class BatchResultsImporter:
  """Turns an embeddings batch output file into `content_embeddings` rows."""

  def __init__(self, content_repo: ContentRepository, embedding_repo: EmbeddingRepository, resolver: IdResolver, batch_client: BatchServiceClient | None = None) -> None:
    self._content_repo = content_repo
    self._embedding_repo = embedding_repo
    self._resolver = resolver
    self._batch_client = batch_client

  async def import_from_batch(self, batch_id: str) -> ImportSummary:
    batch = await self._require_client().get_batch(batch_id)
    if not batch.is_completed:
      raise ImportSourceError(f"Batch {batch_id} is not completed (status: {batch.status})")
    if not batch.output_file_id:
      raise ImportSourceError(f"Batch {batch_id} has no output file")
    return await self.import_from_file(batch.output_file_id)

  async def import_from_file(self, file_id: str) -> ImportSummary:
    text = await self._require_client().download_file(file_id)
    return await self.import_results(text)

  def _require_client(self) -> BatchServiceClient:
    if self._batch_client is None:
      raise ImportSourceError("Batch service is not configured")
    return self._batch_client

  async def import_results(self, text: str) -> ImportSummary:
    summary = ImportSummary()
    parsed = parse_results(text)
    summary.processed = len(parsed.records) + parsed.malformed
    for _ in range(parsed.malformed):
      summary.error("Malformed result line")

    # Collect vectors first; ordinal keys are resolved in one pass afterwards.
    direct: dict[str, list[float]] = {}
    by_pair: dict[str, tuple[OrdinalPair, list[float], str]] = {}
    for record in parsed.records:
      if not record.ok:
        summary.error(f"Request {record.custom_id} failed: {record.error_message}")
        continue
      vector = record.embedding()
      if vector is None:
        summary.error(f"Request {record.custom_id} returned no embedding")
        continue
      key = parse_embedding_key(record.custom_id)
      if key is None:
        summary.error(f"Unrecognized custom_id: {record.custom_id}")
      elif isinstance(key, OrdinalPair):
        by_pair[key.key] = (key, vector, record.custom_id)
      else:
        direct[key] = vector

    if by_pair:
      resolved = await self._resolver.resolve_ids(pair for pair, _, _ in by_pair.values())
      for pair_key, (_, vector, custom_id) in by_pair.items():
        record_id = resolved.get(pair_key)
        if record_id is None:
          summary.error(f"Could not resolve record for {custom_id}")
        else:
          direct[record_id] = vector

    rows = await self._build_rows(direct, summary)
    for start in range(0, len(rows), INSERT_BATCH):
      await self._insert(rows[start : start + INSERT_BATCH], summary)

    logger.info("Embedding import finished: processed=%d inserted=%d duplicates=%d failed=%d", summary.processed, summary.inserted, summary.duplicates, summary.failed)
    return summary

  async def _build_rows(self, vectors: dict[str, list[float]], summary: ImportSummary) -> list[EmbeddingRow]:
    record_ids = list(vectors)
    rows: list[EmbeddingRow] = []
    for start in range(0, len(record_ids), TEXT_FETCH_BATCH):
      batch = record_ids[start : start + TEXT_FETCH_BATCH]
      texts = await self._content_repo.fetch_texts(batch)
      for record_id in batch:
        record = texts.get(record_id)
        if record is None:
          summary.error(f"Record {record_id} not found")
          continue
        rows.append(EmbeddingRow(record_id=record_id, embedding=vectors[record_id], text_content=record.text_content()))
    return rows

  async def _insert(self, rows: Sequence[EmbeddingRow], summary: ImportSummary) -> None:
    try:
      await self._embedding_repo.insert_many(rows)
    except Exception as exc:  # noqa: BLE001
      if not is_unique_violation(exc):
        logger.warning("Embedding batch insert failed, retrying per row: %s", exc)
    else:
      summary.inserted += len(rows)
      return

    for row in rows:
      try:
        await self._embedding_repo.insert_one(row)
      except Exception as exc:  # noqa: BLE001
        if is_unique_violation(exc):
          summary.duplicates += 1
        else:
          summary.error(f"Insert failed for {row.record_id}: {exc}")
      else:
        summary.inserted += 1
