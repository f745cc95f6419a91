"""One page of the resumable embedding backfill plus its index-submission side pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from bulkgen.embeddings.engine import EmbeddingEngine
from bulkgen.services.indexing import IndexSubmitter, build_record_url
from bulkgen.storage.content_repo import ContentRepository, EmbeddingRepository, LiveRecord

logger = logging.getLogger(__name__)

# Each page scans twice the batch size so already-embedded records do not starve a page.
SCAN_FACTOR = 2


@dataclass(frozen=True)
class PageResult:
  processed: int
  successful: int
  failed: int
  skipped: int
  next_offset: int
  has_more: bool
  index_submitted: int = 0
  index_failed: int = 0
  errors: tuple[str, ...] = ()

  def to_payload(self) -> dict[str, Any]:
    return {
      "processed": self.processed,
      "successful": self.successful,
      "failed": self.failed,
      "skipped": self.skipped,
      "nextOffset": self.next_offset,
      "hasMore": self.has_more,
      "indexSubmitted": self.index_submitted,
      "indexFailed": self.index_failed,
      "errors": list(self.errors),
    }


async def run_embedding_page(
  *,
  content_repo: ContentRepository,
  embedding_repo: EmbeddingRepository,
  engine: EmbeddingEngine,
  index_submitter: IndexSubmitter,
  batch_size: int,
  offset: int,
  concurrency: int | None = None,
  skip_secondary_pipeline: bool = False,
  index_url_template: str | None = None,
) -> PageResult:
  """Embed up to `batch_size` live records starting at `offset`.

  The returned `next_offset` stops right after the last record picked for
  embedding, so only already-embedded records are ever stepped over.
  """
  window = batch_size * SCAN_FACTOR
  records = await content_repo.list_live_records(offset=offset, limit=window)
  fetched = len(records)
  has_more = fetched >= window
  next_offset = offset + fetched
  if not records:
    return PageResult(processed=0, successful=0, failed=0, skipped=0, next_offset=next_offset, has_more=False)

  existing = await embedding_repo.existing_record_ids([record.record_id for record in records])
  todo: list[LiveRecord] = []
  for position, record in enumerate(records):
    if record.record_id in existing:
      continue
    todo.append(record)
    if len(todo) == batch_size:
      # Records after this one are left for the next page.
      if position + 1 < fetched:
        next_offset = offset + position + 1
        has_more = True
      break
  skipped = next_offset - offset - len(todo)
  if not todo:
    logger.info("Embedding page at offset %d: all %d scanned records already embedded", offset, fetched)
    return PageResult(processed=0, successful=0, failed=0, skipped=skipped, next_offset=next_offset, has_more=has_more)

  run = await engine.generate([record.record_id for record in todo], concurrency=concurrency)
  errors = tuple(f"{outcome.record_id}: {outcome.error}" for outcome in run.results if outcome.status == "failed")[:10]

  index_submitted = 0
  index_failed = 0
  if not skip_secondary_pipeline and index_url_template:
    created = set(run.succeeded_ids())
    urls = [url for record in todo if record.record_id in created and (url := build_record_url(index_url_template, record))]
    if urls:
      submission = await index_submitter.submit(urls)
      index_submitted, index_failed = submission.submitted, submission.failed

  logger.info("Embedding page at offset %d: scanned=%d processed=%d successful=%d failed=%d index=%d/%d", offset, fetched, run.processed, run.successful, run.failed, index_submitted, index_failed)
  return PageResult(
    processed=run.processed,
    successful=run.successful,
    failed=run.failed,
    skipped=skipped + run.skipped,
    next_offset=next_offset,
    has_more=has_more,
    index_submitted=index_submitted,
    index_failed=index_failed,
    errors=errors,
  )
