"""Turn generated question/answer/metadata items into content records."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from bulkgen.pipeline.stages import GeneratedItem
from bulkgen.storage.content_repo import ContentRepository, NewRecord
from bulkgen.utils.clock import now_ms
from bulkgen.utils.ids import build_slug

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 100
IMPORT_BATCH_SIZE = 500
MAX_IMPORT_ERRORS = 100
DEFAULT_METADATA = {"severity": "medium", "difficulty_level": "medium"}


@dataclass
class ImportReport:
  success: int = 0
  failed: int = 0
  total: int = 0
  record_ids: list[str] = field(default_factory=list)
  errors: list[str] = field(default_factory=list)

  def error(self, message: str) -> None:
    self.failed += 1
    if len(self.errors) < MAX_IMPORT_ERRORS:
      self.errors.append(message)


def to_new_record(item: GeneratedItem, *, content_type: str, language: str, timestamp_ms: int, sequence_number: int | None = None) -> NewRecord:
  title = item.question[:TITLE_MAX_CHARS]
  metadata: dict[str, Any] = {**DEFAULT_METADATA, **item.metadata, "source_key": item.key.custom_id}
  return NewRecord(
    title=title,
    description=item.answer,
    slug=build_slug(title, item.key.ordinal, now_ms=timestamp_ms),
    content_type=content_type,
    language=language,
    metadata_json=metadata,
    sequence_number=sequence_number,
  )


class ContentImporter:
  """Insert generated items with sequence numbers taken from their answer ordinals.

  Each record gets `base + ordinal`, where `base` is the group's highest
  sequence number before the import. A failed answer or row leaves a gap, so
  every later ordinal still points at the record built from it.
  """

  def __init__(self, content_repo: ContentRepository) -> None:
    self._content_repo = content_repo

  async def import_items(self, items: Sequence[GeneratedItem], *, content_type: str, language: str) -> ImportReport:
    report = ImportReport(total=len(items))
    timestamp_ms = now_ms()
    by_group: dict[str, list[GeneratedItem]] = {}
    for item in sorted(items, key=lambda item: (item.key.group_id, item.key.ordinal)):
      by_group.setdefault(item.key.group_id, []).append(item)

    for group_id, group_items in by_group.items():
      base = await self._content_repo.max_sequence_number(group_id)
      for start in range(0, len(group_items), IMPORT_BATCH_SIZE):
        batch = group_items[start : start + IMPORT_BATCH_SIZE]
        records = [to_new_record(item, content_type=content_type, language=language, timestamp_ms=timestamp_ms, sequence_number=base + item.key.ordinal) for item in batch]
        try:
          report.record_ids.extend(await self._content_repo.insert_records(group_id, records))
        except Exception as exc:  # noqa: BLE001
          logger.warning("Batch import of %d records for group %s failed, retrying per row: %s", len(records), group_id, exc)
        else:
          report.success += len(records)
          continue

        for item, record in zip(batch, records, strict=True):
          try:
            report.record_ids.extend(await self._content_repo.insert_records(group_id, [record]))
          except Exception as exc:  # noqa: BLE001
            report.error(f"{item.key.custom_id}: {exc}")
          else:
            report.success += 1

    logger.info("Imported %d of %d records (%d failed)", report.success, report.total, report.failed)
    return report
