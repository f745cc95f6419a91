"""Storage interfaces for content groups, records and embeddings."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from bulkgen.pipeline.templates import PromptContext


@dataclass(frozen=True)
class RecordText:
  """The text fields an embedding is computed from."""

  record_id: str
  title: str | None
  description: str | None

  def text_content(self) -> str:
    title = self.title or ""
    return f"{title} {self.description}".strip() if self.description else title.strip()


@dataclass(frozen=True)
class LiveRecord:
  """A published record plus the group slugs needed to build its public URL."""

  record_id: str
  group_id: str
  slug: str
  language: str
  brand_slug: str | None = None
  model_slug: str | None = None
  generation_slug: str | None = None


@dataclass(frozen=True)
class GroupRecordRef:
  """A record id plus its per-group sequence number (None for legacy rows)."""

  record_id: str
  sequence_number: int | None = None


@dataclass(frozen=True)
class NewRecord:
  title: str
  description: str | None
  slug: str
  content_type: str
  language: str = "en"
  status: str = "live"
  metadata_json: dict[str, Any] = field(default_factory=dict)
  sequence_number: int | None = None


@dataclass(frozen=True)
class EmbeddingRow:
  record_id: str
  embedding: list[float]
  text_content: str


class ContentRepository(Protocol):
  """Repository contract for content records."""

  async def fetch_texts(self, record_ids: Sequence[str]) -> dict[str, RecordText]:
    """Return text fields for the given ids; missing ids are omitted."""

  async def list_group_records(self, group_id: str, *, offset: int, limit: int) -> list[GroupRecordRef]:
    """Return one page of a group's records in `(sequence_number, created_at, id)` order."""

  async def max_sequence_number(self, group_id: str) -> int:
    """Return the highest sequence number used in a group, or 0."""

  async def list_live_records(self, *, offset: int, limit: int) -> list[LiveRecord]:
    """Return one page of live records ordered by creation time."""

  async def insert_records(self, group_id: str, records: Sequence[NewRecord]) -> list[str]:
    """Insert records for a group; records without a sequence number get the next free ones."""


class EmbeddingRepository(Protocol):
  """Repository contract for the 1:1 embeddings table."""

  async def existing_record_ids(self, record_ids: Sequence[str]) -> set[str]:
    """Return the subset of ids that already have an embedding."""

  async def insert_many(self, rows: Sequence[EmbeddingRow]) -> None:
    """Insert all rows in one statement; raises on any conflict."""

  async def insert_one(self, row: EmbeddingRow) -> None:
    """Insert a single row; raises on conflict."""


class GroupRepository(Protocol):
  """Repository contract for owning groups."""

  async def list_group_ids(self) -> list[str]:
    """Return every group id."""

  async def get_contexts(self, group_ids: Sequence[str]) -> dict[str, PromptContext]:
    """Return prompt contexts for the given ids."""
