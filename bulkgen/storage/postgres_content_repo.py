"""Postgres-backed content, embedding and group repositories."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkgen.core.database import get_session_factory
from bulkgen.pipeline.templates import PromptContext
from bulkgen.schema.content import ContentEmbedding, ContentGroup, ContentRecord
from bulkgen.storage.content_repo import EmbeddingRow, GroupRecordRef, LiveRecord, NewRecord, RecordText
from bulkgen.utils.ids import generate_record_id, is_uuid


def _session_factory(factory: async_sessionmaker[AsyncSession] | None) -> async_sessionmaker[AsyncSession]:
  resolved = factory or get_session_factory()
  if resolved is None:
    raise RuntimeError("Database not initialized")
  return resolved


class PostgresContentRepository:
  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = _session_factory(session_factory)

  async def fetch_texts(self, record_ids: Sequence[str]) -> dict[str, RecordText]:
    ids = [record_id for record_id in record_ids if is_uuid(record_id)]
    if not ids:
      return {}
    async with self._session_factory() as session:
      stmt = select(ContentRecord.id, ContentRecord.title, ContentRecord.description).where(ContentRecord.id.in_(ids))
      rows = (await session.execute(stmt)).all()
      return {str(row.id): RecordText(record_id=str(row.id), title=row.title, description=row.description) for row in rows}

  async def list_group_records(self, group_id: str, *, offset: int, limit: int) -> list[GroupRecordRef]:
    async with self._session_factory() as session:
      stmt = (
        select(ContentRecord.id, ContentRecord.sequence_number)
        .where(ContentRecord.group_id == group_id)
        .order_by(ContentRecord.sequence_number.asc().nulls_last(), ContentRecord.created_at.asc(), ContentRecord.id.asc())
        .offset(offset)
        .limit(limit)
      )
      rows = (await session.execute(stmt)).all()
      return [GroupRecordRef(record_id=str(row.id), sequence_number=row.sequence_number) for row in rows]

  async def max_sequence_number(self, group_id: str) -> int:
    async with self._session_factory() as session:
      current = (await session.execute(select(func.max(ContentRecord.sequence_number)).where(ContentRecord.group_id == group_id))).scalar_one()
      return current or 0

  async def list_live_records(self, *, offset: int, limit: int) -> list[LiveRecord]:
    async with self._session_factory() as session:
      stmt = (
        select(ContentRecord.id, ContentRecord.group_id, ContentRecord.slug, ContentRecord.language, ContentGroup.brand_slug, ContentGroup.model_slug, ContentGroup.generation_slug)
        .join(ContentGroup, ContentGroup.id == ContentRecord.group_id)
        .where(ContentRecord.status == "live")
        .order_by(ContentRecord.created_at.asc(), ContentRecord.id.asc())
        .offset(offset)
        .limit(limit)
      )
      rows = (await session.execute(stmt)).all()
      return [
        LiveRecord(record_id=str(row.id), group_id=str(row.group_id), slug=row.slug, language=row.language, brand_slug=row.brand_slug, model_slug=row.model_slug, generation_slug=row.generation_slug)
        for row in rows
      ]

  async def insert_records(self, group_id: str, records: Sequence[NewRecord]) -> list[str]:
    if not records:
      return []
    async with self._session_factory() as session:
      async with session.begin():
        # Lock the group row so concurrent importers take turns assigning sequence numbers.
        locked = (await session.execute(select(ContentGroup.id).where(ContentGroup.id == group_id).with_for_update())).scalar_one_or_none()
        if locked is None:
          raise LookupError(f"Group {group_id} not found")
        current = (await session.execute(select(func.max(ContentRecord.sequence_number)).where(ContentRecord.group_id == group_id))).scalar_one()
        next_sequence = current or 0
        ids: list[str] = []
        for record in records:
          record_id = generate_record_id()
          if record.sequence_number is None:
            next_sequence += 1
            sequence_number = next_sequence
          else:
            sequence_number = record.sequence_number
            next_sequence = max(next_sequence, sequence_number)
          session.add(
            ContentRecord(
              id=record_id,
              group_id=group_id,
              sequence_number=sequence_number,
              title=record.title,
              description=record.description,
              slug=record.slug,
              status=record.status,
              language=record.language,
              content_type=record.content_type,
              metadata_json=record.metadata_json or None,
            )
          )
          ids.append(record_id)
      return ids


class PostgresEmbeddingRepository:
  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = _session_factory(session_factory)

  async def existing_record_ids(self, record_ids: Sequence[str]) -> set[str]:
    ids = [record_id for record_id in record_ids if is_uuid(record_id)]
    if not ids:
      return set()
    async with self._session_factory() as session:
      stmt = select(ContentEmbedding.record_id).where(ContentEmbedding.record_id.in_(ids))
      return {str(record_id) for record_id in (await session.execute(stmt)).scalars().all()}

  async def insert_many(self, rows: Sequence[EmbeddingRow]) -> None:
    if not rows:
      return
    async with self._session_factory() as session:
      await session.execute(insert(ContentEmbedding), [{"record_id": row.record_id, "embedding": row.embedding, "text_content": row.text_content} for row in rows])
      await session.commit()

  async def insert_one(self, row: EmbeddingRow) -> None:
    await self.insert_many([row])


class PostgresGroupRepository:
  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = _session_factory(session_factory)

  async def list_group_ids(self) -> list[str]:
    async with self._session_factory() as session:
      return [str(group_id) for group_id in (await session.execute(select(ContentGroup.id).order_by(ContentGroup.id.asc()))).scalars().all()]

  async def get_contexts(self, group_ids: Sequence[str]) -> dict[str, PromptContext]:
    ids = [group_id for group_id in group_ids if is_uuid(group_id)]
    if not ids:
      return {}
    async with self._session_factory() as session:
      rows = (await session.execute(select(ContentGroup).where(ContentGroup.id.in_(ids)))).scalars().all()
      return {
        str(row.id): PromptContext(group_id=str(row.id), brand=row.brand_name, model=row.model_name, generation=row.generation_name, generation_code=row.generation_code)
        for row in rows
      }
