"""Postgres-backed job tracker using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkgen.core.database import get_session_factory
from bulkgen.jobs.models import JobPhase, JobRecord, JobStatus
from bulkgen.schema.jobs import GenerationJob
from bulkgen.utils.clock import ISO_FORMAT, now_iso

_UPDATABLE = (
  "status",
  "phase",
  "progress_total",
  "progress_done",
  "questions_batch_id",
  "answers_batch_id",
  "metadata_batch_id",
  "answers_input_file_id",
  "error_message",
  "result_json",
  "completed_at",
)


class PostgresJobTracker:
  """Persist generation jobs to the generation_jobs table."""

  enabled = True

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> None:
    async with self._session_factory() as session:
      session.add(
        GenerationJob(
          id=record.job_id,
          group_id=record.group_id,
          brand_id=record.brand_id,
          model_id=record.model_id,
          content_type=record.content_type,
          language=record.language,
          requested_count=record.requested_count,
          status=record.status,
          phase=record.phase,
          progress_total=record.progress_total,
          progress_done=record.progress_done,
          created_at=record.created_at,
          updated_at=record.updated_at,
        )
      )
      await session.commit()

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(GenerationJob, job_id)
      return None if row is None else self._model_to_record(row)

  async def update_job(
    self,
    job_id: str,
    *,
    status: JobStatus | None = None,
    phase: JobPhase | None = None,
    progress_total: int | None = None,
    progress_done: int | None = None,
    questions_batch_id: str | None = None,
    answers_batch_id: str | None = None,
    metadata_batch_id: str | None = None,
    answers_input_file_id: str | None = None,
    error_message: str | None = None,
    result_json: dict[str, Any] | None = None,
    started_at: str | None = None,
    completed_at: str | None = None,
    reset_stages: bool = False,
    clear_error: bool = False,
  ) -> JobRecord | None:
    changes = {
      "status": status,
      "phase": phase,
      "progress_total": progress_total,
      "progress_done": progress_done,
      "questions_batch_id": questions_batch_id,
      "answers_batch_id": answers_batch_id,
      "metadata_batch_id": metadata_batch_id,
      "answers_input_file_id": answers_input_file_id,
      "error_message": error_message,
      "result_json": result_json,
      "completed_at": completed_at,
    }
    async with self._session_factory() as session:
      row = await session.get(GenerationJob, job_id)
      if row is None:
        return None
      if reset_stages:
        for column in ("phase", "questions_batch_id", "answers_batch_id", "metadata_batch_id", "answers_input_file_id", "error_message", "result_json", "completed_at"):
          setattr(row, column, None)
        row.progress_done = 0
      if clear_error:
        row.error_message = None
        row.completed_at = None
      for column in _UPDATABLE:
        if changes[column] is not None:
          setattr(row, column, changes[column])
      if started_at is not None:
        row.started_at = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
      row.updated_at = now_iso()
      await session.commit()
      await session.refresh(row)
      return self._model_to_record(row)

  async def list_jobs(self, *, statuses: Sequence[JobStatus] | None = None, limit: int = 10, oldest_first: bool = False) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(GenerationJob)
      if statuses:
        stmt = stmt.where(GenerationJob.status.in_(list(statuses)))
      order = (GenerationJob.created_at.asc(), GenerationJob.id.asc()) if oldest_first else (GenerationJob.created_at.desc(), GenerationJob.id.desc())
      rows = (await session.execute(stmt.order_by(*order).limit(limit))).scalars().all()
      return [self._model_to_record(row) for row in rows]

  @staticmethod
  def _model_to_record(row: GenerationJob) -> JobRecord:
    started_at = row.started_at.strftime(ISO_FORMAT) if isinstance(row.started_at, datetime) else None
    return JobRecord(
      job_id=row.id,
      group_id=row.group_id,
      brand_id=row.brand_id,
      model_id=row.model_id,
      content_type=row.content_type,
      language=row.language,
      requested_count=row.requested_count,
      status=row.status,  # type: ignore[arg-type]
      phase=row.phase,  # type: ignore[arg-type]
      progress_total=row.progress_total or 0,
      progress_done=row.progress_done or 0,
      questions_batch_id=row.questions_batch_id,
      answers_batch_id=row.answers_batch_id,
      metadata_batch_id=row.metadata_batch_id,
      answers_input_file_id=row.answers_input_file_id,
      error_message=row.error_message,
      result_json=row.result_json,
      created_at=row.created_at,
      updated_at=row.updated_at,
      started_at=started_at,
      completed_at=row.completed_at,
    )
