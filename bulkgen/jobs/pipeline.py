"""Stage machine that moves one job through Questions -> Answers -> Metadata -> import."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, Literal

from bulkgen.batch.client import BatchServiceClient
from bulkgen.batch.jsonl import CHAT_COMPLETIONS_URL
from bulkgen.config import Settings
from bulkgen.jobs.models import TERMINAL_JOB_STATUSES, JobRecord
from bulkgen.jobs.orchestrator import BatchCapacity, JobOrchestrator
from bulkgen.pipeline.records import ContentImporter
from bulkgen.pipeline.stages import GroupContextCache, GroupContextSource, StageBuildResult, assemble_items, build_answers_stage, build_metadata_stage, build_questions_stage
from bulkgen.storage.content_repo import ContentRepository
from bulkgen.utils.clock import now_iso

logger = logging.getLogger(__name__)

AdvanceState = Literal["submitted", "waiting", "waiting_capacity", "completed", "failed", "skipped"]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class AdvanceOutcome:
  state: AdvanceState
  record: JobRecord
  detail: str | None = None

  def to_payload(self) -> dict[str, Any]:
    return {"state": self.state, "detail": self.detail, "job": asdict(self.record)}


class JobPipeline:
  """Perform at most one stage transition per call.

  Jobs waiting on an external batch return `waiting`; the recovery sweep or a
  manual trigger calls back in later.
  """

  def __init__(self, settings: Settings, orchestrator: JobOrchestrator, batch_client: BatchServiceClient, groups: GroupContextSource, content_repo: ContentRepository, *, sleep: Sleep = asyncio.sleep) -> None:
    self._settings = settings
    self._orchestrator = orchestrator
    self._batch_client = batch_client
    self._groups = groups
    self._importer = ContentImporter(content_repo)
    self._sleep = sleep

  async def advance(self, record: JobRecord) -> AdvanceOutcome:
    if record.status in TERMINAL_JOB_STATUSES:
      return AdvanceOutcome("skipped", record, f"Job is already {record.status}")
    if record.status == "pending":
      record = await self._orchestrator.update_job(record, status="processing", started_at=record.started_at or now_iso())

    if record.phase is None:
      return await self._submit_questions(record)
    if record.phase == "importing":
      return await self._fail(record, "Import was interrupted; records may be partially imported")

    batch_id = record.current_batch_id
    if not batch_id:
      return await self._fail(record, f"Job is in phase {record.phase} without a batch id")

    batch = await self._batch_client.get_batch(batch_id)
    if batch.is_failed:
      reason = f": {batch.error_message}" if batch.error_message else ""
      return await self._fail(record, f"{record.phase.capitalize()} batch {batch_id} {batch.status}{reason}")
    if not batch.is_completed:
      return AdvanceOutcome("waiting", record, f"{record.phase} batch {batch_id} is {batch.status}")
    if not batch.output_file_id:
      return await self._fail(record, f"{record.phase.capitalize()} batch {batch_id} completed without an output file")

    output = await self._batch_client.download_file(batch.output_file_id)
    if record.phase == "questions":
      return await self._submit_answers(record, output)
    if record.phase == "answers":
      return await self._submit_metadata(record, output)
    return await self._import(record, output)

  async def _ensure_capacity(self) -> BatchCapacity:
    capacity = await self._orchestrator.check_batch_capacity()
    if capacity.can_proceed or self._settings.capacity_wait_seconds <= 0:
      return capacity
    logger.info("Waiting %ds for batch capacity (%d/%d active)", self._settings.capacity_wait_seconds, capacity.active_count, capacity.max_allowed)
    await self._sleep(float(self._settings.capacity_wait_seconds))
    return await self._orchestrator.check_batch_capacity()

  async def _submit(self, record: JobRecord, build: StageBuildResult, **changes: Any) -> AdvanceOutcome:
    if build.count == 0:
      return await self._fail(record, f"{build.stage.capitalize()} stage produced no units ({build.skipped} skipped, {build.malformed} malformed)")

    capacity = await self._ensure_capacity()
    if not capacity.can_proceed:
      return AdvanceOutcome("waiting_capacity", record, f"{capacity.active_count}/{capacity.max_allowed} active batches")

    file_id = await self._batch_client.upload_file(build.jsonl, filename=f"{record.job_id}-{build.stage}.jsonl")
    batch = await self._batch_client.create_batch(file_id, endpoint=CHAT_COMPLETIONS_URL, metadata={"job_id": record.job_id, "stage": build.stage})
    logger.info("Job %s submitted %s batch %s with %d units", record.job_id, build.stage, batch.id, build.count)

    batch_field = {"question": "questions_batch_id", "answer": "answers_batch_id", "metadata": "metadata_batch_id"}[build.stage]
    if build.stage == "answer":
      changes["answers_input_file_id"] = file_id
    record = await self._orchestrator.update_job(record, **{batch_field: batch.id}, **changes)
    return AdvanceOutcome("submitted", record, batch.id)

  async def _submit_questions(self, record: JobRecord) -> AdvanceOutcome:
    contexts = await self._groups.get_contexts([record.group_id])
    context = contexts.get(record.group_id)
    if context is None:
      return await self._fail(record, f"Group {record.group_id} not found")
    build = build_questions_stage(context, record.requested_count, content_type=record.content_type, language=record.language, model=self._settings.answers_model)
    return await self._submit(record, build, phase="questions")

  async def _answers_input(self, record: JobRecord, questions_output: str | None = None) -> StageBuildResult:
    # Builders are deterministic, so the answers input is rebuilt instead of re-downloaded.
    if questions_output is None:
      questions_output = await self._batch_output(record.questions_batch_id)
    return await build_answers_stage(questions_output, GroupContextCache(self._groups), content_type=record.content_type, language=record.language, model=self._settings.answers_model)

  async def _batch_output(self, batch_id: str | None) -> str:
    if not batch_id:
      raise ValueError("Missing batch id for a completed stage")
    batch = await self._batch_client.get_batch(batch_id)
    if not batch.is_completed or not batch.output_file_id:
      raise ValueError(f"Batch {batch_id} has no downloadable output (status: {batch.status})")
    return await self._batch_client.download_file(batch.output_file_id)

  async def _submit_answers(self, record: JobRecord, questions_output: str) -> AdvanceOutcome:
    build = await self._answers_input(record, questions_output)
    return await self._submit(record, build, phase="answers", progress_total=build.count)

  async def _submit_metadata(self, record: JobRecord, answers_output: str) -> AdvanceOutcome:
    answers_input = await self._answers_input(record)
    build = build_metadata_stage(answers_input.jsonl, answers_output, content_type=record.content_type, model=self._settings.metadata_model)
    return await self._submit(record, build, phase="metadata")

  async def _import(self, record: JobRecord, metadata_output: str) -> AdvanceOutcome:
    answers_input = await self._answers_input(record)
    answers_output = await self._batch_output(record.answers_batch_id)
    items, unusable = assemble_items(answers_input.jsonl, answers_output, metadata_output)

    record = await self._orchestrator.update_job(record, phase="importing")
    report = await self._importer.import_items(items, content_type=record.content_type, language=record.language)
    result = {
      "success": report.success,
      "failed": report.failed + unusable,
      "total": report.total + unusable,
      "batchIds": record.batch_ids,
      "errors": report.errors,
    }
    if report.success == 0 and report.total + unusable > 0:
      return await self._fail(record, f"Import created no records ({result['failed']} failed)", result_json=result)

    record = await self._orchestrator.update_job(record, status="completed", progress_done=report.success, result_json=result, completed_at=now_iso())
    logger.info("Job %s completed: %d records imported, %d failed", record.job_id, report.success, result["failed"])
    return AdvanceOutcome("completed", record, f"{report.success} records imported")

  async def _fail(self, record: JobRecord, message: str, **changes: Any) -> AdvanceOutcome:
    logger.error("Job %s failed: %s", record.job_id, message)
    record = await self._orchestrator.update_job(record, status="failed", error_message=message[:1000], completed_at=now_iso(), **changes)
    return AdvanceOutcome("failed", record, message)
