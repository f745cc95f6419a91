"""Job orchestration: acceptance, capacity gating, parallel fan-out and submission retries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, fields, replace
from typing import Any

from bulkgen.batch.client import BatchServiceClient
from bulkgen.config import Settings
from bulkgen.jobs.models import TERMINAL_JOB_STATUSES, JobRecord, JobSpec
from bulkgen.services.submission import SubmissionError, SubmissionTransport
from bulkgen.storage.jobs_repo import JobTracker
from bulkgen.utils.clock import now_iso
from bulkgen.utils.ids import generate_job_id

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
_RECORD_FIELDS = frozenset(field.name for field in fields(JobRecord))


@dataclass(frozen=True)
class BatchCapacity:
  """Result of the external active-batch check."""

  can_proceed: bool
  active_count: int
  max_allowed: int
  checked: bool = True

  def to_payload(self) -> dict[str, Any]:
    return {"canProceed": self.can_proceed, "activeCount": self.active_count, "maxAllowed": self.max_allowed, "checked": self.checked}


async def check_batch_capacity(batch_client: BatchServiceClient, *, max_allowed: int, strict: bool = False) -> BatchCapacity:
  """Count validating/in_progress/finalizing batches against the service's hard limit.

  A failed check fails open (proceed) unless `strict` is set, in which case it
  fails closed.
  """
  try:
    batches = await batch_client.list_batches(limit=100)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Batch capacity check failed (strict=%s): %s", strict, exc)
    return BatchCapacity(can_proceed=not strict, active_count=0, max_allowed=max_allowed, checked=False)

  active_count = sum(1 for batch in batches if batch.is_active)
  capacity = BatchCapacity(can_proceed=active_count < max_allowed, active_count=active_count, max_allowed=max_allowed)
  if not capacity.can_proceed:
    logger.warning("Batch capacity reached: %d/%d active batches", active_count, max_allowed)
  return capacity


def backoff_delay_ms(attempt: int, *, initial_ms: int = 1000, max_ms: int = 10000) -> int:
  """Exponential backoff for the given 1-based attempt, capped at `max_ms`."""
  return min(initial_ms * (2 ** (attempt - 1)), max_ms)


def record_from_payload(payload: dict[str, Any]) -> JobRecord:
  """Rebuild a job record from its JSON form, ignoring unknown keys."""
  return JobRecord(**{key: value for key, value in payload.items() if key in _RECORD_FIELDS})


def new_job_record(spec: JobSpec) -> JobRecord:
  timestamp = now_iso()
  return JobRecord(
    job_id=generate_job_id(),
    group_id=spec.group_id,
    brand_id=spec.brand_id,
    model_id=spec.model_id,
    content_type=spec.content_type,
    language=spec.language or "en",
    requested_count=spec.count,
    status="pending",
    progress_total=spec.count,
    created_at=timestamp,
    updated_at=timestamp,
  )


class JobOrchestrator:
  """Owns job lifecycle state and hands each job to the stage pipeline."""

  def __init__(self, settings: Settings, tracker: JobTracker, submitter: SubmissionTransport, batch_client: BatchServiceClient, *, sleep: Sleep = asyncio.sleep) -> None:
    self._settings = settings
    self._tracker = tracker
    self._submitter = submitter
    self._batch_client = batch_client
    self._sleep = sleep
    # Jobs accepted while persistence was unavailable; they live only in this process.
    self._untracked: dict[str, JobRecord] = {}

  @property
  def untracked_jobs(self) -> list[JobRecord]:
    return list(self._untracked.values())

  async def check_batch_capacity(self) -> BatchCapacity:
    return await check_batch_capacity(self._batch_client, max_allowed=self._settings.batch_max_active, strict=self._settings.batch_capacity_strict)

  async def submit_jobs(self, specs: Sequence[JobSpec]) -> list[str]:
    """Persist a pending row per valid spec and return the accepted job ids.

    Invalid specs are dropped without error; callers only see how many jobs
    were actually created.
    """
    job_ids: list[str] = []
    for spec in specs:
      if not spec.is_valid():
        logger.info("Dropping invalid job spec group=%s count=%s", spec.group_id, spec.count)
        continue
      record = new_job_record(spec)
      await self._track_create(record)
      job_ids.append(record.job_id)
    logger.info("Accepted %d of %d job specs", len(job_ids), len(specs))
    return job_ids

  async def _track_create(self, record: JobRecord) -> None:
    if not self._tracker.enabled:
      self._untracked[record.job_id] = record
      return
    try:
      await self._tracker.create_job(record)
    except Exception as exc:  # noqa: BLE001
      # Persistence is a side-channel; losing it downgrades the job to fire-and-forget.
      logger.warning("Job tracking unavailable, running job %s untracked: %s", record.job_id, exc)
      self._untracked[record.job_id] = record

  async def get_job(self, job_id: str) -> JobRecord | None:
    if job_id in self._untracked:
      return self._untracked[job_id]
    try:
      return await self._tracker.get_job(job_id)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Job lookup failed for %s: %s", job_id, exc)
      return None

  async def update_job(self, record: JobRecord, **changes: Any) -> JobRecord:
    """Persist changes when tracked and always return the updated in-memory record."""
    reset = bool(changes.pop("reset_stages", False))
    clear_error = bool(changes.pop("clear_error", False))
    local = record
    if reset:
      local = replace(local, phase=None, questions_batch_id=None, answers_batch_id=None, metadata_batch_id=None, answers_input_file_id=None, error_message=None, result_json=None, completed_at=None, progress_done=0)
    if clear_error:
      local = replace(local, error_message=None, completed_at=None)
    local = replace(local, **changes, updated_at=now_iso())

    if record.job_id in self._untracked:
      self._untracked[record.job_id] = local
      return local
    try:
      persisted = await self._tracker.update_job(record.job_id, reset_stages=reset, clear_error=clear_error, **changes)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Job update not persisted for %s: %s", record.job_id, exc)
      persisted = None
    return persisted or local

  async def run_jobs(self, job_ids: Sequence[str]) -> list[JobRecord | None]:
    """Process all jobs concurrently; the capacity gate, not the client, throttles."""
    return list(await asyncio.gather(*(self.process_job(job_id) for job_id in job_ids)))

  async def process_job(self, job_id: str) -> JobRecord | None:
    """Mark a job processing and hand it to the pipeline, retrying transient failures."""
    record = await self.get_job(job_id)
    if record is None:
      logger.error("Job %s not found; nothing to process", job_id)
      return None
    if record.status in TERMINAL_JOB_STATUSES:
      logger.info("Job %s is already %s; skipping", job_id, record.status)
      return record
    if record.status == "pending":
      record = await self.update_job(record, status="processing", started_at=now_iso())

    max_attempts = self._settings.submit_max_attempts
    last_error: SubmissionError | None = None
    for attempt in range(1, max_attempts + 1):
      try:
        payload = await self._submitter.submit(record)
      except SubmissionError as exc:
        last_error = exc
        if not exc.retryable:
          return await self._fail(record, f"Service rejected request (HTTP {exc.status_code}): {exc}")
        if attempt >= max_attempts:
          break
        delay_ms = backoff_delay_ms(attempt, initial_ms=self._settings.submit_initial_backoff_ms, max_ms=self._settings.submit_max_backoff_ms)
        logger.warning("Submission attempt %d/%d failed for job %s; retrying in %dms: %s", attempt, max_attempts, job_id, delay_ms, exc)
        await self._sleep(delay_ms / 1000.0)
        # The failed attempt may still have advanced an untracked job before the transport gave up.
        record = self._untracked.get(job_id, record)
        continue
      return self._absorb(record, payload)

    if last_error is not None and last_error.unreachable:
      message = f"Service unreachable: cannot connect to submission endpoint after {max_attempts} attempts: {last_error}"
    elif last_error is not None and last_error.status_code is not None:
      message = f"Service rejected request after {max_attempts} attempts (HTTP {last_error.status_code}): {last_error}"
    else:
      message = f"Submission failed after {max_attempts} attempts: {last_error}"
    return await self._fail(record, message)

  def _absorb(self, record: JobRecord, payload: dict[str, Any] | None) -> JobRecord:
    """Adopt the snapshot returned by the advance endpoint when it sent one."""
    job_payload = (payload or {}).get("job")
    if not isinstance(job_payload, dict):
      return record
    updated = record_from_payload(job_payload)
    if record.job_id in self._untracked:
      self._untracked[record.job_id] = updated
    return updated

  async def _fail(self, record: JobRecord, message: str) -> JobRecord:
    logger.error("Job %s failed: %s", record.job_id, message)
    return await self.update_job(record, status="failed", error_message=message[:1000], completed_at=now_iso())

  def snapshot(self, record: JobRecord) -> dict[str, Any]:
    return asdict(record)
