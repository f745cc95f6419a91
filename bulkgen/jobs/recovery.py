"""Recovery sweep for stalled jobs and the failed-job analyzer/fixer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from bulkgen.batch.client import BatchServiceClient
from bulkgen.jobs.models import ACTIVE_JOB_STATUSES, JobRecord
from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.storage.jobs_repo import JobTracker

logger = logging.getLogger(__name__)

FailureCategory = Literal["batch_still_running", "recoverable", "batch_failed", "timeout", "other_error"]
FixAction = Literal["restart", "continue", "check_batch"]

SWEEP_ERROR_SAMPLE = 10
SUMMARY_JOB_LIMIT = 20


@dataclass(frozen=True)
class SweepResult:
  processed: int
  total: int
  errors: list[str] = field(default_factory=list)

  def to_payload(self) -> dict[str, Any]:
    return {"processed": self.processed, "total": self.total, "errors": self.errors[:SWEEP_ERROR_SAMPLE]}


@dataclass(frozen=True)
class FailureAnalysis:
  job_id: str
  category: FailureCategory
  reason: str
  can_auto_fix: bool
  fix_action: FixAction | None = None
  batch_status: str | None = None

  def to_payload(self) -> dict[str, Any]:
    return {"jobId": self.job_id, "category": self.category, "reason": self.reason, "canAutoFix": self.can_auto_fix, "fixAction": self.fix_action, "batchStatus": self.batch_status}


async def sweep(orchestrator: JobOrchestrator, tracker: JobTracker, *, limit: int = 50) -> SweepResult:
  """Re-drive pending/processing jobs, oldest first, all in parallel."""
  try:
    records = await tracker.list_jobs(statuses=ACTIVE_JOB_STATUSES, limit=limit, oldest_first=True)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Recovery sweep could not list tracked jobs: %s", exc)
    records = []
  seen = {record.job_id for record in records}
  records.extend(record for record in orchestrator.untracked_jobs if record.status in ACTIVE_JOB_STATUSES and record.job_id not in seen)
  records = records[:limit]
  if not records:
    return SweepResult(processed=0, total=0)

  results = await asyncio.gather(*(orchestrator.process_job(record.job_id) for record in records), return_exceptions=True)
  errors: list[str] = []
  processed = 0
  for record, outcome in zip(records, results, strict=True):
    if isinstance(outcome, BaseException):
      logger.error("Recovery sweep failed for job %s: %s", record.job_id, outcome)
      errors.append(f"{record.job_id}: {outcome}")
      continue
    processed += 1
  logger.info("Recovery sweep processed %d of %d jobs", processed, len(records))
  return SweepResult(processed=processed, total=len(records), errors=errors[:SWEEP_ERROR_SAMPLE])


async def analyze_failure(record: JobRecord, batch_client: BatchServiceClient) -> FailureAnalysis:
  """Classify a failed job by its stage batch status first, then by its error text."""
  batch_id = record.current_batch_id
  if batch_id:
    try:
      batch = await batch_client.get_batch(batch_id)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Could not check batch %s for job %s: %s", batch_id, record.job_id, exc)
    else:
      if batch.is_active:
        return FailureAnalysis(record.job_id, "batch_still_running", f"Batch {batch_id} is still {batch.status}", True, "continue", batch.status)
      if batch.is_completed:
        return FailureAnalysis(record.job_id, "recoverable", f"Batch {batch_id} completed; the job can continue", True, "continue", batch.status)
      if batch.is_failed:
        return FailureAnalysis(record.job_id, "batch_failed", f"Batch {batch_id} {batch.status}", True, "restart", batch.status)

  error = (record.error_message or "").lower()
  if "gateway time-out" in error:
    return FailureAnalysis(record.job_id, "recoverable", "Gateway timeout while the batch may still be running", True, "check_batch" if batch_id else "restart")
  if "timeout" in error or "timed out" in error:
    return FailureAnalysis(record.job_id, "timeout", "Request timed out", True, "check_batch" if batch_id else "restart")
  return FailureAnalysis(record.job_id, "other_error", record.error_message or "Unknown error", False)


async def list_failures(tracker: JobTracker, batch_client: BatchServiceClient, *, limit: int = 100) -> dict[str, Any]:
  """Return counts per failure category plus up to 20 analyzed jobs."""
  records = await tracker.list_jobs(statuses=("failed",), limit=limit)
  analyses = [await analyze_failure(record, batch_client) for record in records]
  categories: dict[str, int] = {}
  for analysis in analyses:
    categories[analysis.category] = categories.get(analysis.category, 0) + 1
  return {"total": len(analyses), "categories": categories, "jobs": [analysis.to_payload() for analysis in analyses[:SUMMARY_JOB_LIMIT]]}


async def fix_job(record: JobRecord, orchestrator: JobOrchestrator, batch_client: BatchServiceClient, *, analysis: FailureAnalysis | None = None) -> dict[str, Any]:
  """Apply the analyzer's fix action and return the resulting job state.

  Processing is re-driven by the caller (usually fire-and-forget).
  """
  analysis = analysis or await analyze_failure(record, batch_client)
  if not analysis.can_auto_fix or analysis.fix_action is None:
    return {"jobId": record.job_id, "fixed": False, "reason": analysis.reason}

  action = analysis.fix_action
  if action == "check_batch":
    batch_id = record.current_batch_id
    batch = await batch_client.get_batch(batch_id) if batch_id else None
    # A failed batch cannot be resumed; start the job over instead.
    action = "restart" if batch is None or batch.is_failed else "continue"

  if action == "restart":
    updated = await orchestrator.update_job(record, status="pending", reset_stages=True)
  else:
    updated = await orchestrator.update_job(record, status="processing", clear_error=True)
  logger.info("Applied fix %s to job %s (%s)", action, record.job_id, analysis.category)
  return {"jobId": record.job_id, "fixed": True, "action": action, "status": updated.status}
