"""Job tracking capability interface and its no-op implementation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from bulkgen.jobs.models import JobPhase, JobRecord, JobStatus

logger = logging.getLogger(__name__)


class JobTracker(Protocol):
  """Optional persistence side-channel for job lifecycle state.

  Execution never depends on a tracker: every method may be a no-op and
  callers keep working from the in-memory record they already hold.
  """

  @property
  def enabled(self) -> bool:
    """Return True when updates are actually persisted."""

  async def create_job(self, record: JobRecord) -> None:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

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
    """Apply partial updates; `reset_stages` clears phase, batch ids and errors first."""

  async def list_jobs(self, *, statuses: Sequence[JobStatus] | None = None, limit: int = 10, oldest_first: bool = False) -> list[JobRecord]:
    """List jobs, optionally filtered by status."""


class NoopJobTracker:
  """Tracker used when no job table is available; every call is a no-op."""

  enabled = False

  async def create_job(self, record: JobRecord) -> None:
    logger.debug("Job tracking disabled; not persisting job %s", record.job_id)

  async def get_job(self, job_id: str) -> JobRecord | None:
    return None

  async def update_job(self, job_id: str, **changes: Any) -> JobRecord | None:
    return None

  async def list_jobs(self, *, statuses: Sequence[JobStatus] | None = None, limit: int = 10, oldest_first: bool = False) -> list[JobRecord]:
    return []
