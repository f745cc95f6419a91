"""Domain models for orchestrated generation jobs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from bulkgen.pipeline.templates import CONTENT_TYPES

JobStatus = Literal["pending", "processing", "completed", "failed"]
JobPhase = Literal["questions", "answers", "metadata", "importing"]

ACTIVE_JOB_STATUSES: tuple[JobStatus, ...] = ("pending", "processing")
TERMINAL_JOB_STATUSES: tuple[JobStatus, ...] = ("completed", "failed")

MIN_REQUESTED_COUNT = 1
MAX_REQUESTED_COUNT = 50_000
MAX_JOBS_PER_REQUEST = 100


@dataclass(frozen=True)
class JobSpec:
  """Scope of one requested generation job."""

  brand_id: str
  model_id: str
  group_id: str
  content_type: str
  count: int
  language: str = "en"

  def is_valid(self) -> bool:
    """Return True when every scope identifier is set and the count is in range."""
    identifiers = (self.brand_id, self.model_id, self.group_id, self.content_type)
    if not all(isinstance(value, str) and value.strip() for value in identifiers):
      return False
    if self.content_type not in CONTENT_TYPES:
      return False
    if isinstance(self.count, bool) or not isinstance(self.count, int):
      return False
    return MIN_REQUESTED_COUNT <= self.count <= MAX_REQUESTED_COUNT


@dataclass
class JobRecord:
  """A unit of orchestrated work and the unit of retry."""

  job_id: str
  group_id: str
  content_type: str
  requested_count: int
  status: JobStatus
  created_at: str
  updated_at: str
  brand_id: str | None = None
  model_id: str | None = None
  language: str = "en"
  phase: JobPhase | None = None
  progress_total: int = 0
  progress_done: int = 0
  questions_batch_id: str | None = None
  answers_batch_id: str | None = None
  metadata_batch_id: str | None = None
  answers_input_file_id: str | None = None
  error_message: str | None = None
  result_json: dict[str, Any] | None = None
  started_at: str | None = None
  completed_at: str | None = None

  @property
  def current_batch_id(self) -> str | None:
    """Return the external batch the job is currently waiting on, if any."""
    if self.phase == "questions":
      return self.questions_batch_id
    if self.phase == "answers":
      return self.answers_batch_id
    if self.phase == "metadata":
      return self.metadata_batch_id
    return None

  @property
  def batch_ids(self) -> dict[str, str]:
    ids = {"questions": self.questions_batch_id, "answers": self.answers_batch_id, "metadata": self.metadata_batch_id}
    return {stage: batch_id for stage, batch_id in ids.items() if batch_id}
