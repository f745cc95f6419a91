from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from bulkgen.api.deps import get_orchestrator, get_pipeline, get_tracker
from bulkgen.api.models import AdvanceRequest
from bulkgen.jobs.orchestrator import JobOrchestrator, record_from_payload
from bulkgen.jobs.pipeline import JobPipeline
from bulkgen.jobs.recovery import sweep
from bulkgen.storage.jobs_repo import JobTracker

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/jobs/{job_id}/advance", status_code=status.HTTP_200_OK)
async def advance_job(
  job_id: str,
  request: AdvanceRequest,
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
  pipeline: JobPipeline = Depends(get_pipeline),  # noqa: B008
) -> dict[str, Any]:
  """Worker endpoint that moves one job through at most one stage transition."""
  logger.info("Received advance request for job %s", job_id)
  record = await orchestrator.get_job(job_id)
  # Untracked jobs only exist in the caller's snapshot.
  if record is None and request.job and request.job.get("job_id") == job_id:
    try:
      record = record_from_payload(request.job)
    except TypeError as exc:
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid job snapshot: {exc}") from exc
  if record is None:
    logger.error("Job %s not found during worker processing.", job_id)
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found.")

  outcome = await pipeline.advance(record)
  logger.info("Job %s advance outcome: %s (%s)", job_id, outcome.state, outcome.detail)
  return outcome.to_payload()


@router.post("/jobs/sweep")
async def sweep_jobs(
  limit: int = 50,
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
  tracker: JobTracker = Depends(get_tracker),  # noqa: B008
) -> dict[str, Any]:
  """Re-drive pending and processing jobs, oldest first."""
  result = await sweep(orchestrator, tracker, limit=max(1, min(limit, 200)))
  return result.to_payload()
