from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from bulkgen.api.deps import get_batch_client, get_orchestrator, get_tracker
from bulkgen.api.models import CapacityResponse, CreateJobsRequest, CreateJobsResponse, FixFailuresRequest, JobStatusResponse
from bulkgen.batch.client import BatchServiceClient
from bulkgen.jobs.models import JobRecord
from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.jobs.recovery import analyze_failure, fix_job, list_failures
from bulkgen.services.triggers import fire_and_forget
from bulkgen.storage.jobs_repo import JobTracker

router = APIRouter()
logger = logging.getLogger(__name__)

RECENT_JOBS_LIMIT = 10
FIX_SCAN_LIMIT = 100


@router.post("", response_model=CreateJobsResponse, status_code=status.HTTP_201_CREATED)
async def create_jobs(
  request: CreateJobsRequest,
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> CreateJobsResponse:
  """Accept up to 100 job specs; invalid specs are silently dropped."""
  job_ids = await orchestrator.submit_jobs([spec.to_spec() for spec in request.jobs])
  if not job_ids:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid job specs provided.")

  # Kick processing without blocking the response; the sweep picks up anything this misses.
  fire_and_forget(orchestrator.run_jobs(job_ids), name=f"run-jobs-{job_ids[0]}")
  return CreateJobsResponse(jobs=len(request.jobs), created=len(job_ids), job_ids=job_ids)


@router.get("", response_model=list[JobStatusResponse])
async def list_recent_jobs(
  tracker: JobTracker = Depends(get_tracker),  # noqa: B008
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> list[JobStatusResponse]:
  records = await tracker.list_jobs(limit=RECENT_JOBS_LIMIT)
  records.extend(orchestrator.untracked_jobs)
  records.sort(key=lambda record: record.created_at, reverse=True)
  return [JobStatusResponse.from_record(record) for record in records[:RECENT_JOBS_LIMIT]]


@router.get("/capacity", response_model=CapacityResponse)
async def get_capacity(orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> CapacityResponse:  # noqa: B008
  capacity = await orchestrator.check_batch_capacity()
  return CapacityResponse(can_proceed=capacity.can_proceed, active_count=capacity.active_count, max_allowed=capacity.max_allowed, checked=capacity.checked)


@router.get("/failures")
async def get_failures(
  tracker: JobTracker = Depends(get_tracker),  # noqa: B008
  batch_client: BatchServiceClient = Depends(get_batch_client),  # noqa: B008
) -> dict[str, Any]:
  """Summarize failed jobs by category."""
  return await list_failures(tracker, batch_client)


@router.post("/failures/fix")
async def fix_failures(
  request: FixFailuresRequest,
  tracker: JobTracker = Depends(get_tracker),  # noqa: B008
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
  batch_client: BatchServiceClient = Depends(get_batch_client),  # noqa: B008
) -> dict[str, Any]:
  """Apply fix actions to one job, one category, or every auto-fixable failure."""
  if request.job_id:
    record = await orchestrator.get_job(request.job_id)
    if record is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found.")
    if record.status != "failed":
      raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Job is {record.status}, not failed.")
    candidates: list[JobRecord] = [record]
  elif request.fix_all or request.category:
    candidates = await tracker.list_jobs(statuses=("failed",), limit=FIX_SCAN_LIMIT)
  else:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide jobId, fixAll or category.")

  results: list[dict[str, Any]] = []
  for record in candidates:
    analysis = await analyze_failure(record, batch_client)
    if request.category and analysis.category != request.category:
      continue
    outcome = await fix_job(record, orchestrator, batch_client, analysis=analysis)
    if outcome["fixed"]:
      fire_and_forget(orchestrator.process_job(record.job_id), name=f"fix-{record.job_id}")
    results.append(outcome)

  fixed = sum(1 for outcome in results if outcome["fixed"])
  logger.info("Fixed %d of %d failed jobs", fixed, len(results))
  return {"fixed": fixed, "skipped": len(results) - fixed, "results": results}


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobStatusResponse:  # noqa: B008
  record = await orchestrator.get_job(job_id)
  if record is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found.")
  return JobStatusResponse.from_record(record)


@router.post("/{job_id}/process", response_model=JobStatusResponse)
async def process_job(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobStatusResponse:  # noqa: B008
  """Advance one job by one stage and return its updated status."""
  record = await orchestrator.process_job(job_id)
  if record is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found.")
  return JobStatusResponse.from_record(record)
