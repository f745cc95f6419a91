from __future__ import annotations

import pytest

from bulkgen.jobs.models import JobSpec
from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.jobs.recovery import analyze_failure, fix_job, list_failures, sweep
from bulkgen.storage.jobs_repo import NoopJobTracker
from tests.fakes import FakeBatchClient, InMemoryJobTracker, ScriptedSubmitter, SleepRecorder, make_job, make_settings


def _orchestrator(tracker, batch_client: FakeBatchClient, submitter: ScriptedSubmitter | None = None) -> JobOrchestrator:
  return JobOrchestrator(make_settings(), tracker, submitter or ScriptedSubmitter(), batch_client, sleep=SleepRecorder())


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("batch_status", "category", "action"),
  [("in_progress", "batch_still_running", "continue"), ("completed", "recoverable", "continue"), ("expired", "batch_failed", "restart")],
)
async def test_analysis_prefers_the_stage_batch_status(batch_client: FakeBatchClient, batch_status: str, category: str, action: str) -> None:
  batch = batch_client.add_batch(batch_status, output="" if batch_status == "completed" else None)
  record = make_job(status="failed", phase="answers", answers_batch_id=batch.id, error_message="anything")

  analysis = await analyze_failure(record, batch_client)

  assert analysis.category == category
  assert analysis.fix_action == action
  assert analysis.can_auto_fix
  assert analysis.batch_status == batch_status


@pytest.mark.anyio
@pytest.mark.parametrize(
  ("error_message", "category", "can_auto_fix"),
  [("504 Gateway Time-out", "recoverable", True), ("Submission timed out: read timeout", "timeout", True), ("Group not found", "other_error", False)],
)
async def test_analysis_falls_back_to_error_text(batch_client: FakeBatchClient, error_message: str, category: str, can_auto_fix: bool) -> None:
  analysis = await analyze_failure(make_job(status="failed", error_message=error_message), batch_client)
  assert analysis.category == category
  assert analysis.can_auto_fix is can_auto_fix
  if can_auto_fix:
    assert analysis.fix_action == "restart"


@pytest.mark.anyio
async def test_list_failures_groups_by_category(tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
  await tracker.create_job(make_job(status="failed", error_message="Request timed out"))
  await tracker.create_job(make_job(status="failed", error_message="Request timed out"))
  await tracker.create_job(make_job(status="failed", error_message="Bad input"))
  await tracker.create_job(make_job(status="completed"))

  summary = await list_failures(tracker, batch_client)

  assert summary["total"] == 3
  assert summary["categories"] == {"timeout": 2, "other_error": 1}
  assert len(summary["jobs"]) == 3


@pytest.mark.anyio
async def test_fix_restart_resets_stage_state(tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
  batch = batch_client.add_batch("failed", error_message="input file invalid")
  record = make_job(status="failed", phase="questions", questions_batch_id=batch.id, error_message="Questions batch failed")
  await tracker.create_job(record)

  outcome = await fix_job(record, _orchestrator(tracker, batch_client), batch_client)

  assert outcome == {"jobId": record.job_id, "fixed": True, "action": "restart", "status": "pending"}
  stored = tracker.jobs[record.job_id]
  assert stored.phase is None and stored.questions_batch_id is None and stored.error_message is None


@pytest.mark.anyio
async def test_fix_continue_keeps_stage_state(tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
  batch = batch_client.add_batch("in_progress")
  record = make_job(status="failed", phase="answers", answers_batch_id=batch.id, error_message="504 Gateway Time-out", completed_at="2026-01-01T00:00:00Z")
  await tracker.create_job(record)

  outcome = await fix_job(record, _orchestrator(tracker, batch_client), batch_client)

  assert outcome["action"] == "continue"
  stored = tracker.jobs[record.job_id]
  assert stored.status == "processing"
  assert stored.answers_batch_id == batch.id
  assert stored.error_message is None and stored.completed_at is None


@pytest.mark.anyio
async def test_fix_check_batch_resolves_against_live_batch(tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
  batch = batch_client.add_batch("in_progress")
  record = make_job(status="failed", phase="metadata", metadata_batch_id=batch.id, error_message="Read timed out")
  await tracker.create_job(record)
  orchestrator = _orchestrator(tracker, batch_client)
  # The lookup fails against an empty service, so the analysis falls back to the error text.
  analysis = await analyze_failure(record, FakeBatchClient())
  assert analysis.fix_action == "check_batch"

  outcome = await fix_job(record, orchestrator, batch_client, analysis=analysis)

  assert outcome["action"] == "continue"


@pytest.mark.anyio
async def test_fix_skips_jobs_that_need_a_human(tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
  record = make_job(status="failed", error_message="Group not found")
  outcome = await fix_job(record, _orchestrator(tracker, batch_client), batch_client)
  assert outcome == {"jobId": record.job_id, "fixed": False, "reason": "Group not found"}


@pytest.mark.anyio
async def test_sweep_redrives_active_jobs_including_untracked(tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
  pending = make_job(status="pending", created_at="2026-01-01T00:00:00Z")
  processing = make_job(status="processing", phase="questions", created_at="2026-01-02T00:00:00Z")
  done = make_job(status="completed")
  for record in (pending, processing, done):
    await tracker.create_job(record)
  submitter = ScriptedSubmitter()
  orchestrator = _orchestrator(tracker, batch_client, submitter)

  result = await sweep(orchestrator, tracker)

  assert result.to_payload() == {"processed": 2, "total": 2, "errors": []}
  assert sorted(submitter.calls) == sorted([pending.job_id, processing.job_id])

  untracked = _orchestrator(NoopJobTracker(), batch_client, ScriptedSubmitter())
  [job_id] = await untracked.submit_jobs([JobSpec("brand-1", "model-1", "group-1", "fault", 5)])
  assert (await sweep(untracked, NoopJobTracker())).processed == 1
  assert (await untracked.get_job(job_id)).status == "processing"
