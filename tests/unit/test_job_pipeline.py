from __future__ import annotations

import json

import pytest

from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.jobs.pipeline import JobPipeline
from tests.fakes import GROUP_A, FakeBatchClient, InMemoryContentStore, InMemoryJobTracker, ScriptedSubmitter, SleepRecorder, chat_result, make_job, make_settings, respond


def _pipeline(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore, sleep: SleepRecorder | None = None, **settings_overrides: object) -> JobPipeline:
  settings = make_settings(**settings_overrides)
  sleep = sleep or SleepRecorder()
  orchestrator = JobOrchestrator(settings, tracker, ScriptedSubmitter(), batch_client, sleep=sleep)
  return JobPipeline(settings, orchestrator, batch_client, store, store, sleep=sleep)


@pytest.mark.anyio
async def test_job_walks_every_stage_into_records(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  pipeline = _pipeline(tracker, batch_client, store)
  record = make_job(requested_count=3)
  await tracker.create_job(record)

  outcome = await pipeline.advance(record)
  assert outcome.state == "submitted"
  assert outcome.record.status == "processing" and outcome.record.phase == "questions"
  questions_batch = outcome.record.questions_batch_id

  outcome = await pipeline.advance(outcome.record)
  assert outcome.state == "waiting"

  batch_client.complete(questions_batch, respond(batch_client.input_of(questions_batch), lambda request: chat_result(request["custom_id"], "Why is the engine light on?\nWhy does it stall?\nWhy is it loud?")))
  outcome = await pipeline.advance(outcome.record)
  assert outcome.state == "submitted" and outcome.record.phase == "answers"
  assert outcome.record.progress_total == 3
  assert outcome.record.answers_input_file_id is not None
  answers_batch = outcome.record.answers_batch_id

  batch_client.complete(answers_batch, respond(batch_client.input_of(answers_batch), lambda request: chat_result(request["custom_id"], f"Answer for {request['custom_id']}")))
  outcome = await pipeline.advance(outcome.record)
  assert outcome.state == "submitted" and outcome.record.phase == "metadata"
  metadata_batch = outcome.record.metadata_batch_id

  batch_client.complete(metadata_batch, respond(batch_client.input_of(metadata_batch), lambda request: chat_result(request["custom_id"], json.dumps({"severity": "high"}))))
  outcome = await pipeline.advance(outcome.record)

  assert outcome.state == "completed"
  stored = tracker.jobs[record.job_id]
  assert stored.status == "completed" and stored.progress_done == 3
  assert stored.result_json["success"] == 3 and stored.result_json["failed"] == 0
  assert stored.result_json["batchIds"] == {"questions": questions_batch, "answers": answers_batch, "metadata": metadata_batch}
  rows = store.group_records(GROUP_A)
  assert [row["title"] for row in rows] == ["Why is the engine light on?", "Why does it stall?", "Why is it loud?"]
  assert [row["sequence_number"] for row in rows] == [1, 2, 3]
  assert rows[0]["description"] == f"Answer for answer-{GROUP_A}-1"
  assert rows[0]["metadata_json"] == {"severity": "high", "difficulty_level": "medium", "source_key": f"answer-{GROUP_A}-1"}
  assert [metadata["stage"] for _, _, metadata in batch_client.created] == ["question", "answer", "metadata"]


@pytest.mark.anyio
async def test_failed_stage_batch_fails_the_job(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  batch = batch_client.add_batch("failed", error_message="Line 1 is not valid JSON")
  record = make_job(status="processing", phase="questions", questions_batch_id=batch.id)
  await tracker.create_job(record)

  outcome = await _pipeline(tracker, batch_client, store).advance(record)

  assert outcome.state == "failed"
  assert tracker.jobs[record.job_id].error_message == f"Questions batch {batch.id} failed: Line 1 is not valid JSON"


@pytest.mark.anyio
async def test_full_capacity_waits_once_then_reports_waiting(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  batch_client.add_batch("in_progress")
  sleep = SleepRecorder()
  record = make_job()
  await tracker.create_job(record)

  outcome = await _pipeline(tracker, batch_client, store, sleep=sleep, batch_max_active=1, capacity_wait_seconds=5).advance(record)

  assert outcome.state == "waiting_capacity"
  assert sleep.calls == [5.0]
  assert batch_client.uploads == []
  assert tracker.jobs[record.job_id].phase is None


@pytest.mark.anyio
async def test_interrupted_import_is_not_replayed(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  record = make_job(status="processing", phase="importing", metadata_batch_id="batch-x")
  await tracker.create_job(record)

  outcome = await _pipeline(tracker, batch_client, store).advance(record)

  assert outcome.state == "failed"
  assert outcome.record.error_message == "Import was interrupted; records may be partially imported"


@pytest.mark.anyio
async def test_unknown_group_fails_before_submitting(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  record = make_job(group_id="00000000-0000-4000-8000-000000000000")
  await tracker.create_job(record)

  outcome = await _pipeline(tracker, batch_client, store).advance(record)

  assert outcome.state == "failed"
  assert "not found" in outcome.detail
  assert batch_client.uploads == []


@pytest.mark.anyio
async def test_stage_without_usable_units_fails(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  batch = batch_client.add_batch("completed", output=chat_result(f"question-{GROUP_A}-1", None, status_code=500) + "\n")
  record = make_job(status="processing", phase="questions", questions_batch_id=batch.id)
  await tracker.create_job(record)

  outcome = await _pipeline(tracker, batch_client, store).advance(record)

  assert outcome.state == "failed"
  assert outcome.detail == "Answer stage produced no units (1 skipped, 0 malformed)"


@pytest.mark.anyio
async def test_terminal_jobs_are_skipped(tracker: InMemoryJobTracker, batch_client: FakeBatchClient, store: InMemoryContentStore) -> None:
  outcome = await _pipeline(tracker, batch_client, store).advance(make_job(status="failed"))
  assert outcome.state == "skipped"
  assert outcome.to_payload()["job"]["status"] == "failed"
