from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from bulkgen.api.deps import (
  get_batch_client,
  get_content_repository,
  get_embedding_engine,
  get_embedding_repository,
  get_group_repository,
  get_index_service,
  get_orchestrator,
  get_tracker,
)
from bulkgen.batch.client import BatchServiceError
from bulkgen.config import Settings, get_settings
from bulkgen.embeddings.engine import EmbeddingEngine
from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.main import app
from bulkgen.services.triggers import drain_background_tasks
from tests.fakes import (
  GROUP_A,
  GROUP_B,
  FakeBatchClient,
  FakeEmbeddingProvider,
  InMemoryContentStore,
  InMemoryJobTracker,
  RecordingIndexSubmitter,
  ScriptedSubmitter,
  SleepRecorder,
  chat_result,
  embedding_result,
  make_job,
  make_settings,
)


class Wiring:
  """The fakes behind one test app, exposed so tests can seed and inspect them."""

  def __init__(self, settings: Settings, store: InMemoryContentStore, tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> None:
    self.settings = settings
    self.store = store
    self.tracker = tracker
    self.batch_client = batch_client
    self.index = RecordingIndexSubmitter()
    self.provider = FakeEmbeddingProvider()
    self.orchestrator = JobOrchestrator(settings, tracker, ScriptedSubmitter(), batch_client, sleep=SleepRecorder())

  def install(self) -> None:
    app.dependency_overrides[get_settings] = lambda: self.settings
    app.dependency_overrides[get_tracker] = lambda: self.tracker
    app.dependency_overrides[get_batch_client] = lambda: self.batch_client
    app.dependency_overrides[get_orchestrator] = lambda: self.orchestrator
    app.dependency_overrides[get_content_repository] = lambda: self.store
    app.dependency_overrides[get_embedding_repository] = lambda: self.store
    app.dependency_overrides[get_group_repository] = lambda: self.store
    app.dependency_overrides[get_index_service] = lambda: self.index
    app.dependency_overrides[get_embedding_engine] = lambda: EmbeddingEngine(self.store, self.store, self.provider, self.settings)


@pytest.fixture
def wiring(store: InMemoryContentStore, tracker: InMemoryJobTracker, batch_client: FakeBatchClient) -> Wiring:
  return Wiring(make_settings(index_url_template="https://example.test/{language}/{brand_slug}/{model_slug}/{generation_slug}/{slug}"), store, tracker, batch_client)


@pytest.fixture
async def client(wiring: Wiring) -> AsyncIterator[AsyncClient]:
  wiring.install()
  try:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
      yield http
    await drain_background_tasks(timeout=1.0)
  finally:
    app.dependency_overrides.clear()


def _job(group_id: str = GROUP_A, count: int = 5) -> dict[str, object]:
  return {"brandId": "brand-1", "modelId": "model-1", "groupId": group_id, "contentType": "fault", "count": count}


@pytest.mark.anyio
async def test_health_check(client: AsyncClient) -> None:
  response = await client.get("/health")
  assert response.status_code == 200
  assert response.json()["status"] == "ok"


@pytest.mark.anyio
async def test_create_jobs_reports_created_and_dropped_specs(client: AsyncClient, wiring: Wiring) -> None:
  response = await client.post("/v1/jobs", json={"jobs": [_job(), _job(count=0), _job(GROUP_B, count=2)]})

  assert response.status_code == 201
  body = response.json()
  assert body["jobs"] == 3
  assert body["created"] == 2
  assert set(body["jobIds"]) <= set(wiring.tracker.jobs)
  assert {wiring.tracker.jobs[job_id].requested_count for job_id in body["jobIds"]} == {5, 2}


@pytest.mark.anyio
async def test_create_jobs_rejects_when_every_spec_is_invalid(client: AsyncClient, wiring: Wiring) -> None:
  response = await client.post("/v1/jobs", json={"jobs": [_job(count=0), _job(group_id="")]})
  assert response.status_code == 400
  assert wiring.tracker.jobs == {}


@pytest.mark.anyio
async def test_create_jobs_caps_request_size(client: AsyncClient) -> None:
  response = await client.post("/v1/jobs", json={"jobs": [_job() for _ in range(101)]})
  assert response.status_code == 422
  assert all("input" not in error for error in response.json()["detail"])


@pytest.mark.anyio
async def test_job_status_and_capacity(client: AsyncClient, wiring: Wiring) -> None:
  record = make_job(status="processing", phase="answers", answers_batch_id="batch-7")
  await wiring.tracker.create_job(record)
  wiring.batch_client.add_batch("in_progress")

  response = await client.get(f"/v1/jobs/{record.job_id}")
  assert response.status_code == 200
  body = response.json()
  assert body["jobId"] == record.job_id
  assert body["phase"] == "answers"
  assert body["batchIds"] == {"answers": "batch-7"}

  missing = await client.get("/v1/jobs/00000000-0000-4000-8000-000000000000")
  assert missing.status_code == 404

  capacity = await client.get("/v1/jobs/capacity")
  assert capacity.json() == {"canProceed": True, "activeCount": 1, "maxAllowed": 50, "checked": True}


@pytest.mark.anyio
async def test_advance_accepts_untracked_snapshot(client: AsyncClient, wiring: Wiring) -> None:
  record = make_job(requested_count=60)
  response = await client.post(f"/internal/jobs/{record.job_id}/advance", json={"job": wiring.orchestrator.snapshot(record)})

  assert response.status_code == 200
  body = response.json()
  assert body["state"] == "submitted"
  assert body["job"]["phase"] == "questions"
  assert body["job"]["questions_batch_id"] in wiring.batch_client.batches
  assert wiring.batch_client.created[0][2]["stage"] == "question"


@pytest.mark.anyio
async def test_advance_unknown_job_is_404(client: AsyncClient) -> None:
  response = await client.post("/internal/jobs/job-missing/advance", json={})
  assert response.status_code == 404


@pytest.mark.anyio
async def test_advance_maps_permanent_batch_errors_to_400(client: AsyncClient, wiring: Wiring) -> None:
  record = make_job()
  await wiring.tracker.create_job(record)
  wiring.batch_client.upload_error = BatchServiceError("Invalid purpose", status_code=400)

  response = await client.post(f"/internal/jobs/{record.job_id}/advance", json={})

  assert response.status_code == 400
  assert "Invalid purpose" in response.json()["detail"]


@pytest.mark.anyio
async def test_stage_endpoints_chain_answers_metadata_and_embeddings(client: AsyncClient, wiring: Wiring) -> None:
  questions_output = "\n".join([chat_result(f"question-{GROUP_A}-1", "Why is the engine light on?\nWhy does it stall?"), chat_result(f"question-{GROUP_B}-1", "Why do the brakes squeal?")])

  answers = await client.post("/v1/stages/answers", json={"questionsOutput": questions_output})
  assert answers.status_code == 200
  answers_body = answers.json()
  assert answers_body["count"] == 3
  assert answers_body["groups"] == [GROUP_A, GROUP_B]

  answers_output = "\n".join(chat_result(f"answer-{GROUP_A}-{n}", f"Answer {n}") for n in (1, 2))
  metadata = await client.post("/v1/stages/metadata", json={"answersInput": answers_body["jsonl"], "answersOutput": answers_output})
  assert metadata.status_code == 200
  assert metadata.json()["count"] == 2

  embeddings = await client.post("/v1/stages/embeddings", json={"answersInput": answers_body["jsonl"], "submit": True})
  assert embeddings.status_code == 200
  embeddings_body = embeddings.json()
  assert embeddings_body["count"] == 3
  assert embeddings_body["batchId"] in wiring.batch_client.batches
  assert wiring.batch_client.created[-1][1] == "/v1/embeddings"


@pytest.mark.anyio
async def test_metadata_stage_rejects_duplicate_answer_keys(client: AsyncClient) -> None:
  questions_output = chat_result(f"question-{GROUP_A}-1", "Why is the engine light on?")
  answers = (await client.post("/v1/stages/answers", json={"questionsOutput": questions_output})).json()
  duplicated = "\n".join([chat_result(f"answer-{GROUP_A}-1", "First"), chat_result(f"answer-{GROUP_A}-1", "Second")])

  response = await client.post("/v1/stages/metadata", json={"answersInput": answers["jsonl"], "answersOutput": duplicated})

  assert response.status_code == 400


@pytest.mark.anyio
async def test_embedding_stage_refuses_when_capacity_is_full(client: AsyncClient, wiring: Wiring) -> None:
  for _ in range(wiring.settings.batch_max_active):
    wiring.batch_client.add_batch("validating")
  questions_output = chat_result(f"question-{GROUP_A}-1", "Why is the engine light on?")
  answers = (await client.post("/v1/stages/answers", json={"questionsOutput": questions_output})).json()

  response = await client.post("/v1/stages/embeddings", json={"answersInput": answers["jsonl"], "submit": True})

  assert response.status_code == 429
  assert wiring.batch_client.uploads == []


@pytest.mark.anyio
async def test_generate_embeddings_skips_existing_on_rerun(client: AsyncClient, wiring: Wiring) -> None:
  ids = [wiring.store.add_record(GROUP_A, title=f"Title {n}") for n in range(2)]

  first = (await client.post("/v1/embeddings/generate", json={"ids": ids})).json()
  second = (await client.post("/v1/embeddings/generate", json={"ids": ids})).json()

  assert (first["successful"], first["failed"], first["skipped"]) == (2, 0, 0)
  assert (second["successful"], second["failed"], second["skipped"]) == (0, 0, 2)
  assert {result["status"] for result in first["results"]} == {"created"}


@pytest.mark.anyio
async def test_embedding_page_embeds_and_submits_urls(client: AsyncClient, wiring: Wiring) -> None:
  ids = [wiring.store.add_record(GROUP_A, title=f"Title {n}") for n in range(3)]

  response = await client.post("/v1/embeddings/page", json={"batchSize": 2, "offset": 0})

  assert response.status_code == 200
  body = response.json()
  assert body["processed"] == 2
  assert body["successful"] == 2
  # The third record was scanned but left for the next page.
  assert body["skipped"] == 0
  assert body["nextOffset"] == 2
  assert body["hasMore"] is True
  assert body["indexSubmitted"] == 2
  assert set(wiring.store.embeddings) == set(ids[:2])
  assert wiring.index.submitted[0] == f"https://example.test/en/volvo/xc90/ii/{wiring.store.records[ids[0]]['slug']}"


@pytest.mark.anyio
async def test_embedding_page_can_skip_index_submission(client: AsyncClient, wiring: Wiring) -> None:
  wiring.store.add_record(GROUP_A)
  body = (await client.post("/v1/embeddings/page", json={"batchSize": 5, "skipSecondaryPipeline": True})).json()
  assert body["successful"] == 1
  assert body["indexSubmitted"] == 0
  assert wiring.index.submitted == []


@pytest.mark.anyio
async def test_resolve_reports_dropped_pairs(client: AsyncClient, wiring: Wiring) -> None:
  first = wiring.store.add_record(GROUP_A, sequence_number=1)

  response = await client.post("/v1/reconcile/resolve", json={"pairs": [{"groupId": GROUP_A, "ordinal": 1}, {"groupId": GROUP_A, "ordinal": 4}, {"groupId": "ffff", "ordinal": 1}]})

  assert response.status_code == 200
  body = response.json()
  assert body["ids"] == {f"{GROUP_A}:1": first}
  assert set(body["dropped"]) == {f"{GROUP_A}:4", "ffff:1"}


@pytest.mark.anyio
async def test_import_embeddings_from_uploaded_file(client: AsyncClient, wiring: Wiring) -> None:
  record_id = wiring.store.add_record(GROUP_A, title="Imported", sequence_number=1)
  results = embedding_result(f"embedding-{GROUP_A}-1", [0.1, 0.2, 0.3, 0.4]) + "\n"

  response = await client.post("/v1/reconcile/embeddings/import", files={"file": ("results.jsonl", results.encode("utf-8"), "application/jsonl")})

  assert response.status_code == 200
  assert response.json()["inserted"] == 1
  assert wiring.store.embeddings[record_id].embedding == [0.1, 0.2, 0.3, 0.4]


@pytest.mark.anyio
async def test_import_embeddings_requires_a_source(client: AsyncClient) -> None:
  response = await client.post("/v1/reconcile/embeddings/import", data={})
  assert response.status_code == 400
