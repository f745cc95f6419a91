from __future__ import annotations

import json

import httpx
import pytest

from bulkgen.services.submission import HttpSubmissionClient, SubmissionError
from tests.fakes import make_job, make_settings


def _client(handler) -> HttpSubmissionClient:
  return HttpSubmissionClient(make_settings(submission_base_url="http://bulkgen.test"), transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_submit_posts_job_snapshot_and_returns_payload() -> None:
  record = make_job()
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(200, json={"state": "waiting", "job": {"job_id": record.job_id}})

  payload = await _client(handler).submit(record)

  assert payload["state"] == "waiting"
  assert seen[0].url.path == f"/internal/jobs/{record.job_id}/advance"
  assert json.loads(seen[0].content)["job"]["job_id"] == record.job_id


@pytest.mark.anyio
async def test_submit_tolerates_empty_and_non_json_bodies() -> None:
  assert await _client(lambda request: httpx.Response(200)).submit(make_job()) is None
  assert await _client(lambda request: httpx.Response(200, text="ok")).submit(make_job()) is None


@pytest.mark.anyio
@pytest.mark.parametrize(("status_code", "retryable"), [(500, True), (503, True), (429, True), (400, False), (404, False)])
async def test_submit_classifies_error_statuses(status_code: int, retryable: bool) -> None:
  client = _client(lambda request: httpx.Response(status_code, json={"detail": "nope"}))
  with pytest.raises(SubmissionError) as excinfo:
    await client.submit(make_job())
  assert excinfo.value.status_code == status_code
  assert excinfo.value.retryable is retryable
  assert not excinfo.value.unreachable


@pytest.mark.anyio
async def test_submit_marks_connection_failures_unreachable() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  with pytest.raises(SubmissionError) as excinfo:
    await _client(handler).submit(make_job())
  assert excinfo.value.unreachable
  assert excinfo.value.retryable
  assert excinfo.value.status_code is None


def test_local_targets_are_routed_in_process() -> None:
  client = HttpSubmissionClient(make_settings())
  assert client._should_use_asgi_transport("http://localhost:8000")
  assert client._should_use_asgi_transport("http://127.0.0.1:8000")
  assert not client._should_use_asgi_transport("https://bulkgen.example.com")
