from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from bulkgen.progress.controller import PageRequest, ProgressController, ProgressState, ProgressStateStore


def _page(processed: int, next_offset: int, *, has_more: bool, successful: int | None = None, failed: int = 0, skipped: int = 0) -> dict[str, Any]:
  return {
    "processed": processed,
    "successful": processed - failed if successful is None else successful,
    "failed": failed,
    "skipped": skipped,
    "nextOffset": next_offset,
    "hasMore": has_more,
    "indexSubmitted": 0,
    "indexFailed": 0,
  }


class ScriptedPages:
  def __init__(self, *pages: dict[str, Any] | Exception) -> None:
    self.pages = list(pages)
    self.requests: list[PageRequest] = []

  async def __call__(self, request: PageRequest) -> dict[str, Any]:
    self.requests.append(request)
    page = self.pages.pop(0)
    if isinstance(page, Exception):
      raise page
    return page


@pytest.mark.anyio
async def test_runs_until_last_page_and_accumulates_counters() -> None:
  fetch = ScriptedPages(_page(10, 20, has_more=True, failed=2), _page(5, 30, has_more=False, skipped=3))
  controller = ProgressController(fetch, batch_size=10, concurrency=4)

  state = await controller.start()

  assert state.status == "complete"
  assert (state.total_processed, state.total_successful, state.total_failed, state.total_skipped) == (15, 13, 2, 3)
  assert state.pages == 2
  assert state.offset == 30
  assert [request.offset for request in fetch.requests] == [0, 20]
  assert fetch.requests[0].to_payload() == {"batchSize": 10, "offset": 0, "skipSecondaryPipeline": False, "concurrency": 4}


@pytest.mark.anyio
async def test_page_failure_moves_to_error_and_keeps_progress() -> None:
  fetch = ScriptedPages(_page(10, 20, has_more=True), RuntimeError("Page request failed (500): boom"))
  controller = ProgressController(fetch, batch_size=10)

  state = await controller.start()

  assert state.status == "error"
  assert state.total_processed == 10
  assert "boom" in state.last_error


@pytest.mark.anyio
async def test_continuing_resumes_from_total_processed() -> None:
  fetch = ScriptedPages(_page(10, 20, has_more=True), RuntimeError("timeout"), _page(4, 30, has_more=False))
  controller = ProgressController(fetch, batch_size=10)
  await controller.start()

  state = await controller.start()

  assert state.status == "complete"
  assert fetch.requests[-1].offset == 10
  assert state.total_processed == 14
  assert state.last_error is None


@pytest.mark.anyio
async def test_reset_starts_a_fresh_run() -> None:
  fetch = ScriptedPages(_page(10, 20, has_more=False), _page(3, 3, has_more=False))
  controller = ProgressController(fetch, batch_size=10)
  await controller.start()

  state = await controller.start(reset=True)

  assert fetch.requests[-1].offset == 0
  assert state.total_processed == 3
  assert state.pages == 1


@pytest.mark.anyio
async def test_cancel_aborts_the_inflight_page() -> None:
  requests: list[PageRequest] = []
  never = asyncio.Event()

  async def fetch(request: PageRequest) -> dict[str, Any]:
    requests.append(request)
    if len(requests) == 1:
      return _page(10, 20, has_more=True)
    await never.wait()
    return _page(10, 40, has_more=False)

  controller = ProgressController(fetch, batch_size=10)
  task = asyncio.create_task(controller.start())
  while len(requests) < 2:
    await asyncio.sleep(0)

  controller.cancel()
  state = await task

  assert state.status == "cancelled"
  assert state.total_processed == 10
  assert state.offset == 20
  assert controller.resume_offset() == 10


@pytest.mark.anyio
async def test_start_refuses_to_run_twice() -> None:
  never = asyncio.Event()

  async def fetch(request: PageRequest) -> dict[str, Any]:
    await never.wait()
    return _page(0, 0, has_more=False)

  controller = ProgressController(fetch, batch_size=10)
  task = asyncio.create_task(controller.start())
  await asyncio.sleep(0)
  with pytest.raises(RuntimeError):
    await controller.start()
  controller.cancel()
  await task


@pytest.mark.anyio
async def test_state_survives_a_restart(tmp_path: Path) -> None:
  store = ProgressStateStore(tmp_path / "progress.json")
  fetch = ScriptedPages(_page(10, 20, has_more=True), RuntimeError("boom"))
  await ProgressController(fetch, batch_size=10, store=store).start()

  restored = ProgressController(ScriptedPages(), batch_size=10, store=store)

  assert restored.state.status == "error"
  assert restored.state.total_processed == 10
  assert restored.resume_offset() == 10


def test_interrupted_run_is_loaded_as_cancelled(tmp_path: Path) -> None:
  store = ProgressStateStore(tmp_path / "progress.json")
  store.save(ProgressState(status="processing", offset=40, total_processed=30))

  controller = ProgressController(ScriptedPages(), batch_size=10, store=store)

  assert controller.state.status == "cancelled"
  assert controller.resume_offset() == 30


def test_unreadable_state_file_is_ignored(tmp_path: Path) -> None:
  path = tmp_path / "progress.json"
  path.write_text("{not json", encoding="utf-8")
  assert ProgressStateStore(path).load() is None


def test_batch_size_must_be_positive() -> None:
  with pytest.raises(ValueError):
    ProgressController(ScriptedPages(), batch_size=0)
