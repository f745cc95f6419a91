"""Resumable, cancellable driver for the paged embedding backfill."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Literal

from bulkgen.utils.clock import now_iso

logger = logging.getLogger(__name__)

ProgressStatus = Literal["idle", "processing", "complete", "error", "cancelled"]


@dataclass(frozen=True)
class PageRequest:
  batch_size: int
  offset: int
  concurrency: int | None = None
  skip_secondary_pipeline: bool = False

  def to_payload(self) -> dict[str, Any]:
    payload: dict[str, Any] = {"batchSize": self.batch_size, "offset": self.offset, "skipSecondaryPipeline": self.skip_secondary_pipeline}
    if self.concurrency is not None:
      payload["concurrency"] = self.concurrency
    return payload


PageFetcher = Callable[[PageRequest], Awaitable[Mapping[str, Any]]]


@dataclass
class ProgressState:
  status: ProgressStatus = "idle"
  offset: int = 0
  total_processed: int = 0
  total_successful: int = 0
  total_failed: int = 0
  total_skipped: int = 0
  index_submitted: int = 0
  index_failed: int = 0
  pages: int = 0
  last_error: str | None = None
  updated_at: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_dict(cls, payload: Mapping[str, Any]) -> ProgressState:
    names = {field.name for field in fields(cls)}
    return cls(**{key: value for key, value in payload.items() if key in names})


class ProgressStateStore:
  """JSON file holding the last progress state so a restarted process can resume."""

  def __init__(self, path: str | Path) -> None:
    self._path = Path(path)

  def load(self) -> ProgressState | None:
    if not self._path.exists():
      return None
    try:
      return ProgressState.from_dict(json.loads(self._path.read_text(encoding="utf-8")))
    except (OSError, ValueError, TypeError) as exc:
      logger.warning("Ignoring unreadable progress state at %s: %s", self._path, exc)
      return None

  def save(self, state: ProgressState) -> None:
    self._path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(state.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
    os.replace(tmp_path, self._path)


class ProgressController:
  """Walks the working set page by page: `idle -> processing -> complete | error | cancelled`.

  Continuing from any finished state keeps the accumulated counters and
  restarts at the previous run's `total_processed` unless an explicit offset
  is given. `start(reset=True)` begins a fresh run.
  """

  def __init__(self, fetch_page: PageFetcher, *, batch_size: int = 500, concurrency: int | None = None, skip_secondary_pipeline: bool = False, store: ProgressStateStore | None = None) -> None:
    if batch_size < 1:
      raise ValueError("batch_size must be a positive integer.")
    self._fetch_page = fetch_page
    self._batch_size = batch_size
    self._concurrency = concurrency
    self._skip_secondary_pipeline = skip_secondary_pipeline
    self._store = store
    self._state = (store.load() if store else None) or ProgressState()
    if self._state.status == "processing":
      # A process died mid-run; what it recorded is still a valid resume point.
      self._state.status = "cancelled"
    self._cancel_event = asyncio.Event()
    self._inflight: asyncio.Future[Mapping[str, Any]] | None = None

  @property
  def state(self) -> ProgressState:
    return self._state

  @property
  def running(self) -> bool:
    return self._state.status == "processing"

  def resume_offset(self) -> int:
    return 0 if self._state.status == "idle" else self._state.total_processed

  async def start(self, *, offset: int | None = None, reset: bool = False) -> ProgressState:
    if self.running:
      raise RuntimeError("Progress controller is already processing")

    if reset or self._state.status == "idle":
      self._state = ProgressState(offset=offset or 0)
    else:
      self._state.offset = offset if offset is not None else self._state.total_processed
      self._state.last_error = None
    self._cancel_event = asyncio.Event()
    self._transition("processing")
    logger.info("Embedding backfill starting at offset %d (batch_size=%d, concurrency=%s)", self._state.offset, self._batch_size, self._concurrency)

    try:
      while not self._cancel_event.is_set():
        page = await self._next_page()
        if page is None:
          break
        self._accumulate(page)
        if not page.get("hasMore"):
          break
    except Exception as exc:  # noqa: BLE001
      logger.error("Embedding backfill stopped at offset %d: %s", self._state.offset, exc)
      self._state.last_error = str(exc)
      self._transition("error")
      return self._state

    self._transition("cancelled" if self._cancel_event.is_set() else "complete")
    logger.info(
      "Embedding backfill %s: processed=%d successful=%d failed=%d offset=%d",
      self._state.status,
      self._state.total_processed,
      self._state.total_successful,
      self._state.total_failed,
      self._state.offset,
    )
    return self._state

  def cancel(self) -> None:
    """Stop after aborting the in-flight page request; completed pages stay counted."""
    self._cancel_event.set()
    if self._inflight is not None and not self._inflight.done():
      self._inflight.cancel()

  def reset(self) -> None:
    self.cancel()
    self._state = ProgressState()
    self._persist()

  async def _next_page(self) -> Mapping[str, Any] | None:
    request = PageRequest(batch_size=self._batch_size, offset=self._state.offset, concurrency=self._concurrency, skip_secondary_pipeline=self._skip_secondary_pipeline)
    self._inflight = asyncio.ensure_future(self._fetch_page(request))
    try:
      return await self._inflight
    except asyncio.CancelledError:
      if self._cancel_event.is_set():
        return None
      raise
    finally:
      self._inflight = None

  def _accumulate(self, page: Mapping[str, Any]) -> None:
    state = self._state
    state.total_processed += int(page.get("processed", 0))
    state.total_successful += int(page.get("successful", 0))
    state.total_failed += int(page.get("failed", 0))
    state.total_skipped += int(page.get("skipped", 0))
    state.index_submitted += int(page.get("indexSubmitted", 0))
    state.index_failed += int(page.get("indexFailed", 0))
    state.pages += 1
    state.offset = int(page.get("nextOffset", state.offset + self._batch_size))
    self._persist()

  def _transition(self, status: ProgressStatus) -> None:
    self._state.status = status
    self._persist()

  def _persist(self) -> None:
    self._state.updated_at = now_iso()
    if self._store is not None:
      self._store.save(self._state)
