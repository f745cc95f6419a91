"""Fire-and-forget scheduling for follow-up work whose result nobody awaits."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)

# Strong references so the event loop does not garbage-collect running tasks.
_BACKGROUND_TASKS: set[asyncio.Task[Any]] = set()


def _on_done(task: asyncio.Task[Any]) -> None:
  _BACKGROUND_TASKS.discard(task)
  if task.cancelled():
    return
  exc = task.exception()
  # Failures are logged and dropped; the caller has already moved on.
  if exc is not None:
    logger.warning("Background task %s failed: %s", task.get_name(), exc)


def fire_and_forget(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
  """Schedule `coro` on the running loop without awaiting it."""
  task = asyncio.get_running_loop().create_task(coro, name=name)
  _BACKGROUND_TASKS.add(task)
  task.add_done_callback(_on_done)
  return task


def pending_tasks() -> int:
  return len(_BACKGROUND_TASKS)


async def drain_background_tasks(timeout: float = 10.0) -> None:
  """Wait briefly for in-flight background work, cancelling what is left."""
  tasks = list(_BACKGROUND_TASKS)
  if not tasks:
    return
  _, still_running = await asyncio.wait(tasks, timeout=timeout)
  for task in still_running:
    task.cancel()
