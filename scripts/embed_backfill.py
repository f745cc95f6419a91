from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Allow running from a checkout without installing the package.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bulkgen.progress.client import HttpEmbeddingPageClient  # noqa: E402
from bulkgen.progress.controller import ProgressController, ProgressStateStore  # noqa: E402

logger = logging.getLogger("embed_backfill")

DEFAULT_STATE_FILE = ".bulkgen/embed_backfill.json"


def _build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(description="Walk every live record page by page and generate missing embeddings.")
  parser.add_argument("--base-url", default="http://localhost:8000", help="Service base URL exposing /v1/embeddings/page.")
  parser.add_argument("--batch-size", type=int, default=500)
  parser.add_argument("--concurrency", type=int, default=None, help="Per-page embedding concurrency; the server picks a default when unset.")
  parser.add_argument("--offset", type=int, default=None, help="Start offset; defaults to where the previous run stopped.")
  parser.add_argument("--reset", action="store_true", help="Discard saved progress and start from offset 0.")
  parser.add_argument("--skip-secondary-pipeline", action="store_true", help="Do not submit freshly embedded records for indexing.")
  parser.add_argument("--state-file", default=DEFAULT_STATE_FILE, help="Where progress is saved between runs.")
  return parser


async def _run(args: argparse.Namespace) -> int:
  store = ProgressStateStore(args.state_file)
  async with HttpEmbeddingPageClient(args.base_url) as client:
    controller = ProgressController(client.fetch_page, batch_size=args.batch_size, concurrency=args.concurrency, skip_secondary_pipeline=args.skip_secondary_pipeline, store=store)
    if controller.state.status != "idle" and not args.reset:
      logger.info("Resuming from saved %s state at offset %d", controller.state.status, controller.resume_offset())

    # First Ctrl-C cancels the in-flight page and keeps progress; a second one aborts.
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, controller.cancel)
    try:
      state = await controller.start(offset=args.offset, reset=args.reset)
    finally:
      loop.remove_signal_handler(signal.SIGINT)

  print(f"status={state.status} pages={state.pages} processed={state.total_processed} successful={state.total_successful} failed={state.total_failed} skipped={state.total_skipped} offset={state.offset}")
  if state.status == "error":
    print(f"ERROR: {state.last_error}")
    return 1
  return 0


def main() -> None:
  args = _build_parser().parse_args()
  logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
  logging.getLogger("httpx").setLevel(logging.WARNING)
  if args.batch_size < 1:
    print("ERROR: --batch-size must be a positive integer.")
    sys.exit(2)
  sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
  main()
