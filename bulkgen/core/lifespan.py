import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from bulkgen.core.database import get_db_engine
from bulkgen.core.logging import _initialize_logging
from bulkgen.services.triggers import drain_background_tasks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging after uvicorn starts and drain background triggers on shutdown."""
  from bulkgen.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("bulkgen.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
    logger.info("Database: BULKGEN_PG_DSN=%s", _redact_dsn(settings.pg_dsn))
    if not settings.batch_api_key:
      logger.warning("BULKGEN_BATCH_API_KEY is not set; batch and embedding calls will fail.")
  except Exception:
    # Log initialization failures but allow the app to continue starting.
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  yield

  await drain_background_tasks()
  engine = get_db_engine()
  if engine is not None:
    await engine.dispose()
  logger.info("Shutdown complete.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
