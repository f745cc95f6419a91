from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from bulkgen import __version__
from bulkgen.api.routes import embeddings, jobs, reconcile, stages, worker
from bulkgen.batch.client import BatchServiceError
from bulkgen.config import ConfigurationError
from bulkgen.core.exceptions import (
  bad_input_exception_handler,
  batch_service_exception_handler,
  configuration_exception_handler,
  global_exception_handler,
  http_exception_handler,
  request_validation_exception_handler,
)
from bulkgen.core.lifespan import lifespan
from bulkgen.core.middleware import RequestLoggingMiddleware
from bulkgen.pipeline.stages import StageBuildError
from bulkgen.reconcile.importer import ImportSourceError

app = FastAPI(title="bulkgen", version=__version__, lifespan=lifespan)

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(BatchServiceError, batch_service_exception_handler)
app.add_exception_handler(ConfigurationError, configuration_exception_handler)
app.add_exception_handler(StageBuildError, bad_input_exception_handler)
app.add_exception_handler(ImportSourceError, bad_input_exception_handler)

app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
app.include_router(worker.router, prefix="/internal", tags=["worker"])
app.include_router(stages.router, prefix="/v1/stages", tags=["stages"])
app.include_router(embeddings.router, prefix="/v1/embeddings", tags=["embeddings"])
app.include_router(reconcile.router, prefix="/v1/reconcile", tags=["reconcile"])
