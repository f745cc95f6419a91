import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bulkgen.batch.client import BatchServiceError, BatchServiceUnreachableError
from bulkgen.config import ConfigurationError, get_settings
from bulkgen.pipeline.stages import StageBuildError
from bulkgen.reconcile.importer import ImportSourceError

logger = logging.getLogger("uvicorn.error")


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    message = str(value)
    return f"{type(value).__name__}: {message}" if message else type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  payload: dict[str, Any] = {"detail": detail}
  # Attach a request id so callers can correlate failures with server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if isinstance(scrubbed.get("ctx"), dict):
      scrubbed["ctx"] = {key: value for key, value in scrubbed["ctx"].items() if key != "input"}
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors without leaking payloads."""
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Hide 5xx details from callers; keep 4xx details since they are client-correctable."""
  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if get_settings().log_http_4xx:
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))


async def batch_service_exception_handler(request: Request, exc: BatchServiceError) -> JSONResponse:
  """Map batch service failures so submission callers can tell transient from permanent."""
  request_id = _request_id(request)
  if isinstance(exc, BatchServiceUnreachableError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
  elif exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
  elif exc.status_code is not None and 400 <= exc.status_code < 500:
    status_code = status.HTTP_400_BAD_REQUEST
  else:
    status_code = status.HTTP_502_BAD_GATEWAY
  logger.error("Batch service failure request_id=%s path=%s upstream_status=%s error=%s", request_id, request.url.path, exc.status_code, exc)
  return JSONResponse(status_code=status_code, content=_error_payload(f"Batch service error: {exc}", request_id=request_id))


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
  request_id = _request_id(request)
  logger.error("Configuration error request_id=%s path=%s error=%s", request_id, request.url.path, exc)
  return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=_error_payload(str(exc), request_id=request_id))


async def bad_input_exception_handler(request: Request, exc: StageBuildError | ImportSourceError) -> JSONResponse:
  """Builder input and import sources are caller-supplied; reject them as 400s."""
  request_id = _request_id(request)
  logger.warning("Rejected input request_id=%s path=%s error_type=%s error=%s", request_id, request.url.path, type(exc).__name__, exc)
  return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_payload(str(exc), request_id=request_id))
