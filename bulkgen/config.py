"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from bulkgen.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


class ConfigurationError(RuntimeError):
  """Raised when an operation needs configuration that is missing."""


@dataclass(frozen=True)
class Settings:
  """Typed settings for the bulk generation service."""

  environment: str
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  batch_api_key: str | None
  batch_api_base_url: str
  batch_request_timeout_seconds: int
  batch_max_active: int
  batch_capacity_strict: bool
  capacity_wait_seconds: int
  submit_max_attempts: int
  submit_initial_backoff_ms: int
  submit_max_backoff_ms: int
  submission_base_url: str
  answers_model: str
  metadata_model: str
  embedding_model: str
  embedding_dimensions: int
  embedding_chunk_size: int
  embedding_fetch_size: int
  embedding_max_concurrency: int
  resolver_page_size: int
  index_enabled: bool
  index_endpoints: tuple[str, ...]
  index_host: str | None
  index_key: str | None
  index_url_template: str | None

  def require_batch_api_key(self) -> str:
    """Return the batch API key or fail with a configuration error."""
    if not self.batch_api_key:
      raise ConfigurationError("BULKGEN_BATCH_API_KEY must be set to reach the batch service.")
    return self.batch_api_key


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  return value or None


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_list(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()
  return tuple(item.strip() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("BULKGEN_ENV", "development").lower()
  debug = _parse_bool(os.getenv("BULKGEN_DEBUG"))

  log_dir = (os.getenv("BULKGEN_LOG_DIR") or "./logs").strip()
  log_max_bytes = _positive_int("BULKGEN_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("BULKGEN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("BULKGEN_LOG_BACKUP_COUNT must be zero or a positive integer.")
  # Allow opt-in logging of 4xx HTTPExceptions for diagnostics.
  log_http_4xx = _parse_bool(os.getenv("BULKGEN_LOG_HTTP_4XX"))

  pg_dsn = _optional_str(os.getenv("BULKGEN_PG_DSN"))
  pg_connect_timeout = _positive_int("BULKGEN_PG_CONNECT_TIMEOUT", "10")

  batch_api_key = _optional_str(os.getenv("BULKGEN_BATCH_API_KEY"))
  batch_api_base_url = (os.getenv("BULKGEN_BATCH_API_BASE_URL") or "https://api.openai.com/v1").strip().rstrip("/")
  # Large generation batches are slow upstream; keep the deadline in minutes.
  batch_request_timeout_seconds = _positive_int("BULKGEN_BATCH_REQUEST_TIMEOUT_SECONDS", "900")

  batch_max_active = _positive_int("BULKGEN_BATCH_MAX_ACTIVE", "50")
  batch_capacity_strict = _parse_bool(os.getenv("BULKGEN_BATCH_CAPACITY_STRICT"))
  capacity_wait_seconds = int(os.getenv("BULKGEN_CAPACITY_WAIT_SECONDS", "30"))
  if capacity_wait_seconds < 0:
    raise ValueError("BULKGEN_CAPACITY_WAIT_SECONDS must be zero or a positive integer.")

  submit_max_attempts = _positive_int("BULKGEN_SUBMIT_MAX_ATTEMPTS", "3")
  submit_initial_backoff_ms = _positive_int("BULKGEN_SUBMIT_INITIAL_BACKOFF_MS", "1000")
  submit_max_backoff_ms = _positive_int("BULKGEN_SUBMIT_MAX_BACKOFF_MS", "10000")
  submission_base_url = (os.getenv("BULKGEN_SUBMISSION_BASE_URL") or "http://localhost:8000").strip()

  answers_model = (os.getenv("BULKGEN_ANSWERS_MODEL") or "gpt-4o-mini").strip()
  metadata_model = (os.getenv("BULKGEN_METADATA_MODEL") or "gpt-4o-mini").strip()
  embedding_model = (os.getenv("BULKGEN_EMBEDDING_MODEL") or "text-embedding-3-small").strip()
  embedding_dimensions = _positive_int("BULKGEN_EMBEDDING_DIMENSIONS", "1536")
  embedding_chunk_size = _positive_int("BULKGEN_EMBEDDING_CHUNK_SIZE", "500")
  embedding_fetch_size = _positive_int("BULKGEN_EMBEDDING_FETCH_SIZE", "100")
  embedding_max_concurrency = _positive_int("BULKGEN_EMBEDDING_MAX_CONCURRENCY", "50")
  resolver_page_size = _positive_int("BULKGEN_RESOLVER_PAGE_SIZE", "1000")

  index_enabled = _parse_bool(os.getenv("BULKGEN_INDEX_ENABLED"))
  index_endpoints = _parse_list(os.getenv("BULKGEN_INDEX_ENDPOINTS")) or ("https://api.indexnow.org/indexnow",)
  index_host = _optional_str(os.getenv("BULKGEN_INDEX_HOST"))
  index_key = _optional_str(os.getenv("BULKGEN_INDEX_KEY"))
  index_url_template = _optional_str(os.getenv("BULKGEN_INDEX_URL_TEMPLATE"))

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=log_dir,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    pg_dsn=pg_dsn,
    pg_connect_timeout=pg_connect_timeout,
    batch_api_key=batch_api_key,
    batch_api_base_url=batch_api_base_url,
    batch_request_timeout_seconds=batch_request_timeout_seconds,
    batch_max_active=batch_max_active,
    batch_capacity_strict=batch_capacity_strict,
    capacity_wait_seconds=capacity_wait_seconds,
    submit_max_attempts=submit_max_attempts,
    submit_initial_backoff_ms=submit_initial_backoff_ms,
    submit_max_backoff_ms=submit_max_backoff_ms,
    submission_base_url=submission_base_url,
    answers_model=answers_model,
    metadata_model=metadata_model,
    embedding_model=embedding_model,
    embedding_dimensions=embedding_dimensions,
    embedding_chunk_size=embedding_chunk_size,
    embedding_fetch_size=embedding_fetch_size,
    embedding_max_concurrency=embedding_max_concurrency,
    resolver_page_size=resolver_page_size,
    index_enabled=index_enabled,
    index_endpoints=index_endpoints,
    index_host=index_host,
    index_key=index_key,
    index_url_template=index_url_template,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load only the settings needed to open database connections."""

  return DatabaseSettings(debug=_parse_bool(os.getenv("BULKGEN_DEBUG")), pg_dsn=_optional_str(os.getenv("BULKGEN_PG_DSN")), pg_connect_timeout=_positive_int("BULKGEN_PG_CONNECT_TIMEOUT", "10"))
