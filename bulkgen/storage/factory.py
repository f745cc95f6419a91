import logging

from bulkgen.config import ConfigurationError, Settings
from bulkgen.storage.content_repo import ContentRepository, EmbeddingRepository, GroupRepository
from bulkgen.storage.jobs_repo import JobTracker, NoopJobTracker
from bulkgen.storage.postgres_content_repo import PostgresContentRepository, PostgresEmbeddingRepository, PostgresGroupRepository
from bulkgen.storage.postgres_jobs_repo import PostgresJobTracker

logger = logging.getLogger(__name__)


def _require_dsn(settings: Settings) -> None:
  if not settings.pg_dsn:
    raise ConfigurationError("BULKGEN_PG_DSN must be set to enable Postgres persistence.")


def get_job_tracker(settings: Settings) -> JobTracker:
  """Return the Postgres tracker, or the no-op tracker when no database is configured."""

  # Job tracking is optional; orchestration continues untracked without a database.
  if not settings.pg_dsn:
    logger.warning("BULKGEN_PG_DSN is not set; jobs will run untracked.")
    return NoopJobTracker()

  return PostgresJobTracker()


def get_content_repo(settings: Settings) -> ContentRepository:
  _require_dsn(settings)
  return PostgresContentRepository()


def get_embedding_repo(settings: Settings) -> EmbeddingRepository:
  _require_dsn(settings)
  return PostgresEmbeddingRepository()


def get_group_repo(settings: Settings) -> GroupRepository:
  _require_dsn(settings)
  return PostgresGroupRepository()
