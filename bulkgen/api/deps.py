"""Shared FastAPI dependencies wiring repositories, clients and services."""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import Depends

from bulkgen.batch.client import BatchServiceClient
from bulkgen.config import Settings, get_settings
from bulkgen.embeddings.engine import EmbeddingEngine
from bulkgen.embeddings.provider import OpenAIEmbeddingProvider
from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.jobs.pipeline import JobPipeline
from bulkgen.reconcile.importer import BatchResultsImporter
from bulkgen.reconcile.resolver import IdResolver
from bulkgen.services.indexing import IndexSubmitter, get_index_submitter
from bulkgen.services.submission import HttpSubmissionClient
from bulkgen.storage.content_repo import ContentRepository, EmbeddingRepository, GroupRepository
from bulkgen.storage.factory import get_content_repo, get_embedding_repo, get_group_repo, get_job_tracker
from bulkgen.storage.jobs_repo import JobTracker

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_tracker() -> JobTracker:
  return get_job_tracker(get_settings())


@lru_cache(maxsize=1)
def get_batch_client() -> BatchServiceClient:
  return BatchServiceClient(get_settings())


@lru_cache(maxsize=1)
def get_orchestrator() -> JobOrchestrator:
  """Process-wide orchestrator; it also holds jobs that could not be persisted."""
  settings = get_settings()
  return JobOrchestrator(settings, get_tracker(), HttpSubmissionClient(settings), get_batch_client())


def get_content_repository(settings: Settings = Depends(get_settings)) -> ContentRepository:  # noqa: B008
  return get_content_repo(settings)


def get_embedding_repository(settings: Settings = Depends(get_settings)) -> EmbeddingRepository:  # noqa: B008
  return get_embedding_repo(settings)


def get_group_repository(settings: Settings = Depends(get_settings)) -> GroupRepository:  # noqa: B008
  return get_group_repo(settings)


def get_index_service(settings: Settings = Depends(get_settings)) -> IndexSubmitter:  # noqa: B008
  return get_index_submitter(settings)


def get_pipeline(
  settings: Settings = Depends(get_settings),  # noqa: B008
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
  batch_client: BatchServiceClient = Depends(get_batch_client),  # noqa: B008
  groups: GroupRepository = Depends(get_group_repository),  # noqa: B008
  content_repo: ContentRepository = Depends(get_content_repository),  # noqa: B008
) -> JobPipeline:
  return JobPipeline(settings, orchestrator, batch_client, groups, content_repo)


def get_embedding_engine(
  settings: Settings = Depends(get_settings),  # noqa: B008
  content_repo: ContentRepository = Depends(get_content_repository),  # noqa: B008
  embedding_repo: EmbeddingRepository = Depends(get_embedding_repository),  # noqa: B008
) -> EmbeddingEngine:
  return EmbeddingEngine(content_repo, embedding_repo, OpenAIEmbeddingProvider(settings), settings)


def get_resolver(
  settings: Settings = Depends(get_settings),  # noqa: B008
  groups: GroupRepository = Depends(get_group_repository),  # noqa: B008
  content_repo: ContentRepository = Depends(get_content_repository),  # noqa: B008
) -> IdResolver:
  return IdResolver(groups, content_repo, page_size=settings.resolver_page_size)


def get_results_importer(
  content_repo: ContentRepository = Depends(get_content_repository),  # noqa: B008
  embedding_repo: EmbeddingRepository = Depends(get_embedding_repository),  # noqa: B008
  resolver: IdResolver = Depends(get_resolver),  # noqa: B008
  batch_client: BatchServiceClient = Depends(get_batch_client),  # noqa: B008
) -> BatchResultsImporter:
  return BatchResultsImporter(content_repo, embedding_repo, resolver, batch_client)
