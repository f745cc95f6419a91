from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from bulkgen.api.deps import get_content_repository, get_embedding_engine, get_embedding_repository, get_index_service
from bulkgen.api.models import EmbeddingPageRequest, GenerateEmbeddingsRequest
from bulkgen.config import Settings, get_settings
from bulkgen.embeddings.engine import EmbeddingEngine
from bulkgen.embeddings.paging import run_embedding_page
from bulkgen.services.indexing import IndexSubmitter
from bulkgen.storage.content_repo import ContentRepository, EmbeddingRepository

router = APIRouter()


@router.post("/generate")
async def generate_embeddings(request: GenerateEmbeddingsRequest, engine: EmbeddingEngine = Depends(get_embedding_engine)) -> dict[str, Any]:  # noqa: B008
  """Embed the given record ids; existing embeddings are skipped."""
  result = await engine.generate([str(record_id) for record_id in request.ids], concurrency=request.concurrency)
  return {
    "successful": result.successful,
    "failed": result.failed,
    "skipped": result.skipped,
    "inserted": result.inserted,
    "results": [outcome.to_payload() for outcome in result.results],
  }


@router.post("/page")
async def embed_page(
  request: EmbeddingPageRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
  content_repo: ContentRepository = Depends(get_content_repository),  # noqa: B008
  embedding_repo: EmbeddingRepository = Depends(get_embedding_repository),  # noqa: B008
  engine: EmbeddingEngine = Depends(get_embedding_engine),  # noqa: B008
  index_submitter: IndexSubmitter = Depends(get_index_service),  # noqa: B008
) -> dict[str, Any]:
  """Process one page of the embedding backfill."""
  page = await run_embedding_page(
    content_repo=content_repo,
    embedding_repo=embedding_repo,
    engine=engine,
    index_submitter=index_submitter,
    batch_size=request.batch_size,
    offset=request.offset,
    concurrency=request.concurrency,
    skip_secondary_pipeline=request.skip_secondary_pipeline,
    index_url_template=settings.index_url_template,
  )
  return page.to_payload()
