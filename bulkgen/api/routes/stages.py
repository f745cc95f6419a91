from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from bulkgen.api.deps import get_batch_client, get_group_repository, get_orchestrator
from bulkgen.api.models import AnswersStageRequest, EmbeddingStageRequest, MetadataStageRequest, StageBuildResponse
from bulkgen.batch.client import BatchServiceClient
from bulkgen.batch.jsonl import EMBEDDINGS_URL
from bulkgen.config import Settings, get_settings
from bulkgen.jobs.orchestrator import JobOrchestrator
from bulkgen.pipeline.stages import GroupContextCache, StageBuildResult, build_answers_stage, build_embedding_stage, build_metadata_stage
from bulkgen.storage.content_repo import GroupRepository

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(result: StageBuildResult, *, batch_id: str | None = None) -> StageBuildResponse:
  return StageBuildResponse(stage=result.stage, count=result.count, skipped=result.skipped, malformed=result.malformed, groups=result.groups, jsonl=result.jsonl, batch_id=batch_id)


@router.post("/answers", response_model=StageBuildResponse)
async def build_answers(
  request: AnswersStageRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
  groups: GroupRepository = Depends(get_group_repository),  # noqa: B008
) -> StageBuildResponse:
  """Turn Questions-stage output into Answers-stage input JSONL."""
  result = await build_answers_stage(request.questions_output, GroupContextCache(groups), content_type=request.content_type, language=request.language, model=settings.answers_model)
  return _to_response(result)


@router.post("/metadata", response_model=StageBuildResponse)
async def build_metadata(request: MetadataStageRequest, settings: Settings = Depends(get_settings)) -> StageBuildResponse:  # noqa: B008
  """Join Answers-stage input and output into Metadata-stage input JSONL."""
  result = build_metadata_stage(request.answers_input, request.answers_output, content_type=request.content_type, model=settings.metadata_model)
  return _to_response(result)


@router.post("/embeddings", response_model=StageBuildResponse)
async def build_embeddings(
  request: EmbeddingStageRequest,
  settings: Settings = Depends(get_settings),  # noqa: B008
  batch_client: BatchServiceClient = Depends(get_batch_client),  # noqa: B008
  orchestrator: JobOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> StageBuildResponse:
  """Build embedding-stage input from an Answers-stage input, optionally submitting it as a batch."""
  answers_input = request.answers_input
  if not answers_input and request.answers_input_file_id:
    answers_input = await batch_client.download_file(request.answers_input_file_id)
  if not answers_input:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide answersInput or answersInputFileId.")

  result = build_embedding_stage(answers_input, model=settings.embedding_model, dimensions=settings.embedding_dimensions)
  if not request.submit:
    return _to_response(result)
  if result.count == 0:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No embedding units could be built from the answers input.")

  capacity = await orchestrator.check_batch_capacity()
  if not capacity.can_proceed:
    raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=f"Batch capacity reached ({capacity.active_count}/{capacity.max_allowed} active batches).")

  file_id = await batch_client.upload_file(result.jsonl, filename="embeddings_input.jsonl")
  batch = await batch_client.create_batch(file_id, endpoint=EMBEDDINGS_URL, metadata={"stage": result.stage})
  logger.info("Submitted embedding batch %s with %d units", batch.id, result.count)
  return _to_response(result, batch_id=batch.id)
