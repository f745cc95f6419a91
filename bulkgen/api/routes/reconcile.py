from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from bulkgen.api.deps import get_resolver, get_results_importer
from bulkgen.api.models import ResolveRequest, ResolveResponse
from bulkgen.reconcile.importer import BatchResultsImporter
from bulkgen.reconcile.resolver import IdResolver, OrdinalPair

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/resolve", response_model=ResolveResponse)
async def resolve_pairs(request: ResolveRequest, resolver: IdResolver = Depends(get_resolver)) -> ResolveResponse:  # noqa: B008
  """Map `(groupId, ordinal)` pairs to record ids; unresolvable pairs are reported, not errors."""
  resolution = await resolver.resolve(OrdinalPair(group_id=pair.group_id, ordinal=pair.ordinal) for pair in request.pairs)
  return ResolveResponse(ids=resolution.ids, dropped=resolution.dropped)


@router.post("/embeddings/import")
async def import_embeddings(
  file: UploadFile | None = File(default=None),  # noqa: B008
  batch_id: str | None = Form(default=None, alias="batchId"),  # noqa: B008
  file_id: str | None = Form(default=None, alias="fileId"),  # noqa: B008
  importer: BatchResultsImporter = Depends(get_results_importer),  # noqa: B008
) -> dict[str, Any]:
  """Import an embeddings results file from an upload, a batch id or a file id."""
  if file is not None:
    raw = await file.read()
    summary = await importer.import_results(raw.decode("utf-8", errors="replace"))
  elif batch_id:
    summary = await importer.import_from_batch(batch_id)
  elif file_id:
    summary = await importer.import_from_file(file_id)
  else:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide a file, batchId or fileId.")

  logger.info("Embedding import finished: inserted=%d duplicates=%d failed=%d", summary.inserted, summary.duplicates, summary.failed)
  return summary.to_payload()
