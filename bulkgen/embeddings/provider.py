"""Embedding provider implementation using openai SDK."""

from __future__ import annotations

import logging
from typing import Protocol

import openai
from openai import AsyncOpenAI

from bulkgen.config import Settings

logger = logging.getLogger(__name__)


class EmbeddingProviderError(RuntimeError):
  """Raised when the provider rejects or fails an embedding request."""


class EmbeddingProvider(Protocol):
  async def embed(self, text: str) -> list[float]:
    """Return the embedding vector for `text`."""


class OpenAIEmbeddingProvider:
  """Calls `/v1/embeddings` with `{model, input}` and returns `data[0].embedding`."""

  def __init__(self, settings: Settings, *, client: AsyncOpenAI | None = None) -> None:
    self._model = settings.embedding_model
    self._dimensions = settings.embedding_dimensions
    self._client = client or AsyncOpenAI(api_key=settings.require_batch_api_key(), base_url=settings.batch_api_base_url, timeout=float(settings.batch_request_timeout_seconds))

  async def embed(self, text: str) -> list[float]:
    try:
      response = await self._client.embeddings.create(model=self._model, input=text, dimensions=self._dimensions)
    except openai.OpenAIError as exc:
      raise EmbeddingProviderError(f"Embedding request failed: {exc}") from exc

    if not response.data:
      raise EmbeddingProviderError("Embedding response contained no data")
    return list(response.data[0].embedding)
