"""Stage builders: Questions -> Answers -> Metadata (-> Embeddings).

Each builder parses the previous stage's JSONL and emits the next stage's
input JSONL. Builders never inject timestamps and always emit units in key
order, so re-processing the same file yields byte-identical output.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from bulkgen.batch.jsonl import (
  CHAT_COMPLETIONS_URL,
  EMBEDDINGS_URL,
  STAGE_ANSWER,
  STAGE_EMBEDDING,
  STAGE_METADATA,
  STAGE_QUESTION,
  BatchRequest,
  CorrelationKey,
  encode_requests,
  parse_custom_id,
  parse_requests,
  parse_results,
)
from bulkgen.pipeline.templates import (
  ANSWER_SYSTEM,
  ANSWER_USER,
  METADATA_SYSTEM,
  METADATA_USER,
  QUESTION_SEPARATOR,
  QUESTIONS_SYSTEM,
  QUESTIONS_USER,
  ContentType,
  PromptContext,
)

logger = logging.getLogger(__name__)

QUESTIONS_PER_REQUEST = 50
ANSWER_CHAR_LIMITS: dict[str, int] = {"fault": 4000, "manual": 2000}
UNKNOWN_CONTEXT = "Vehicle details are not available."

_NUMBERING = re.compile(r"^(?:\d+[.)]|[-*•])\s*")


class StageBuildError(ValueError):
  """Raised when builder input is structurally unusable (duplicate keys, zero counts)."""


class GroupContextSource(Protocol):
  async def get_contexts(self, group_ids: Sequence[str]) -> dict[str, PromptContext]:
    """Return prompt contexts for the given group ids; unknown ids are omitted."""


class GroupContextCache:
  """Per-build cache so each distinct group is looked up at most once."""

  def __init__(self, source: GroupContextSource) -> None:
    self._source = source
    self._contexts: dict[str, PromptContext | None] = {}
    self.lookups = 0

  async def load(self, group_ids: Iterable[str]) -> None:
    missing = sorted({group_id for group_id in group_ids if group_id not in self._contexts})
    if not missing:
      return
    found = await self._source.get_contexts(missing)
    self.lookups += len(missing)
    for group_id in missing:
      self._contexts[group_id] = found.get(group_id)
      if self._contexts[group_id] is None:
        logger.warning("No prompt context found for group %s", group_id)

  def get(self, group_id: str) -> PromptContext | None:
    return self._contexts.get(group_id)


@dataclass
class StageBuildResult:
  """Next-stage input plus counters for what the builder dropped."""

  stage: str
  requests: list[BatchRequest] = field(default_factory=list)
  skipped: int = 0
  malformed: int = 0
  groups: list[str] = field(default_factory=list)

  @property
  def count(self) -> int:
    return len(self.requests)

  @property
  def jsonl(self) -> str:
    return encode_requests(self.requests)


@dataclass(frozen=True)
class GeneratedItem:
  """One question/answer pair (with optional metadata) ready for import."""

  key: CorrelationKey
  question: str
  answer: str
  metadata: dict[str, Any] = field(default_factory=dict)


def split_questions(content: str) -> list[str]:
  """Split generated question text into one question per non-empty line."""
  questions = []
  for line in content.splitlines():
    question = _NUMBERING.sub("", line.strip()).strip()
    if question:
      questions.append(question)
  return questions


def question_text(request: BatchRequest) -> str | None:
  """Recover the question from an answers-stage request."""
  content = request.user_content()
  if not content:
    return None
  question = content.split(QUESTION_SEPARATOR, 1)[0].strip()
  return question or None


def _chat_body(model: str, system: str, user: str, **params: Any) -> dict[str, Any]:
  return {"model": model, "messages": [{"role": "system", "content": system}, {"role": "user", "content": user}], **params}


def build_questions_stage(context: PromptContext, count: int, *, content_type: ContentType, language: str, model: str, per_request: int = QUESTIONS_PER_REQUEST) -> StageBuildResult:
  """Build the first stage for one job scope: `question-{groupId}-{batchNumber}` units."""
  if count < 1:
    raise StageBuildError("Question count must be at least 1.")
  result = StageBuildResult(stage=STAGE_QUESTION, groups=[context.group_id])
  system = QUESTIONS_SYSTEM.render(content_type=content_type, language=language)
  for batch_number in range(1, math.ceil(count / per_request) + 1):
    batch_count = min(per_request, count - (batch_number - 1) * per_request)
    key = CorrelationKey(stage=STAGE_QUESTION, group_id=context.group_id, ordinal=batch_number)
    user = QUESTIONS_USER.render(context=context.describe(), count=batch_count)
    result.requests.append(BatchRequest(custom_id=key.custom_id, url=CHAT_COMPLETIONS_URL, body=_chat_body(model, system, user, temperature=0.8, max_tokens=4000)))
  return result


async def build_answers_stage(question_output: str, contexts: GroupContextCache, *, content_type: ContentType, language: str, model: str) -> StageBuildResult:
  """Turn Questions-stage output into Answers-stage input.

  Ordinals are assigned per group in `(batchNumber, line)` order, so the
  N-th answer unit of a group is the N-th question generated for it.
  """
  parsed = parse_results(question_output)
  result = StageBuildResult(stage=STAGE_ANSWER, malformed=parsed.malformed)

  keyed: list[tuple[CorrelationKey, list[str]]] = []
  seen: set[str] = set()
  for record in parsed.records:
    key = parse_custom_id(record.custom_id, stage=STAGE_QUESTION)
    content = record.message_content()
    if key is None or content is None or record.custom_id in seen:
      logger.warning("Skipping question result %s (ok=%s, error=%s)", record.custom_id, record.ok, record.error_message)
      result.skipped += 1
      continue
    seen.add(record.custom_id)
    questions = split_questions(content)
    if not questions:
      result.skipped += 1
      continue
    keyed.append((key, questions))

  keyed.sort(key=lambda item: (item[0].group_id, item[0].ordinal))
  await contexts.load(key.group_id for key, _ in keyed)

  system = ANSWER_SYSTEM[content_type].render(language=language)
  ordinals: dict[str, int] = {}
  for key, questions in keyed:
    context = contexts.get(key.group_id)
    described = context.describe() if context else UNKNOWN_CONTEXT
    for question in questions:
      ordinals[key.group_id] = ordinals.get(key.group_id, 0) + 1
      answer_key = CorrelationKey(stage=STAGE_ANSWER, group_id=key.group_id, ordinal=ordinals[key.group_id])
      user = ANSWER_USER.render(question=question, context=described)
      result.requests.append(BatchRequest(custom_id=answer_key.custom_id, url=CHAT_COMPLETIONS_URL, body=_chat_body(model, system, user, temperature=0.7, max_tokens=4000)))

  result.groups = sorted(ordinals)
  logger.info("Built answers stage: %d units across %d groups (%d skipped, %d malformed)", result.count, len(result.groups), result.skipped, result.malformed)
  return result


def _questions_by_key(answers_input: str) -> tuple[dict[CorrelationKey, str], int]:
  parsed = parse_requests(answers_input)
  questions: dict[CorrelationKey, str] = {}
  malformed = parsed.malformed
  for request in parsed.requests:
    key = parse_custom_id(request.custom_id, stage=STAGE_ANSWER)
    if key is None:
      logger.warning("Skipping answers input line with invalid custom_id %r", request.custom_id)
      malformed += 1
      continue
    if key in questions:
      raise StageBuildError(f"Duplicate custom_id in answers input: {request.custom_id}")
    question = question_text(request)
    if question:
      questions[key] = question
  return questions, malformed


def _answers_by_key(answers_output: str) -> tuple[dict[CorrelationKey, str], int, int]:
  parsed = parse_results(answers_output)
  answers: dict[CorrelationKey, str] = {}
  failed = 0
  malformed = parsed.malformed
  for record in parsed.records:
    key = parse_custom_id(record.custom_id, stage=STAGE_ANSWER)
    if key is None:
      logger.warning("Skipping answers output line with invalid custom_id %r", record.custom_id)
      malformed += 1
      continue
    if key in answers:
      raise StageBuildError(f"Duplicate custom_id in answers output: {record.custom_id}")
    content = record.message_content()
    if content is None:
      failed += 1
      continue
    answers[key] = content
  return answers, failed, malformed


def build_metadata_stage(answers_input: str, answers_output: str, *, content_type: ContentType, model: str) -> StageBuildResult:
  """Join Answers-stage input and output by key and emit `metadata-{groupId}-{ordinal}` units."""
  questions, malformed_input = _questions_by_key(answers_input)
  answers, failed, malformed_output = _answers_by_key(answers_output)
  result = StageBuildResult(stage=STAGE_METADATA, skipped=failed, malformed=malformed_input + malformed_output)

  limit = ANSWER_CHAR_LIMITS[content_type]
  system = METADATA_SYSTEM.render(content_type=content_type)
  groups: set[str] = set()
  for key in sorted(answers, key=lambda item: (item.group_id, item.ordinal)):
    question = questions.get(key)
    if question is None:
      logger.warning("Answer %s has no matching question; skipping", key.custom_id)
      result.skipped += 1
      continue
    user = METADATA_USER.render(question=question, answer=answers[key][:limit])
    body = _chat_body(model, system, user, temperature=0.2, max_tokens=2500, response_format={"type": "json_object"})
    result.requests.append(BatchRequest(custom_id=key.with_stage(STAGE_METADATA).custom_id, url=CHAT_COMPLETIONS_URL, body=body))
    groups.add(key.group_id)

  result.groups = sorted(groups)
  logger.info("Built metadata stage: %d units (%d failed answers skipped)", result.count, result.skipped)
  return result


def build_embedding_stage(answers_input: str, *, model: str, dimensions: int | None = None) -> StageBuildResult:
  """Emit `embedding-{groupId}-{ordinal}` units embedding each question text."""
  questions, malformed = _questions_by_key(answers_input)
  result = StageBuildResult(stage=STAGE_EMBEDDING, malformed=malformed)
  groups: set[str] = set()
  for key in sorted(questions, key=lambda item: (item.group_id, item.ordinal)):
    body: dict[str, Any] = {"model": model, "input": questions[key]}
    if dimensions:
      body["dimensions"] = dimensions
    result.requests.append(BatchRequest(custom_id=key.with_stage(STAGE_EMBEDDING).custom_id, url=EMBEDDINGS_URL, body=body))
    groups.add(key.group_id)
  result.groups = sorted(groups)
  return result


def _parse_metadata(content: str | None) -> dict[str, Any]:
  if not content:
    return {}
  try:
    value = json.loads(content)
  except json.JSONDecodeError:
    return {}
  return value if isinstance(value, dict) else {}


def assemble_items(answers_input: str, answers_output: str, metadata_output: str | None = None) -> tuple[list[GeneratedItem], int]:
  """Join all stage files into importable items, returning `(items, unusable)`.

  Failed answers and answer lines that cannot be parsed both count as unusable.
  """
  questions, _ = _questions_by_key(answers_input)
  answers, failed, malformed = _answers_by_key(answers_output)
  failed += malformed

  metadata: dict[CorrelationKey, dict[str, Any]] = {}
  if metadata_output:
    for record in parse_results(metadata_output).records:
      key = parse_custom_id(record.custom_id, stage=STAGE_METADATA)
      if key is not None:
        metadata[key.with_stage(STAGE_ANSWER)] = _parse_metadata(record.message_content())

  items: list[GeneratedItem] = []
  for key in sorted(answers, key=lambda item: (item.group_id, item.ordinal)):
    question = questions.get(key)
    if question is None:
      failed += 1
      continue
    items.append(GeneratedItem(key=key, question=question, answer=answers[key], metadata=metadata.get(key, {})))
  return items, failed
