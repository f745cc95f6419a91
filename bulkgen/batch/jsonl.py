"""JSONL request/result codec and correlation keys for batch units."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import msgspec

logger = logging.getLogger(__name__)

STAGE_QUESTION = "question"
STAGE_ANSWER = "answer"
STAGE_METADATA = "metadata"
STAGE_EMBEDDING = "embedding"
STAGES = (STAGE_QUESTION, STAGE_ANSWER, STAGE_METADATA, STAGE_EMBEDDING)

CHAT_COMPLETIONS_URL = "/v1/chat/completions"
EMBEDDINGS_URL = "/v1/embeddings"

# Group ids may contain hyphens (UUIDs), so the ordinal is the trailing digit run.
_CUSTOM_ID_PATTERN = re.compile(r"^(?P<stage>[a-z]+)-(?P<group>.+)-(?P<ordinal>\d+)$")


@dataclass(frozen=True)
class CorrelationKey:
  """Caller-assigned `{stage}-{groupId}-{ordinal}` key carried by a batch unit."""

  stage: str
  group_id: str
  ordinal: int

  @property
  def custom_id(self) -> str:
    return f"{self.stage}-{self.group_id}-{self.ordinal}"

  @property
  def pair_key(self) -> str:
    """Stage-independent `groupId:ordinal` key used by the resolver."""
    return f"{self.group_id}:{self.ordinal}"

  def with_stage(self, stage: str) -> CorrelationKey:
    return CorrelationKey(stage=stage, group_id=self.group_id, ordinal=self.ordinal)

  def __str__(self) -> str:
    return self.custom_id


def parse_custom_id(custom_id: str, *, stage: str | None = None) -> CorrelationKey | None:
  """Parse a correlation key, optionally requiring a specific stage prefix."""
  match = _CUSTOM_ID_PATTERN.match(custom_id or "")
  if match is None or match.group("stage") not in STAGES:
    return None
  if stage is not None and match.group("stage") != stage:
    return None
  ordinal = int(match.group("ordinal"))
  if ordinal < 1:
    return None
  return CorrelationKey(stage=match.group("stage"), group_id=match.group("group"), ordinal=ordinal)


def dumps_line(obj: Any) -> str:
  """Serialize one JSONL line with stable key order and no whitespace."""
  return msgspec.json.encode(obj, order="sorted").decode("utf-8")


@dataclass(frozen=True)
class BatchRequest:
  """One input line: `{custom_id, method, url, body}`."""

  custom_id: str
  url: str
  body: dict[str, Any]
  method: str = "POST"

  def to_dict(self) -> dict[str, Any]:
    return {"custom_id": self.custom_id, "method": self.method, "url": self.url, "body": self.body}

  def user_content(self) -> str | None:
    """Return the last user message of a chat request."""
    messages = self.body.get("messages") or []
    for message in reversed(messages):
      if isinstance(message, dict) and message.get("role") == "user":
        content = message.get("content")
        return content if isinstance(content, str) else None
    return None


@dataclass(frozen=True)
class ResultRecord:
  """One output line of a completed batch. Consumed once, never persisted verbatim."""

  custom_id: str
  status_code: int | None
  body: dict[str, Any] | None
  error_message: str | None = None

  @property
  def ok(self) -> bool:
    return self.status_code == 200 and self.error_message is None and self.body is not None

  def message_content(self) -> str | None:
    """Extract the first choice text of a chat completion result."""
    if not self.ok:
      return None
    try:
      content = self.body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
      return None
    if not isinstance(content, str) or not content.strip():
      return None
    return content

  def embedding(self) -> list[float] | None:
    """Extract the vector of an embeddings result."""
    if not self.ok:
      return None
    try:
      vector = self.body["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError):
      return None
    if not isinstance(vector, list) or not vector:
      return None
    return [float(value) for value in vector]


@dataclass
class ParsedRequests:
  requests: list[BatchRequest] = field(default_factory=list)
  malformed: int = 0


@dataclass
class ParsedResults:
  records: list[ResultRecord] = field(default_factory=list)
  malformed: int = 0


def encode_requests(requests: Iterable[BatchRequest]) -> str:
  """Encode requests as JSONL with a trailing newline."""
  lines = [dumps_line(request.to_dict()) for request in requests]
  if not lines:
    return ""
  return "\n".join(lines) + "\n"


def _iter_json_lines(text: str) -> Iterable[tuple[int, Any]]:
  for line_number, raw_line in enumerate(text.splitlines(), start=1):
    line = raw_line.strip()
    if not line:
      continue
    try:
      yield line_number, msgspec.json.decode(line)
    except msgspec.DecodeError:
      yield line_number, None


def parse_requests(text: str) -> ParsedRequests:
  """Parse an input JSONL file, skipping and counting malformed lines."""
  parsed = ParsedRequests()
  for line_number, obj in _iter_json_lines(text):
    if not isinstance(obj, dict) or not isinstance(obj.get("custom_id"), str) or not isinstance(obj.get("body"), dict):
      logger.warning("Skipping malformed request line %d", line_number)
      parsed.malformed += 1
      continue
    parsed.requests.append(BatchRequest(custom_id=obj["custom_id"], url=str(obj.get("url") or ""), body=obj["body"], method=str(obj.get("method") or "POST")))
  return parsed


def _error_message(error: Any) -> str:
  if isinstance(error, dict):
    return str(error.get("message") or error.get("code") or "Unknown error")
  return str(error) if error else "Unknown error"


def parse_results(text: str) -> ParsedResults:
  """Parse an output JSONL file into result records.

  Lines carry either `{custom_id, response: {status_code, body}}` or
  `{custom_id, error}`. Lines that are not JSON or lack a custom_id are
  counted as malformed; failed requests are kept as records with an error.
  """
  parsed = ParsedResults()
  for line_number, obj in _iter_json_lines(text):
    if not isinstance(obj, dict) or not isinstance(obj.get("custom_id"), str):
      logger.warning("Skipping malformed result line %d", line_number)
      parsed.malformed += 1
      continue
    custom_id = obj["custom_id"]
    if obj.get("error"):
      parsed.records.append(ResultRecord(custom_id=custom_id, status_code=None, body=None, error_message=_error_message(obj["error"])))
      continue
    response = obj.get("response")
    if not isinstance(response, dict):
      parsed.records.append(ResultRecord(custom_id=custom_id, status_code=None, body=None, error_message="Missing response"))
      continue
    status_code = response.get("status_code")
    body = response.get("body") if isinstance(response.get("body"), dict) else None
    error_message = None
    if status_code != 200:
      error_message = _error_message((body or {}).get("error") or f"HTTP {status_code}")
    parsed.records.append(ResultRecord(custom_id=custom_id, status_code=status_code, body=body, error_message=error_message))
  return parsed
