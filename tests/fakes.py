"""In-memory stand-ins for storage and external services used across the test suite."""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any

from bulkgen.batch.client import BatchInfo
from bulkgen.config import Settings
from bulkgen.embeddings.provider import EmbeddingProviderError
from bulkgen.jobs.models import JobRecord, JobStatus
from bulkgen.pipeline.templates import PromptContext
from bulkgen.services.indexing import IndexSubmission
from bulkgen.storage.content_repo import EmbeddingRow, GroupRecordRef, LiveRecord, NewRecord, RecordText
from bulkgen.utils.clock import now_iso

GROUP_A = "3f2b8c1e-9d4a-4e6b-8a1f-0c2d3e4f5a6b"
GROUP_B = "7a9e1d2c-3b4f-4c5d-9e6f-1a2b3c4d5e6f"


def make_settings(**overrides: Any) -> Settings:
  settings = Settings(
    environment="test",
    debug=False,
    log_dir="./logs",
    log_max_bytes=5242880,
    log_backup_count=1,
    log_http_4xx=False,
    pg_dsn=None,
    pg_connect_timeout=10,
    batch_api_key="sk-test",
    batch_api_base_url="https://batch.test/v1",
    batch_request_timeout_seconds=30,
    batch_max_active=50,
    batch_capacity_strict=False,
    capacity_wait_seconds=0,
    submit_max_attempts=3,
    submit_initial_backoff_ms=1000,
    submit_max_backoff_ms=10000,
    submission_base_url="http://bulkgen.test",
    answers_model="gpt-test",
    metadata_model="gpt-test",
    embedding_model="embed-test",
    embedding_dimensions=4,
    embedding_chunk_size=500,
    embedding_fetch_size=100,
    embedding_max_concurrency=50,
    resolver_page_size=1000,
    index_enabled=False,
    index_endpoints=("https://index-a.test/indexnow", "https://index-b.test/indexnow"),
    index_host=None,
    index_key=None,
    index_url_template=None,
  )
  return replace(settings, **overrides)


def make_job(**overrides: Any) -> JobRecord:
  timestamp = now_iso()
  values: dict[str, Any] = {
    "job_id": str(uuid.uuid4()),
    "group_id": GROUP_A,
    "brand_id": "brand-1",
    "model_id": "model-1",
    "content_type": "fault",
    "requested_count": 3,
    "status": "pending",
    "progress_total": 3,
    "created_at": timestamp,
    "updated_at": timestamp,
  }
  values.update(overrides)
  return JobRecord(**values)


class UniqueViolation(Exception):
  """Duplicate-key failure carrying the Postgres SQLSTATE like asyncpg does."""

  sqlstate = "23505"


class InMemoryJobTracker:
  """Job tracker with the Postgres tracker's partial-update semantics."""

  enabled = True

  def __init__(self) -> None:
    self.jobs: dict[str, JobRecord] = {}
    self.fail_creates = False

  async def create_job(self, record: JobRecord) -> None:
    if self.fail_creates:
      raise ConnectionError("job table unavailable")
    self.jobs[record.job_id] = record

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self.jobs.get(job_id)

  async def update_job(self, job_id: str, *, reset_stages: bool = False, clear_error: bool = False, **changes: Any) -> JobRecord | None:
    record = self.jobs.get(job_id)
    if record is None:
      return None
    if reset_stages:
      record = replace(record, phase=None, questions_batch_id=None, answers_batch_id=None, metadata_batch_id=None, answers_input_file_id=None, error_message=None, result_json=None, completed_at=None, progress_done=0)
    if clear_error:
      record = replace(record, error_message=None, completed_at=None)
    record = replace(record, **{key: value for key, value in changes.items() if value is not None}, updated_at=now_iso())
    self.jobs[job_id] = record
    return record

  async def list_jobs(self, *, statuses: Sequence[JobStatus] | None = None, limit: int = 10, oldest_first: bool = False) -> list[JobRecord]:
    records = [record for record in self.jobs.values() if statuses is None or record.status in statuses]
    records.sort(key=lambda record: record.created_at, reverse=not oldest_first)
    return records[:limit]


class InMemoryContentStore:
  """Groups, records and embeddings in one place; implements all three content repositories."""

  def __init__(self) -> None:
    self.groups: dict[str, dict[str, Any]] = {}
    self.records: dict[str, dict[str, Any]] = {}
    self.embeddings: dict[str, EmbeddingRow] = {}
    self.hide_existing = False
    self.context_lookups: list[list[str]] = []
    self._clock = 0

  def add_group(self, group_id: str, *, brand: str = "Volvo", model: str = "XC90", generation: str = "II", code: str | None = "SPA", slugs: bool = True) -> None:
    self.groups[group_id] = {
      "context": PromptContext(group_id=group_id, brand=brand, model=model, generation=generation, generation_code=code),
      "brand_slug": brand.lower() if slugs else None,
      "model_slug": model.lower() if slugs else None,
      "generation_slug": generation.lower() if slugs else None,
    }

  def add_record(self, group_id: str, *, title: str = "Engine light on", description: str | None = "Check the sensor.", sequence_number: int | None = None, status: str = "live") -> str:
    record_id = str(uuid.uuid4())
    self._clock += 1
    self.records[record_id] = {
      "id": record_id,
      "group_id": group_id,
      "sequence_number": sequence_number,
      "title": title,
      "description": description,
      "slug": f"record-{self._clock}",
      "status": status,
      "language": "en",
      "created_at": self._clock,
      "metadata_json": {},
    }
    return record_id

  def group_records(self, group_id: str) -> list[dict[str, Any]]:
    rows = [row for row in self.records.values() if row["group_id"] == group_id]
    # Legacy rows without a sequence number sort last.
    rows.sort(key=lambda row: (row["sequence_number"] is None, row["sequence_number"] or 0, row["created_at"], row["id"]))
    return rows

  async def fetch_texts(self, record_ids: Sequence[str]) -> dict[str, RecordText]:
    return {record_id: RecordText(record_id=record_id, title=self.records[record_id]["title"], description=self.records[record_id]["description"]) for record_id in record_ids if record_id in self.records}

  async def list_group_records(self, group_id: str, *, offset: int, limit: int) -> list[GroupRecordRef]:
    return [GroupRecordRef(record_id=row["id"], sequence_number=row["sequence_number"]) for row in self.group_records(group_id)[offset : offset + limit]]

  async def max_sequence_number(self, group_id: str) -> int:
    return max((row["sequence_number"] or 0 for row in self.group_records(group_id)), default=0)

  async def list_live_records(self, *, offset: int, limit: int) -> list[LiveRecord]:
    rows = sorted((row for row in self.records.values() if row["status"] == "live"), key=lambda row: (row["created_at"], row["id"]))
    page = rows[offset : offset + limit]
    return [
      LiveRecord(
        record_id=row["id"],
        group_id=row["group_id"],
        slug=row["slug"],
        language=row["language"],
        brand_slug=self.groups.get(row["group_id"], {}).get("brand_slug"),
        model_slug=self.groups.get(row["group_id"], {}).get("model_slug"),
        generation_slug=self.groups.get(row["group_id"], {}).get("generation_slug"),
      )
      for row in page
    ]

  async def insert_records(self, group_id: str, records: Sequence[NewRecord]) -> list[str]:
    if group_id not in self.groups:
      raise LookupError(f"Group {group_id} not found")
    current = await self.max_sequence_number(group_id)
    taken = {row["sequence_number"] for row in self.group_records(group_id)}
    ids = []
    for record in records:
      if record.sequence_number is None:
        current += 1
        sequence_number = current
      else:
        sequence_number = record.sequence_number
        current = max(current, sequence_number)
      if sequence_number in taken:
        raise UniqueViolation(f"duplicate sequence number {sequence_number} in group {group_id}")
      taken.add(sequence_number)
      record_id = self.add_record(group_id, title=record.title, description=record.description, sequence_number=sequence_number, status=record.status)
      self.records[record_id]["slug"] = record.slug
      self.records[record_id]["metadata_json"] = dict(record.metadata_json)
      ids.append(record_id)
    return ids

  async def existing_record_ids(self, record_ids: Sequence[str]) -> set[str]:
    if self.hide_existing:
      return set()
    return {record_id for record_id in record_ids if record_id in self.embeddings}

  async def insert_many(self, rows: Sequence[EmbeddingRow]) -> None:
    for row in rows:
      if row.record_id in self.embeddings:
        raise UniqueViolation(f'duplicate key value violates unique constraint for record_id "{row.record_id}"')
    for row in rows:
      self.embeddings[row.record_id] = row

  async def insert_one(self, row: EmbeddingRow) -> None:
    await self.insert_many([row])

  async def list_group_ids(self) -> list[str]:
    return sorted(self.groups)

  async def get_contexts(self, group_ids: Sequence[str]) -> dict[str, PromptContext]:
    self.context_lookups.append(list(group_ids))
    return {group_id: self.groups[group_id]["context"] for group_id in group_ids if group_id in self.groups}


class FakeBatchClient:
  """Batch service stand-in that keeps uploaded files and created batches in memory."""

  def __init__(self) -> None:
    self.files: dict[str, str] = {}
    self.batches: dict[str, BatchInfo] = {}
    self.uploads: list[tuple[str, str]] = []
    self.created: list[tuple[str, str, dict[str, str]]] = []
    self.list_error: Exception | None = None
    self.upload_error: Exception | None = None
    self._counter = 0

  def _next_id(self, prefix: str) -> str:
    self._counter += 1
    return f"{prefix}-{self._counter}"

  def add_batch(self, status: str, *, output: str | None = None, error_message: str | None = None) -> BatchInfo:
    output_file_id = None
    if output is not None:
      output_file_id = self._next_id("file")
      self.files[output_file_id] = output
    batch = BatchInfo(id=self._next_id("batch"), status=status, output_file_id=output_file_id, error_message=error_message)
    self.batches[batch.id] = batch
    return batch

  def complete(self, batch_id: str, output: str) -> None:
    file_id = self._next_id("file")
    self.files[file_id] = output
    self.batches[batch_id] = replace(self.batches[batch_id], status="completed", output_file_id=file_id)

  def input_of(self, batch_id: str) -> str:
    return self.files[self.batches[batch_id].input_file_id]

  async def upload_file(self, content: str | bytes, *, filename: str = "batch_input.jsonl", purpose: str = "batch") -> str:
    if self.upload_error is not None:
      raise self.upload_error
    file_id = self._next_id("file")
    self.files[file_id] = content.decode("utf-8") if isinstance(content, bytes) else content
    self.uploads.append((filename, file_id))
    return file_id

  async def create_batch(self, input_file_id: str, *, endpoint: str, metadata: dict[str, str] | None = None, completion_window: str = "24h") -> BatchInfo:
    batch = BatchInfo(id=self._next_id("batch"), status="validating", endpoint=endpoint, input_file_id=input_file_id, metadata=dict(metadata or {}))
    self.batches[batch.id] = batch
    self.created.append((batch.id, endpoint, dict(metadata or {})))
    return batch

  async def get_batch(self, batch_id: str) -> BatchInfo:
    return self.batches[batch_id]

  async def list_batches(self, *, limit: int = 100) -> list[BatchInfo]:
    if self.list_error is not None:
      raise self.list_error
    return list(self.batches.values())[:limit]

  async def download_file(self, file_id: str) -> str:
    return self.files[file_id]


class FakeEmbeddingProvider:
  def __init__(self, *, fail_on: Sequence[str] = ()) -> None:
    self.fail_on = set(fail_on)
    self.calls: list[str] = []

  async def embed(self, text: str) -> list[float]:
    self.calls.append(text)
    if text in self.fail_on:
      raise EmbeddingProviderError("Embedding request failed: rate limited")
    return [float(len(text)), 0.5, 0.25, 0.125]


class RecordingIndexSubmitter:
  def __init__(self) -> None:
    self.submitted: list[str] = []

  async def submit(self, urls: Sequence[str]) -> IndexSubmission:
    self.submitted.extend(urls)
    return IndexSubmission(submitted=len(urls))


def chat_result(custom_id: str, content: str | None, *, status_code: int = 200) -> str:
  """One output line as the batch service writes it for a chat completion."""
  if status_code != 200:
    return json.dumps({"custom_id": custom_id, "response": {"status_code": status_code, "body": {"error": {"message": "upstream failure"}}}})
  return json.dumps({"custom_id": custom_id, "response": {"status_code": 200, "body": {"choices": [{"message": {"role": "assistant", "content": content}}]}}})


def embedding_result(custom_id: str, vector: Sequence[float]) -> str:
  return json.dumps({"custom_id": custom_id, "response": {"status_code": 200, "body": {"data": [{"embedding": list(vector)}]}}})


def respond(jsonl: str, answer: Callable[[dict[str, Any]], str]) -> str:
  """Build a results file answering every request line of `jsonl`."""
  lines = []
  for raw in jsonl.splitlines():
    if raw.strip():
      request = json.loads(raw)
      lines.append(answer(request))
  return "\n".join(lines) + "\n"


class ScriptedSubmitter:
  """Submission transport that replays scripted payloads or errors, one per call."""

  def __init__(self, *outcomes: Any) -> None:
    self.outcomes = list(outcomes)
    self.calls: list[str] = []

  async def submit(self, record: JobRecord) -> dict[str, Any] | None:
    self.calls.append(record.job_id)
    outcome = self.outcomes.pop(0) if self.outcomes else None
    if isinstance(outcome, Exception):
      raise outcome
    return outcome


class SleepRecorder:
  def __init__(self) -> None:
    self.calls: list[float] = []

  async def __call__(self, seconds: float) -> None:
    self.calls.append(seconds)
