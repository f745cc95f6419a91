from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

from bulkgen.jobs.models import MAX_JOBS_PER_REQUEST, JobRecord, JobSpec


class JobSpecPayload(BaseModel):
  """One requested job. Fields are loose so invalid specs can be dropped instead of rejected."""

  brand_id: Any = Field(default=None, alias="brandId")
  model_id: Any = Field(default=None, alias="modelId")
  group_id: Any = Field(default=None, alias="groupId")
  content_type: Any = Field(default="fault", alias="contentType")
  count: Any = None
  language: Any = "en"
  model_config = ConfigDict(populate_by_name=True)

  def to_spec(self) -> JobSpec:
    return JobSpec(brand_id=self.brand_id, model_id=self.model_id, group_id=self.group_id, content_type=self.content_type, count=self.count, language=self.language or "en")


class CreateJobsRequest(BaseModel):
  jobs: list[JobSpecPayload] = Field(min_length=1, max_length=MAX_JOBS_PER_REQUEST)


class CreateJobsResponse(BaseModel):
  jobs: int
  created: int
  job_ids: list[str] = Field(serialization_alias="jobIds")


class JobStatusResponse(BaseModel):
  job_id: StrictStr = Field(serialization_alias="jobId")
  group_id: StrictStr = Field(serialization_alias="groupId")
  content_type: StrictStr = Field(serialization_alias="contentType")
  requested_count: int = Field(serialization_alias="requestedCount")
  status: StrictStr
  phase: StrictStr | None = None
  progress_total: int = Field(serialization_alias="progressTotal")
  progress_done: int = Field(serialization_alias="progressDone")
  batch_ids: dict[str, str] = Field(serialization_alias="batchIds")
  error_message: StrictStr | None = Field(default=None, serialization_alias="errorMessage")
  result: dict[str, Any] | None = None
  created_at: StrictStr = Field(serialization_alias="createdAt")
  updated_at: StrictStr = Field(serialization_alias="updatedAt")
  started_at: StrictStr | None = Field(default=None, serialization_alias="startedAt")
  completed_at: StrictStr | None = Field(default=None, serialization_alias="completedAt")

  @classmethod
  def from_record(cls, record: JobRecord) -> JobStatusResponse:
    return cls(
      job_id=record.job_id,
      group_id=record.group_id,
      content_type=record.content_type,
      requested_count=record.requested_count,
      status=record.status,
      phase=record.phase,
      progress_total=record.progress_total,
      progress_done=record.progress_done,
      batch_ids=record.batch_ids,
      error_message=record.error_message,
      result=record.result_json,
      created_at=record.created_at,
      updated_at=record.updated_at,
      started_at=record.started_at,
      completed_at=record.completed_at,
    )


class CapacityResponse(BaseModel):
  can_proceed: bool = Field(serialization_alias="canProceed")
  active_count: int = Field(serialization_alias="activeCount")
  max_allowed: int = Field(serialization_alias="maxAllowed")
  checked: bool = True


class AdvanceRequest(BaseModel):
  """Body posted by the submission client; `job` carries the snapshot for untracked jobs."""

  job: dict[str, Any] | None = None


class FixFailuresRequest(BaseModel):
  job_id: StrictStr | None = Field(default=None, alias="jobId")
  fix_all: bool = Field(default=False, alias="fixAll")
  category: Literal["batch_still_running", "recoverable", "batch_failed", "timeout", "other_error"] | None = None
  model_config = ConfigDict(populate_by_name=True)


class AnswersStageRequest(BaseModel):
  questions_output: StrictStr = Field(alias="questionsOutput", min_length=1)
  content_type: Literal["fault", "manual"] = Field(default="fault", alias="contentType")
  language: StrictStr = "en"
  model_config = ConfigDict(populate_by_name=True)


class MetadataStageRequest(BaseModel):
  answers_input: StrictStr = Field(alias="answersInput", min_length=1)
  answers_output: StrictStr = Field(alias="answersOutput", min_length=1)
  content_type: Literal["fault", "manual"] = Field(default="fault", alias="contentType")
  model_config = ConfigDict(populate_by_name=True)


class EmbeddingStageRequest(BaseModel):
  answers_input: StrictStr | None = Field(default=None, alias="answersInput")
  answers_input_file_id: StrictStr | None = Field(default=None, alias="answersInputFileId")
  submit: bool = False
  model_config = ConfigDict(populate_by_name=True)


class StageBuildResponse(BaseModel):
  stage: StrictStr
  count: int
  skipped: int
  malformed: int
  groups: list[str]
  jsonl: StrictStr
  batch_id: StrictStr | None = Field(default=None, serialization_alias="batchId")


class GenerateEmbeddingsRequest(BaseModel):
  ids: list[Any] = Field(min_length=1, max_length=10000)
  concurrency: StrictInt | None = Field(default=None, ge=1, le=200)


class EmbeddingPageRequest(BaseModel):
  batch_size: StrictInt = Field(default=500, alias="batchSize", ge=1, le=5000)
  offset: StrictInt = Field(default=0, ge=0)
  concurrency: StrictInt | None = Field(default=None, ge=1, le=200)
  skip_secondary_pipeline: bool = Field(default=False, alias="skipSecondaryPipeline")
  model_config = ConfigDict(populate_by_name=True)


class OrdinalPairPayload(BaseModel):
  group_id: StrictStr = Field(alias="groupId", min_length=1)
  ordinal: StrictInt = Field(ge=1)
  model_config = ConfigDict(populate_by_name=True)


class ResolveRequest(BaseModel):
  pairs: list[OrdinalPairPayload] = Field(min_length=1)


class ResolveResponse(BaseModel):
  ids: dict[str, str]
  dropped: dict[str, str]
