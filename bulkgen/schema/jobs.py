from __future__ import annotations

from sqlalchemy import DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from bulkgen.core.database import Base

_ISO_NOW = text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')""")


class GenerationJob(Base):
  __tablename__ = "generation_jobs"
  __table_args__ = (Index("ix_generation_jobs_status_created", "status", "created_at"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  group_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  brand_id: Mapped[str | None] = mapped_column(String, nullable=True)
  model_id: Mapped[str | None] = mapped_column(String, nullable=True)
  content_type: Mapped[str] = mapped_column(String, nullable=False)
  language: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'en'"))
  requested_count: Mapped[int] = mapped_column(Integer, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False)
  phase: Mapped[str | None] = mapped_column(String, nullable=True)
  progress_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  progress_done: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  questions_batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
  answers_batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
  metadata_batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
  answers_input_file_id: Mapped[str | None] = mapped_column(String, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_ISO_NOW)
  started_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_ISO_NOW)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
