from __future__ import annotations

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from bulkgen.core.database import Base


class ContentGroup(Base):
  """Owning group (a model generation) whose records share one sequence."""

  __tablename__ = "content_groups"

  id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
  brand_name: Mapped[str] = mapped_column(String, nullable=False)
  model_name: Mapped[str] = mapped_column(String, nullable=False)
  generation_name: Mapped[str] = mapped_column(String, nullable=False)
  generation_code: Mapped[str | None] = mapped_column(String, nullable=True)
  brand_slug: Mapped[str | None] = mapped_column(String, nullable=True)
  model_slug: Mapped[str | None] = mapped_column(String, nullable=True)
  generation_slug: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ContentRecord(Base):
  __tablename__ = "content_records"
  __table_args__ = (
    UniqueConstraint("group_id", "sequence_number", name="ux_content_records_group_sequence"),
    Index("ix_content_records_group_order", "group_id", "sequence_number", "created_at", "id"),
    Index("ix_content_records_status_created", "status", "created_at", "id"),
  )

  id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
  group_id: Mapped[str] = mapped_column(ForeignKey("content_groups.id", ondelete="CASCADE"), nullable=False)
  # Assigned max+1 under a group row lock; legacy rows may be NULL and sort last.
  sequence_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
  title: Mapped[str] = mapped_column(Text, nullable=False)
  description: Mapped[str | None] = mapped_column(Text, nullable=True)
  slug: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'live'"))
  language: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'en'"))
  content_type: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'fault'"))
  metadata_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ContentEmbedding(Base):
  __tablename__ = "content_embeddings"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  record_id: Mapped[str] = mapped_column(ForeignKey("content_records.id", ondelete="CASCADE"), nullable=False, unique=True)
  embedding: Mapped[list[float]] = mapped_column(ARRAY(Float), nullable=False)
  text_content: Mapped[str] = mapped_column(Text, nullable=False)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
