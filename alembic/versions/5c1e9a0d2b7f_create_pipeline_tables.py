"""Create generation job, content and embedding tables.

Revision ID: 5c1e9a0d2b7f
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "5c1e9a0d2b7f"
down_revision = None
branch_labels = None
depends_on = None

_ISO_NOW = sa.text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')""")


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "generation_jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("group_id", sa.String(), nullable=False),
    sa.Column("brand_id", sa.String(), nullable=True),
    sa.Column("model_id", sa.String(), nullable=True),
    sa.Column("content_type", sa.String(), nullable=False),
    sa.Column("language", sa.String(), server_default=sa.text("'en'"), nullable=False),
    sa.Column("requested_count", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("phase", sa.String(), nullable=True),
    sa.Column("progress_total", sa.Integer(), nullable=False),
    sa.Column("progress_done", sa.Integer(), nullable=False),
    sa.Column("questions_batch_id", sa.String(), nullable=True),
    sa.Column("answers_batch_id", sa.String(), nullable=True),
    sa.Column("metadata_batch_id", sa.String(), nullable=True),
    sa.Column("answers_input_file_id", sa.String(), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.String(), server_default=_ISO_NOW, nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("updated_at", sa.String(), server_default=_ISO_NOW, nullable=False),
    sa.Column("completed_at", sa.String(), nullable=True),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_generation_jobs_group_id", "generation_jobs", ["group_id"], unique=False)
  op.create_index("ix_generation_jobs_status_created", "generation_jobs", ["status", "created_at"], unique=False)

  op.create_table(
    "content_groups",
    sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
    sa.Column("brand_name", sa.String(), nullable=False),
    sa.Column("model_name", sa.String(), nullable=False),
    sa.Column("generation_name", sa.String(), nullable=False),
    sa.Column("generation_code", sa.String(), nullable=True),
    sa.Column("brand_slug", sa.String(), nullable=True),
    sa.Column("model_slug", sa.String(), nullable=True),
    sa.Column("generation_slug", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )

  op.create_table(
    "content_records",
    sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
    sa.Column("group_id", postgresql.UUID(as_uuid=False), nullable=False),
    sa.Column("sequence_number", sa.Integer(), nullable=True),
    sa.Column("title", sa.Text(), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("slug", sa.String(), nullable=False),
    sa.Column("status", sa.String(), server_default=sa.text("'live'"), nullable=False),
    sa.Column("language", sa.String(), server_default=sa.text("'en'"), nullable=False),
    sa.Column("content_type", sa.String(), server_default=sa.text("'fault'"), nullable=False),
    sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["group_id"], ["content_groups.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("group_id", "sequence_number", name="ux_content_records_group_sequence"),
  )
  op.create_index("ix_content_records_slug", "content_records", ["slug"], unique=False)
  op.create_index("ix_content_records_group_order", "content_records", ["group_id", "sequence_number", "created_at", "id"], unique=False)
  op.create_index("ix_content_records_status_created", "content_records", ["status", "created_at", "id"], unique=False)

  op.create_table(
    "content_embeddings",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("record_id", postgresql.UUID(as_uuid=False), nullable=False),
    sa.Column("embedding", postgresql.ARRAY(sa.Float()), nullable=False),
    sa.Column("text_content", sa.Text(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["record_id"], ["content_records.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("record_id"),
  )


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_table("content_embeddings")
  op.drop_index("ix_content_records_status_created", table_name="content_records")
  op.drop_index("ix_content_records_group_order", table_name="content_records")
  op.drop_index("ix_content_records_slug", table_name="content_records")
  op.drop_table("content_records")
  op.drop_table("content_groups")
  op.drop_index("ix_generation_jobs_status_created", table_name="generation_jobs")
  op.drop_index("ix_generation_jobs_group_id", table_name="generation_jobs")
  op.drop_table("generation_jobs")
