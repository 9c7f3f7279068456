"""
20261001_create_checkpoint_tables

Create processing_checkpoints (resumable job state) and upload_status
(externally visible progress).

Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261001_checkpoints"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "processing_checkpoints",
        sa.Column("upload_id", sa.String(128), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("current_step", sa.String(32), nullable=False),
        sa.Column("video_path", sa.Text(), nullable=True),
        sa.Column("audio_path", sa.Text(), nullable=True),
        sa.Column("video_duration", sa.Float(), nullable=True),
        sa.Column("total_audio_chunks", sa.Integer(), nullable=True),
        sa.Column("total_scenes", sa.Integer(), nullable=True),
        sa.Column("completed_audio_chunks", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("transcription_segments", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("scene_cuts", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("completed_ocr_scenes", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("ocr_results", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.String(40), nullable=False),
        sa.Column("updated_at", sa.String(40), nullable=False),
        sa.Column("expires_at", sa.String(40), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_processing_checkpoints_expires_at", "processing_checkpoints", ["expires_at"])
    op.create_index("ix_processing_checkpoints_user_id", "processing_checkpoints", ["user_id"])

    op.create_table(
        "upload_status",
        sa.Column("upload_id", sa.String(128), primary_key=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="processing"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stage", sa.String(64), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result_key", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade():
    op.drop_table("upload_status")
    op.drop_index("ix_processing_checkpoints_user_id", table_name="processing_checkpoints")
    op.drop_index("ix_processing_checkpoints_expires_at", table_name="processing_checkpoints")
    op.drop_table("processing_checkpoints")
