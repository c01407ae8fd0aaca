"""create video ingest schema

Revision ID: 3a7e5c1d9b20
Revises:
Create Date: 2026-10-19 09:00:00

Purpose:
- tables for answer videos (video) and topic summary videos (topic_video)
- per-kind transcript tables unique on (content id, mux track id)
- prompt_response derived from READY answer videos, unique on (prompt id, video id)
- read-only access tables consulted when issuing uploads (profile, profile_sharer,
  profile_executor, auth_session)

Operational notes:
- uq_topic_video_active_pair is a partial unique index; concurrent upload requests for
  the same (topic, sharer) make the losing insert fail instead of leaving two active rows
- requires pgcrypto for gen_random_uuid()
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3a7e5c1d9b20"
down_revision = None
branch_labels = None
depends_on = None

STATUS_CHECK = "status in ('WAITING', 'ASSET_CREATED', 'READY', 'ERRORED')"


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _content_slot_columns() -> list[sa.Column]:
    return [
        _uuid_pk(),
        sa.Column("profile_sharer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="WAITING"),
        sa.Column("mux_upload_id", sa.Text(), nullable=True),
        sa.Column("mux_asset_id", sa.Text(), nullable=True),
        sa.Column("mux_playback_id", sa.Text(), nullable=True),
        sa.Column("passthrough", sa.Text(), nullable=True),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("aspect_ratio", sa.Text(), nullable=True),
        sa.Column("video_quality", sa.Text(), nullable=True),
        sa.Column("max_width", sa.Integer(), nullable=True),
        sa.Column("max_height", sa.Integer(), nullable=True),
        sa.Column("max_frame_rate", sa.Float(), nullable=True),
        sa.Column("language_code", sa.Text(), nullable=True),
        sa.Column("resolution_tier", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("download_ready", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    ]


def _transcript_columns(fk_name: str, parent: str) -> list[sa.Column]:
    return [
        _uuid_pk(),
        sa.Column(
            fk_name,
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(f"{parent}.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("transcript", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("type", sa.Text(), nullable=True),
        sa.Column("language", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("mux_asset_id", sa.Text(), nullable=True),
        sa.Column("mux_track_id", sa.Text(), nullable=False),
        *_timestamps(),
    ]


def upgrade() -> None:
    op.execute("create extension if not exists pgcrypto")

    op.create_table(
        "profile",
        _uuid_pk(),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "profile_sharer",
        _uuid_pk(),
        sa.Column(
            "profile_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profile.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_table(
        "profile_executor",
        _uuid_pk(),
        sa.Column(
            "executor_profile_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profile.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sharer_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profile_sharer.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("executor_profile_id", "sharer_id", name="uq_profile_executor_pair"),
        sa.CheckConstraint(
            "status in ('pending', 'verified', 'revoked')",
            name="ck_profile_executor_status",
        ),
    )
    op.create_table(
        "auth_session",
        _uuid_pk(),
        sa.Column(
            "profile_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("profile.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("token_hash", sa.Text(), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "video",
        *_content_slot_columns(),
        sa.Column("prompt_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.CheckConstraint(STATUS_CHECK, name="ck_video_status"),
    )
    op.create_index("ix_video_profile_sharer_id", "video", ["profile_sharer_id"])
    op.create_index("ix_video_prompt_id", "video", ["prompt_id"])
    op.create_index("ix_video_mux_upload_id", "video", ["mux_upload_id"])
    op.create_index("ix_video_mux_asset_id", "video", ["mux_asset_id"])

    op.create_table(
        "topic_video",
        *_content_slot_columns(),
        sa.Column("prompt_category_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default="Topic Video"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(STATUS_CHECK, name="ck_topic_video_status"),
    )
    op.create_index("ix_topic_video_profile_sharer_id", "topic_video", ["profile_sharer_id"])
    op.create_index("ix_topic_video_mux_upload_id", "topic_video", ["mux_upload_id"])
    op.create_index("ix_topic_video_mux_asset_id", "topic_video", ["mux_asset_id"])
    op.create_index(
        "uq_topic_video_active_pair",
        "topic_video",
        ["prompt_category_id", "profile_sharer_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "video_transcript",
        *_transcript_columns("video_id", "video"),
        sa.UniqueConstraint("video_id", "mux_track_id", name="uq_video_transcript_video_track"),
    )
    op.create_table(
        "topic_video_transcript",
        *_transcript_columns("topic_video_id", "topic_video"),
        sa.UniqueConstraint(
            "topic_video_id",
            "mux_track_id",
            name="uq_topic_video_transcript_video_track",
        ),
    )

    op.create_table(
        "prompt_response",
        _uuid_pk(),
        sa.Column("profile_sharer_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("prompt_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "video_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("video.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("privacy_level", sa.Text(), nullable=False, server_default="Private"),
        sa.Column("response_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("prompt_id", "video_id", name="uq_prompt_response_prompt_video"),
    )


def downgrade() -> None:
    op.drop_table("prompt_response")
    op.drop_table("topic_video_transcript")
    op.drop_table("video_transcript")
    op.drop_index("uq_topic_video_active_pair", table_name="topic_video")
    op.drop_index("ix_topic_video_mux_asset_id", table_name="topic_video")
    op.drop_index("ix_topic_video_mux_upload_id", table_name="topic_video")
    op.drop_index("ix_topic_video_profile_sharer_id", table_name="topic_video")
    op.drop_table("topic_video")
    op.drop_index("ix_video_mux_asset_id", table_name="video")
    op.drop_index("ix_video_mux_upload_id", table_name="video")
    op.drop_index("ix_video_prompt_id", table_name="video")
    op.drop_index("ix_video_profile_sharer_id", table_name="video")
    op.drop_table("video")
    op.drop_table("auth_session")
    op.drop_table("profile_executor")
    op.drop_table("profile_sharer")
    op.drop_table("profile")
