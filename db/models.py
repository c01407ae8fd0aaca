from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import text

from .base import Base

CONTENT_STATUSES = ("WAITING", "ASSET_CREATED", "READY", "ERRORED")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _status_check(table: str) -> CheckConstraint:
    allowed = ", ".join(f"'{status}'" for status in CONTENT_STATUSES)
    return CheckConstraint(f"status in ({allowed})", name=f"ck_{table}_status")


class Profile(Base):
    __tablename__ = "profile"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(Text, unique=True)
    full_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProfileSharer(Base):
    __tablename__ = "profile_sharer"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    profile_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("profile.id", ondelete="CASCADE"),
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProfileExecutor(Base):
    __tablename__ = "profile_executor"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    executor_profile_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("profile.id", ondelete="CASCADE"),
    )
    sharer_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("profile_sharer.id", ondelete="CASCADE"),
    )
    status: Mapped[str] = mapped_column(Text, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("executor_profile_id", "sharer_id", name="uq_profile_executor_pair"),
        CheckConstraint(
            "status in ('pending', 'verified', 'revoked')",
            name="ck_profile_executor_status",
        ),
    )


class AuthSession(Base):
    __tablename__ = "auth_session"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    profile_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("profile.id", ondelete="CASCADE"),
    )
    token_hash: Mapped[str] = mapped_column(Text, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ContentSlotMixin:
    """Columns shared by both video kinds tracked through the Mux lifecycle."""

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    profile_sharer_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), index=True)
    status: Mapped[str] = mapped_column(Text, default="WAITING")
    mux_upload_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    mux_asset_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    mux_playback_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    passthrough: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    aspect_ratio: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_quality: Mapped[str | None] = mapped_column(Text, nullable=True)
    max_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_frame_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    language_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_tier: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    download_ready: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Video(ContentSlotMixin, Base):
    __tablename__ = "video"

    prompt_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)

    transcripts: Mapped[list["VideoTranscript"]] = relationship(
        back_populates="video",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (_status_check("video"),)


class TopicVideo(ContentSlotMixin, Base):
    __tablename__ = "topic_video"

    prompt_category_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True))
    title: Mapped[str] = mapped_column(Text, default="Topic Video")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transcripts: Mapped[list["TopicVideoTranscript"]] = relationship(
        back_populates="topic_video",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        _status_check("topic_video"),
        Index(
            "uq_topic_video_active_pair",
            "prompt_category_id",
            "profile_sharer_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )


class VideoTranscript(Base):
    __tablename__ = "video_transcript"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    video_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("video.id", ondelete="CASCADE"),
    )
    transcript: Mapped[str] = mapped_column(Text)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(Text, nullable=True)
    language: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mux_asset_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    mux_track_id: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    video: Mapped["Video"] = relationship(back_populates="transcripts")

    __table_args__ = (
        UniqueConstraint("video_id", "mux_track_id", name="uq_video_transcript_video_track"),
    )


class TopicVideoTranscript(Base):
    __tablename__ = "topic_video_transcript"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    topic_video_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("topic_video.id", ondelete="CASCADE"),
    )
    transcript: Mapped[str] = mapped_column(Text)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(Text, nullable=True)
    language: Mapped[str | None] = mapped_column(Text, nullable=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mux_asset_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    mux_track_id: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    topic_video: Mapped["TopicVideo"] = relationship(back_populates="transcripts")

    __table_args__ = (
        UniqueConstraint(
            "topic_video_id",
            "mux_track_id",
            name="uq_topic_video_transcript_video_track",
        ),
    )


class PromptResponse(Base):
    __tablename__ = "prompt_response"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    profile_sharer_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True))
    prompt_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True))
    video_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("video.id", ondelete="CASCADE"),
    )
    privacy_level: Mapped[str] = mapped_column(Text, default="Private")
    response_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("prompt_id", "video_id", name="uq_prompt_response_prompt_video"),
    )
