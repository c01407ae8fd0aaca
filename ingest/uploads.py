"""Issue Mux direct-upload sessions backed by a WAITING content row.

The row is inserted before Mux is asked for an upload so that the passthrough
can carry its id. If Mux (or recording the upload id) fails, the row is
deleted again so no orphaned WAITING rows are left behind.
"""
from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from access import AccessResolver
from db.models import TopicVideo, Video
from ingest.errors import (
    ConflictError,
    ExternalServiceError,
    IngestError,
    ValidationError,
)
from ingest.resolver import ContentKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadTarget:
    kind: ContentKind
    prompt_id: UUID | None = None
    topic_id: UUID | None = None

    @classmethod
    def for_prompt(cls, prompt_id: UUID | None) -> "UploadTarget":
        return cls(ContentKind.RESPONSE, prompt_id=prompt_id)

    @classmethod
    def for_topic(cls, topic_id: UUID | None) -> "UploadTarget":
        return cls(ContentKind.TOPIC, topic_id=topic_id)

    def validate(self) -> None:
        if self.kind is ContentKind.RESPONSE and self.prompt_id is None:
            raise ValidationError("prompt_id is required", code="missing_prompt_id")
        if self.kind is ContentKind.TOPIC and self.topic_id is None:
            raise ValidationError("topic_id is required", code="missing_topic_id")


@dataclass(frozen=True)
class UploadTicket:
    upload_url: str
    upload_id: str
    content_id: UUID
    kind: ContentKind
    sharer_id: UUID


def build_passthrough(target: UploadTarget, content_id: UUID, sharer_id: UUID) -> str:
    payload = {"contentId": str(content_id)}
    if target.kind is ContentKind.TOPIC:
        payload["topicId"] = str(target.topic_id)
    else:
        payload["promptId"] = str(target.prompt_id)
    payload["sharerId"] = str(sharer_id)
    return json.dumps(payload, separators=(",", ":"))


def replace_active_topic_slots(session, mux, topic_id: UUID, sharer_id: UUID) -> int:
    """Delete every active topic video for the pair; Mux cleanup is best effort."""
    rows = session.execute(
        select(TopicVideo).where(
            TopicVideo.prompt_category_id == topic_id,
            TopicVideo.profile_sharer_id == sharer_id,
            TopicVideo.deleted_at.is_(None),
        )
    ).scalars().all()
    for row in rows:
        if row.mux_asset_id:
            try:
                mux.delete_asset(row.mux_asset_id)
            except ExternalServiceError as exc:
                logger.warning(
                    "could not delete mux asset %s of replaced topic video %s: %s",
                    row.mux_asset_id,
                    row.id,
                    exc,
                )
        session.delete(row)
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise IngestError(
            f"could not delete previous topic video for topic {topic_id}",
            code="previous_slot_delete_failed",
        ) from exc
    if rows:
        logger.info("replaced %d topic video(s) for topic %s sharer %s", len(rows), topic_id, sharer_id)
    return len(rows)


def _reject_existing_response(session, prompt_id: UUID, sharer_id: UUID) -> None:
    existing = session.execute(
        select(Video.id).where(
            Video.prompt_id == prompt_id,
            Video.profile_sharer_id == sharer_id,
            Video.status != "ERRORED",
        )
    ).first()
    if existing is not None:
        raise ConflictError(
            f"a video already exists for prompt {prompt_id}",
            code="video_exists",
        )


def _insert_slot(session, target: UploadTarget, sharer_id: UUID) -> Video | TopicVideo:
    if target.kind is ContentKind.TOPIC:
        slot = TopicVideo(
            prompt_category_id=target.topic_id,
            profile_sharer_id=sharer_id,
            status="WAITING",
        )
    else:
        slot = Video(prompt_id=target.prompt_id, profile_sharer_id=sharer_id, status="WAITING")
    session.add(slot)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(
            "another upload for this topic is in progress; retry",
            code="concurrent_upload",
        ) from exc
    session.refresh(slot)
    return slot


def _compensate(session, kind: ContentKind, content_id: UUID) -> None:
    model = kind.model
    try:
        session.execute(delete(model).where(model.id == content_id))
        session.commit()
        logger.info("removed %s %s after failed upload session", kind.value, content_id)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("compensating delete failed for %s %s", kind.value, content_id)


def create_upload_session(
    session,
    mux,
    *,
    target: UploadTarget,
    caller_profile_id: UUID,
    cors_origin: str,
    acting_for_sharer_id: UUID | None = None,
    access: AccessResolver | None = None,
) -> UploadTicket:
    target.validate()
    access = access or AccessResolver()
    decision = access.resolve_effective_sharer(session, caller_profile_id, acting_for_sharer_id)
    sharer_id = decision.effective_sharer_id

    if target.kind is ContentKind.TOPIC:
        replace_active_topic_slots(session, mux, target.topic_id, sharer_id)
    else:
        _reject_existing_response(session, target.prompt_id, sharer_id)

    slot = _insert_slot(session, target, sharer_id)
    content_id = slot.id
    passthrough = build_passthrough(target, content_id, sharer_id)

    try:
        upload = mux.create_upload(
            cors_origin=cors_origin,
            passthrough=passthrough,
            master_access=target.kind is ContentKind.TOPIC,
        )
        slot.mux_upload_id = upload.id
        slot.passthrough = passthrough
        session.commit()
    except ExternalServiceError:
        session.rollback()
        _compensate(session, target.kind, content_id)
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        _compensate(session, target.kind, content_id)
        raise IngestError(
            f"upload id could not be recorded for {target.kind.value} {content_id}",
            code="upload_session_failed",
        ) from exc
    except Exception:
        session.rollback()
        _compensate(session, target.kind, content_id)
        raise

    logger.info(
        "upload %s issued for %s %s (sharer %s, %s)",
        upload.id,
        target.kind.value,
        content_id,
        sharer_id,
        decision.mode,
    )
    return UploadTicket(
        upload_url=upload.url,
        upload_id=upload.id,
        content_id=content_id,
        kind=target.kind,
        sharer_id=sharer_id,
    )
