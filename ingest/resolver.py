"""Locate the content row that owns a Mux identifier.

Two tables track Mux uploads: ``video`` (answers to a prompt) and
``topic_video`` (one summary per topic and sharer). Every lookup probes
``video`` first, then ``topic_video``. Both tables are always probed, so an
identifier present in both is reported instead of silently picking one.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from uuid import UUID

from sqlalchemy import select

from db.models import TopicVideo, TopicVideoTranscript, Video, VideoTranscript
from ingest.errors import AmbiguousSlotError

logger = logging.getLogger(__name__)


class ContentKind(str, Enum):
    RESPONSE = "response_video"
    TOPIC = "topic_video"

    @property
    def model(self) -> type[Video] | type[TopicVideo]:
        return Video if self is ContentKind.RESPONSE else TopicVideo

    @property
    def transcript_model(self) -> type[VideoTranscript] | type[TopicVideoTranscript]:
        return VideoTranscript if self is ContentKind.RESPONSE else TopicVideoTranscript

    @property
    def transcript_fk(self) -> str:
        return "video_id" if self is ContentKind.RESPONSE else "topic_video_id"


PROBE_ORDER = (ContentKind.RESPONSE, ContentKind.TOPIC)


@dataclass(frozen=True)
class SlotRef:
    kind: ContentKind
    slot: Video | TopicVideo

    @property
    def id(self) -> UUID:
        return self.slot.id

    @property
    def model(self) -> type[Video] | type[TopicVideo]:
        return self.kind.model


def _probe(session, kind: ContentKind, field: str, value) -> Video | TopicVideo | None:
    model = kind.model
    stmt = select(model).where(getattr(model, field) == value)
    if kind is ContentKind.TOPIC:
        stmt = stmt.where(TopicVideo.deleted_at.is_(None))
    return session.execute(stmt.limit(1)).scalars().first()


def _lookup_field(content_id, upload_id, asset_id) -> tuple[str, object]:
    given = [
        (field, value)
        for field, value in (
            ("id", content_id),
            ("mux_upload_id", upload_id),
            ("mux_asset_id", asset_id),
        )
        if value
    ]
    if len(given) != 1:
        raise ValueError("Exactly one of content_id, upload_id, asset_id is required")
    field, value = given[0]
    if field == "id" and not isinstance(value, UUID):
        try:
            value = UUID(str(value))
        except ValueError:
            return field, None
    return field, value


def resolve_slot_of_kind(
    session,
    kind: ContentKind,
    *,
    content_id: UUID | str | None = None,
    upload_id: str | None = None,
    asset_id: str | None = None,
) -> SlotRef | None:
    field, value = _lookup_field(content_id, upload_id, asset_id)
    if value is None:
        return None
    slot = _probe(session, kind, field, value)
    return SlotRef(kind, slot) if slot is not None else None


def resolve_slot(
    session,
    *,
    content_id: UUID | str | None = None,
    upload_id: str | None = None,
    asset_id: str | None = None,
) -> SlotRef | None:
    field, value = _lookup_field(content_id, upload_id, asset_id)
    if value is None:
        return None
    matches = []
    for kind in PROBE_ORDER:
        slot = _probe(session, kind, field, value)
        if slot is not None:
            matches.append(SlotRef(kind, slot))
    if len(matches) > 1:
        logger.error(
            "identifier %s=%s matches rows in %s",
            field,
            value,
            ", ".join(ref.kind.value for ref in matches),
        )
        raise AmbiguousSlotError(f"{field}={value} is present in both content tables")
    return matches[0] if matches else None
