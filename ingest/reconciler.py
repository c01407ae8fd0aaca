"""Idempotent state machine driven by Mux asset lifecycle events.

Status moves WAITING -> ASSET_CREATED -> READY | ERRORED and never backwards.
Every transition is a conditional UPDATE on the current status, so replays and
out-of-order deliveries either apply once or fall through as no-ops.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from typing import Any

from sqlalchemy import select, update

from db.models import PromptResponse, Video
from ingest.errors import DataIntegrityError
from ingest.resolver import ContentKind, SlotRef

logger = logging.getLogger(__name__)

UPLOAD_ASSET_CREATED = "video.upload.asset_created"
ASSET_CREATED = "video.asset.created"
ASSET_READY = "video.asset.ready"
ASSET_ERRORED = "video.asset.errored"
ASSET_DELETED = "video.asset.deleted"
UPLOAD_CANCELLED = "video.upload.cancelled"
UPLOAD_ERRORED = "video.upload.errored"
TRACK_READY = "video.asset.track.ready"
STATIC_RENDITIONS_READY = "video.asset.static_renditions.ready"
STATIC_RENDITIONS_DELETED = "video.asset.static_renditions.deleted"
MASTER_READY = "video.asset.master.ready"

TERMINAL_STATES = ("READY", "ERRORED")


@dataclass(frozen=True)
class Transition:
    from_states: tuple[str, ...]
    to_state: str


TRANSITIONS: dict[str, Transition] = {
    UPLOAD_ASSET_CREATED: Transition(("WAITING",), "ASSET_CREATED"),
    ASSET_CREATED: Transition(("WAITING",), "ASSET_CREATED"),
    # accepted from WAITING so a ready event that overtakes asset_created still lands in READY
    ASSET_READY: Transition(("WAITING", "ASSET_CREATED"), "READY"),
    ASSET_ERRORED: Transition(("WAITING", "ASSET_CREATED"), "ERRORED"),
    UPLOAD_CANCELLED: Transition(("WAITING",), "ERRORED"),
    UPLOAD_ERRORED: Transition(("WAITING",), "ERRORED"),
}

DOWNLOAD_FLAG_EVENTS: dict[str, bool] = {
    STATIC_RENDITIONS_READY: True,
    MASTER_READY: True,
    STATIC_RENDITIONS_DELETED: False,
}


@dataclass(frozen=True)
class ReconcileResult:
    event_type: str
    applied: bool
    status: str | None
    detail: str | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _first_playback_id(data: dict[str, Any]) -> str | None:
    playback_ids = data.get("playback_ids") or []
    if isinstance(playback_ids, list):
        for item in playback_ids:
            if isinstance(item, dict) and item.get("id"):
                return str(item["id"])
    return None


def _track(data: dict[str, Any], track_type: str) -> dict[str, Any]:
    tracks = data.get("tracks") or []
    if isinstance(tracks, list):
        for track in tracks:
            if isinstance(track, dict) and track.get("type") == track_type:
                return track
    return {}


def asset_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Columns taken from a Mux asset object; keys with no value are dropped."""
    video_track = _track(data, "video")
    audio_track = _track(data, "audio")
    fields = {
        "mux_asset_id": data.get("id"),
        "mux_playback_id": _first_playback_id(data),
        "duration": _as_float(data.get("duration")),
        "aspect_ratio": data.get("aspect_ratio"),
        "video_quality": data.get("video_quality") or data.get("encoding_tier"),
        "max_width": _as_int(video_track.get("max_width")),
        "max_height": _as_int(video_track.get("max_height")),
        "max_frame_rate": _as_float(video_track.get("max_frame_rate")),
        "language_code": audio_track.get("language_code"),
        "resolution_tier": data.get("resolution_tier") or data.get("max_resolution_tier"),
    }
    return {key: value for key, value in fields.items() if value is not None}


def error_text(data: dict[str, Any]) -> str:
    errors = data.get("errors") or {}
    parts: list[str] = []
    if isinstance(errors, dict):
        if errors.get("type"):
            parts.append(str(errors["type"]))
        messages = errors.get("messages") or []
        if isinstance(messages, list):
            parts.extend(str(message) for message in messages if message)
    if not parts and data.get("status"):
        parts.append(str(data["status"]))
    return "; ".join(parts) or "unknown error"


def _values_for(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    if event_type == UPLOAD_ASSET_CREATED:
        return {"mux_asset_id": data.get("asset_id")} if data.get("asset_id") else {}
    if event_type == ASSET_CREATED:
        fields = asset_fields(data)
        return {key: fields[key] for key in ("mux_asset_id", "mux_playback_id") if key in fields}
    if event_type == ASSET_READY:
        return asset_fields(data)
    if event_type == ASSET_ERRORED:
        values = {"error_message": error_text(data)}
        if data.get("id"):
            values["mux_asset_id"] = data["id"]
        return values
    if event_type == UPLOAD_CANCELLED:
        return {"error_message": "upload cancelled"}
    if event_type == UPLOAD_ERRORED:
        return {"error_message": f"upload errored: {error_text(data)}"}
    return {}


def compare_and_set(session, ref: SlotRef, transition: Transition, values: dict[str, Any]) -> bool:
    model = ref.model
    stmt = (
        update(model)
        .where(model.id == ref.id, model.status.in_(transition.from_states))
        .values(status=transition.to_state, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    applied = session.execute(stmt).rowcount == 1
    session.expire(ref.slot)
    return applied


def ensure_prompt_response(session, video: Video) -> str:
    """Create the PromptResponse for a READY answer video unless it already exists."""
    if video.prompt_id is None or video.profile_sharer_id is None:
        problem = DataIntegrityError(
            f"video {video.id} reached READY without prompt_id/profile_sharer_id",
            code="prompt_response_keys_missing",
        )
        logger.warning("data quality: %s", problem)
        return problem.code

    existing = session.execute(
        select(PromptResponse.id).where(
            PromptResponse.prompt_id == video.prompt_id,
            PromptResponse.video_id == video.id,
        )
    ).first()
    if existing is not None:
        return "prompt_response_exists"

    session.add(
        PromptResponse(
            profile_sharer_id=video.profile_sharer_id,
            prompt_id=video.prompt_id,
            video_id=video.id,
        )
    )
    session.flush()
    logger.info("prompt response created for video %s (prompt %s)", video.id, video.prompt_id)
    return "prompt_response_created"


def set_download_ready(session, ref: SlotRef, ready: bool) -> bool:
    model = ref.model
    stmt = (
        update(model)
        .where(model.id == ref.id, model.download_ready.is_not(ready))
        .values(download_ready=ready, updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    changed = session.execute(stmt).rowcount == 1
    session.expire(ref.slot)
    return changed


def apply_event(session, ref: SlotRef, event_type: str, data: dict[str, Any]) -> ReconcileResult:
    """Apply one lifecycle event to a resolved slot. The caller owns the commit."""
    if event_type in DOWNLOAD_FLAG_EVENTS:
        changed = set_download_ready(session, ref, DOWNLOAD_FLAG_EVENTS[event_type])
        return ReconcileResult(event_type, changed, ref.slot.status, "download_ready")

    transition = TRANSITIONS.get(event_type)
    if transition is None:
        if event_type == ASSET_DELETED:
            logger.info("mux asset deleted for %s %s", ref.kind.value, ref.id)
        return ReconcileResult(event_type, False, ref.slot.status, "ignored")

    applied = compare_and_set(session, ref, transition, _values_for(event_type, data))
    status = ref.slot.status
    if not applied:
        logger.info(
            "%s absorbed for %s %s in status %s",
            event_type,
            ref.kind.value,
            ref.id,
            status,
        )
        return ReconcileResult(event_type, False, status, "no_op")

    logger.info("%s %s -> %s on %s", ref.kind.value, ref.id, transition.to_state, event_type)
    detail = None
    if transition.to_state == "READY" and ref.kind is ContentKind.RESPONSE:
        detail = ensure_prompt_response(session, ref.slot)
    return ReconcileResult(event_type, True, status, detail)


def reconcile_from_asset(session, ref: SlotRef, mux) -> list[ReconcileResult]:
    """Pull the asset from Mux and replay whatever lifecycle events it implies."""
    asset_id = ref.slot.mux_asset_id
    if not asset_id:
        return [ReconcileResult("refresh", False, ref.slot.status, "no_asset_id")]

    asset = mux.get_asset(asset_id)
    results: list[ReconcileResult] = []
    asset_status = asset.get("status")
    if asset_status in {"preparing", "ready", "errored"}:
        results.append(apply_event(session, ref, ASSET_CREATED, asset))
    if asset_status == "ready":
        results.append(apply_event(session, ref, ASSET_READY, asset))
    elif asset_status == "errored":
        results.append(apply_event(session, ref, ASSET_ERRORED, asset))

    renditions = asset.get("static_renditions") or {}
    if isinstance(renditions, dict) and renditions.get("status") == "ready":
        results.append(apply_event(session, ref, STATIC_RENDITIONS_READY, asset))
    return results
