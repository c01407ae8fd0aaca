from __future__ import annotations

from dataclasses import dataclass
import http.client
import logging
import os
import time
from typing import Any, Callable

from sqlalchemy import select

from ingest.errors import ExternalServiceError, TranscriptFetchError
from ingest.resolver import SlotRef
from ingest.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

GENERATED_TEXT_SOURCE = "generated_vod"

TRANSIENT_FETCH_ERRORS = (ExternalServiceError, http.client.HTTPException, OSError)


@dataclass(frozen=True)
class TrackInfo:
    track_id: str
    asset_id: str | None
    name: str | None = None
    language_code: str | None = None
    text_type: str | None = None
    text_source: str | None = None


@dataclass(frozen=True)
class TranscriptOutcome:
    stored: bool
    detail: str


def load_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=int(os.getenv("TRANSCRIPT_FETCH_ATTEMPTS", "3")),
        base_delay_s=float(os.getenv("TRANSCRIPT_FETCH_BASE_DELAY_S", "2.0")),
    )


def track_from_event(data: dict[str, Any]) -> TrackInfo | None:
    """Return the track described by a track.ready payload if it is a generated caption."""
    if data.get("type") != "text" or data.get("text_source") != GENERATED_TEXT_SOURCE:
        return None
    if data.get("status") not in (None, "ready"):
        return None
    track_id = data.get("id")
    if not track_id:
        return None
    return TrackInfo(
        track_id=str(track_id),
        asset_id=data.get("asset_id"),
        name=data.get("name"),
        language_code=data.get("language_code"),
        text_type=data.get("text_type"),
        text_source=data.get("text_source"),
    )


def _transcript_exists(session, ref: SlotRef, track_id: str) -> bool:
    model = ref.kind.transcript_model
    fk = getattr(model, ref.kind.transcript_fk)
    row = session.execute(
        select(model.id).where(fk == ref.id, model.mux_track_id == track_id)
    ).first()
    return row is not None


def fetch_and_store_transcript(
    session,
    ref: SlotRef,
    track: TrackInfo,
    mux,
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> TranscriptOutcome:
    playback_id = ref.slot.mux_playback_id
    if not playback_id:
        logger.info(
            "track %s for %s %s arrived before a playback id; skipping",
            track.track_id,
            ref.kind.value,
            ref.id,
        )
        return TranscriptOutcome(False, "playback_id_missing")

    if _transcript_exists(session, ref, track.track_id):
        return TranscriptOutcome(False, "transcript_exists")

    try:
        text = call_with_retry(
            lambda: mux.fetch_transcript(playback_id, track.track_id),
            policy or load_retry_policy(),
            sleep=sleep,
            retry_on=TRANSIENT_FETCH_ERRORS,
            label=f"transcript fetch {track.track_id}",
        )
    except TRANSIENT_FETCH_ERRORS as exc:
        logger.error(
            "transcript fetch exhausted for %s %s track %s: %s",
            ref.kind.value,
            ref.id,
            track.track_id,
            exc,
        )
        raise TranscriptFetchError(
            f"transcript for track {track.track_id} could not be fetched: {exc}"
        ) from exc

    model = ref.kind.transcript_model
    session.add(
        model(
            **{ref.kind.transcript_fk: ref.id},
            transcript=text,
            source=track.text_source,
            type=track.text_type,
            language=track.language_code,
            name=track.name,
            mux_asset_id=track.asset_id or ref.slot.mux_asset_id,
            mux_track_id=track.track_id,
        )
    )
    session.flush()
    logger.info("stored transcript for %s %s track %s", ref.kind.value, ref.id, track.track_id)
    return TranscriptOutcome(True, "transcript_stored")
