"""Inbound Mux webhook handling: verify, parse, resolve the owner, dispatch.

The endpoint acknowledges anything redelivery cannot fix (unknown assets,
irrelevant event types, duplicates) with 200 and only fails when a later
redelivery can succeed: transcript fetch exhaustion, database or Mux errors.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Callable

from ingest.errors import AmbiguousSlotError, AuthenticationError, ValidationError
from ingest.reconciler import (
    DOWNLOAD_FLAG_EVENTS,
    TRACK_READY,
    TRANSITIONS,
    UPLOAD_ASSET_CREATED,
    apply_event,
)
from ingest.resolver import ContentKind, SlotRef, resolve_slot, resolve_slot_of_kind
from ingest.retry import RetryPolicy
from ingest.transcripts import fetch_and_store_transcript, track_from_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookConfig:
    secret: str | None = None
    tolerance_s: int = 300


def load_webhook_config() -> WebhookConfig:
    secret = os.getenv("MUX_WEBHOOK_SECRET", "").strip()
    return WebhookConfig(
        secret=secret or None,
        tolerance_s=int(os.getenv("MUX_WEBHOOK_TOLERANCE_S", "300")),
    )


@dataclass(frozen=True)
class LifecycleEvent:
    event_type: str
    data: dict[str, Any]
    passthrough: dict[str, Any] = field(default_factory=dict)
    passthrough_malformed: bool = False


@dataclass(frozen=True)
class WebhookOutcome:
    status_code: int
    body: dict[str, Any]


def _ok(message: str, **extra: Any) -> WebhookOutcome:
    return WebhookOutcome(200, {"message": message, **extra})


def verify_signature(
    raw_body: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance_s: int = 300,
    now: float | None = None,
) -> None:
    """Check a ``mux-signature`` header of the form ``t=<unix>,v1=<hex>``."""
    if not header:
        raise AuthenticationError("missing mux-signature header", code="signature_missing")

    timestamp: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not signatures:
        raise AuthenticationError("malformed mux-signature header", code="signature_invalid")

    try:
        issued_at = int(timestamp)
    except ValueError as exc:
        raise AuthenticationError("malformed signature timestamp", code="signature_invalid") from exc
    current = time.time() if now is None else now
    if tolerance_s > 0 and abs(current - issued_at) > tolerance_s:
        raise AuthenticationError("signature timestamp outside tolerance", code="signature_expired")

    expected = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + b"." + raw_body,
        hashlib.sha256,
    ).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise AuthenticationError("signature mismatch", code="signature_invalid")


def parse_passthrough(raw: Any) -> tuple[dict[str, Any], bool]:
    """Decode passthrough metadata; returns ``(payload, malformed)`` and never raises."""
    if raw is None or raw == "":
        return {}, False
    if isinstance(raw, dict):
        return raw, False
    if not isinstance(raw, str):
        return {}, True
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}, True
    if not isinstance(parsed, dict):
        return {}, True
    return parsed, False


def parse_event(raw_body: bytes) -> LifecycleEvent:
    try:
        envelope = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("webhook body is not valid JSON", code="invalid_envelope") from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
        raise ValidationError("webhook body is missing an event type", code="invalid_envelope")

    data = envelope.get("data")
    if not isinstance(data, dict):
        data = {}
    raw_passthrough = data.get("passthrough")
    if raw_passthrough is None:
        settings = data.get("new_asset_settings")
        if isinstance(settings, dict):
            raw_passthrough = settings.get("passthrough")
    passthrough, malformed = parse_passthrough(raw_passthrough)
    return LifecycleEvent(envelope["type"], data, passthrough, malformed)


def _upload_id(event: LifecycleEvent) -> str | None:
    if event.event_type.startswith("video.upload."):
        return event.data.get("id")
    if event.event_type.startswith("video.asset.") and not event.event_type.startswith(
        "video.asset.track."
    ):
        return event.data.get("upload_id")
    return None


def _asset_id(event: LifecycleEvent) -> str | None:
    if event.event_type == UPLOAD_ASSET_CREATED or event.event_type.startswith("video.asset.track."):
        return event.data.get("asset_id")
    if event.event_type.startswith("video.asset."):
        return event.data.get("id")
    return None


def _passthrough_target(passthrough: dict[str, Any]) -> tuple[ContentKind | None, str | None]:
    content_id = passthrough.get("contentId") or passthrough.get("videoId")
    if passthrough.get("topicId") or passthrough.get("promptCategoryId"):
        return ContentKind.TOPIC, content_id
    if passthrough.get("promptId"):
        return ContentKind.RESPONSE, content_id
    return None, content_id


def resolve_event_owner(session, event: LifecycleEvent) -> SlotRef | None:
    """Passthrough content id first, then the stored upload id, then the asset id."""
    kind, content_id = _passthrough_target(event.passthrough)
    if content_id:
        if kind is not None:
            ref = resolve_slot_of_kind(session, kind, content_id=content_id)
        else:
            ref = resolve_slot(session, content_id=content_id)
        if ref is not None:
            return ref

    upload_id = _upload_id(event)
    if upload_id:
        ref = resolve_slot(session, upload_id=upload_id)
        if ref is not None:
            return ref

    asset_id = _asset_id(event)
    if asset_id:
        ref = resolve_slot(session, asset_id=asset_id)
        if ref is not None:
            return ref

    if content_id:
        logger.warning(
            "passthrough_unresolved: %s carried contentId=%s (kind=%s) but no row matched",
            event.event_type,
            content_id,
            kind.value if kind else "unknown",
        )
    return None


def _is_handled(event_type: str) -> bool:
    return event_type in TRANSITIONS or event_type in DOWNLOAD_FLAG_EVENTS or event_type == TRACK_READY


def handle_webhook(
    session,
    raw_body: bytes,
    signature: str | None,
    *,
    mux,
    config: WebhookConfig | None = None,
    retry_policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WebhookOutcome:
    """Process one delivery as a single unit of work and commit it."""
    config = config or load_webhook_config()
    if config.secret:
        verify_signature(raw_body, signature, config.secret, tolerance_s=config.tolerance_s)
    else:
        logger.warning("MUX_WEBHOOK_SECRET is not configured; accepting unsigned webhook")

    event = parse_event(raw_body)
    if event.passthrough_malformed:
        logger.warning("malformed passthrough on %s; continuing without it", event.event_type)

    if not _is_handled(event.event_type):
        logger.debug("ignoring mux event %s", event.event_type)
        return _ok("ignored", event_type=event.event_type)

    try:
        ref = resolve_event_owner(session, event)
    except AmbiguousSlotError as exc:
        logger.error("ambiguous owner for %s: %s", event.event_type, exc)
        return _ok("ambiguous_owner", event_type=event.event_type)

    if ref is None:
        if event.passthrough_malformed and event.event_type in TRANSITIONS:
            raise ValidationError(
                f"{event.event_type} could not be resolved and its passthrough is malformed",
                code="invalid_passthrough",
            )
        logger.info("no content row owns %s; acknowledging", event.event_type)
        return _ok("unresolved", event_type=event.event_type)

    try:
        if event.event_type == TRACK_READY:
            track = track_from_event(event.data)
            if track is None:
                return _ok("track_ignored", event_type=event.event_type)
            outcome = fetch_and_store_transcript(
                session,
                ref,
                track,
                mux,
                policy=retry_policy,
                sleep=sleep,
            )
            session.commit()
            return _ok(outcome.detail, content_id=str(ref.id), kind=ref.kind.value)

        result = apply_event(session, ref, event.event_type, event.data)
        session.commit()
    except Exception:
        session.rollback()
        raise

    return _ok(
        "applied" if result.applied else "no_op",
        content_id=str(ref.id),
        kind=ref.kind.value,
        status=result.status,
        detail=result.detail,
    )
