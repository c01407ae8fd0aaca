from __future__ import annotations

from dataclasses import dataclass
import logging

from ingest.errors import ConflictError, ValidationError
from ingest.resolver import SlotRef

logger = logging.getLogger(__name__)

STATIC_RENDITIONS: dict[str, str] = {
    "audio": "audio.m4a",
    "480p": "480p.mp4",
    "720p": "720p.mp4",
    "1080p": "1080p.mp4",
}
ORIGINAL_QUALITY = "original"
DEFAULT_QUALITY = "720p"


@dataclass(frozen=True)
class DownloadLink:
    url: str
    quality: str
    filename: str


def _require_ready(ref: SlotRef) -> None:
    if ref.slot.status != "READY":
        raise ConflictError(
            f"{ref.kind.value} {ref.id} is {ref.slot.status}, not READY",
            code="download_not_ready",
        )


def download_link(ref: SlotRef, quality: str, *, mux, stream_base_url: str) -> DownloadLink:
    """Resolve a download URL for a READY slot.

    Static qualities are served from Mux static renditions once ``download_ready``
    is set. ``original`` asks Mux for the temporary master file.
    """
    if quality != ORIGINAL_QUALITY and quality not in STATIC_RENDITIONS:
        raise ValidationError(f"unsupported quality {quality!r}", code="invalid_quality")
    _require_ready(ref)

    if quality == ORIGINAL_QUALITY:
        if not ref.slot.mux_asset_id:
            raise ConflictError(f"{ref.kind.value} {ref.id} has no asset", code="download_not_ready")
        master = mux.get_asset(ref.slot.mux_asset_id).get("master") or {}
        if not isinstance(master, dict) or master.get("status") != "ready" or not master.get("url"):
            raise ConflictError(
                f"master file for {ref.kind.value} {ref.id} is not ready",
                code="master_not_ready",
            )
        return DownloadLink(url=str(master["url"]), quality=quality, filename=f"video-{ref.id}-original.mp4")

    if not ref.slot.download_ready or not ref.slot.mux_playback_id:
        raise ConflictError(
            f"static renditions for {ref.kind.value} {ref.id} are not ready",
            code="download_not_ready",
        )
    rendition = STATIC_RENDITIONS[quality]
    extension = rendition.rsplit(".", 1)[-1]
    logger.info("download link issued for %s %s (%s)", ref.kind.value, ref.id, quality)
    return DownloadLink(
        url=f"{stream_base_url}/{ref.slot.mux_playback_id}/{rendition}",
        quality=quality,
        filename=f"video-{ref.id}-{quality}.{extension}",
    )
