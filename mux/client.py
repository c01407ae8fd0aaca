from __future__ import annotations

import base64
from dataclasses import dataclass
import http.client
import json
import logging
import os
from typing import Any
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError
from urllib.parse import quote

from ingest.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MuxConfig:
    token_id: str
    token_secret: str
    base_url: str = "https://api.mux.com"
    stream_base_url: str = "https://stream.mux.com"
    timeout_s: int = 20
    mp4_support: str = "capped-1080p"
    subtitle_language: str = "en"
    subtitle_name: str = "English CC"


@dataclass(frozen=True)
class UploadSession:
    id: str
    url: str


def load_mux_config() -> MuxConfig:
    token_id = os.getenv("MUX_TOKEN_ID", "").strip()
    token_secret = os.getenv("MUX_TOKEN_SECRET", "").strip()
    if not token_id or not token_secret:
        raise RuntimeError("MUX_TOKEN_ID and MUX_TOKEN_SECRET must be set")
    return MuxConfig(
        token_id=token_id,
        token_secret=token_secret,
        base_url=os.getenv("MUX_BASE_URL", "https://api.mux.com").strip().rstrip("/"),
        stream_base_url=load_stream_base_url(),
        timeout_s=int(os.getenv("MUX_TIMEOUT_S", "20")),
        mp4_support=os.getenv("MUX_MP4_SUPPORT", "capped-1080p").strip(),
        subtitle_language=os.getenv("MUX_SUBTITLE_LANGUAGE", "en").strip(),
        subtitle_name=os.getenv("MUX_SUBTITLE_NAME", "English CC").strip(),
    )


def load_stream_base_url() -> str:
    return os.getenv("MUX_STREAM_BASE_URL", "https://stream.mux.com").strip().rstrip("/")


def build_new_asset_settings(
    config: MuxConfig,
    *,
    passthrough: str,
    master_access: bool = False,
    generate_subtitles: bool = True,
) -> dict[str, Any]:
    settings: dict[str, Any] = {
        "playback_policy": ["public"],
        "passthrough": passthrough,
    }
    if config.mp4_support and config.mp4_support != "none":
        settings["mp4_support"] = config.mp4_support
    if master_access:
        settings["master_access"] = "temporary"
    if generate_subtitles:
        settings["input"] = [
            {
                "generated_subtitles": [
                    {
                        "language_code": config.subtitle_language,
                        "name": config.subtitle_name,
                    }
                ]
            }
        ]
    return settings


class MuxClient:
    """Thin client for the parts of the Mux Video API the ingest flow uses."""

    def __init__(self, config: MuxConfig) -> None:
        self.config = config

    def create_upload(
        self,
        *,
        cors_origin: str,
        passthrough: str,
        master_access: bool = False,
        generate_subtitles: bool = True,
    ) -> UploadSession:
        payload = {
            "cors_origin": cors_origin,
            "new_asset_settings": build_new_asset_settings(
                self.config,
                passthrough=passthrough,
                master_access=master_access,
                generate_subtitles=generate_subtitles,
            ),
        }
        data = self._api("POST", "/video/v1/uploads", payload)
        try:
            return UploadSession(id=str(data["id"]), url=str(data["url"]))
        except KeyError as exc:
            raise ExternalServiceError(
                f"Mux upload response missing {exc}",
                code="mux_invalid_response",
            ) from exc

    def get_asset(self, asset_id: str) -> dict[str, Any]:
        return self._api("GET", f"/video/v1/assets/{quote(asset_id, safe='')}")

    def delete_asset(self, asset_id: str) -> None:
        self._api("DELETE", f"/video/v1/assets/{quote(asset_id, safe='')}")

    def fetch_transcript(self, playback_id: str, track_id: str) -> str:
        url = (
            f"{self.config.stream_base_url}/{quote(playback_id, safe='')}"
            f"/text/{quote(track_id, safe='')}.txt"
        )
        req = urlrequest.Request(url=url, method="GET")
        body = self._send(req)
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ExternalServiceError(
                f"transcript for track {track_id} is not valid UTF-8",
                code="mux_invalid_response",
            ) from exc

    def _api(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        credentials = f"{self.config.token_id}:{self.config.token_secret}".encode("utf-8")
        headers = {
            "Authorization": f"Basic {base64.b64encode(credentials).decode('ascii')}",
            "Accept": "application/json",
        }
        body = None
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = urlrequest.Request(
            url=f"{self.config.base_url}{path}",
            data=body,
            method=method,
            headers=headers,
        )
        raw = self._send(req)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ExternalServiceError(
                f"Mux returned invalid JSON for {method} {path}",
                code="mux_invalid_response",
            ) from exc
        data = parsed.get("data") if isinstance(parsed, dict) else None
        return data if isinstance(data, dict) else {}

    def _send(self, req: urlrequest.Request) -> bytes:
        try:
            with urlrequest.urlopen(req, timeout=max(1, self.config.timeout_s)) as resp:
                return resp.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            logger.warning("mux request failed: %s %s -> %s", req.get_method(), req.full_url, exc.code)
            raise ExternalServiceError(
                f"Mux API error {exc.code}: {_sanitize(detail)}",
                code="mux_not_found" if exc.code == 404 else f"mux_http_{exc.code}",
                retryable=exc.code >= 500 or exc.code == 429,
            ) from exc
        except URLError as exc:
            raise ExternalServiceError(
                f"Mux unreachable: {_sanitize(str(exc))}",
                code="mux_network_error",
                retryable=True,
            ) from exc
        except TimeoutError as exc:
            raise ExternalServiceError(
                "Mux request timed out",
                code="mux_timeout",
                retryable=True,
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            logger.warning("mux connection failed: %s %s -> %s", req.get_method(), req.full_url, type(exc).__name__)
            raise ExternalServiceError(
                f"Mux connection failed: {type(exc).__name__}: {_sanitize(str(exc))}",
                code="mux_connection_error",
                retryable=True,
            ) from exc


def _sanitize(message: str) -> str:
    return (message or "").replace("\n", " ")[:300]
