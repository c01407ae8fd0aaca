from __future__ import annotations

import http.client
import io
import json
from urllib.error import HTTPError, URLError

import pytest

import mux.client as client_module
from ingest.errors import ExternalServiceError
from mux import MuxClient, MuxConfig, load_mux_config
from mux.client import build_new_asset_settings


class _FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def __enter__(self):
        return self

    def __exit__(self, *_args) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def _client() -> MuxClient:
    return MuxClient(MuxConfig(token_id="id", token_secret="secret", base_url="https://mux.test", stream_base_url="https://stream.test"))


def test_new_asset_settings_for_topic_video() -> None:
    settings = build_new_asset_settings(
        MuxConfig(token_id="id", token_secret="secret"),
        passthrough='{"contentId":"c"}',
        master_access=True,
    )

    assert settings["playback_policy"] == ["public"]
    assert settings["passthrough"] == '{"contentId":"c"}'
    assert settings["mp4_support"] == "capped-1080p"
    assert settings["master_access"] == "temporary"
    assert settings["input"][0]["generated_subtitles"] == [{"language_code": "en", "name": "English CC"}]


def test_new_asset_settings_can_skip_renditions() -> None:
    settings = build_new_asset_settings(
        MuxConfig(token_id="id", token_secret="secret", mp4_support="none"),
        passthrough="{}",
        generate_subtitles=False,
    )

    assert "mp4_support" not in settings
    assert "master_access" not in settings
    assert "input" not in settings


def test_create_upload_posts_to_uploads_endpoint(monkeypatch) -> None:
    seen = {}

    def _urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["method"] = req.get_method()
        seen["auth"] = req.get_header("Authorization")
        seen["payload"] = json.loads(req.data.decode("utf-8"))
        return _FakeResponse(b'{"data": {"id": "up-1", "url": "https://storage.test/up-1"}}')

    monkeypatch.setattr(client_module.urlrequest, "urlopen", _urlopen)

    upload = _client().create_upload(cors_origin="https://app.test", passthrough="{}")

    assert upload.id == "up-1"
    assert upload.url == "https://storage.test/up-1"
    assert seen["url"] == "https://mux.test/video/v1/uploads"
    assert seen["method"] == "POST"
    assert seen["auth"].startswith("Basic ")
    assert seen["payload"]["cors_origin"] == "https://app.test"


def test_fetch_transcript_reads_stream_text(monkeypatch) -> None:
    seen = {}

    def _urlopen(req, timeout):
        seen["url"] = req.full_url
        return _FakeResponse(b"hello there")

    monkeypatch.setattr(client_module.urlrequest, "urlopen", _urlopen)

    assert _client().fetch_transcript("play-1", "track-1") == "hello there"
    assert seen["url"] == "https://stream.test/play-1/text/track-1.txt"


@pytest.mark.parametrize(
    ("status", "code", "retryable"),
    [(404, "mux_not_found", False), (429, "mux_http_429", True), (503, "mux_http_503", True)],
)
def test_http_errors_map_to_external_service_error(monkeypatch, status, code, retryable) -> None:
    def _urlopen(req, timeout):
        raise HTTPError(req.full_url, status, "error", {}, io.BytesIO(b"upstream\nproblem"))

    monkeypatch.setattr(client_module.urlrequest, "urlopen", _urlopen)

    with pytest.raises(ExternalServiceError) as exc_info:
        _client().get_asset("asset-1")

    assert exc_info.value.code == code
    assert exc_info.value.retryable is retryable
    assert "\n" not in exc_info.value.message


def test_network_errors_are_retryable(monkeypatch) -> None:
    def _urlopen(req, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr(client_module.urlrequest, "urlopen", _urlopen)

    with pytest.raises(ExternalServiceError) as exc_info:
        _client().delete_asset("asset-1")

    assert exc_info.value.code == "mux_network_error"
    assert exc_info.value.retryable is True


def test_load_mux_config_requires_credentials(monkeypatch) -> None:
    monkeypatch.delenv("MUX_TOKEN_ID", raising=False)
    monkeypatch.delenv("MUX_TOKEN_SECRET", raising=False)

    with pytest.raises(RuntimeError):
        load_mux_config()

    monkeypatch.setenv("MUX_TOKEN_ID", "id")
    monkeypatch.setenv("MUX_TOKEN_SECRET", "secret")
    monkeypatch.setenv("MUX_BASE_URL", "https://mux.example/")
    config = load_mux_config()
    assert config.base_url == "https://mux.example"
    assert config.timeout_s == 20


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("connection reset by peer"),
        http.client.RemoteDisconnected("Remote end closed connection without response"),
        http.client.IncompleteRead(b"partial", 100),
    ],
)
def test_dropped_connections_are_retryable(monkeypatch, error) -> None:
    def _urlopen(req, timeout):
        raise error

    monkeypatch.setattr(client_module.urlrequest, "urlopen", _urlopen)

    with pytest.raises(ExternalServiceError) as exc_info:
        _client().fetch_transcript("play-1", "track-1")

    assert exc_info.value.code == "mux_connection_error"
    assert exc_info.value.retryable is True


def test_incomplete_body_read_is_wrapped(monkeypatch) -> None:
    class _TruncatedResponse(_FakeResponse):
        def read(self) -> bytes:
            raise http.client.IncompleteRead(b"{", 10)

    monkeypatch.setattr(client_module.urlrequest, "urlopen", lambda req, timeout: _TruncatedResponse(b""))

    with pytest.raises(ExternalServiceError) as exc_info:
        _client().get_asset("asset-1")

    assert exc_info.value.code == "mux_connection_error"


def test_undecodable_transcript_is_an_external_error(monkeypatch) -> None:
    monkeypatch.setattr(client_module.urlrequest, "urlopen", lambda req, timeout: _FakeResponse(b"\xff\xfe\xfa"))

    with pytest.raises(ExternalServiceError) as exc_info:
        _client().fetch_transcript("play-1", "track-1")

    assert exc_info.value.code == "mux_invalid_response"
