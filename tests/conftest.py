from __future__ import annotations

from datetime import UTC, datetime, timedelta
import os
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from access import hash_token
from db.base import Base
from db.models import AuthSession, Profile, ProfileExecutor, ProfileSharer
from ingest.errors import ExternalServiceError
from mux import UploadSession


class FakeMux:
    def __init__(self) -> None:
        self.uploads: list[dict] = []
        self.deleted_assets: list[str] = []
        self.fetch_calls: list[tuple[str, str]] = []
        self.transcript_script: list[object] = []
        self.assets: dict[str, dict] = {}
        self.fail_create = False
        self.fail_delete = False

    def create_upload(self, *, cors_origin, passthrough, master_access=False, generate_subtitles=True):  # type: ignore[no-untyped-def]
        if self.fail_create:
            raise ExternalServiceError("mux down", code="mux_http_503", retryable=True)
        number = len(self.uploads) + 1
        self.uploads.append(
            {
                "cors_origin": cors_origin,
                "passthrough": passthrough,
                "master_access": master_access,
                "generate_subtitles": generate_subtitles,
            }
        )
        return UploadSession(id=f"upload-{number}", url=f"https://storage.example.test/upload-{number}")

    def delete_asset(self, asset_id: str) -> None:
        self.deleted_assets.append(asset_id)
        if self.fail_delete:
            raise ExternalServiceError("delete failed", code="mux_http_500", retryable=True)

    def get_asset(self, asset_id: str) -> dict:
        return self.assets[asset_id]

    def fetch_transcript(self, playback_id: str, track_id: str) -> str:
        self.fetch_calls.append((playback_id, track_id))
        outcome = self.transcript_script.pop(0) if self.transcript_script else "hello from the transcript"
        if isinstance(outcome, Exception):
            raise outcome
        return str(outcome)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_mux() -> FakeMux:
    return FakeMux()


@pytest.fixture
def make_sharer(session):
    def _make(email: str | None = None) -> tuple[Profile, ProfileSharer]:
        profile = Profile(id=uuid4(), email=email or f"{uuid4().hex}@example.test")
        session.add(profile)
        session.flush()
        sharer = ProfileSharer(id=uuid4(), profile_id=profile.id)
        session.add(sharer)
        session.commit()
        return profile, sharer

    return _make


@pytest.fixture
def make_executor(session):
    def _make(sharer: ProfileSharer, status: str = "verified") -> Profile:
        profile = Profile(id=uuid4(), email=f"{uuid4().hex}@example.test")
        session.add(profile)
        session.flush()
        session.add(
            ProfileExecutor(executor_profile_id=profile.id, sharer_id=sharer.id, status=status)
        )
        session.commit()
        return profile

    return _make


@pytest.fixture
def issue_token(session):
    def _issue(profile: Profile, *, expires_in: timedelta = timedelta(hours=1)) -> str:
        token = uuid4().hex
        session.add(
            AuthSession(
                profile_id=profile.id,
                token_hash=hash_token(token),
                expires_at=datetime.now(UTC) + expires_in,
            )
        )
        session.commit()
        return token

    return _issue
