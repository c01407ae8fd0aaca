from __future__ import annotations

from datetime import UTC, datetime
import json
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from access import AccessResolver
import ingest.uploads as uploads_module
from db.models import TopicVideo, Video
from ingest.errors import AuthorizationError, ConflictError, ExternalServiceError, ValidationError
from ingest.resolver import ContentKind
from ingest.uploads import UploadTarget, build_passthrough, create_upload_session

ORIGIN = "https://app.example.test"


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def _issue(session, mux, target: UploadTarget, caller_profile_id, acting_for_sharer_id=None):
    return create_upload_session(
        session,
        mux,
        target=target,
        caller_profile_id=caller_profile_id,
        cors_origin=ORIGIN,
        acting_for_sharer_id=acting_for_sharer_id,
    )


def test_self_service_response_upload_creates_waiting_row(session, fake_mux, make_sharer) -> None:
    profile, sharer = make_sharer()
    prompt_id = uuid4()

    ticket = _issue(session, fake_mux, UploadTarget.for_prompt(prompt_id), profile.id)

    assert ticket.upload_url == "https://storage.example.test/upload-1"
    assert ticket.upload_id == "upload-1"
    assert ticket.kind is ContentKind.RESPONSE
    assert ticket.sharer_id == sharer.id

    video = session.get(Video, ticket.content_id)
    assert video.status == "WAITING"
    assert video.prompt_id == prompt_id
    assert video.profile_sharer_id == sharer.id
    assert video.mux_upload_id == "upload-1"

    sent = fake_mux.uploads[0]
    assert sent["cors_origin"] == ORIGIN
    assert sent["master_access"] is False
    assert json.loads(sent["passthrough"]) == {
        "contentId": str(video.id),
        "promptId": str(prompt_id),
        "sharerId": str(sharer.id),
    }
    assert video.passthrough == sent["passthrough"]


def test_topic_upload_replaces_previous_active_row(session, fake_mux, make_sharer) -> None:
    profile, sharer = make_sharer()
    topic_id = uuid4()
    previous = TopicVideo(
        id=uuid4(),
        prompt_category_id=topic_id,
        profile_sharer_id=sharer.id,
        status="READY",
        mux_asset_id="asset-old",
    )
    session.add(previous)
    session.commit()
    previous_id = previous.id

    ticket = _issue(session, fake_mux, UploadTarget.for_topic(topic_id), profile.id)

    assert fake_mux.deleted_assets == ["asset-old"]
    assert session.get(TopicVideo, previous_id) is None
    active = session.execute(
        select(TopicVideo).where(TopicVideo.prompt_category_id == topic_id, TopicVideo.deleted_at.is_(None))
    ).scalars().all()
    assert [row.id for row in active] == [ticket.content_id]
    assert fake_mux.uploads[0]["master_access"] is True
    assert json.loads(fake_mux.uploads[0]["passthrough"])["topicId"] == str(topic_id)


def test_failed_mux_asset_delete_does_not_block_new_upload(session, fake_mux, make_sharer) -> None:
    profile, sharer = make_sharer()
    topic_id = uuid4()
    session.add(
        TopicVideo(
            id=uuid4(),
            prompt_category_id=topic_id,
            profile_sharer_id=sharer.id,
            status="READY",
            mux_asset_id="asset-stuck",
        )
    )
    session.commit()
    fake_mux.fail_delete = True

    ticket = _issue(session, fake_mux, UploadTarget.for_topic(topic_id), profile.id)

    assert fake_mux.deleted_assets == ["asset-stuck"]
    assert _count(session, TopicVideo) == 1
    assert session.get(TopicVideo, ticket.content_id) is not None


def test_mux_failure_removes_the_inserted_row(session, fake_mux, make_sharer) -> None:
    profile, _sharer = make_sharer()
    fake_mux.fail_create = True

    with pytest.raises(ExternalServiceError) as exc_info:
        _issue(session, fake_mux, UploadTarget.for_prompt(uuid4()), profile.id)

    assert exc_info.value.status_code == 502
    assert _count(session, Video) == 0


def test_verified_executor_uploads_for_sharer(session, fake_mux, make_sharer, make_executor) -> None:
    _owner, sharer = make_sharer()
    executor = make_executor(sharer, status="verified")

    ticket = _issue(session, fake_mux, UploadTarget.for_prompt(uuid4()), executor.id, acting_for_sharer_id=sharer.id)

    assert ticket.sharer_id == sharer.id
    assert session.get(Video, ticket.content_id).profile_sharer_id == sharer.id


@pytest.mark.parametrize("status", ["pending", "revoked"])
def test_unverified_executor_is_rejected(session, fake_mux, make_sharer, make_executor, status) -> None:
    _owner, sharer = make_sharer()
    executor = make_executor(sharer, status=status)

    with pytest.raises(AuthorizationError) as exc_info:
        _issue(session, fake_mux, UploadTarget.for_prompt(uuid4()), executor.id, acting_for_sharer_id=sharer.id)

    assert exc_info.value.code == "delegation_required"
    assert _count(session, Video) == 0
    assert fake_mux.uploads == []


def test_acting_for_unrelated_sharer_is_rejected(session, fake_mux, make_sharer) -> None:
    profile, _sharer = make_sharer()
    _other, other_sharer = make_sharer()

    with pytest.raises(AuthorizationError):
        _issue(session, fake_mux, UploadTarget.for_prompt(uuid4()), profile.id, acting_for_sharer_id=other_sharer.id)


def test_caller_without_sharer_record_is_rejected(session, fake_mux, make_sharer, make_executor) -> None:
    _owner, sharer = make_sharer()
    executor = make_executor(sharer)

    with pytest.raises(AuthorizationError) as exc_info:
        _issue(session, fake_mux, UploadTarget.for_prompt(uuid4()), executor.id)

    assert exc_info.value.code == "not_a_sharer"


@pytest.mark.parametrize(
    ("target", "code"),
    [
        (UploadTarget.for_prompt(None), "missing_prompt_id"),
        (UploadTarget.for_topic(None), "missing_topic_id"),
    ],
)
def test_missing_target_key_is_rejected(session, fake_mux, make_sharer, target, code) -> None:
    profile, _sharer = make_sharer()

    with pytest.raises(ValidationError) as exc_info:
        _issue(session, fake_mux, target, profile.id)

    assert exc_info.value.code == code
    assert fake_mux.uploads == []


def test_second_response_upload_for_prompt_conflicts(session, fake_mux, make_sharer) -> None:
    profile, _sharer = make_sharer()
    prompt_id = uuid4()
    _issue(session, fake_mux, UploadTarget.for_prompt(prompt_id), profile.id)

    with pytest.raises(ConflictError) as exc_info:
        _issue(session, fake_mux, UploadTarget.for_prompt(prompt_id), profile.id)

    assert exc_info.value.code == "video_exists"
    assert _count(session, Video) == 1


def test_errored_response_video_can_be_retried(session, fake_mux, make_sharer) -> None:
    profile, sharer = make_sharer()
    prompt_id = uuid4()
    session.add(Video(id=uuid4(), prompt_id=prompt_id, profile_sharer_id=sharer.id, status="ERRORED"))
    session.commit()

    ticket = _issue(session, fake_mux, UploadTarget.for_prompt(prompt_id), profile.id)

    assert session.get(Video, ticket.content_id).status == "WAITING"


def test_active_topic_pair_is_unique_at_the_database(session) -> None:
    topic_id, sharer_id = uuid4(), uuid4()
    session.add(TopicVideo(id=uuid4(), prompt_category_id=topic_id, profile_sharer_id=sharer_id, status="WAITING"))
    session.commit()

    session.add(
        TopicVideo(
            id=uuid4(),
            prompt_category_id=topic_id,
            profile_sharer_id=sharer_id,
            status="READY",
            deleted_at=datetime.now(UTC),
        )
    )
    session.commit()

    session.add(TopicVideo(id=uuid4(), prompt_category_id=topic_id, profile_sharer_id=sharer_id, status="WAITING"))
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()


def test_losing_concurrent_topic_insert_reports_conflict(session, fake_mux, make_sharer, monkeypatch) -> None:
    profile, sharer = make_sharer()
    topic_id = uuid4()
    session.add(TopicVideo(id=uuid4(), prompt_category_id=topic_id, profile_sharer_id=sharer.id, status="WAITING"))
    session.commit()
    # the competing request inserted its row after this one ran its replacement step
    monkeypatch.setattr(uploads_module, "replace_active_topic_slots", lambda *_args: 0)

    with pytest.raises(ConflictError) as exc_info:
        _issue(session, fake_mux, UploadTarget.for_topic(topic_id), profile.id)

    assert exc_info.value.code == "concurrent_upload"
    assert fake_mux.uploads == []
    assert _count(session, TopicVideo) == 1


def test_build_passthrough_is_compact_json() -> None:
    content_id, prompt_id, sharer_id = uuid4(), uuid4(), uuid4()

    raw = build_passthrough(UploadTarget.for_prompt(prompt_id), content_id, sharer_id)

    assert " " not in raw
    assert json.loads(raw) == {"contentId": str(content_id), "promptId": str(prompt_id), "sharerId": str(sharer_id)}


def test_dropped_mux_connection_removes_row_and_allows_retry(session, fake_mux, make_sharer, monkeypatch) -> None:
    profile, _sharer = make_sharer()
    prompt_id = uuid4()
    issue_upload = fake_mux.create_upload

    def _reset(**_kwargs):
        raise ConnectionResetError("connection reset by peer")

    monkeypatch.setattr(fake_mux, "create_upload", _reset)
    with pytest.raises(ConnectionResetError):
        _issue(session, fake_mux, UploadTarget.for_prompt(prompt_id), profile.id)
    assert _count(session, Video) == 0

    monkeypatch.setattr(fake_mux, "create_upload", issue_upload)
    ticket = _issue(session, fake_mux, UploadTarget.for_prompt(prompt_id), profile.id)

    assert session.get(Video, ticket.content_id).status == "WAITING"
    assert _count(session, Video) == 1


def test_access_decision_reports_self_or_delegated_mode(session, make_sharer, make_executor) -> None:
    owner, sharer = make_sharer()
    executor = make_executor(sharer, status="verified")
    access = AccessResolver()

    own = access.resolve_effective_sharer(session, owner.id, None)
    delegated = access.resolve_effective_sharer(session, executor.id, sharer.id)

    assert (own.mode, own.effective_sharer_id) == ("self", sharer.id)
    assert (delegated.mode, delegated.effective_sharer_id) == ("delegated", sharer.id)
