from __future__ import annotations

import logging
from os import getenv
from uuid import UUID

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from access import AccessResolver
from db.session import SessionLocal
from ingest.downloads import DEFAULT_QUALITY, download_link
from ingest.errors import AuthorizationError, IngestError, NotFoundError
from ingest.reconciler import reconcile_from_asset
from ingest.resolver import ContentKind, SlotRef, resolve_slot
from ingest.uploads import UploadTarget, create_upload_session
from ingest.webhooks import handle_webhook
from mux import MuxClient, load_mux_config
from mux.client import load_stream_base_url

logging.basicConfig(
    level=getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storyline Ingest API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin for origin in getenv("APP_URL", "http://localhost:3000").split(",") if origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _mux_client() -> MuxClient:
    try:
        return MuxClient(load_mux_config())
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail="mux_not_configured") from exc


def _access_resolver() -> AccessResolver:
    return AccessResolver()


def _cors_origin(origin: str | None) -> str:
    return origin or getenv("APP_URL", "").split(",")[0] or "*"


def _http_error(exc: IngestError) -> HTTPException:
    if exc.status_code >= 500:
        logger.error("request failed: %s", exc)
    return HTTPException(status_code=exc.status_code, detail=exc.code)


def _slot_payload(ref: SlotRef) -> dict:
    slot = ref.slot
    payload = {
        "id": slot.id,
        "kind": ref.kind.value,
        "status": slot.status,
        "profile_sharer_id": slot.profile_sharer_id,
        "mux_asset_id": slot.mux_asset_id,
        "mux_playback_id": slot.mux_playback_id,
        "duration": slot.duration,
        "aspect_ratio": slot.aspect_ratio,
        "resolution_tier": slot.resolution_tier,
        "download_ready": slot.download_ready,
        "error_message": slot.error_message,
        "updated_at": slot.updated_at,
    }
    if ref.kind is ContentKind.RESPONSE:
        payload["prompt_id"] = slot.prompt_id
    else:
        payload["topic_id"] = slot.prompt_category_id
    return jsonable_encoder(payload)


class ResponseVideoUploadRequest(BaseModel):
    prompt_id: UUID | None = Field(default=None)
    acting_for_sharer_id: UUID | None = Field(default=None)


class TopicVideoUploadRequest(BaseModel):
    topic_id: UUID | None = Field(default=None)
    acting_for_sharer_id: UUID | None = Field(default=None)


def _issue_upload(
    target: UploadTarget,
    acting_for_sharer_id: UUID | None,
    authorization: str | None,
    origin: str | None,
) -> dict:
    session = SessionLocal()
    try:
        access = _access_resolver()
        profile_id = access.authenticate(session, authorization)
        ticket = create_upload_session(
            session,
            _mux_client(),
            target=target,
            caller_profile_id=profile_id,
            acting_for_sharer_id=acting_for_sharer_id,
            cors_origin=_cors_origin(origin),
            access=access,
        )
    except IngestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()
    return jsonable_encoder(
        {
            "upload_url": ticket.upload_url,
            "upload_id": ticket.upload_id,
            "content_id": ticket.content_id,
        }
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/uploads/response-video")
def create_response_video_upload(
    payload: ResponseVideoUploadRequest,
    authorization: str | None = Header(default=None),
    origin: str | None = Header(default=None),
) -> dict:
    return _issue_upload(
        UploadTarget.for_prompt(payload.prompt_id),
        payload.acting_for_sharer_id,
        authorization,
        origin,
    )


@app.post("/uploads/topic-video")
def create_topic_video_upload(
    payload: TopicVideoUploadRequest,
    authorization: str | None = Header(default=None),
    origin: str | None = Header(default=None),
) -> dict:
    return _issue_upload(
        UploadTarget.for_topic(payload.topic_id),
        payload.acting_for_sharer_id,
        authorization,
        origin,
    )


def process_webhook(raw_body: bytes, signature: str | None) -> JSONResponse:
    session = SessionLocal()
    try:
        outcome = handle_webhook(session, raw_body, signature, mux=_mux_client())
    except IngestError as exc:
        if exc.status_code >= 500:
            logger.error("webhook failed, sender should redeliver: %s", exc)
        else:
            logger.warning("webhook rejected: %s", exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code})
    except SQLAlchemyError as exc:
        logger.exception("webhook database failure")
        return JSONResponse(status_code=500, content={"error": f"database_error:{type(exc).__name__}"})
    finally:
        session.close()
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@app.post("/webhooks/mux")
async def mux_webhook(request: Request, mux_signature: str | None = Header(default=None)) -> JSONResponse:
    raw_body = await request.body()
    return await run_in_threadpool(process_webhook, raw_body, mux_signature)


def _load_accessible_slot(session, content_id: UUID, authorization: str | None) -> SlotRef:
    access = _access_resolver()
    profile_id = access.authenticate(session, authorization)
    ref = resolve_slot(session, content_id=content_id)
    if ref is None:
        raise NotFoundError(f"content {content_id} not found")
    if not access.can_access(session, profile_id, ref.slot.profile_sharer_id):
        raise AuthorizationError(f"no access to content {content_id}")
    return ref


@app.get("/content/{content_id}")
def get_content(content_id: UUID, authorization: str | None = Header(default=None)) -> dict:
    session = SessionLocal()
    try:
        ref = _load_accessible_slot(session, content_id, authorization)
        return _slot_payload(ref)
    except IngestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.post("/content/{content_id}/refresh")
def refresh_content(content_id: UUID, authorization: str | None = Header(default=None)) -> dict:
    session = SessionLocal()
    try:
        ref = _load_accessible_slot(session, content_id, authorization)
        results = reconcile_from_asset(session, ref, _mux_client())
        session.commit()
        payload = _slot_payload(ref)
        payload["events"] = [
            {"event_type": result.event_type, "applied": result.applied, "detail": result.detail}
            for result in results
        ]
        return payload
    except IngestError as exc:
        session.rollback()
        raise _http_error(exc) from exc
    finally:
        session.close()


@app.get("/content/{content_id}/download")
def get_content_download(
    content_id: UUID,
    quality: str = Query(DEFAULT_QUALITY),
    authorization: str | None = Header(default=None),
) -> dict:
    session = SessionLocal()
    try:
        ref = _load_accessible_slot(session, content_id, authorization)
        link = download_link(ref, quality, mux=_mux_client(), stream_base_url=load_stream_base_url())
    except IngestError as exc:
        raise _http_error(exc) from exc
    finally:
        session.close()
    return {
        "content_id": str(content_id),
        "quality": link.quality,
        "url": link.url,
        "filename": link.filename,
    }
