from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import hashlib
import logging
from typing import Literal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from db.models import AuthSession, ProfileExecutor, ProfileSharer
from ingest.errors import AccessResolverError, AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    effective_sharer_id: UUID
    mode: Literal["self", "delegated"]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationError("missing authorization header")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("authorization header must be a bearer token")
    return token.strip()


class AccessResolver:
    """Maps a caller to the sharer whose content they may act on.

    Sessions and delegations are issued elsewhere; this only reads them.
    """

    def authenticate(self, session, authorization: str | None) -> UUID:
        token = _bearer_token(authorization)
        now = datetime.now(UTC)
        try:
            row = session.execute(
                select(AuthSession).where(AuthSession.token_hash == hash_token(token))
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise AccessResolverError(f"session lookup failed: {type(exc).__name__}") from exc
        if row is None or row.revoked_at is not None:
            raise AuthenticationError("unknown or revoked session")
        expires_at = row.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at <= now:
            raise AuthenticationError("session expired")
        return row.profile_id

    def own_sharer_id(self, session, profile_id: UUID) -> UUID | None:
        try:
            return session.execute(
                select(ProfileSharer.id).where(ProfileSharer.profile_id == profile_id)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise AccessResolverError(f"sharer lookup failed: {type(exc).__name__}") from exc

    def has_delegation(self, session, profile_id: UUID, sharer_id: UUID) -> bool:
        try:
            row = session.execute(
                select(ProfileExecutor.id).where(
                    ProfileExecutor.executor_profile_id == profile_id,
                    ProfileExecutor.sharer_id == sharer_id,
                    ProfileExecutor.status == "verified",
                )
            ).first()
        except SQLAlchemyError as exc:
            raise AccessResolverError(f"delegation lookup failed: {type(exc).__name__}") from exc
        return row is not None

    def resolve_effective_sharer(
        self,
        session,
        profile_id: UUID,
        acting_for_sharer_id: UUID | None = None,
    ) -> AccessDecision:
        own = self.own_sharer_id(session, profile_id)
        if acting_for_sharer_id is None or acting_for_sharer_id == own:
            if own is None:
                raise AuthorizationError("caller is not a sharer", code="not_a_sharer")
            return AccessDecision(own, "self")
        if self.has_delegation(session, profile_id, acting_for_sharer_id):
            logger.info("profile %s acting for sharer %s", profile_id, acting_for_sharer_id)
            return AccessDecision(acting_for_sharer_id, "delegated")
        raise AuthorizationError(
            f"profile {profile_id} has no verified delegation for sharer {acting_for_sharer_id}",
            code="delegation_required",
        )

    def can_access(self, session, profile_id: UUID, sharer_id: UUID) -> bool:
        if self.own_sharer_id(session, profile_id) == sharer_id:
            return True
        return self.has_delegation(session, profile_id, sharer_id)
