from __future__ import annotations


class IngestError(Exception):
    status_code = 500
    default_code = "internal_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class AuthenticationError(IngestError):
    status_code = 401
    default_code = "unauthenticated"


class AuthorizationError(IngestError):
    status_code = 403
    default_code = "unauthorized"


class ValidationError(IngestError):
    status_code = 400
    default_code = "invalid_request"


class NotFoundError(IngestError):
    status_code = 404
    default_code = "not_found"


class ConflictError(IngestError):
    status_code = 409
    default_code = "conflict"


class AccessResolverError(IngestError):
    status_code = 500
    default_code = "access_resolver_failed"


class ExternalServiceError(IngestError):
    status_code = 502
    default_code = "external_service_error"

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = False) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable


class TranscriptFetchError(IngestError):
    status_code = 500
    default_code = "transcript_fetch_exhausted"


class DataIntegrityError(IngestError):
    """Persisted data contradicts an expected invariant. Logged, never surfaced."""

    default_code = "data_integrity"


class AmbiguousSlotError(DataIntegrityError):
    default_code = "ambiguous_slot"
