"""Failure taxonomy for the upload pipeline.

Every failure the orchestrator can report is an ``UploadError`` subclass with
a stable ``reason`` code and the HTTP status the router answers with. The
storage gateway raises the store-side classes; the orchestrator converts all
of them into structured results at its boundary.
"""
from enum import Enum
from typing import Optional

RESTART_MESSAGE = "Upload session invalid, restart the upload"


class FailureReason(str, Enum):
    """Reason codes surfaced to callers."""
    SESSION_NOT_FOUND        = "session_not_found"
    PART_COUNT_MISMATCH      = "part_count_mismatch"
    STORE_INITIATION_FAILURE = "store_initiation_failure"
    STORE_COMPLETION_FAILURE = "store_completion_failure"
    INVALID_SESSION_STATE    = "invalid_session_state"
    SESSION_OWNERSHIP        = "session_ownership"
    UPLOAD_REJECTED          = "upload_rejected"


class UploadError(Exception):
    """Base exception for upload pipeline errors."""
    reason: FailureReason = FailureReason.UPLOAD_REJECTED
    status_code: int = 400

    def __init__(self, message: str, upload_id: Optional[str] = None):
        self.message = message
        self.upload_id = upload_id
        super().__init__(message)


class SessionNotFound(UploadError):
    """Session is absent, expired, or already finalized."""
    reason = FailureReason.SESSION_NOT_FOUND
    status_code = 404

    def __init__(self, upload_id: Optional[str] = None, message: str = RESTART_MESSAGE):
        super().__init__(message, upload_id)


class ExpiredSession(SessionNotFound):
    """Session TTL elapsed. Callers see the same reason as SessionNotFound."""


class PartCountMismatch(UploadError):
    """Completion tokens do not match the session's part count."""
    reason = FailureReason.PART_COUNT_MISMATCH
    status_code = 400

    def __init__(self, expected: int, received: int, upload_id: Optional[str] = None):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Expected {expected} parts, received {received}", upload_id
        )


class StoreInitiationFailure(UploadError):
    """The object store could not start (or authorize) a multipart upload."""
    reason = FailureReason.STORE_INITIATION_FAILURE
    status_code = 502

    def __init__(self, message: str, upload_id: Optional[str] = None,
                 store_code: Optional[str] = None):
        self.store_code = store_code
        super().__init__(message, upload_id)


class StoreCompletionFailure(UploadError):
    """The object store rejected assembly of the uploaded parts."""
    reason = FailureReason.STORE_COMPLETION_FAILURE
    status_code = 502

    def __init__(self, message: str, upload_id: Optional[str] = None,
                 store_code: Optional[str] = None):
        self.store_code = store_code
        super().__init__(message, upload_id)


class InvalidSessionState(UploadError):
    """Session exists but cannot accept this operation right now."""
    reason = FailureReason.INVALID_SESSION_STATE
    status_code = 409


class SessionOwnershipError(UploadError):
    """Requester does not own the upload session."""
    reason = FailureReason.SESSION_OWNERSHIP
    status_code = 403

    def __init__(self, upload_id: Optional[str] = None):
        super().__init__("You do not own this upload session", upload_id)


class UploadRejected(UploadError):
    """Initiation request failed validation."""
    reason = FailureReason.UPLOAD_REJECTED
    status_code = 400
