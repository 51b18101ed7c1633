"""Request and result models for the upload orchestrator.

Requests arrive from the file-attachment pipeline as camelCase JSON.  Every
orchestrator operation returns a result object (success flag plus either a
payload or an ``UploadFailure``) instead of raising.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from attachments.errors import FailureReason, UploadError
from attachments.schemas import CamelModel
from attachments.sessions.schemas import SessionState
from attachments.storage.schemas import ObjectDescriptor, PartAuthorization


# =============================================================================
# Requests
# =============================================================================


class InitiateUploadBody(CamelModel):
    """JSON body of ``POST /conversations/{conversationId}/uploads``."""
    owner_id: str = Field(..., min_length=1, description="Uploading user")
    file_name: str = Field(..., min_length=1)
    file_size: int = Field(..., gt=0, description="Declared size in bytes (advisory)")
    file_type: str = Field(..., min_length=1, description="MIME type")
    total_chunks: int = Field(..., ge=1, description="Number of parts the client will send")

    @field_validator("owner_id", "file_name", "file_type")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class InitiateUploadRequest(InitiateUploadBody):
    """Full initiation request as seen by the orchestrator."""
    conversation_id: str = Field(..., min_length=1)

    @field_validator("conversation_id")
    @classmethod
    def _conversation_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class CompleteUploadRequest(CamelModel):
    """Completion tokens (ETags) for parts ``1..N``, in part order."""
    completion_tokens: List[str] = Field(..., description="Store-issued part ETags")
    owner_id: Optional[str] = Field(None, description="If set, must match the session owner")


class AbortUploadRequest(CamelModel):
    owner_id: Optional[str] = Field(None, description="If set, must match the session owner")


# =============================================================================
# Results
# =============================================================================


class UploadFailure(CamelModel):
    """Structured failure: stable reason code plus user-facing message."""
    reason: FailureReason
    message: str
    status_code: int = Field(400, exclude=True)

    @classmethod
    def from_error(cls, exc: UploadError) -> "UploadFailure":
        return cls(reason=exc.reason, message=exc.message, status_code=exc.status_code)


class InitiateUploadResult(CamelModel):
    success: bool
    upload_id: Optional[str] = None
    part_authorizations: List[PartAuthorization] = Field(default_factory=list)
    expires_in: Optional[int] = Field(None, description="Part URL validity in seconds")
    error: Optional[UploadFailure] = None


class CompleteUploadResult(CamelModel):
    success: bool
    upload_id: str
    descriptor: Optional[ObjectDescriptor] = None
    error: Optional[UploadFailure] = None


class AbortUploadResult(CamelModel):
    """``aborted`` is False when there was nothing left to abort."""
    success: bool = True
    aborted: bool = False
    error: Optional[UploadFailure] = None


class SessionView(CamelModel):
    """Public view of a live session (no store identifiers)."""
    upload_id: str
    conversation_id: str
    file_name: str
    file_type: str
    total_chunks: int
    state: SessionState
    created_at: datetime
    expires_at: Optional[datetime] = None


class ActiveSessions(CamelModel):
    upload_ids: List[str]
    count: int
