"""Pydantic schemas for upload sessions.

An ``UploadSession`` is the ephemeral record the registry keeps for one
resumable upload, from initiation until completion, abort, or expiry.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    """Lifecycle state of an upload session."""

    CREATED        = "created"         # registered, store-side upload not yet attached
    AWAITING_PARTS = "awaiting_parts"  # part authorizations issued
    COMPLETING     = "completing"      # completion request in flight
    COMPLETED      = "completed"
    ABORTED        = "aborted"
    EXPIRED        = "expired"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.ABORTED, SessionState.EXPIRED}
)

# States from which the TTL reaper may expire a session.
EXPIRABLE_STATES = frozenset({SessionState.CREATED, SessionState.AWAITING_PARTS})


class UploadSession(BaseModel):
    """Ephemeral per-upload record.

    ``external_upload_id`` and ``external_object_key`` are attached together
    exactly once, right after the store-side multipart upload is started.
    ``total_chunks`` is fixed at creation.
    """

    upload_id:           str = Field(..., min_length=1, description="Opaque unique upload ID")
    conversation_id:     str = Field(..., min_length=1)
    owner_id:            str = Field(..., min_length=1)
    file_name:           str = Field(..., min_length=1)
    file_size:           int = Field(..., gt=0, description="Client-declared size (advisory)")
    file_type:           str = Field(..., min_length=1)
    total_chunks:        int = Field(..., ge=1)
    created_at:          datetime = Field(default_factory=utcnow)
    expires_at:          Optional[datetime] = Field(
        default=None, description="TTL deadline; None while no expiry is scheduled"
    )
    state:               SessionState = SessionState.CREATED
    external_upload_id:  Optional[str] = None
    external_object_key: Optional[str] = None

    @model_validator(mode="after")
    def _external_ids_paired(self) -> "UploadSession":
        if (self.external_upload_id is None) != (self.external_object_key is None):
            raise ValueError(
                "external_upload_id and external_object_key must be set together"
            )
        return self

    @property
    def has_external_upload(self) -> bool:
        return self.external_upload_id is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None or self.state not in EXPIRABLE_STATES:
            return False
        return (now or utcnow()) >= self.expires_at
