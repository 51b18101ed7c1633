"""Pydantic schemas for the upload event ledger.

This module defines the data structures for recording how each upload
session ended: assembled, explicitly aborted, abandoned past its TTL, or
failed at the store.

Models:
    UploadOutcome: Enum of terminal outcomes.
    UploadEvent: One ledger row for a finished session.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from attachments.schemas import CamelModel


class UploadOutcome(str, Enum):
    """How an upload session ended.

    Attributes:
        COMPLETED: Parts assembled into the final object.
        ABORTED: Cancelled by the client.
        EXPIRED: Abandoned; the TTL elapsed before completion.
        FAILED: The store rejected initiation or assembly.
    """
    COMPLETED = "completed"
    ABORTED = "aborted"
    EXPIRED = "expired"
    FAILED = "failed"


class UploadEvent(CamelModel):
    """A single ledger entry.

    Attributes:
        upload_id: Session the event belongs to.
        conversation_id: Conversation the attachment was meant for.
        outcome: Terminal outcome of the session.
        reason: Failure reason code, if any.
        total_chunks: Declared number of parts.
        object_key: Store object key, once one was assigned.
        size: Authoritative object size for completed uploads.
        timestamp: When the event was recorded (UTC). Set by the ledger.
    """
    upload_id: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None
    outcome: UploadOutcome
    reason: Optional[str] = None
    total_chunks: Optional[int] = None
    object_key: Optional[str] = None
    size: Optional[int] = None
    timestamp: Optional[datetime] = None
