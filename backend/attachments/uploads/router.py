"""Resumable upload API endpoints.

Endpoints:
    POST /conversations/{conversationId}/uploads: Start an upload, get part URLs
    POST /uploads/{uploadId}/complete:            Assemble uploaded parts
    POST /uploads/{uploadId}/abort:               Cancel an upload
    GET  /uploads:                                Active upload IDs
    GET  /uploads/{uploadId}:                     Live session view

Failures are answered with the status code of their reason and a body of
``{"detail": {"reason": ..., "message": ...}}``.  All endpoints answer 503
while no orchestrator is configured (e.g. the bucket setting is missing).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from attachments.errors import SessionNotFound

from .orchestrator import UploadOrchestrator
from .schemas import (
    AbortUploadRequest,
    CompleteUploadRequest,
    InitiateUploadBody,
    InitiateUploadRequest,
    UploadFailure,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])

# Set by main.py lifespan.
_orchestrator: Optional[UploadOrchestrator] = None


def set_orchestrator(orchestrator: Optional[UploadOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> Optional[UploadOrchestrator]:
    return _orchestrator


def require_orchestrator() -> UploadOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Upload service not configured")
    return _orchestrator


def _raise_failure(failure: Optional[UploadFailure]) -> None:
    status = failure.status_code if failure else 500
    logger.debug("[uploads] Responding %s: %s", status, failure.reason.value if failure else "unknown")
    detail = failure.to_wire() if failure else "Upload operation failed"
    raise HTTPException(status_code=status, detail=detail)


@router.post("/conversations/{conversation_id}/uploads")
async def initiate_upload(
    conversation_id: str,
    body: InitiateUploadBody,
    orchestrator: UploadOrchestrator = Depends(require_orchestrator),
):
    """Start a resumable upload.

    Returns the upload ID and one presigned URL per part; the client PUTs each
    part directly to the object store and keeps the returned ETags.
    """
    request = InitiateUploadRequest(
        conversation_id=conversation_id, **body.model_dump()
    )
    result = await orchestrator.initiate(request)
    if not result.success:
        _raise_failure(result.error)
    return result.model_dump(mode="json", by_alias=True, exclude={"success", "error"})


@router.post("/uploads/{upload_id}/complete")
async def complete_upload(
    upload_id: str,
    body: CompleteUploadRequest,
    orchestrator: UploadOrchestrator = Depends(require_orchestrator),
):
    """Assemble the parts and return ``{url, key, size, bucket}``."""
    result = await orchestrator.complete(upload_id, body)
    if not result.success or result.descriptor is None:
        _raise_failure(result.error)
    return result.descriptor.to_wire()


@router.post("/uploads/{upload_id}/abort")
async def abort_upload(
    upload_id: str,
    body: Optional[AbortUploadRequest] = None,
    orchestrator: UploadOrchestrator = Depends(require_orchestrator),
):
    """Cancel an upload.  ``aborted`` is false when there was nothing to abort."""
    result = await orchestrator.abort(upload_id, body)
    if not result.success:
        _raise_failure(result.error)
    return {"aborted": result.aborted}


@router.get("/uploads")
async def list_uploads(orchestrator: UploadOrchestrator = Depends(require_orchestrator)):
    """Active upload IDs and their count."""
    sessions = await orchestrator.list_sessions()
    return sessions.to_wire()


@router.get("/uploads/{upload_id}")
async def get_upload(
    upload_id: str,
    orchestrator: UploadOrchestrator = Depends(require_orchestrator),
):
    view = await orchestrator.get_session(upload_id)
    if view is None:
        _raise_failure(UploadFailure.from_error(SessionNotFound(upload_id)))
    return view.to_wire()
