"""Upload event ledger API endpoints.

Endpoints:
    GET /uploads/events:       Recorded events, newest first
    GET /uploads/events/stats: Event count per outcome

Data Storage:
    Events are stored in a local DuckDB database (upload_events.duckdb by
    default, see ``logging.events_path``).
"""
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import Field

from attachments.schemas import CamelModel

from .schemas import UploadEvent, UploadOutcome
from .service import UploadEventLog

router = APIRouter(prefix="/uploads/events", tags=["upload-events"])

# Set by main.py lifespan; None when the ledger is disabled.
_event_log: Optional[UploadEventLog] = None


def set_event_log(event_log: Optional[UploadEventLog]) -> None:
    global _event_log
    _event_log = event_log


def get_event_log() -> Optional[UploadEventLog]:
    return _event_log


class GetEventsResponse(CamelModel):
    """Response from the events endpoint.

    Attributes:
        events: Ledger entries (newest first).
        count: Number of entries returned.
    """
    events: List[UploadEvent] = Field(..., description="Ledger entries")
    count: int = Field(..., description="Number of entries")


def _require_log() -> UploadEventLog:
    if _event_log is None:
        raise HTTPException(status_code=503, detail="Upload event ledger disabled")
    return _event_log


@router.get("")
async def get_events(
    upload_id: Optional[str] = Query(None, alias="uploadId"),
    outcome: Optional[UploadOutcome] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """Retrieve recorded events, optionally filtered by upload or outcome."""
    events = _require_log().get_events(upload_id=upload_id, outcome=outcome, limit=limit)
    return GetEventsResponse(events=events, count=len(events)).to_wire()


@router.get("/stats")
async def get_stats() -> Dict[str, int]:
    """Number of recorded events per outcome."""
    return _require_log().outcome_counts()
