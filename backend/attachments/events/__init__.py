"""Ledger of finished upload sessions."""
from .schemas import UploadEvent, UploadOutcome
from .service import UploadEventLog
from .router import router

__all__ = ["UploadEvent", "UploadOutcome", "UploadEventLog", "router"]
