"""Resumable multipart upload orchestration and its HTTP surface."""
from .orchestrator import UploadOrchestrator
from .router import router

__all__ = ["UploadOrchestrator", "router"]
