"""Orchestrator package - coordinates upload workflows."""
from .core import UploadOrchestrator
from .leg_upload import LegUploadHandler
from .models import LegState, RecordUploadResult
from .record_upload import ProcessState, RecordUploadProcess

__all__ = [
    "UploadOrchestrator",
    "LegUploadHandler",
    "LegState",
    "RecordUploadResult",
    "ProcessState",
    "RecordUploadProcess",
]
