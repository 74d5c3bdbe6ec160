"""
media_uploader - resilient media upload pipeline.

Compresses images and large videos, splits the transfer into ordered chunks
and pushes them through retry, timeout and connectivity handling.

Usage:
    from media_uploader import UploadOrchestrator, UploadConfig

    async with UploadOrchestrator(UploadConfig.from_env()) as uploader:
        result = await uploader.upload_thumbnail(thumb_path, record_id=boulder_id)

    # Video + thumbnail of one record, retryable per leg
    process = uploader.upload_record(boulder_id, video=video_path, thumbnail=thumb_path)
    process.on_progress(lambda progress: print(f"{progress.overall:.0f}%"))
    record = await process.wait()
    if not record.success:
        record = await process.retry()
"""
from .errors import (
    CompressionError,
    DuplicateUploadError,
    NetworkError,
    ServerError,
    UploadError,
    UploadTimeoutError,
    ValidationError,
)
from .models import (
    ProgressEvent,
    SessionStatus,
    UploadConfig,
    UploadKind,
    UploadResult,
    UploadSessionRecord,
    UploadStatus,
)
from .orchestrator import RecordUploadProcess, RecordUploadResult, UploadOrchestrator
from .utils.events import EventEmitter

__version__ = "0.1.0"
__all__ = [
    # Main
    "UploadOrchestrator",
    "RecordUploadProcess",
    "RecordUploadResult",
    "EventEmitter",
    # Models
    "UploadConfig",
    "UploadKind",
    "UploadResult",
    "UploadStatus",
    "UploadSessionRecord",
    "SessionStatus",
    "ProgressEvent",
    # Errors
    "UploadError",
    "ValidationError",
    "DuplicateUploadError",
    "CompressionError",
    "NetworkError",
    "UploadTimeoutError",
    "ServerError",
]
