"""
Models for media_uploader.

Immutable dataclasses for tasks, plans and results; the session record is the
only mutable shape and is owned by the session log collaborator.
"""
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

MB = 1024 * 1024


class UploadKind(Enum):
    """What is being uploaded."""
    VIDEO = "video"
    IMAGE = "image"          # sector image
    THUMBNAIL = "thumbnail"  # record thumbnail

    @property
    def is_image(self) -> bool:
        return self is not UploadKind.VIDEO


class UploadStatus(Enum):
    """Upload operation status."""
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"  # primary leg ok, secondary leg failed


class SessionStatus(Enum):
    """Lifecycle of one upload session."""
    PENDING = "pending"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    def can_transition_to(self, other: "SessionStatus") -> bool:
        if other is self:
            return not self.is_terminal
        return other in _TRANSITIONS[self]


_TRANSITIONS = {
    SessionStatus.PENDING: {SessionStatus.COMPRESSING, SessionStatus.UPLOADING, SessionStatus.FAILED},
    SessionStatus.COMPRESSING: {SessionStatus.UPLOADING, SessionStatus.FAILED},
    SessionStatus.UPLOADING: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    SessionStatus.COMPLETED: set(),
    # explicit user retry
    SessionStatus.FAILED: {SessionStatus.PENDING},
}


class Phase(Enum):
    COMPRESSING = "compressing"
    UPLOADING = "uploading"


@dataclass(frozen=True)
class UploadTask:
    """Immutable description of one requested upload."""
    path: Path
    mime_type: str
    kind: UploadKind
    size: int
    target_id: Optional[str] = None   # sent to the endpoint (sector id)
    record_id: Optional[str] = None   # record updated once the leg completes
    fingerprint: Optional[str] = None

    @property
    def file_name(self) -> str:
        return self.path.name

    def with_fingerprint(self, fingerprint: str) -> "UploadTask":
        return replace(self, fingerprint=fingerprint)


@dataclass(frozen=True)
class CompressionPlan:
    should_transcode: bool
    byte_budget: Optional[int] = None
    dimension_budget: Tuple[int, ...] = ()
    max_accepted_bytes: Optional[int] = None


@dataclass(frozen=True)
class TranscodeResult:
    """
    Output of a transcoder.

    ``output_bytes <= source_bytes`` unless ``transcoded`` is False, in which
    case ``path`` is the untouched source.
    """
    path: Path
    output_bytes: int
    width: int
    height: int
    orientation_corrected: bool = False
    transcoded: bool = True
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class ChunkPlan:
    chunk_size: int
    total_chunks: int
    session_id: Optional[str] = None

    @property
    def is_chunked(self) -> bool:
        return self.total_chunks > 1


@dataclass(frozen=True)
class PreparedFile:
    """The file that actually goes over the wire."""
    path: Path
    file_name: str
    size: int
    mime_type: str
    target_id: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    overall: float
    phase: Phase
    phase_value: float
    leg: Optional[UploadKind] = None


@dataclass
class UploadSessionRecord:
    """Durable record of one upload attempt, kept by the session log."""
    id: str
    kind: UploadKind
    file_name: str
    file_size: int
    status: SessionStatus = SessionStatus.PENDING
    progress: float = 0.0
    retry_count: int = 0
    error_message: Optional[str] = None
    result_url: Optional[str] = None
    fingerprint: Optional[str] = None
    target_id: Optional[str] = None
    record_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class UploadResult:
    """Immutable result of an upload operation."""
    session_id: str
    filename: str
    kind: UploadKind
    status: UploadStatus = UploadStatus.SUCCESS
    url: Optional[str] = None
    error: Optional[str] = None
    transcoded: bool = False

    @property
    def success(self) -> bool:
        return self.status == UploadStatus.SUCCESS

    @classmethod
    def ok(cls, session_id: str, filename: str, kind: UploadKind, url: str, transcoded: bool = False):
        return cls(
            session_id=session_id,
            filename=filename,
            kind=kind,
            status=UploadStatus.SUCCESS,
            url=url,
            transcoded=transcoded,
        )

    @classmethod
    def fail(cls, session_id: str, filename: str, kind: UploadKind, error: str):
        return cls(
            session_id=session_id,
            filename=filename,
            kind=kind,
            status=UploadStatus.FAILED,
            error=error,
        )


@dataclass(frozen=True)
class UploadConfig:
    """Immutable configuration for upload operations."""
    upload_api_url: Optional[str] = None
    backend: str = "chunked"  # "chunked" or "direct"
    storage_url: Optional[str] = None
    storage_api_key: Optional[str] = None
    storage_bucket: str = "beta-videos"
    datastore_api_url: Optional[str] = None
    datastore_api_key: Optional[str] = None
    # Transfer resilience
    request_timeout: float = 300.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    network_settle_delay: float = 2.0
    heartbeat_interval: float = 30.0
    resume_from_failed_chunk: bool = False
    # Session bookkeeping
    dedup_window: float = 300.0
    stale_after: float = 1800.0
    # Periodic stale sweep while an orchestrator is open; None leaves it to sweep_stale_sessions()
    stale_sweep_interval: Optional[float] = None

    @property
    def use_direct_storage(self) -> bool:
        """Fall back to direct storage when the chunked API is not configured."""
        return self.backend == "direct" or not self.upload_api_url

    @classmethod
    def from_env(cls, **overrides) -> "UploadConfig":
        values = {
            "upload_api_url": os.getenv("UPLOAD_API_URL") or None,
            "backend": os.getenv("UPLOAD_BACKEND", "chunked").strip().lower() or "chunked",
            "storage_url": os.getenv("STORAGE_URL") or None,
            "storage_api_key": os.getenv("STORAGE_API_KEY") or None,
            "storage_bucket": os.getenv("STORAGE_BUCKET") or "beta-videos",
            "datastore_api_url": os.getenv("DATASTORE_API_URL") or None,
            "datastore_api_key": os.getenv("DATASTORE_API_KEY") or None,
        }
        values.update(overrides)
        return cls(**values)
