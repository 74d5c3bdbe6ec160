"""
Protocols (Interfaces) for Dependency Inversion.

Platform capabilities (image/video codecs, power hold, connectivity,
foreground state) and external collaborators (session log, record
repository, transfer backend) are injected through these interfaces so the
pipeline's control logic stays portable.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, runtime_checkable

from .models import (
    ChunkPlan,
    PreparedFile,
    SessionStatus,
    UploadKind,
    UploadSessionRecord,
    UploadTask,
)

ProgressCallback = Callable[[float], Awaitable[None]]
ChunkCallback = Callable[[int], Awaitable[None]]


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class VideoInfo:
    width: int
    height: int
    codec: Optional[str] = None
    duration: Optional[float] = None
    bitrate: Optional[int] = None


@runtime_checkable
class ImageCodec(Protocol):
    """Pixel operations needed by the image transcoder. Synchronous; run in a worker thread."""

    def load(self, path: Path) -> Tuple[Any, bool]:
        """Decode and apply embedded orientation. Returns (image, orientation_applied)."""
        ...

    def dimensions(self, image: Any) -> Tuple[int, int]:
        ...

    def rotate(self, image: Any, degrees: int) -> Any:
        ...

    def encode(self, image: Any, max_edge: int, quality: float) -> EncodedImage:
        """Resize so the longer edge is <= max_edge and encode at quality (0-1)."""
        ...


@runtime_checkable
class VideoCodec(Protocol):
    """Video probing and re-encoding primitive."""

    async def probe(self, path: Path) -> VideoInfo:
        ...

    async def encode(
        self,
        source: Path,
        dest: Path,
        width: int,
        height: int,
        bitrate: int,
        crf: int,
        codec: Optional[str],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class PowerHold(Protocol):
    """Best-effort request that keeps the device from suspending networking."""

    @property
    def is_held(self) -> bool:
        ...

    async def acquire(self) -> bool:
        ...

    async def release(self) -> None:
        ...


@runtime_checkable
class ConnectivityMonitor(Protocol):

    async def is_online(self) -> bool:
        ...

    async def wait_online(self) -> None:
        """Suspend until connectivity is restored."""
        ...


@runtime_checkable
class ForegroundMonitor(Protocol):

    def is_foreground(self) -> bool:
        ...


@runtime_checkable
class ITransferBackend(Protocol):
    """Interface for moving a prepared file to remote storage."""

    def plan(self, size: int, kind: UploadKind, session_id: Optional[str] = None) -> ChunkPlan:
        """Split the final size into requests; session_id is shared by every chunk."""
        ...

    async def upload(
        self,
        prepared: PreparedFile,
        plan: ChunkPlan,
        timeout: float,
        start_chunk: int = 0,
        on_chunk: Optional[ChunkCallback] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> str:
        """Upload and return the resulting public URL."""
        ...

    async def delete(self, url: str) -> bool:
        ...

    async def heartbeat(self) -> None:
        ...


class IUploadSessionLog(ABC):
    """Durable record of upload attempts (duplicate detection, status history)."""

    @abstractmethod
    async def initialize(self, task: UploadTask, session_id: str) -> UploadSessionRecord:
        """Create the session record or raise DuplicateUploadError."""
        pass

    @abstractmethod
    async def update_status(
        self,
        session: UploadSessionRecord,
        status: SessionStatus,
        progress: Optional[float] = None,
        error: Optional[str] = None,
        result_url: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    async def increment_retry(self, session: UploadSessionRecord) -> None:
        pass

    @abstractmethod
    async def list_active(self) -> List[UploadSessionRecord]:
        pass

    @abstractmethod
    async def mark_stale_as_failed(self, max_age: float) -> int:
        pass


class IRecordRepository(ABC):
    """Persists the resulting URL on the owning record."""

    @abstractmethod
    async def update_media_url(self, record_id: str, kind: UploadKind, url: str) -> None:
        pass
