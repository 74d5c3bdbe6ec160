"""Core orchestrator - coordinates all upload workflows."""
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import httpx

from ..models import UploadConfig, UploadKind, UploadResult, UploadSessionRecord
from ..protocols import (
    ConnectivityMonitor,
    ForegroundMonitor,
    ImageCodec,
    IRecordRepository,
    ITransferBackend,
    IUploadSessionLog,
    PowerHold,
    VideoCodec,
)
from ..services.direct_storage import DirectStorageBackend
from ..services.image_transcoder import ImageTranscoder, PillowImageCodec
from ..services.platform import AlwaysOnline, EndpointConnectivityMonitor, HeadlessForeground, NoOpPowerHold
from ..services.resilience import ResilienceController
from ..services.session_log import InMemoryUploadSessionLog
from ..services.transfer import TransferClient
from ..services.video_transcoder import FFmpegVideoCodec, VideoTranscoder
from ..utils.events import EventEmitter
from .leg_upload import LegUploadHandler
from .record_upload import RecordUploadProcess

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """
    Orchestrates media uploads using injected services.

    Follows:
    - Dependency Injection (codecs, platform capabilities and collaborators injected)
    - Single Responsibility (delegates to handlers)
    - Open/Closed (extend via new transfer backends)

    Usage:
        config = UploadConfig.from_env()
        async with UploadOrchestrator(config) as uploader:
            result = await uploader.upload_sector_image(image_path, sector_id)

            process = uploader.upload_record(boulder_id, video=video_path, thumbnail=thumb_path)
            record = await process.wait()
    """

    def __init__(
        self,
        config: Optional[UploadConfig] = None,
        session_log: Optional[IUploadSessionLog] = None,
        records: Optional[IRecordRepository] = None,
        image_codec: Optional[ImageCodec] = None,
        video_codec: Optional[VideoCodec] = None,
        power_hold: Optional[PowerHold] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        foreground: Optional[ForegroundMonitor] = None,
        backend: Optional[ITransferBackend] = None,
    ):
        self._config = config or UploadConfig.from_env()
        self._session_log = session_log or InMemoryUploadSessionLog(self._config.dedup_window)
        self._records = records
        self._image_codec = image_codec
        self._video_codec = video_codec
        self._power_hold = power_hold or NoOpPowerHold()
        self._connectivity = connectivity
        self._foreground = foreground or HeadlessForeground()
        self._external_backend = backend

        # Initialized in __aenter__
        self._http: Optional[httpx.AsyncClient] = None
        self._backend: Optional[ITransferBackend] = None
        self._handler: Optional[LegUploadHandler] = None
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def config(self) -> UploadConfig:
        return self._config

    @property
    def backend(self) -> Optional[ITransferBackend]:
        return self._backend

    async def __aenter__(self):
        """Acquire the HTTP client and codec handles, build the handlers."""
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))
        try:
            self._backend = self._external_backend or self._build_backend()
        except Exception:
            await self._http.aclose()
            self._http = None
            raise

        if self._image_codec is None:
            self._image_codec = PillowImageCodec()
        if self._video_codec is None:
            self._video_codec = FFmpegVideoCodec()
        if self._connectivity is None:
            endpoint = self._config.storage_url if self._config.use_direct_storage else self._config.upload_api_url
            self._connectivity = EndpointConnectivityMonitor(endpoint) if endpoint else AlwaysOnline()

        resilience = ResilienceController(
            self._config,
            connectivity=self._connectivity,
            power_hold=self._power_hold,
            foreground=self._foreground,
            backend=self._backend,
        )
        self._handler = LegUploadHandler(
            self._config,
            backend=self._backend,
            resilience=resilience,
            session_log=self._session_log,
            image_transcoder=ImageTranscoder(self._image_codec),
            video_transcoder=VideoTranscoder(self._video_codec),
            records=self._records,
        )
        if self._config.stale_sweep_interval:
            self._sweeper = asyncio.create_task(self._sweep_loop(self._config.stale_sweep_interval))
        logger.debug("Orchestrator ready (backend: %s)", type(self._backend).__name__)
        return self

    async def __aexit__(self, *args):
        """Stop the sweeper, release codec handles and the HTTP client."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self._video_codec is not None:
            await self._video_codec.close()
        if self._http:
            await self._http.aclose()
            self._http = None
        self._handler = None

    def _build_backend(self) -> ITransferBackend:
        if not self._config.use_direct_storage:
            return TransferClient(self._config.upload_api_url, self._http)
        if not (self._config.storage_url and self._config.storage_api_key):
            raise ValueError(
                "No upload API configured and direct storage needs STORAGE_URL and STORAGE_API_KEY"
            )
        logger.info("Upload API not configured, using direct storage bucket %s", self._config.storage_bucket)
        return DirectStorageBackend(
            self._config.storage_url,
            self._config.storage_api_key,
            self._config.storage_bucket,
            self._http,
        )

    async def upload_video(
        self,
        path: Path,
        record_id: Optional[str] = None,
        events: Optional[EventEmitter] = None,
    ) -> UploadResult:
        """Upload a video, transcoding it first when large."""
        assert self._handler is not None
        return await self._handler.upload(path, UploadKind.VIDEO, record_id=record_id, events=events)

    async def upload_thumbnail(
        self,
        path: Path,
        record_id: Optional[str] = None,
        events: Optional[EventEmitter] = None,
    ) -> UploadResult:
        """Upload a record thumbnail (portrait JPEG, 5MB budget)."""
        assert self._handler is not None
        return await self._handler.upload(path, UploadKind.THUMBNAIL, record_id=record_id, events=events)

    async def upload_sector_image(
        self,
        path: Path,
        sector_id: str,
        events: Optional[EventEmitter] = None,
    ) -> UploadResult:
        """Upload a sector image; the sector id is sent along for server-side association."""
        assert self._handler is not None
        return await self._handler.upload(path, UploadKind.IMAGE, target_id=sector_id, events=events)

    def upload_record(
        self,
        record_id: str,
        video: Optional[Path] = None,
        thumbnail: Optional[Path] = None,
    ) -> RecordUploadProcess:
        """
        Upload the video and/or thumbnail of one record as concurrent legs.

        Returns a RecordUploadProcess that can be started, monitored and retried.
        """
        assert self._handler is not None
        return RecordUploadProcess(self._handler, record_id, video=video, thumbnail=thumbnail)

    async def delete(self, url: str) -> bool:
        """Best-effort delete of an uploaded asset."""
        assert self._backend is not None
        return await self._backend.delete(url)

    async def sweep_stale_sessions(self) -> int:
        """Mark sessions stuck mid-upload longer than ``stale_after`` as failed."""
        return await self._session_log.mark_stale_as_failed(self._config.stale_after)

    async def active_sessions(self) -> List[UploadSessionRecord]:
        return await self._session_log.list_active()

    async def _sweep_loop(self, interval: float) -> None:
        """Sweep once on start, then every ``interval`` seconds until cancelled."""
        while True:
            try:
                await self.sweep_stale_sessions()
            except Exception as e:
                logger.warning("Stale session sweep failed: %s", e)
            await asyncio.sleep(interval)
