from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional
import asyncio
import logging

from ..errors import UploadError, describe_exception
from ..models import ProgressEvent, UploadKind, UploadResult, UploadStatus
from ..utils.events import AggregateProgress, EventEmitter, LegProgress
from .leg_upload import LegUploadHandler
from .models import LegState, RecordUploadResult

logger = logging.getLogger(__name__)


class ProcessState(Enum):
    """State of upload process."""
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordUploadProcess:
    """
    Process object for the legs of one record (video and/or thumbnail).

    Legs run concurrently. A retry re-runs only the legs that are not yet
    uploaded; legs already uploaded only get their record update re-issued.

    Usage:
        process = orchestrator.upload_record(record_id, video=video_path, thumbnail=thumb_path)
        process.on_progress(lambda progress: print(f"{progress.overall:.0f}%"))
        process.on_leg_fail(lambda result: print(f"Failed: {result.filename}"))
        process.on_finish(lambda result: print(result.status))

        result = await process.wait()  # wait() starts automatically if needed
        if not result.success:
            result = await process.retry()
    """

    def __init__(
        self,
        handler: LegUploadHandler,
        record_id: str,
        video: Optional[Path] = None,
        thumbnail: Optional[Path] = None,
    ):
        if video is None and thumbnail is None:
            raise ValueError("A record upload needs a video or a thumbnail")
        self._handler = handler
        self._record_id = record_id
        self._events = EventEmitter()
        self._state = ProcessState.PENDING
        self._task: Optional[asyncio.Task] = None
        self._result: Optional[RecordUploadResult] = None
        self._attempts = 0

        self._legs: Dict[UploadKind, LegState] = {}
        if video is not None:
            self._legs[UploadKind.VIDEO] = LegState(UploadKind.VIDEO, Path(video))
        if thumbnail is not None:
            self._legs[UploadKind.THUMBNAIL] = LegState(UploadKind.THUMBNAIL, Path(thumbnail))
        self._progress = AggregateProgress(legs={
            kind: LegProgress(kind=kind, file_name=leg.path.name) for kind, leg in self._legs.items()
        })

    # Event subscription methods
    def on_start(self, callback: Callable[[], None]):
        """Called when a run starts (first start and every retry)."""
        return self._events.on("start", callback)

    def on_progress(self, callback: Callable[[AggregateProgress], None]):
        """Called on every leg progress change. Receives AggregateProgress."""
        return self._events.on("progress", callback)

    def on_leg_complete(self, callback: Callable[[UploadResult], None]):
        """Called when a leg completes successfully. Receives UploadResult."""
        return self._events.on("leg_complete", callback)

    def on_leg_fail(self, callback: Callable[[UploadResult], None]):
        """Called when a leg fails. Receives UploadResult."""
        return self._events.on("leg_fail", callback)

    def on_finish(self, callback: Callable[[RecordUploadResult], None]):
        """Called once per run when every leg is terminal. Receives RecordUploadResult."""
        return self._events.on("finish", callback)

    def on_error(self, callback: Callable[[Exception], None]):
        """Called when a run crashes. Receives Exception."""
        return self._events.on("error", callback)

    # Control methods
    async def start(self):
        """Start the upload process (non-blocking)."""
        if self._state != ProcessState.PENDING:
            raise RuntimeError(f"Cannot start process in state: {self._state}")

        self._state = ProcessState.RUNNING
        self._attempts += 1
        self._task = asyncio.create_task(self._run())
        await self._events.emit("start")

    async def cancel(self):
        """Cancel the upload process. In-flight legs are marked failed."""
        if self._state != ProcessState.RUNNING:
            return

        self._state = ProcessState.CANCELLED
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def wait(self) -> RecordUploadResult:
        """Wait for the upload process to complete and return result."""
        if self._state == ProcessState.PENDING:
            await self.start()

        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                if not self.is_cancelled:
                    raise

        if self._result is None or self.is_cancelled:
            self._result = self._build_result(error="Upload cancelled")

        return self._result

    async def retry(self) -> RecordUploadResult:
        """Re-enter the state machine for legs that are not uploaded yet."""
        if self._state in (ProcessState.PENDING, ProcessState.RUNNING):
            raise RuntimeError(f"Cannot retry process in state: {self._state}")
        logger.info(
            "Retrying record %s (pending legs: %s)",
            self._record_id, ", ".join(k.value for k in self.pending_legs) or "none",
        )
        self._state = ProcessState.PENDING
        self._result = None
        return await self.wait()

    # State properties
    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def record_id(self) -> str:
        return self._record_id

    @property
    def progress(self) -> AggregateProgress:
        return self._progress

    @property
    def result(self) -> Optional[RecordUploadResult]:
        """Final result (None if not completed yet)."""
        return self._result

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def legs(self) -> Dict[UploadKind, LegState]:
        return dict(self._legs)

    @property
    def pending_legs(self) -> List[UploadKind]:
        return [kind for kind, leg in self._legs.items() if not leg.uploaded]

    @property
    def is_running(self) -> bool:
        return self._state == ProcessState.RUNNING

    @property
    def is_completed(self) -> bool:
        return self._state == ProcessState.COMPLETED

    @property
    def is_cancelled(self) -> bool:
        return self._state == ProcessState.CANCELLED

    # Internal methods
    async def _run(self):
        try:
            for leg in self._legs.values():
                if leg.uploaded:
                    await self._reissue_record_update(leg)

            pending = [leg for leg in self._legs.values() if not leg.uploaded]
            await asyncio.gather(*(self._run_leg(leg) for leg in pending), return_exceptions=True)

            self._result = self._build_result()
            self._state = ProcessState.FAILED if self._result.status == UploadStatus.FAILED else ProcessState.COMPLETED
            await self._events.emit("finish", self._result)

        except asyncio.CancelledError:
            self._state = ProcessState.CANCELLED
            raise
        except Exception as e:
            self._state = ProcessState.FAILED
            logger.error("Record upload %s failed: %s", self._record_id, e, exc_info=True)
            self._result = self._build_result(error=describe_exception(e))
            await self._events.emit("error", e)

    async def _run_leg(self, leg: LegState):
        progress = self._progress.legs[leg.kind]
        emitter = EventEmitter()
        emitter.on("progress", lambda event: self._on_leg_progress(progress, event))
        progress.status = "pending"
        progress.error = None

        try:
            if leg.task is None:
                leg.task = await self._handler.prepare(leg.path, leg.kind, record_id=self._record_id)
            if leg.session is None:
                leg.session = await self._handler.start_session(leg.task)
            elif leg.session.status.is_terminal:
                await self._handler.reopen(leg.session)
            result = await self._handler.run(leg.task, leg.session, emitter)
        except UploadError as e:
            session_id = leg.session.id if leg.session else ""
            result = UploadResult.fail(session_id, leg.path.name, leg.kind, str(e))
        except Exception as e:
            # Contained so sibling legs always settle before the run finishes.
            logger.error("Record %s %s leg crashed: %s", self._record_id, leg.kind.value, e, exc_info=True)
            session_id = leg.session.id if leg.session else ""
            result = UploadResult.fail(session_id, leg.path.name, leg.kind, describe_exception(e))

        leg.result = result
        if result.success:
            leg.uploaded = True
            leg.url = result.url
            progress.overall = 100.0
            progress.status = "completed"
            progress.url = result.url
            await self._events.emit("leg_complete", result)
        else:
            progress.status = "failed"
            progress.error = result.error
            await self._events.emit("leg_fail", result)
        await self._events.emit("progress", self._progress)

    async def _on_leg_progress(self, progress: LegProgress, event: ProgressEvent):
        progress.overall = event.overall
        progress.status = event.phase.value
        await self._events.emit("progress", self._progress)

    async def _reissue_record_update(self, leg: LegState):
        try:
            await self._handler.update_record(leg.task, leg.url)
        except Exception as e:
            logger.error("Record update for %s %s failed again: %s", self._record_id, leg.kind.value, e)

    def _build_result(self, error: Optional[str] = None) -> RecordUploadResult:
        legs = {kind: leg.result for kind, leg in self._legs.items() if leg.result is not None}
        primary = self._legs.get(UploadKind.VIDEO) or next(iter(self._legs.values()))

        if not primary.uploaded:
            status = UploadStatus.FAILED
        elif all(leg.uploaded for leg in self._legs.values()):
            status = UploadStatus.SUCCESS
        else:
            status = UploadStatus.PARTIAL

        if error is None and status != UploadStatus.SUCCESS:
            failed = [r for r in legs.values() if not r.success]
            error = "; ".join(f"{r.kind.value}: {r.error}" for r in failed) or None
        return RecordUploadResult(record_id=self._record_id, status=status, legs=legs, error=error)
