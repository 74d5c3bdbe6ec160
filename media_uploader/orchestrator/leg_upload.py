"""Single leg pipeline: validate, compress, transfer, record."""
import asyncio
import logging
import mimetypes
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional, Tuple

from ..errors import CompressionError, ValidationError, describe_exception
from ..models import (
    CompressionPlan,
    PreparedFile,
    SessionStatus,
    UploadConfig,
    UploadKind,
    UploadResult,
    UploadSessionRecord,
    UploadTask,
)
from ..protocols import IRecordRepository, ITransferBackend, IUploadSessionLog
from ..services.fingerprint import blake3_file
from ..services.image_transcoder import ImageTranscoder
from ..services.planner import plan_compression, validate_final_size, validate_mime_type
from ..services.progress import ProgressReporter
from ..services.resilience import ResilienceController
from ..services.video_transcoder import VideoTranscoder
from ..utils.events import EventEmitter

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Upload cancelled"

SESSION_PREFIXES = {
    UploadKind.VIDEO: "",
    UploadKind.THUMBNAIL: "thumb_",
    UploadKind.IMAGE: "",
}


def new_session_id(kind: UploadKind) -> str:
    return f"{SESSION_PREFIXES[kind]}{uuid.uuid4().hex}"


def guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or "application/octet-stream"


class LegUploadHandler:
    """
    Runs one UploadTask through the state machine.

    pending -> compressing -> uploading -> completed, or failed from any
    non-terminal state. Compression failures fall back to the original file;
    transfer failures end the leg as failed after the retry ceiling.
    """

    def __init__(
        self,
        config: UploadConfig,
        backend: ITransferBackend,
        resilience: ResilienceController,
        session_log: IUploadSessionLog,
        image_transcoder: ImageTranscoder,
        video_transcoder: VideoTranscoder,
        records: Optional[IRecordRepository] = None,
    ):
        self._config = config
        self._backend = backend
        self._resilience = resilience
        self._log = session_log
        self._images = image_transcoder
        self._videos = video_transcoder
        self._records = records

    async def prepare(
        self,
        path: Path,
        kind: UploadKind,
        target_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> UploadTask:
        """Build and validate the task. Raises ValidationError."""
        path = Path(path)
        if not path.is_file():
            raise ValidationError(f"File not found: {path}")
        mime_type = guess_mime_type(path)
        validate_mime_type(kind, mime_type)
        size = path.stat().st_size
        if size <= 0:
            raise ValidationError(f"File is empty: {path.name}")
        task = UploadTask(
            path=path,
            mime_type=mime_type,
            kind=kind,
            size=size,
            target_id=target_id,
            record_id=record_id,
        )
        return task.with_fingerprint(await blake3_file(path))

    async def start_session(self, task: UploadTask) -> UploadSessionRecord:
        """Open a session. Raises DuplicateUploadError."""
        return await self._log.initialize(task, new_session_id(task.kind))

    async def reopen(self, session: UploadSessionRecord) -> None:
        """Explicit user retry: failed -> pending."""
        await self._log.update_status(session, SessionStatus.PENDING, progress=0)

    async def upload(
        self,
        path: Path,
        kind: UploadKind,
        target_id: Optional[str] = None,
        record_id: Optional[str] = None,
        events: Optional[EventEmitter] = None,
    ) -> UploadResult:
        task = await self.prepare(path, kind, target_id=target_id, record_id=record_id)
        session = await self.start_session(task)
        return await self.run(task, session, events)

    async def run(
        self,
        task: UploadTask,
        session: UploadSessionRecord,
        events: Optional[EventEmitter] = None,
    ) -> UploadResult:
        """
        Drive an open session to a terminal state.

        Returns a FAILED result for transfer failures. Raises ValidationError
        when the prepared file breaks a size ceiling, and re-raises
        cancellation after marking the session failed.
        """
        plan = plan_compression(task.kind, task.size)
        reporter = ProgressReporter(task.kind, events, compresses=plan.should_transcode)
        workdir = Path(tempfile.mkdtemp(prefix="media_uploader_"))
        try:
            prepared, transcoded = await self._compress(task, session, plan, reporter, workdir)
            validate_final_size(plan, prepared.size)
            url = await self._transfer(task, prepared, session, reporter)
            await reporter.complete()
            await self._log.update_status(session, SessionStatus.COMPLETED, progress=100.0, result_url=url)
            logger.info("%s uploaded: %s", task.file_name, url)
            await self._update_record_safely(task, url)
            return UploadResult.ok(session.id, task.file_name, task.kind, url, transcoded=transcoded)
        except asyncio.CancelledError:
            logger.info("Upload of %s cancelled", task.file_name)
            await self._fail(session, CANCELLED_MESSAGE)
            raise
        except ValidationError as e:
            await self._fail(session, str(e))
            raise
        except Exception as e:
            message = describe_exception(e)
            logger.error("Upload of %s failed: %s", task.file_name, message, exc_info=True)
            await self._fail(session, message)
            return UploadResult.fail(session.id, task.file_name, task.kind, message)
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, True)

    async def update_record(self, task: UploadTask, url: str) -> None:
        if task.record_id and self._records is not None:
            await self._records.update_media_url(task.record_id, task.kind, url)
        elif task.kind is UploadKind.IMAGE and task.target_id and self._records is not None:
            await self._records.update_media_url(task.target_id, task.kind, url)

    async def _update_record_safely(self, task: UploadTask, url: str) -> None:
        try:
            await self.update_record(task, url)
        except Exception as e:
            logger.error("Uploaded %s but the record update failed: %s", task.file_name, e)

    async def _compress(
        self,
        task: UploadTask,
        session: UploadSessionRecord,
        plan: CompressionPlan,
        reporter: ProgressReporter,
        workdir: Path,
    ) -> Tuple[PreparedFile, bool]:
        original = PreparedFile(
            path=task.path,
            file_name=task.file_name,
            size=task.size,
            mime_type=task.mime_type,
            target_id=task.target_id,
        )
        if not plan.should_transcode:
            reporter.skip_compression()
            return original, False

        await self._log.update_status(session, SessionStatus.COMPRESSING, progress=0.0)
        try:
            if task.kind is UploadKind.VIDEO:
                result = await self._videos.transcode(task.path, task.size, workdir, reporter.compression)
            else:
                result = await self._images.transcode(
                    task.path,
                    task.size,
                    plan.byte_budget,
                    plan.dimension_budget,
                    workdir,
                    reporter.compression,
                )
        except CompressionError as e:
            logger.warning("Compression of %s failed, uploading original: %s", task.file_name, e)
            result = None
        await reporter.compression(100)

        if result is None or not result.transcoded:
            return original, False
        file_name = result.path.name if result.mime_type else task.file_name
        return PreparedFile(
            path=result.path,
            file_name=file_name,
            size=result.output_bytes,
            mime_type=result.mime_type or task.mime_type,
            target_id=task.target_id,
        ), True

    async def _transfer(
        self,
        task: UploadTask,
        prepared: PreparedFile,
        session: UploadSessionRecord,
        reporter: ProgressReporter,
    ) -> str:
        chunk_plan = self._backend.plan(prepared.size, task.kind, session_id=session.id)
        await self._log.update_status(session, SessionStatus.UPLOADING, progress=reporter.overall)
        next_chunk = 0

        async def on_chunk(index: int):
            nonlocal next_chunk
            next_chunk = index + 1

        async def attempt(timeout: float) -> str:
            start = next_chunk if self._config.resume_from_failed_chunk else 0
            return await self._backend.upload(
                prepared,
                chunk_plan,
                timeout,
                start_chunk=start,
                on_chunk=on_chunk,
                progress_callback=reporter.transfer,
            )

        async def on_retry(retry: int, exc: BaseException):
            await self._log.increment_retry(session)

        async with self._resilience.keep_alive():
            return await self._resilience.run(
                attempt,
                total_chunks=chunk_plan.total_chunks,
                on_retry=on_retry,
                label=prepared.file_name,
            )

    async def _fail(self, session: UploadSessionRecord, message: str) -> None:
        if session.status.is_terminal:
            return
        try:
            await self._log.update_status(session, SessionStatus.FAILED, error=message)
        except Exception as e:
            logger.error("Could not mark session %s failed: %s", session.id, e)
