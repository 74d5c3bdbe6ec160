"""End-to-end tests for single uploads through UploadOrchestrator."""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import (
    FakeBackend,
    FakeConnectivity,
    FakePowerHold,
    FakeVideoCodec,
    RecordingSessionLog,
    build_orchestrator,
    wait_for_calls,
)
from media_uploader import EventEmitter, UploadConfig, UploadOrchestrator
from media_uploader.errors import DuplicateUploadError, NetworkError, ServerError, ValidationError
from media_uploader.models import MB, Phase, SessionStatus, UploadKind, UploadStatus
from media_uploader.services.direct_storage import DirectStorageBackend
from media_uploader.services.transfer import TransferClient


def _sized_file(path, size):
    with open(path, "wb") as f:
        f.truncate(size)
    return path


def _collect(events):
    received = []
    events.on("progress", received.append)
    return received


class ChunkingBackend(FakeBackend):
    """Acknowledges chunks one by one and drops the connection once after ``fail_after``."""

    def __init__(self, fail_after=1):
        super().__init__()
        self.fail_after = fail_after
        self.sent = []

    async def upload(self, prepared, plan, timeout, start_chunk=0, on_chunk=None, progress_callback=None):
        self.calls.append(SimpleNamespace(prepared=prepared, plan=plan, start_chunk=start_chunk))
        for index in range(start_chunk, plan.total_chunks):
            if len(self.calls) == 1 and index > self.fail_after:
                raise NetworkError("connection reset")
            self.sent.append(index)
            await on_chunk(index)
        return f"https://cdn.test/uploads/{prepared.file_name}"


class TestVideoUpload:
    @pytest.mark.asyncio
    async def test_small_video_skips_transcoding(self, config, backend, tmp_path):
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"\1" * (15 * MB))
        codec = FakeVideoCodec(output_size=1000)
        events = EventEmitter()
        received = _collect(events)

        async with build_orchestrator(config, backend, video_codec=codec) as uploader:
            result = await uploader.upload_video(video, events=events)

        assert result.success
        assert result.url == "https://cdn.test/uploads/clip.mp4"
        assert not result.transcoded
        assert codec.probe_calls == 0
        assert received[0].overall == 0.0
        assert all(e.phase is Phase.UPLOADING for e in received)
        assert [e.overall for e in received][:3] == [0.0, 50.0, 100.0]
        assert backend.calls[0].plan.total_chunks == 3

    @pytest.mark.asyncio
    async def test_large_video_is_transcoded(self, config, backend, tmp_path):
        video = _sized_file(tmp_path / "big.mp4", 21 * MB)
        codec = FakeVideoCodec(output_size=4 * MB)
        events = EventEmitter()
        received = _collect(events)

        async with build_orchestrator(config, backend, video_codec=codec) as uploader:
            result = await uploader.upload_video(video, events=events)

        assert result.success
        assert result.transcoded
        sent = backend.calls[0].prepared
        assert sent.size == 4 * MB
        assert sent.file_name == "big.mp4"
        assert sent.path.name == "big_compressed.mp4"
        assert not sent.path.exists()  # scratch directory removed
        phases = [e.phase for e in received]
        assert phases[0] is Phase.COMPRESSING
        assert phases[-1] is Phase.UPLOADING
        overall = [e.overall for e in received]
        assert overall == sorted(overall)

    @pytest.mark.asyncio
    async def test_transcode_failure_falls_back_to_original(self, config, backend, tmp_path):
        video = _sized_file(tmp_path / "big.mp4", 21 * MB)
        codec = FakeVideoCodec(error=FileNotFoundError("ffprobe"))
        log = RecordingSessionLog()

        async with build_orchestrator(config, backend, session_log=log, video_codec=codec) as uploader:
            result = await uploader.upload_video(video)

        assert result.success
        assert not result.transcoded
        assert backend.calls[0].prepared.path == video
        assert backend.calls[0].prepared.size == 21 * MB
        assert log.created[0].status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_wrong_type_rejected_before_any_transfer(self, config, backend, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("not a video")

        async with build_orchestrator(config, backend) as uploader:
            with pytest.raises(ValidationError, match="not allowed"):
                await uploader.upload_video(notes)

        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_missing_file_rejected(self, config, backend, tmp_path):
        async with build_orchestrator(config, backend) as uploader:
            with pytest.raises(ValidationError, match="not found"):
                await uploader.upload_video(tmp_path / "gone.mp4")

    @pytest.mark.asyncio
    async def test_oversized_video_rejected(self, config, backend, tmp_path):
        video = _sized_file(tmp_path / "huge.mp4", 501 * MB)
        codec = FakeVideoCodec(error=FileNotFoundError("ffprobe"))
        log = RecordingSessionLog()

        async with build_orchestrator(config, backend, session_log=log, video_codec=codec) as uploader:
            with pytest.raises(ValidationError, match="exceeds maximum"):
                await uploader.upload_video(video)

        assert backend.calls == []
        assert log.created[0].status is SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_duplicate_rejected_without_transfer(self, config, backend, small_video):
        async with build_orchestrator(config, backend) as uploader:
            first = await uploader.upload_video(small_video, record_id="boulder-1")
            with pytest.raises(DuplicateUploadError):
                await uploader.upload_video(small_video, record_id="boulder-1")

        assert first.success
        assert len(backend.calls) == 1


class TestResilience:
    @pytest.mark.asyncio
    async def test_retry_ceiling_marks_session_failed(self, config, small_video):
        backend = FakeBackend(failures={"clip.mp4": [NetworkError("connection reset")] * 4})
        log = RecordingSessionLog()

        async with build_orchestrator(config, backend, session_log=log) as uploader:
            result = await uploader.upload_video(small_video)

        assert result.status is UploadStatus.FAILED
        assert "connection reset" in result.error
        assert len(backend.calls) == 4
        session = log.created[0]
        assert session.status is SessionStatus.FAILED
        assert session.retry_count == 3
        assert session.error_message == result.error

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, config, small_video):
        backend = FakeBackend(failures={"clip.mp4": [ServerError.from_status(503, "busy")]})
        log = RecordingSessionLog()

        async with build_orchestrator(config, backend, session_log=log) as uploader:
            result = await uploader.upload_video(small_video)

        assert result.success
        assert log.created[0].retry_count == 1
        assert log.created[0].result_url == result.url

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, config, small_video):
        backend = FakeBackend(failures={"clip.mp4": [ServerError.from_status(413, "too large")]})

        async with build_orchestrator(config, backend) as uploader:
            result = await uploader.upload_video(small_video)

        assert result.status is UploadStatus.FAILED
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_chunk_sequence_restarts_by_default(self, config, tmp_path):
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"\1" * (12 * MB))
        backend = ChunkingBackend(fail_after=1)
        log = RecordingSessionLog()

        async with build_orchestrator(config, backend, session_log=log) as uploader:
            result = await uploader.upload_video(video)

        assert result.success
        assert [c.start_chunk for c in backend.calls] == [0, 0]
        assert backend.sent == [0, 1, 0, 1, 2]
        session_id = log.created[0].id
        assert all(c.plan.session_id == session_id for c in backend.calls)

    @pytest.mark.asyncio
    async def test_resume_from_failed_chunk(self, tmp_path):
        config = UploadConfig(
            upload_api_url="https://cdn.test/upload-api",
            retry_base_delay=0.0,
            network_settle_delay=0.0,
            resume_from_failed_chunk=True,
        )
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"\1" * (12 * MB))
        backend = ChunkingBackend(fail_after=1)

        async with build_orchestrator(config, backend) as uploader:
            result = await uploader.upload_video(video)

        assert result.success
        assert [c.start_chunk for c in backend.calls] == [0, 2]
        assert backend.sent == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_waits_for_connectivity(self, config, backend, small_video):
        connectivity = FakeConnectivity(online=False)

        async with build_orchestrator(config, backend, connectivity=connectivity) as uploader:
            result = await uploader.upload_video(small_video)

        assert result.success
        assert connectivity.wait_calls == 1

    @pytest.mark.asyncio
    async def test_power_hold_released_after_transfer(self, config, backend, small_video):
        power_hold = FakePowerHold()

        async with build_orchestrator(config, backend, power_hold=power_hold) as uploader:
            await uploader.upload_video(small_video)

        assert power_hold.acquire_calls == 1
        assert not power_hold.held

    @pytest.mark.asyncio
    async def test_cancellation_marks_session_failed(self, config, small_video):
        backend = FakeBackend(blocking={"clip.mp4"})
        log = RecordingSessionLog()
        power_hold = FakePowerHold()

        async with build_orchestrator(config, backend, session_log=log, power_hold=power_hold) as uploader:
            task = asyncio.create_task(uploader.upload_video(small_video))
            await wait_for_calls(backend)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        session = log.created[0]
        assert session.status is SessionStatus.FAILED
        assert session.error_message == "Upload cancelled"
        assert not power_hold.held


class TestImages:
    @pytest.mark.asyncio
    async def test_six_mb_thumbnail_completes(self, config, backend, six_mb_thumbnail):
        log = RecordingSessionLog()
        events = EventEmitter()
        received = _collect(events)

        async with build_orchestrator(config, backend, session_log=log) as uploader:
            result = await uploader.upload_thumbnail(six_mb_thumbnail, record_id="boulder-1", events=events)

        assert result.success
        assert result.transcoded
        sent = backend.calls[0].prepared
        assert sent.size <= 5 * MB
        assert sent.mime_type == "image/jpeg"
        assert log.created[0].status is SessionStatus.COMPLETED
        assert log.created[0].progress == 100.0
        assert log.created[0].id.startswith("thumb_")
        assert received[-1].overall == 100.0

    @pytest.mark.asyncio
    async def test_sector_image_carries_sector_id(self, config, backend, thumbnail):
        records = Mock()
        records.update_media_url = AsyncMock()

        async with build_orchestrator(config, backend, records=records) as uploader:
            result = await uploader.upload_sector_image(thumbnail, "sector-7")

        assert result.success
        assert backend.calls[0].prepared.target_id == "sector-7"
        records.update_media_url.assert_awaited_once_with("sector-7", UploadKind.IMAGE, result.url)


class TestRecords:
    @pytest.mark.asyncio
    async def test_record_updated_after_upload(self, config, backend, small_video):
        records = Mock()
        records.update_media_url = AsyncMock()

        async with build_orchestrator(config, backend, records=records) as uploader:
            result = await uploader.upload_video(small_video, record_id="boulder-1")

        records.update_media_url.assert_awaited_once_with("boulder-1", UploadKind.VIDEO, result.url)

    @pytest.mark.asyncio
    async def test_record_update_failure_keeps_upload(self, config, backend, small_video):
        records = Mock()
        records.update_media_url = AsyncMock(side_effect=RuntimeError("API error 500"))
        log = RecordingSessionLog()

        async with build_orchestrator(config, backend, session_log=log, records=records) as uploader:
            result = await uploader.upload_video(small_video, record_id="boulder-1")

        assert result.success
        assert log.created[0].status is SessionStatus.COMPLETED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_chunked_backend_selected(self):
        config = UploadConfig(upload_api_url="https://cdn.test/upload-api")
        async with UploadOrchestrator(config, connectivity=FakeConnectivity()) as uploader:
            assert isinstance(uploader.backend, TransferClient)

    @pytest.mark.asyncio
    async def test_direct_storage_fallback(self):
        config = UploadConfig(storage_url="https://storage.test", storage_api_key="key")
        async with UploadOrchestrator(config, connectivity=FakeConnectivity()) as uploader:
            assert isinstance(uploader.backend, DirectStorageBackend)

    @pytest.mark.asyncio
    async def test_no_backend_configured(self):
        with pytest.raises(ValueError, match="STORAGE_URL"):
            async with UploadOrchestrator(UploadConfig()):
                pass

    @pytest.mark.asyncio
    async def test_video_codec_closed_on_exit(self, config, backend):
        codec = FakeVideoCodec()
        async with build_orchestrator(config, backend, video_codec=codec):
            pass
        assert codec.closed

    @pytest.mark.asyncio
    async def test_delete_delegates_to_backend(self, config, backend):
        async with build_orchestrator(config, backend) as uploader:
            assert await uploader.delete("https://cdn.test/uploads/clip.mp4")
        assert backend.deleted == ["https://cdn.test/uploads/clip.mp4"]

    @pytest.mark.asyncio
    async def test_sweep_stale_sessions(self, config, backend, small_video):
        now = [datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)]
        log = RecordingSessionLog(clock=lambda: now[0])

        async with build_orchestrator(config, backend, session_log=log) as uploader:
            task = await uploader._handler.prepare(small_video, UploadKind.VIDEO)
            session = await uploader._handler.start_session(task)
            await log.update_status(session, SessionStatus.UPLOADING)
            assert [s.id for s in await uploader.active_sessions()] == [session.id]

            now[0] += timedelta(seconds=config.stale_after + 1)
            count = await uploader.sweep_stale_sessions()

            assert count == 1
            assert session.error_message == "Upload timed out"
            assert await uploader.active_sessions() == []


class SweepCountingLog(RecordingSessionLog):
    def __init__(self, failures=0, **kwargs):
        super().__init__(**kwargs)
        self.sweeps = 0
        self.failures = failures

    async def mark_stale_as_failed(self, max_age):
        self.sweeps += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("API error 503 on PATCH /rest/v1/upload_logs")
        return await super().mark_stale_as_failed(max_age)


async def _wait_until(condition, attempts=200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestPeriodicSweep:
    @pytest.mark.asyncio
    async def test_disabled_by_default(self, config, backend):
        log = SweepCountingLog()
        async with build_orchestrator(config, backend, session_log=log):
            await asyncio.sleep(0.02)
        assert log.sweeps == 0

    @pytest.mark.asyncio
    async def test_sweeps_stuck_sessions_while_open(self, config, backend, small_video):
        now = [datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)]
        log = SweepCountingLog(clock=lambda: now[0])
        sweeping = replace(config, stale_sweep_interval=0.01)

        async with build_orchestrator(sweeping, backend, session_log=log) as uploader:
            task = await uploader._handler.prepare(small_video, UploadKind.VIDEO)
            session = await uploader._handler.start_session(task)
            await log.update_status(session, SessionStatus.UPLOADING)

            now[0] += timedelta(seconds=config.stale_after + 1)
            await _wait_until(lambda: session.status is SessionStatus.FAILED)

        assert session.error_message == "Upload timed out"
        sweeps_at_exit = log.sweeps
        await asyncio.sleep(0.05)
        assert log.sweeps == sweeps_at_exit

    @pytest.mark.asyncio
    async def test_sweep_failure_keeps_loop_running(self, config, backend):
        log = SweepCountingLog(failures=2)
        sweeping = replace(config, stale_sweep_interval=0.01)

        async with build_orchestrator(sweeping, backend, session_log=log):
            await _wait_until(lambda: log.sweeps >= 3)

        assert log.failures == 0
