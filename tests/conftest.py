"""Shared fakes for media_uploader tests."""
import asyncio
import io
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image

from media_uploader.models import MB, UploadConfig
from media_uploader.orchestrator import UploadOrchestrator
from media_uploader.protocols import EncodedImage, VideoInfo
from media_uploader.services.planner import plan_chunks
from media_uploader.services.session_log import InMemoryUploadSessionLog


class RecordingSleep:
    """Stands in for asyncio.sleep; records delays and only yields."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeConnectivity:
    def __init__(self, online=True):
        self.online = online
        self.wait_calls = 0

    async def is_online(self):
        return self.online

    async def wait_online(self):
        self.wait_calls += 1
        self.online = True


class FakePowerHold:
    def __init__(self):
        self.held = False
        self.acquire_calls = 0
        self.release_calls = 0

    @property
    def is_held(self):
        return self.held

    async def acquire(self):
        self.acquire_calls += 1
        self.held = True
        return True

    async def release(self):
        self.release_calls += 1
        self.held = False


class FakeForeground:
    def __init__(self, foreground=False):
        self.foreground = foreground

    def is_foreground(self):
        return self.foreground


class FakeBackend:
    """
    Scripted ITransferBackend.

    ``failures`` maps a prepared file name to exceptions raised by successive
    upload calls for that file; ``blocking`` file names wait until cancelled.
    """

    def __init__(self, failures=None, blocking=()):
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}
        self.blocking = set(blocking)
        self.calls = []
        self.deleted = []
        self.heartbeats = 0

    def plan(self, size, kind, session_id=None):
        return plan_chunks(size, session_id=session_id)

    async def upload(self, prepared, plan, timeout, start_chunk=0, on_chunk=None, progress_callback=None):
        self.calls.append(SimpleNamespace(prepared=prepared, plan=plan, timeout=timeout, start_chunk=start_chunk))
        if progress_callback:
            await progress_callback(0)
        if prepared.file_name in self.blocking:
            await asyncio.Event().wait()
        pending = self.failures.get(prepared.file_name)
        if pending:
            raise pending.pop(0)
        if progress_callback:
            await progress_callback(50)
            await progress_callback(100)
        return f"https://cdn.test/uploads/{prepared.file_name}"

    def calls_for(self, file_name):
        return [c for c in self.calls if c.prepared.file_name == file_name]

    async def delete(self, url):
        self.deleted.append(url)
        return True

    async def heartbeat(self):
        self.heartbeats += 1


class FakeVideoCodec:
    """VideoCodec writing an output of a scripted size."""

    def __init__(self, info=None, output_size=None, error=None):
        self.info = info or VideoInfo(width=3840, height=2160, codec="h264", duration=10.0)
        self.output_size = output_size
        self.error = error
        self.probe_calls = 0
        self.encode_calls = []
        self.closed = False

    async def probe(self, path):
        self.probe_calls += 1
        if self.error:
            raise self.error
        return self.info

    async def encode(self, source, dest, width, height, bitrate, crf, codec, progress_callback=None):
        self.encode_calls.append(SimpleNamespace(width=width, height=height, bitrate=bitrate, crf=crf, codec=codec))
        if progress_callback:
            await progress_callback(50)
        Path(dest).write_bytes(b"\0" * self.output_size)

    async def close(self):
        self.closed = True


class FakeImageCodec:
    """
    ImageCodec over plain (width, height) tuples.

    Encoded size is ``size_fn(max_edge, quality)``.
    """

    def __init__(self, width, height, size_fn, orientation_applied=False, load_error=None):
        self.width = width
        self.height = height
        self.size_fn = size_fn
        self.orientation_applied = orientation_applied
        self.load_error = load_error
        self.encodes = []
        self.rotations = []

    def load(self, path):
        if self.load_error:
            raise self.load_error
        return SimpleNamespace(size=(self.width, self.height)), self.orientation_applied

    def dimensions(self, image):
        return image.size

    def rotate(self, image, degrees):
        self.rotations.append(degrees)
        width, height = image.size
        return SimpleNamespace(size=(height, width))

    def encode(self, image, max_edge, quality):
        self.encodes.append((max_edge, quality))
        width, height = image.size
        scale = min(1.0, max_edge / max(width, height))
        size = self.size_fn(max_edge, quality)
        return EncodedImage(data=b"\0" * size, width=int(width * scale), height=int(height * scale))


class RecordingSessionLog(InMemoryUploadSessionLog):
    """In-memory session log that remembers every session it opened."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.created = []

    async def initialize(self, task, session_id):
        session = await super().initialize(task, session_id)
        self.created.append(session)
        return session


def build_orchestrator(config, backend, session_log=None, records=None, video_codec=None, image_codec=None,
                       connectivity=None, power_hold=None, foreground=None):
    return UploadOrchestrator(
        config,
        session_log=session_log if session_log is not None else RecordingSessionLog(),
        records=records,
        image_codec=image_codec,
        video_codec=video_codec or FakeVideoCodec(output_size=1000),
        power_hold=power_hold or FakePowerHold(),
        connectivity=connectivity or FakeConnectivity(),
        foreground=foreground or FakeForeground(True),
        backend=backend,
    )


async def wait_for_calls(backend, count=1, attempts=200):
    for _ in range(attempts):
        if len(backend.calls) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"backend saw {len(backend.calls)} upload call(s), expected {count}")


def write_jpeg(path, width, height, quality=90, pad_to=None, noise=True):
    """Write a JPEG; ``pad_to`` appends trailing bytes Pillow ignores on decode."""
    if noise:
        image = Image.effect_noise((width, height), 80).convert("RGB")
    else:
        image = Image.new("RGB", (width, height), (200, 120, 40))
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    data = buffer.getvalue()
    if pad_to is not None and len(data) < pad_to:
        data += b"\0" * (pad_to - len(data))
    Path(path).write_bytes(data)
    return path


@pytest.fixture
def config():
    return UploadConfig(upload_api_url="https://cdn.test/upload-api", retry_base_delay=0.0, network_settle_delay=0.0)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def small_video(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\1" * 4096)
    return path


@pytest.fixture
def thumbnail(tmp_path):
    return write_jpeg(tmp_path / "thumb.jpg", 300, 200, quality=95)


@pytest.fixture
def six_mb_thumbnail(tmp_path):
    return write_jpeg(tmp_path / "tall.jpg", 600, 900, quality=95, pad_to=6 * MB)
