"""
Video transcoder - shrinks large videos before transfer.

Keeps the source container and codec family, caps width at 1920px and picks
a bitrate proportional to the output width. The encode is only kept when it
saves at least 10%; any failure is reported as CompressionError so the caller
can carry on with the original file.
"""
import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Set, Tuple

from ..errors import CompressionError
from ..models import MB, TranscodeResult
from ..protocols import ProgressCallback, VideoCodec, VideoInfo

logger = logging.getLogger(__name__)

MAX_OUTPUT_WIDTH = 1920
MIN_VIDEO_BITRATE = 2_000_000
BITRATE_PER_1000PX = 4_000_000
MIN_SIZE_REDUCTION = 0.10

# ffprobe codec name -> ffmpeg encoder, same family as the source.
ENCODERS = {
    "h264": "libx264",
    "hevc": "libx265",
    "vp8": "libvpx",
    "vp9": "libvpx-vp9",
    "av1": "libaom-av1",
    "mpeg4": "mpeg4",
}
DEFAULT_ENCODER = "libx264"


def target_dimensions(width: int, height: int, max_width: int = MAX_OUTPUT_WIDTH) -> Tuple[int, int]:
    """Scale down to max_width preserving aspect ratio; dimensions kept even for the encoder."""
    if width <= max_width:
        return width, height
    scaled_height = int(round(height * max_width / width))
    return max_width, scaled_height - (scaled_height % 2)


def target_bitrate(width: int) -> int:
    return max(MIN_VIDEO_BITRATE, int(width / 1000 * BITRATE_PER_1000PX))


def quality_parameter(source_size: int, width: int) -> int:
    """CRF for the encode: heavier compression for very large or very wide sources."""
    crf = 23
    if source_size > 100 * MB:
        crf += 3
    if width >= MAX_OUTPUT_WIDTH:
        crf += 2
    return crf


class FFmpegVideoCodec(VideoCodec):
    """VideoCodec driving the ffprobe/ffmpeg binaries as subprocesses."""

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe"):
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe
        self._active: Set[asyncio.subprocess.Process] = set()

    @property
    def available(self) -> bool:
        return shutil.which(self._ffmpeg) is not None and shutil.which(self._ffprobe) is not None

    async def probe(self, path: Path) -> VideoInfo:
        cmd = [
            self._ffprobe, "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height,codec_name:format=duration,bit_rate",
            "-of", "json",
            str(path),
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise CompressionError(f"ffprobe failed: {stderr.decode(errors='replace').strip()}")

        data = json.loads(stdout or b"{}")
        streams = data.get("streams") or []
        if not streams:
            raise CompressionError(f"No video stream in {path.name}")
        stream = streams[0]
        fmt = data.get("format") or {}
        return VideoInfo(
            width=int(stream["width"]),
            height=int(stream["height"]),
            codec=stream.get("codec_name"),
            duration=_to_float(fmt.get("duration")),
            bitrate=_to_int(fmt.get("bit_rate")),
        )

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
        duration = None
        if progress_callback:
            try:
                duration = (await self.probe(source)).duration
            except CompressionError:
                duration = None

        cmd = self._build_command(source, dest, width, height, bitrate, crf, codec)
        logger.debug("Running: %s", " ".join(cmd))
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        self._active.add(proc)
        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            async for raw in proc.stdout:
                seconds = _parse_progress_line(raw.decode(errors="replace"))
                if seconds is not None and duration and progress_callback:
                    await progress_callback(min(99.0, seconds / duration * 100))
            returncode = await proc.wait()
            stderr = await stderr_task
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            stderr_task.cancel()
            raise
        finally:
            self._active.discard(proc)

        if returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-3:]
            raise CompressionError(f"ffmpeg exited with {returncode}: {' | '.join(tail)}")

    def _build_command(
        self,
        source: Path,
        dest: Path,
        width: int,
        height: int,
        bitrate: int,
        crf: int,
        codec: Optional[str],
    ) -> List[str]:
        encoder = ENCODERS.get(codec or "", DEFAULT_ENCODER)
        cmd = [
            self._ffmpeg, "-y", "-hide_banner", "-nostats",
            "-i", str(source),
            "-vf", f"scale={width}:{height}",
            "-c:v", encoder,
            "-b:v", str(bitrate),
            "-maxrate", str(bitrate),
            "-bufsize", str(bitrate * 2),
        ]
        if encoder in ("libx264", "libx265"):
            cmd += ["-crf", str(crf), "-preset", "medium"]
        elif encoder.startswith("libvpx") or encoder == "libaom-av1":
            cmd += ["-crf", str(crf + 10)]
        cmd += ["-c:a", "copy", "-progress", "pipe:1", str(dest)]
        return cmd

    async def close(self) -> None:
        """Kill every encode still running when the owner shuts down."""
        running = [proc for proc in self._active if proc.returncode is None]
        for proc in running:
            proc.kill()
        for proc in running:
            await proc.wait()
        if running:
            logger.info("Killed %d active ffmpeg process(es)", len(running))
        self._active.clear()


class VideoTranscoder:
    """Applies the resolution/bitrate policy on top of a VideoCodec."""

    def __init__(self, codec: VideoCodec, min_reduction: float = MIN_SIZE_REDUCTION):
        self._codec = codec
        self._min_reduction = min_reduction

    async def transcode(
        self,
        source: Path,
        source_size: int,
        workdir: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Optional[TranscodeResult]:
        """
        Re-encode source into workdir.

        Returns None when the encode does not save enough to be worth sending.
        Raises CompressionError on any failure.
        """
        try:
            info = await self._codec.probe(source)
            width, height = target_dimensions(info.width, info.height)
            bitrate = target_bitrate(width)
            crf = quality_parameter(source_size, width)
            dest = workdir / f"{source.stem}_compressed{source.suffix}"

            logger.info(
                "Transcoding %s: %dx%d -> %dx%d, %d kbps, crf %d",
                source.name, info.width, info.height, width, height, bitrate // 1000, crf,
            )
            await self._codec.encode(source, dest, width, height, bitrate, crf, info.codec, progress_callback)
            output_size = dest.stat().st_size
        except CompressionError:
            raise
        except Exception as exc:
            raise CompressionError(f"Video transcoding failed for {source.name}: {exc}") from exc

        if progress_callback:
            await progress_callback(100)

        if output_size > source_size * (1 - self._min_reduction):
            logger.info(
                "Transcoded %s is %d bytes vs %d source, less than %d%% smaller; keeping original",
                source.name, output_size, source_size, int(self._min_reduction * 100),
            )
            dest.unlink(missing_ok=True)
            return None

        return TranscodeResult(
            path=dest,
            output_bytes=output_size,
            width=width,
            height=height,
            transcoded=True,
        )


def _parse_progress_line(line: str) -> Optional[float]:
    """Seconds encoded so far, from an ffmpeg ``-progress`` key=value line."""
    key, _, value = line.strip().partition("=")
    if key in ("out_time_ms", "out_time_us"):
        micros = _to_int(value)
        return micros / 1_000_000 if micros is not None else None
    return None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
