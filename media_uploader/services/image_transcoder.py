"""
Image transcoder - fits an image into a byte budget.

Walks a quality x dimension ladder until an encode fits the budget, keeping
the smallest encode seen. Output is always portrait or square: embedded EXIF
orientation is applied first, then landscape images are rotated 90 degrees.
The result is never larger than the source; if nothing beats the source, the
source is returned untouched.
"""
import asyncio
import io
import logging
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

from PIL import Image, ImageOps

from ..errors import CompressionError
from ..models import TranscodeResult
from ..protocols import EncodedImage, ImageCodec, ProgressCallback

logger = logging.getLogger(__name__)

QUALITY_LEVELS = (0.85, 0.70, 0.55, 0.40, 0.25, 0.15, 0.10)
OUTPUT_MIME_TYPE = "image/jpeg"


class PillowImageCodec(ImageCodec):
    """ImageCodec backed by Pillow. Always encodes JPEG."""

    def load(self, path: Path) -> Tuple[Image.Image, bool]:
        with Image.open(path) as img:
            img.load()
            orientation = img.getexif().get(0x0112, 1)
            upright = ImageOps.exif_transpose(img)
        return upright, orientation not in (None, 1)

    def dimensions(self, image: Image.Image) -> Tuple[int, int]:
        return image.size

    def rotate(self, image: Image.Image, degrees: int) -> Image.Image:
        # PIL rotates counter-clockwise; negative degrees turn clockwise.
        return image.rotate(-degrees, expand=True)

    def encode(self, image: Image.Image, max_edge: int, quality: float) -> EncodedImage:
        frame = self._flatten(image)
        width, height = frame.size
        if max(width, height) > max_edge:
            frame = frame.copy()
            frame.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        frame.save(buffer, format="JPEG", quality=int(round(quality * 100)), optimize=True)
        return EncodedImage(data=buffer.getvalue(), width=frame.size[0], height=frame.size[1])

    @staticmethod
    def _flatten(image: Image.Image) -> Image.Image:
        if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[-1])
            return background
        if image.mode != "RGB":
            return image.convert("RGB")
        return image


class ImageTranscoder:
    """Quality/dimension ladder over an injected ImageCodec."""

    def __init__(self, codec: ImageCodec, quality_levels: Sequence[float] = QUALITY_LEVELS):
        self._codec = codec
        self._qualities = tuple(quality_levels)

    async def transcode(
        self,
        source: Path,
        source_size: int,
        byte_budget: int,
        dimension_levels: Sequence[int],
        workdir: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TranscodeResult:
        try:
            image, orientation_applied = await asyncio.to_thread(self._codec.load, source)
        except Exception as exc:
            raise CompressionError(f"Could not decode {source.name}: {exc}") from exc

        width, height = self._codec.dimensions(image)
        source_dims = (width, height)
        rotated = False
        if width > height:
            image = await asyncio.to_thread(self._codec.rotate, image, 90)
            rotated = True
            logger.debug("Rotated landscape image %s (%dx%d) to portrait", source.name, width, height)

        best: Optional[EncodedImage] = None
        total_steps = len(self._qualities) * len(dimension_levels)
        step = 0
        accepted: Optional[EncodedImage] = None

        for max_edge in dimension_levels:
            for quality in self._qualities:
                step += 1
                try:
                    encoded = await asyncio.to_thread(self._codec.encode, image, max_edge, quality)
                except Exception as exc:
                    raise CompressionError(f"Encoding {source.name} failed: {exc}") from exc

                size = len(encoded.data)
                logger.debug(
                    "Encoded %s at edge=%d quality=%.2f: %d bytes (budget %d)",
                    source.name, max_edge, quality, size, byte_budget,
                )
                if progress_callback:
                    await progress_callback(step / total_steps * 100)

                if size <= byte_budget and size <= source_size:
                    accepted = encoded
                    break
                if size < source_size and (best is None or size < len(best.data)):
                    best = encoded
            if accepted is not None:
                break

        chosen = accepted or best
        if progress_callback:
            await progress_callback(100)

        if chosen is None:
            logger.info("No encode of %s beat the source size, keeping original", source.name)
            return TranscodeResult(
                path=source,
                output_bytes=source_size,
                width=source_dims[0],
                height=source_dims[1],
                orientation_corrected=False,
                transcoded=False,
            )

        output = workdir / f"{source.stem}.jpg"
        await asyncio.to_thread(output.write_bytes, chosen.data)
        logger.info(
            "Compressed %s: %d -> %d bytes (%dx%d)",
            source.name, source_size, len(chosen.data), chosen.width, chosen.height,
        )
        return TranscodeResult(
            path=output,
            output_bytes=len(chosen.data),
            width=chosen.width,
            height=chosen.height,
            orientation_corrected=rotated or orientation_applied,
            transcoded=True,
            mime_type=OUTPUT_MIME_TYPE,
        )
