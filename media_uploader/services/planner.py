"""
Planning rules: whether to transcode, and how to split the transfer.

Both planners are pure functions of kind and size.
"""
import math
import uuid
from typing import Optional

from ..errors import ValidationError
from ..models import MB, ChunkPlan, CompressionPlan, UploadKind

VIDEO_TRANSCODE_THRESHOLD = 20 * MB
MAX_VIDEO_BYTES = 500 * MB
MAX_IMAGE_BYTES = 5 * MB
IMAGE_BYTE_BUDGET = 5 * MB
THUMBNAIL_BYTE_BUDGET = 5 * MB

LARGE_FILE_THRESHOLD = 50 * MB
LARGE_FILE_CHUNK_SIZE = 3 * MB
DEFAULT_CHUNK_SIZE = 5 * MB

THUMBNAIL_DIMENSIONS = (800, 600, 500, 400, 300)
IMAGE_DIMENSIONS = (1920, 1080)

ALLOWED_VIDEO_TYPES = {"video/mp4", "video/webm", "video/quicktime", "video/x-msvideo", "video/3gpp"}
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp", "image/gif"}


def plan_compression(kind: UploadKind, size: int) -> CompressionPlan:
    """Decide whether transcoding runs and which budget applies."""
    if kind is UploadKind.VIDEO:
        return CompressionPlan(
            should_transcode=size >= VIDEO_TRANSCODE_THRESHOLD,
            max_accepted_bytes=MAX_VIDEO_BYTES,
        )
    if kind is UploadKind.THUMBNAIL:
        return CompressionPlan(
            should_transcode=True,
            byte_budget=THUMBNAIL_BYTE_BUDGET,
            dimension_budget=THUMBNAIL_DIMENSIONS,
            max_accepted_bytes=MAX_IMAGE_BYTES,
        )
    return CompressionPlan(
        should_transcode=True,
        byte_budget=IMAGE_BYTE_BUDGET,
        dimension_budget=IMAGE_DIMENSIONS,
        max_accepted_bytes=MAX_IMAGE_BYTES,
    )


def validate_mime_type(kind: UploadKind, mime_type: str) -> None:
    allowed = ALLOWED_VIDEO_TYPES if kind is UploadKind.VIDEO else ALLOWED_IMAGE_TYPES
    if mime_type not in allowed:
        raise ValidationError(f"File type not allowed for {kind.value}: {mime_type}")


def validate_final_size(plan: CompressionPlan, size: int) -> None:
    if size <= 0:
        raise ValidationError("File is empty")
    if plan.max_accepted_bytes is not None and size > plan.max_accepted_bytes:
        raise ValidationError(
            f"File size {size / MB:.1f} MB exceeds maximum of {plan.max_accepted_bytes // MB} MB"
        )


def plan_chunks(size: int, session_id: Optional[str] = None) -> ChunkPlan:
    """Single shot when the file fits one chunk; otherwise a shared session id."""
    chunk_size = LARGE_FILE_CHUNK_SIZE if size > LARGE_FILE_THRESHOLD else DEFAULT_CHUNK_SIZE
    total_chunks = max(1, math.ceil(size / chunk_size))
    if total_chunks == 1:
        return ChunkPlan(chunk_size=chunk_size, total_chunks=1)
    return ChunkPlan(
        chunk_size=chunk_size,
        total_chunks=total_chunks,
        session_id=session_id or uuid.uuid4().hex,
    )
