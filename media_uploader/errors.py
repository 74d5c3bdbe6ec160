"""Error taxonomy for the upload pipeline."""
from typing import Optional

# 408 Request Timeout and 429 Too Many Requests are worth another attempt.
RETRYABLE_CLIENT_STATUSES = {408, 429}


class UploadError(Exception):
    """Base class for upload pipeline errors."""


class ValidationError(UploadError):
    """Wrong MIME type or size over a hard ceiling. Never retried."""


class DuplicateUploadError(UploadError):
    """The session log already holds an identical in-flight or recent upload."""


class CompressionError(UploadError):
    """Transcoding failed; callers fall back to the original file."""


class TransientUploadError(UploadError):
    """Failure that may succeed on another attempt."""


class NetworkError(TransientUploadError):
    """Connection-level failure (reset, DNS, offline)."""


class UploadTimeoutError(TransientUploadError):
    """A single request exceeded its time ceiling."""


class ServerError(UploadError):
    """Non-success response from the storage endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None, permanent: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.permanent = permanent

    @classmethod
    def from_status(cls, status_code: int, message: str) -> "ServerError":
        permanent = 400 <= status_code < 500 and status_code not in RETRYABLE_CLIENT_STATUSES
        return cls(f"HTTP {status_code}: {message}", status_code=status_code, permanent=permanent)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransientUploadError):
        return True
    if isinstance(exc, ServerError):
        return not exc.permanent
    return False


def describe_exception(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return f"{type(exc).__name__}: {repr(exc)}"
