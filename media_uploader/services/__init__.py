"""Services for media_uploader module."""
from .api_client import HTTPAPIClient
from .direct_storage import DirectStorageBackend
from .fingerprint import blake3_file
from .image_transcoder import ImageTranscoder, PillowImageCodec
from .platform import AlwaysOnline, EndpointConnectivityMonitor, HeadlessForeground, NoOpPowerHold
from .progress import ProgressReporter
from .records import RestRecordRepository
from .resilience import KeepAlive, ResilienceController
from .session_log import InMemoryUploadSessionLog, RestUploadSessionLog
from .transfer import TransferClient
from .video_transcoder import FFmpegVideoCodec, VideoTranscoder

__all__ = [
    "HTTPAPIClient",
    "DirectStorageBackend",
    "blake3_file",
    "ImageTranscoder",
    "PillowImageCodec",
    "AlwaysOnline",
    "EndpointConnectivityMonitor",
    "HeadlessForeground",
    "NoOpPowerHold",
    "ProgressReporter",
    "RestRecordRepository",
    "KeepAlive",
    "ResilienceController",
    "InMemoryUploadSessionLog",
    "RestUploadSessionLog",
    "TransferClient",
    "FFmpegVideoCodec",
    "VideoTranscoder",
]
