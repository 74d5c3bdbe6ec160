"""Orchestrator data models."""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..models import UploadKind, UploadResult, UploadSessionRecord, UploadStatus, UploadTask


@dataclass
class LegState:
    """Per-leg bookkeeping kept across retries of one record upload."""
    kind: UploadKind
    path: Path
    task: Optional[UploadTask] = None
    session: Optional[UploadSessionRecord] = None
    uploaded: bool = False
    url: Optional[str] = None
    result: Optional[UploadResult] = None


@dataclass
class RecordUploadResult:
    """Result of a multi-leg record upload."""
    record_id: str
    status: UploadStatus
    legs: Dict[UploadKind, UploadResult] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == UploadStatus.SUCCESS

    @property
    def video_url(self) -> Optional[str]:
        leg = self.legs.get(UploadKind.VIDEO)
        return leg.url if leg else None

    @property
    def thumbnail_url(self) -> Optional[str]:
        leg = self.legs.get(UploadKind.THUMBNAIL)
        return leg.url if leg else None

    @property
    def failed_legs(self) -> Dict[UploadKind, UploadResult]:
        return {kind: r for kind, r in self.legs.items() if not r.success}
