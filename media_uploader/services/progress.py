"""
Progress Reporter - maps compression and transfer progress onto one value.

Each stage reports 0-100; the reporter weights them per upload kind and
publishes ProgressEvent on the "progress" channel. Overall progress never goes
backwards for the lifetime of one task, even when a retry restarts transfer.
"""
import logging
from typing import Optional

from ..models import Phase, ProgressEvent, UploadKind
from ..utils.events import EventEmitter

logger = logging.getLogger(__name__)

# Share of overall progress owned by compression when it runs.
COMPRESSION_WEIGHTS = {
    UploadKind.VIDEO: 0.45,
    UploadKind.THUMBNAIL: 0.30,
    UploadKind.IMAGE: 0.30,
}


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


class ProgressReporter:

    def __init__(
        self,
        kind: UploadKind,
        events: Optional[EventEmitter] = None,
        compresses: bool = True,
    ):
        self._kind = kind
        self._events = events
        self._compression_weight = COMPRESSION_WEIGHTS[kind] if compresses else 0.0
        self._overall = 0.0
        self._last_emitted: Optional[float] = None
        self._started = False

    @property
    def overall(self) -> float:
        return self._overall

    @property
    def compression_weight(self) -> float:
        return self._compression_weight

    def skip_compression(self) -> None:
        """Give transfer the whole range; only valid before anything was reported."""
        if not self._started:
            self._compression_weight = 0.0

    async def compression(self, value: float) -> None:
        await self._publish(Phase.COMPRESSING, _clamp(value), _clamp(value) * self._compression_weight)

    async def transfer(self, value: float) -> None:
        offset = self._compression_weight * 100.0
        await self._publish(
            Phase.UPLOADING,
            _clamp(value),
            offset + _clamp(value) * (1.0 - self._compression_weight),
        )

    async def complete(self) -> None:
        await self.transfer(100.0)

    async def _publish(self, phase: Phase, phase_value: float, overall: float) -> None:
        self._started = True
        self._overall = max(self._overall, round(overall, 2))
        if self._events is None:
            return
        if self._last_emitted is not None and self._overall == self._last_emitted and phase_value not in (0.0, 100.0):
            return
        self._last_emitted = self._overall
        await self._events.emit(
            "progress",
            ProgressEvent(overall=self._overall, phase=phase, phase_value=phase_value, leg=self._kind),
        )
