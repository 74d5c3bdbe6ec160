from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import inspect
import logging

from ..models import UploadKind

logger = logging.getLogger(__name__)


@dataclass
class LegProgress:
    """Latest known state of one leg, as seen by subscribers."""
    kind: UploadKind
    file_name: str
    overall: float = 0.0
    status: str = "pending"  # pending, compressing, uploading, completed, failed
    url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class AggregateProgress:
    """Read-only view across the legs of one record."""
    legs: Dict[UploadKind, LegProgress] = field(default_factory=dict)

    @property
    def overall(self) -> float:
        if not self.legs:
            return 0.0
        return sum(leg.overall for leg in self.legs.values()) / len(self.legs)


class EventEmitter:
    """
    Publish/subscribe channel for upload events.

    Layers publish (progress, stage transitions, terminal states) and callers
    subscribe, so reporting never sits on the control path. Listener errors are
    logged and dropped.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, callback: Callable) -> Callable[[], None]:
        """Subscribe to an event. Returns an unsubscribe function."""
        listeners = self._listeners.setdefault(event_name, [])
        if callback not in listeners:
            listeners.append(callback)
        return lambda: self.off(event_name, callback)

    def off(self, event_name: str, callback: Callable):
        """Unsubscribe from an event."""
        if callback in self._listeners.get(event_name, []):
            self._listeners[event_name].remove(callback)

    def has_listeners(self, event_name: str) -> bool:
        return bool(self._listeners.get(event_name))

    async def emit(self, event_name: str, *args, **kwargs):
        """Emit an event to all listeners, in subscription order."""
        for callback in self._listeners.get(event_name, [])[:]:
            try:
                result = callback(*args, **kwargs)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in event listener for {event_name}: {e}")
