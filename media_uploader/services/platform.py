"""
Server-side implementations of the platform capability interfaces.

A process has no display to keep awake and no page visibility, so the power
hold is a no-op and the process always counts as backgrounded (heartbeats on).
Connectivity is judged by whether the upload endpoint accepts a TCP connection.
"""
import asyncio
import logging
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class NoOpPowerHold:
    """PowerHold that tracks acquire/release without touching the OS."""

    def __init__(self):
        self._held = False

    @property
    def is_held(self) -> bool:
        return self._held

    async def acquire(self) -> bool:
        self._held = True
        return True

    async def release(self) -> None:
        self._held = False


class AlwaysOnline:
    """ConnectivityMonitor for environments where the network is assumed up."""

    async def is_online(self) -> bool:
        return True

    async def wait_online(self) -> None:
        return None


class EndpointConnectivityMonitor:
    """
    Polls the endpoint host with a TCP connect.

    Usage:
        monitor = EndpointConnectivityMonitor("https://cdn.example.com/upload-api")
        if not await monitor.is_online():
            await monitor.wait_online()
    """

    def __init__(self, url: str, poll_interval: float = 5.0, connect_timeout: float = 3.0):
        parts = urlsplit(url)
        self._host = parts.hostname or "localhost"
        self._port = parts.port or (443 if parts.scheme == "https" else 80)
        self._poll_interval = poll_interval
        self._connect_timeout = connect_timeout

    async def is_online(self) -> bool:
        writer: Optional[asyncio.StreamWriter] = None
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._connect_timeout,
            )
            return True
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("Connectivity check to %s:%s failed: %s", self._host, self._port, e)
            return False
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass

    async def wait_online(self) -> None:
        while not await self.is_online():
            await asyncio.sleep(self._poll_interval)


class HeadlessForeground:
    """ForegroundMonitor for a process without a visible window."""

    def is_foreground(self) -> bool:
        return False
