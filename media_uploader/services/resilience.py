"""
Resilience controller - timeout, retry with backoff, network gate, keep-alive.

Every transfer attempt runs through ``ResilienceController.run``: an explicit
bounded loop that waits for connectivity before each attempt, applies the
per-request timeout and sleeps ``base_delay * 2**retry`` between attempts.
``keep_alive()`` wraps a whole transfer with heartbeats and a power hold.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import describe_exception, is_retryable
from ..models import UploadConfig
from ..protocols import ConnectivityMonitor, ForegroundMonitor, ITransferBackend, PowerHold

logger = logging.getLogger(__name__)

T = TypeVar("T")

LONG_TRANSFER_CHUNKS = 10

Sleep = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, BaseException], Awaitable[None]]


class ResilienceController:

    def __init__(
        self,
        config: UploadConfig,
        connectivity: ConnectivityMonitor,
        power_hold: PowerHold,
        foreground: ForegroundMonitor,
        backend: ITransferBackend,
        sleep: Sleep = asyncio.sleep,
    ):
        self._config = config
        self._connectivity = connectivity
        self._power_hold = power_hold
        self._foreground = foreground
        self._backend = backend
        self._sleep = sleep

    def request_timeout(self, total_chunks: int) -> float:
        """Per-request ceiling; doubled for long chunk sequences."""
        timeout = self._config.request_timeout
        if total_chunks > LONG_TRANSFER_CHUNKS:
            timeout *= 2
        return timeout

    def backoff_delay(self, retry_index: int) -> float:
        return self._config.retry_base_delay * (2 ** retry_index)

    async def run(
        self,
        attempt: Callable[[float], Awaitable[T]],
        total_chunks: int = 1,
        on_retry: Optional[RetryCallback] = None,
        label: str = "upload",
    ) -> T:
        """
        Run attempt(timeout) until it succeeds or the retry ceiling is reached.

        Non-retryable errors propagate immediately. Waiting for connectivity
        does not consume retries.
        """
        timeout = self.request_timeout(total_chunks)
        retries = 0
        while True:
            await self._wait_for_network(label)
            try:
                return await attempt(timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not is_retryable(exc):
                    logger.error("[resilience] %s failed permanently: %s", label, describe_exception(exc))
                    raise
                if retries >= self._config.max_retries:
                    logger.error(
                        "[resilience] %s failed after %d attempts: %s",
                        label, retries + 1, describe_exception(exc),
                    )
                    raise
                delay = self.backoff_delay(retries)
                retries += 1
                logger.warning(
                    "[resilience] %s attempt %d failed (%s), retry %d/%d in %.0fs",
                    label, retries, describe_exception(exc), retries, self._config.max_retries, delay,
                )
                if on_retry:
                    await on_retry(retries, exc)
                await self._sleep(delay)

    async def _wait_for_network(self, label: str) -> None:
        if await self._connectivity.is_online():
            return
        logger.warning("[resilience] Offline, %s waiting for connectivity", label)
        await self._connectivity.wait_online()
        logger.info("[resilience] Connectivity restored, resuming %s", label)
        await self._sleep(self._config.network_settle_delay)

    def keep_alive(self) -> "KeepAlive":
        return KeepAlive(
            backend=self._backend,
            power_hold=self._power_hold,
            foreground=self._foreground,
            interval=self._config.heartbeat_interval,
            sleep=self._sleep,
        )


class KeepAlive:
    """
    Async context manager active for the duration of one transfer.

    Holds the power hold (re-requesting it when lost) and sends heartbeats
    while the process is not in the foreground. Everything is released on
    exit, whatever the outcome.
    """

    def __init__(
        self,
        backend: ITransferBackend,
        power_hold: PowerHold,
        foreground: ForegroundMonitor,
        interval: float,
        sleep: Sleep = asyncio.sleep,
    ):
        self._backend = backend
        self._power_hold = power_hold
        self._foreground = foreground
        self._interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.heartbeats_sent = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self):
        await self._acquire_hold()
        self._task = asyncio.create_task(self._loop())
        return self

    async def __aexit__(self, *args):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._power_hold.is_held:
            await self._power_hold.release()
            logger.debug("[resilience] Power hold released")

    async def _acquire_hold(self) -> None:
        try:
            acquired = await self._power_hold.acquire()
        except Exception as e:
            logger.warning("[resilience] Power hold request failed: %s", e)
            return
        if not acquired:
            logger.debug("[resilience] Power hold not granted")

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            if not self._power_hold.is_held:
                logger.info("[resilience] Power hold lost, requesting it again")
                await self._acquire_hold()
            if self._foreground.is_foreground():
                continue
            try:
                await self._backend.heartbeat()
                self.heartbeats_sent += 1
            except Exception as e:
                logger.warning("[resilience] Heartbeat failed: %s", e)
