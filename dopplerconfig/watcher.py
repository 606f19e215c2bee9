"""Background polling for configuration hot reload.

The watcher:
1. Waits for the poll interval (or a stop/shutdown signal)
2. Reloads the configuration
3. Counts consecutive failures and stops itself at the configured ceiling
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Generic, TypeVar

from pydantic import BaseModel

from dopplerconfig.bootstrap import DEFAULT_WATCH_INTERVAL
from dopplerconfig.loader import ChangeCallback, ConfigLoader
from dopplerconfig.observability.logging import get_logger
from dopplerconfig.observability.metrics import WATCHER_FAILURES

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def _seconds(interval: timedelta | float) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class PollingWatcher:
    """Runs a tick coroutine every interval in a single background task.

    A raising tick counts as a failure; a successful one resets the count.
    """

    def __init__(
        self,
        name: str,
        tick: Callable[[], Awaitable[object]],
        interval: timedelta | float = DEFAULT_WATCH_INTERVAL,
        max_failures: int = 0,
    ) -> None:
        """Initialize watcher.

        Args:
            name: Label used in logs and metrics
            tick: Coroutine function run once per interval
            interval: Poll interval (timedelta or seconds)
            max_failures: Consecutive failures before stopping (0 = never)
        """
        if _seconds(interval) <= 0:
            raise ValueError("watch interval must be positive")
        if max_failures < 0:
            raise ValueError("max_failures must be >= 0")

        self._name = name
        self._tick = tick
        self._interval = _seconds(interval)
        self._max_failures = max_failures
        self._failure_count = 0
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def interval(self) -> float:
        """Poll interval in seconds."""
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failure_count(self) -> int:
        """Consecutive reload failures since the last success."""
        return self._failure_count

    async def start(self, shutdown: asyncio.Event | None = None) -> None:
        """Start the polling loop.

        Args:
            shutdown: Optional event that stops the loop when set
        """
        if self.is_running:
            logger.warning("watcher_already_running", watcher=self._name)
            return

        self._stop_event = asyncio.Event()
        self._set_failures(0)
        self._task = asyncio.create_task(self._run(shutdown))

        logger.info(
            "watcher_started",
            watcher=self._name,
            interval_seconds=self._interval,
            max_failures=self._max_failures,
        )

    async def stop(self) -> None:
        """Stop the polling loop and wait for it to exit."""
        task = self._task
        if task is None:
            return

        self._stop_event.set()
        if not task.done():
            await asyncio.wait([task])
        self._task = None

    async def _run(self, shutdown: asyncio.Event | None) -> None:
        reason = "stopped"
        try:
            while not await self._wait(shutdown):
                try:
                    await self._tick()
                except Exception as e:
                    self._set_failures(self._failure_count + 1)
                    logger.warning(
                        "config_reload_failed",
                        watcher=self._name,
                        failure_count=self._failure_count,
                        error=str(e),
                    )
                    if self._max_failures and self._failure_count >= self._max_failures:
                        logger.error(
                            "watcher_max_failures_reached",
                            watcher=self._name,
                            failure_count=self._failure_count,
                        )
                        reason = "max_failures"
                        break
                else:
                    if self._failure_count:
                        logger.info("config_reload_recovered", watcher=self._name)
                    self._set_failures(0)
        except asyncio.CancelledError:
            reason = "cancelled"
            raise
        finally:
            logger.info("watcher_stopped", watcher=self._name, reason=reason)

    async def _wait(self, shutdown: asyncio.Event | None) -> bool:
        """Sleep one interval. Returns True if the loop should exit."""
        events = [self._stop_event]
        if shutdown is not None:
            events.append(shutdown)

        waiters = [asyncio.create_task(event.wait()) for event in events]
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self._interval, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        return bool(done)

    def _set_failures(self, count: int) -> None:
        self._failure_count = count
        WATCHER_FAILURES.labels(watcher=self._name).set(count)


class ConfigWatcher(PollingWatcher, Generic[T]):
    """Periodically reloads a ConfigLoader.

    Example:
        watcher = ConfigWatcher(loader, interval=timedelta(seconds=30), max_failures=5)
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        loader: ConfigLoader[T],
        *,
        interval: timedelta | float = DEFAULT_WATCH_INTERVAL,
        max_failures: int = 0,
    ) -> None:
        super().__init__(
            name=loader.model.__name__,
            tick=loader.reload,
            interval=interval,
            max_failures=max_failures,
        )
        self._loader = loader

    @property
    def loader(self) -> ConfigLoader[T]:
        return self._loader


async def watch(
    loader: ConfigLoader[T],
    *,
    interval: timedelta | float = DEFAULT_WATCH_INTERVAL,
    max_failures: int = 0,
    shutdown: asyncio.Event | None = None,
) -> ConfigWatcher[T]:
    """Create and start a watcher for a loader. Call ``stop()`` to end it."""
    watcher = ConfigWatcher(loader, interval=interval, max_failures=max_failures)
    await watcher.start(shutdown)
    return watcher


async def watch_with_callback(
    loader: ConfigLoader[T],
    callback: ChangeCallback,
    *,
    interval: timedelta | float = DEFAULT_WATCH_INTERVAL,
    max_failures: int = 0,
    shutdown: asyncio.Event | None = None,
) -> ConfigWatcher[T]:
    """Register a change callback, then create and start a watcher."""
    loader.on_change(callback)
    return await watch(
        loader, interval=interval, max_failures=max_failures, shutdown=shutdown
    )
