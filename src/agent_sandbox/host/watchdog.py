"""Liveness watchdog: the host exits on its own once the controller goes quiet."""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class WatchdogState(str, Enum):
    UNARMED = "unarmed"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    TERMINATED = "terminated"


def terminate_host() -> None:
    """Ask our own process to shut down cleanly.

    uvicorn handles SIGTERM by running the lifespan shutdown and exiting 0,
    which lets auto-remove container policies reclaim the sandbox.
    """
    os.kill(os.getpid(), signal.SIGTERM)


class LivenessWatchdog:
    """Tracks heartbeats and terminates the host after a grace period.

    Nothing is decided until the first ping arrives. Each check that finds
    the last ping older than the timeout counts one miss; a check that finds
    ``grace_count`` misses already counted terminates the host.
    """

    def __init__(
        self,
        timeout_ms: int = 30000,
        grace_count: int = 3,
        check_interval: float = 10.0,
        on_terminate: Callable[[], None] = terminate_host,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_ms = timeout_ms
        self.grace_count = grace_count
        self.check_interval = check_interval
        self._on_terminate = on_terminate
        self._clock = clock
        self.last_ping_at: float | None = None
        self.missed_count = 0
        self.terminated = False
        self._task: asyncio.Task[None] | None = None

    @property
    def armed(self) -> bool:
        return self.last_ping_at is not None

    @property
    def state(self) -> WatchdogState:
        if self.terminated:
            return WatchdogState.TERMINATED
        if not self.armed:
            return WatchdogState.UNARMED
        return WatchdogState.DEGRADED if self.missed_count else WatchdogState.HEALTHY

    def ms_since_last_ping(self) -> int | None:
        if self.last_ping_at is None:
            return None
        return int((self._clock() - self.last_ping_at) * 1000)

    def record_ping(self) -> None:
        if not self.armed:
            logger.info("First heartbeat received, watchdog armed")
        elif self.missed_count:
            logger.info(f"Heartbeat resumed after {self.missed_count} missed checks")
        self.last_ping_at = self._clock()
        self.missed_count = 0

    def check(self) -> WatchdogState:
        if self.terminated or not self.armed:
            return self.state
        gap_ms = self.ms_since_last_ping()
        if gap_ms is None or gap_ms <= self.timeout_ms:
            self.missed_count = 0
            return self.state
        if self.missed_count >= self.grace_count:
            logger.warning(
                f"No heartbeat for {gap_ms}ms after {self.missed_count} missed checks, terminating"
            )
            self.terminated = True
            self._on_terminate()
            return self.state
        self.missed_count += 1
        logger.warning(
            f"Heartbeat overdue by {gap_ms - self.timeout_ms}ms "
            f"(missed {self.missed_count}/{self.grace_count})"
        )
        return self.state

    def start(self) -> None:
        """Start the periodic check loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._check_loop())
            logger.info(
                f"Watchdog started: timeout={self.timeout_ms}ms "
                f"grace={self.grace_count} interval={self.check_interval}s"
            )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _check_loop(self) -> None:
        while not self.terminated:
            await asyncio.sleep(self.check_interval)
            try:
                self.check()
            except Exception as e:
                logger.exception(f"Watchdog check error: {e}")
