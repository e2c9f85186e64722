"""Scheduler service that feeds due scheduled tasks to the runner."""

import asyncio
import logging

from agent_sandbox.services.runner import TaskRunner, TriggerStatus

logger = logging.getLogger(__name__)


class SchedulerService:
    """Polls the task store for due scheduled tasks at a fixed interval."""

    def __init__(self, runner: TaskRunner, check_interval: float = 60) -> None:
        self._runner = runner
        self._check_interval = check_interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Scheduler service started (every {self._check_interval}s)")

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler service stopped")

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop - checks for due tasks."""
        while self._running:
            try:
                await self.check_due_tasks()
            except Exception as e:
                logger.exception(f"Scheduler error: {e}")
            await asyncio.sleep(self._check_interval)

    async def check_due_tasks(self) -> int:
        """Trigger due tasks once; returns how many runs were started."""
        results = await self._runner.run_due_scheduled()
        started = sum(1 for r in results if r.status == TriggerStatus.STARTED)
        skipped = [r for r in results if r.status == TriggerStatus.AT_CAPACITY]
        if started:
            logger.info(f"Scheduler started {started} task(s)")
        if skipped:
            logger.info("Scheduler at capacity, remaining due tasks wait for the next check")
        return started
