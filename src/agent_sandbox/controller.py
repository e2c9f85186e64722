"""Controller: owns the task store, host pool, runner and scheduler."""

import logging
from datetime import timedelta
from pathlib import Path

from agent_sandbox.config import Settings
from agent_sandbox.services.host_pool import HostPool
from agent_sandbox.services.runner import TaskRunner
from agent_sandbox.services.scheduler import SchedulerService
from agent_sandbox.services.task_store import TaskStore

logger = logging.getLogger(__name__)


class HostUnavailableError(RuntimeError):
    """An execution host never became healthy or has gone away."""


class Controller:
    """Builds the controller services and runs them for the process lifetime."""

    def __init__(self, settings: Settings | None = None, hosts: HostPool | None = None) -> None:
        self.settings = settings or Settings()
        self.hosts = hosts or HostPool.from_ports(
            self.settings.host_address,
            self.settings.host_ports,
            timeout=self.settings.request_timeout,
        )
        max_concurrency = self.settings.max_concurrency
        if max_concurrency > self.hosts.size:
            logger.warning(
                f"max_concurrency={max_concurrency} exceeds the {self.hosts.size} configured "
                f"host(s), limiting to {self.hosts.size}"
            )
            max_concurrency = self.hosts.size
        self.store = TaskStore(
            Path(self.settings.tasks_path),
            max_concurrency=max_concurrency,
            due_window=timedelta(minutes=self.settings.schedule_due_window),
        )
        self.runner = TaskRunner(self.store, self.hosts)
        self.scheduler = SchedulerService(
            self.runner, check_interval=self.settings.scheduler_interval
        )

    async def ensure_host(self) -> None:
        """Raise if any host cannot be reached; a gone host is not retried forever."""
        missing = await self.hosts.wait_until_healthy(
            max_attempts=self.settings.health_check_attempts,
            interval=self.settings.health_check_interval,
        )
        if missing:
            raise HostUnavailableError(f"Execution host not available: {', '.join(missing)}")

    async def start(self, with_scheduler: bool = True) -> None:
        logger.info(f"Controller starting up with {self.hosts.size} execution host(s)")
        await self.store.load()
        await self.ensure_host()
        self.hosts.start_heartbeat(self.settings.heartbeat_interval)
        if with_scheduler:
            await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.runner.stop_all()
        await self.hosts.aclose()
        await self.store.close()
        logger.info("Controller shutting down")
