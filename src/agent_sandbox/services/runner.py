"""Task runner: turns a trigger into exactly one execution attempt."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from agent_sandbox.client import HostClient
from agent_sandbox.models.api import ExecuteOptions
from agent_sandbox.models.events import ExitEvent, HostEvent, StderrEvent, StdoutEvent
from agent_sandbox.models.task import ExecutionMode, ScheduledTrigger, Task, TaskRunResult
from agent_sandbox.services.host_pool import HostPool
from agent_sandbox.services.output import detect_block, extract_state_updates
from agent_sandbox.services.task_store import TaskStore

logger = logging.getLogger(__name__)


class TriggerSource(str, Enum):
    MANUAL = "manual"
    DOMAIN = "domain"
    SCHEDULE = "schedule"


class TriggerStatus(str, Enum):
    STARTED = "started"
    AT_CAPACITY = "at_capacity"
    DISABLED = "disabled"
    NOT_FOUND = "not_found"
    ALREADY_RUNNING = "already_running"


_TRIGGER_MESSAGES = {
    TriggerStatus.STARTED: "Task started",
    TriggerStatus.AT_CAPACITY: "Cannot run: at capacity",
    TriggerStatus.DISABLED: "Task is disabled",
    TriggerStatus.NOT_FOUND: "Task not found",
    TriggerStatus.ALREADY_RUNNING: "Task is already running",
}


@dataclass
class TriggerResult:
    status: TriggerStatus
    task_id: str
    run: "asyncio.Task[TaskRunResult] | None" = None

    @property
    def started(self) -> bool:
        return self.status == TriggerStatus.STARTED

    @property
    def message(self) -> str:
        return _TRIGGER_MESSAGES[self.status]


@dataclass
class TaskExecuteNotice:
    """Sent before the host call so the browsing context can be prepared."""

    task_id: str
    prompt: str
    mode: ExecutionMode
    name: str
    start_url: str | None = None
    use_new_tab: bool = False


@dataclass
class TaskBlockedNotice:
    """Sent when a run needs a human to get past a wall."""

    task_id: str
    type: str
    message: str
    detail: str
    hint: str


@dataclass
class TaskOutputNotice:
    task_id: str
    event: HostEvent


@dataclass
class TaskFinishedNotice:
    task_id: str
    result: TaskRunResult


Handler = Callable[[Any], Awaitable[None]]

# Enough of the previous chunk to catch a phrase split across two reads
_BLOCK_SCAN_OVERLAP = 200


class TaskRunner:
    """Admits, executes and records task runs.

    Events: ``task_execute``, ``task_output``, ``task_blocked`` and
    ``task_finished``. Handlers are awaited in registration order and their
    errors are logged, never raised.
    """

    def __init__(self, store: TaskStore, hosts: HostPool) -> None:
        self._store = store
        self._hosts = hosts
        self._handlers: dict[str, list[Handler]] = {}
        self._runs: dict[str, asyncio.Task[TaskRunResult]] = {}

    def on(self, event: str, handler: Handler) -> None:
        """Register an event handler."""
        self._handlers.setdefault(event, []).append(handler)

    async def _emit(self, event: str, payload: Any) -> None:
        for handler in self._handlers.get(event, []):
            try:
                await handler(payload)
            except Exception:
                logger.exception("Error in handler for event %s", event)

    def active_ids(self) -> list[str]:
        return sorted(self._runs)

    async def trigger(
        self, task_id: str, source: TriggerSource = TriggerSource.MANUAL
    ) -> TriggerResult:
        task = await self._store.get(task_id)
        if task is None:
            return TriggerResult(TriggerStatus.NOT_FOUND, task_id)
        if not task.enabled:
            return TriggerResult(TriggerStatus.DISABLED, task_id)
        if await self._store.is_running(task_id):
            return TriggerResult(TriggerStatus.ALREADY_RUNNING, task_id)
        if not await self._store.admit(task_id):
            logger.info(f"Task {task_id} not started ({source.value}): at capacity")
            return TriggerResult(TriggerStatus.AT_CAPACITY, task_id)
        client = await self._hosts.acquire(task_id)
        if client is None:
            await self._store.release(task_id)
            logger.info(f"Task {task_id} not started ({source.value}): no free execution host")
            return TriggerResult(TriggerStatus.AT_CAPACITY, task_id)

        logger.info(
            f"Starting task {task_id} ({task.name}) from {source.value} trigger on {client.base_url}"
        )
        run = asyncio.create_task(self._run(task, client))
        self._runs[task_id] = run
        return TriggerResult(TriggerStatus.STARTED, task_id, run)

    async def on_domain_visit(self, url: str) -> list[TriggerResult]:
        """Trigger on-going tasks matching the visited page."""
        results = []
        for task in await self._store.tasks_due_for_domain(url):
            result = await self.trigger(task.id, TriggerSource.DOMAIN)
            results.append(result)
            if result.status == TriggerStatus.AT_CAPACITY:
                break
        return results

    async def run_due_scheduled(self, now: datetime | None = None) -> list[TriggerResult]:
        """Trigger scheduled tasks that are due at ``now``."""
        results = []
        for task in await self._store.tasks_due_by_schedule(now):
            result = await self.trigger(task.id, TriggerSource.SCHEDULE)
            results.append(result)
            if result.status == TriggerStatus.AT_CAPACITY:
                break
        return results

    async def stop(self, task_id: str) -> bool:
        """Cancel a run and stop the session on the host it was leased.

        For a blocked task this closes the session left open for a human and
        returns its host to the pool.
        """
        run = self._runs.get(task_id)
        client = self._hosts.lease_for(task_id)
        if run is None:
            if client is None:
                return False
            await client.stop()
            await self._hosts.release(task_id)
            logger.info(f"Released host held by blocked task {task_id}")
            return True

        # Stop while the lease is still held so no other run's session is hit
        if client is not None:
            await client.stop()
        run.cancel()
        try:
            await run
        except asyncio.CancelledError:
            pass
        # A run cancelled before its first step never reached its own cleanup
        if self._runs.get(task_id) is run:
            del self._runs[task_id]
            task = await self._store.get(task_id)
            try:
                if task is not None:
                    await self._complete(task, TaskRunResult(output="Cancelled"))
            finally:
                await self._hosts.release(task_id)
                await self._store.release(task_id)
        return True

    def blocked_ids(self) -> list[str]:
        """Tasks whose blocked run still holds a host."""
        return [i for i in self._hosts.leased_ids() if i not in self._runs]

    async def stop_all(self) -> None:
        for task_id in list(self._runs):
            await self.stop(task_id)
        for task_id in self.blocked_ids():
            await self.stop(task_id)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _run(self, task: Task, client: HostClient) -> TaskRunResult:
        result = TaskRunResult(output="Cancelled")
        try:
            result = await self._execute(task, client)
            return result
        except asyncio.CancelledError:
            logger.info(f"Task {task.id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Task {task.id} run error: {e}")
            result = TaskRunResult(output=f"Run error: {e}")
            return result
        finally:
            try:
                await self._complete(task, result)
            finally:
                self._runs.pop(task.id, None)
                # A blocked run keeps its host for whoever takes over the session
                if not result.blocked:
                    await self._hosts.release(task.id)
                await self._store.release(task.id)

    async def _execute(self, task: Task, client: HostClient) -> TaskRunResult:
        await self._emit(
            "task_execute",
            TaskExecuteNotice(
                task_id=task.id,
                prompt=task.prompt,
                mode=task.mode,
                name=task.name,
                start_url=task.start_url,
                use_new_tab=task.uses_new_tab,
            ),
        )

        stdout: list[str] = []
        stderr: list[str] = []
        async with aclosing(client.stream(task.prompt, ExecuteOptions(mode=task.mode))) as events:
            async for event in events:
                await self._emit("task_output", TaskOutputNotice(task.id, event))
                if isinstance(event, StdoutEvent):
                    tail = stdout[-1][-_BLOCK_SCAN_OVERLAP:] if stdout else ""
                    stdout.append(event.data)
                    block = detect_block(tail + event.data)
                    if block:
                        # Leave the session alive for a human to take over
                        logger.warning(f"Task {task.id} blocked: {block.type.value}")
                        await self._emit(
                            "task_blocked",
                            TaskBlockedNotice(
                                task_id=task.id,
                                type=block.type.value,
                                message=block.message,
                                detail=block.detail,
                                hint=block.hint,
                            ),
                        )
                        return TaskRunResult(
                            blocked=True,
                            block_reason=block.type.value,
                            output=block.detail,
                        )
                elif isinstance(event, StderrEvent):
                    stderr.append(event.data)
                elif isinstance(event, ExitEvent):
                    output = "".join(stdout)
                    if event.code == 0:
                        return TaskRunResult(
                            success=True,
                            output=output,
                            state_updates=extract_state_updates(output),
                        )
                    return TaskRunResult(
                        output="".join(stderr).strip() or output or f"Exited with code {event.code}"
                    )
        # The client always ends a stream with an exit event
        return TaskRunResult(output="".join(stderr) or "Stream ended without exit")

    async def _complete(self, task: Task, result: TaskRunResult) -> None:
        await self._store.record_run_result(task.id, result)
        if isinstance(task.trigger, ScheduledTrigger):
            await self._store.mark_scheduled_run(task.id)
        await self._emit("task_finished", TaskFinishedNotice(task.id, result))
