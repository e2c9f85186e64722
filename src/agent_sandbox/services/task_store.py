"""Task store: persistence, trigger due-ness and run slot admission."""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from agent_sandbox.models.task import (
    DataType,
    ExecutionMode,
    InvalidTaskError,
    LogicType,
    OnGoingTrigger,
    ScheduledTrigger,
    Task,
    TaskRunResult,
    Trigger,
    as_aware,
    merge_state,
    trigger_from_dict,
    utcnow,
)

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    """Aware wall-clock time; schedule timings are local."""
    return datetime.now().astimezone()


@dataclass
class UpcomingRun:
    task_id: str
    name: str
    next_run_at: datetime
    next_run_in: timedelta


def _coerce_trigger(value: Trigger | dict[str, Any]) -> Trigger:
    if isinstance(value, dict):
        return trigger_from_dict(value)
    return value


# Fields callers may patch through update(); run outcome fields are written
# only by record_run_result() and mark_scheduled_run().
_UPDATABLE_FIELDS = {
    "name": str,
    "original_prompt": str,
    "optimized_prompt": str,
    "start_url": lambda v: v or None,
    "trigger": _coerce_trigger,
    "data_type": DataType,
    "logic_type": LogicType,
    "state": dict,
    "enabled": bool,
    "favorited": bool,
    "mode": ExecutionMode,
}


class TaskStore:
    """Single source of truth for Task records and run slots.

    Every mutation rewrites the JSON document before returning. Callers get
    copies, never the stored objects.
    """

    def __init__(
        self,
        storage_path: Path | str,
        max_concurrency: int = 1,
        due_window: timedelta = timedelta(minutes=5),
    ) -> None:
        self._storage_path = Path(storage_path)
        self._tasks: dict[str, Task] = {}
        self._running: set[str] = set()
        self._max_concurrency = max(1, int(max_concurrency))
        self._due_window = due_window
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Load tasks from the JSON document, starting fresh if it is unusable."""
        async with self._lock:
            self._tasks.clear()
            if not self._storage_path.exists():
                logger.info("No tasks file found, starting fresh")
                return
            try:
                data = json.loads(self._storage_path.read_text())
            except (OSError, ValueError) as e:
                logger.error(f"Failed to read tasks from {self._storage_path}: {e}")
                return
            if not isinstance(data, list):
                logger.error(f"Tasks file {self._storage_path} does not hold a list")
                return
            for item in data:
                try:
                    task = Task.from_dict(item)
                except (InvalidTaskError, TypeError) as e:
                    logger.warning(f"Skipping unreadable task record: {e}")
                    continue
                self._tasks[task.id] = task
            logger.info(f"Loaded {len(self._tasks)} tasks from {self._storage_path}")

    async def close(self) -> None:
        async with self._lock:
            if self._running:
                logger.warning(
                    f"Closing task store with {len(self._running)} runs still admitted"
                )
            self._running.clear()

    def _save(self) -> None:
        # Caller holds the lock
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        data = [task.to_dict() for task in self._tasks.values()]
        self._storage_path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        original_prompt: str,
        trigger: Trigger | dict[str, Any],
        optimized_prompt: str = "",
        start_url: str | None = None,
        data_type: DataType = DataType.UNIQUE,
        logic_type: LogicType = LogicType.DOMAIN_INDEPENDENT,
        mode: ExecutionMode = ExecutionMode.AGENT,
    ) -> Task:
        task = Task(
            name=name,
            original_prompt=original_prompt,
            optimized_prompt=optimized_prompt,
            trigger=_coerce_trigger(trigger),
            start_url=start_url or None,
            data_type=DataType(data_type),
            logic_type=LogicType(logic_type),
            mode=ExecutionMode(mode),
        )
        async with self._lock:
            self._tasks[task.id] = task
            self._save()
            logger.info(f"Created task: {task.id} ({task.name})")
            return copy.deepcopy(task)

    async def get(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    async def list_tasks(self) -> list[Task]:
        async with self._lock:
            return copy.deepcopy(list(self._tasks.values()))

    async def update(self, task_id: str, **changes: Any) -> Task | None:
        """Apply a partial patch; returns None when the task does not exist."""
        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise InvalidTaskError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        coerced = {
            name: _UPDATABLE_FIELDS[name](value) for name, value in changes.items()
        }
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task:
                return None
            for name, value in coerced.items():
                setattr(task, name, value)
            self._save()
            logger.info(f"Updated task: {task_id}")
            return copy.deepcopy(task)

    async def delete(self, task_id: str) -> bool:
        async with self._lock:
            if task_id not in self._tasks:
                return False
            del self._tasks[task_id]
            self._save()
            logger.info(f"Deleted task: {task_id}")
            return True

    async def toggle_favorite(self, task_id: str) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task:
                return None
            task.favorited = not task.favorited
            self._save()
            return copy.deepcopy(task)

    async def favorited(self) -> list[Task]:
        async with self._lock:
            tasks = [t for t in self._tasks.values() if t.favorited]
            return copy.deepcopy(sorted(tasks, key=lambda t: t.name.lower()))

    async def running_tasks(self) -> list[Task]:
        async with self._lock:
            tasks = [self._tasks[i] for i in self._running if i in self._tasks]
            return copy.deepcopy(tasks)

    # ------------------------------------------------------------------
    # Trigger evaluation
    # ------------------------------------------------------------------

    async def tasks_due_for_domain(self, url: str) -> list[Task]:
        """Enabled on-going tasks whose domain matches the host of ``url``."""
        try:
            hostname = urlsplit(url).hostname
        except ValueError:
            hostname = None
        if not hostname:
            return []
        async with self._lock:
            due = [
                task
                for task in self._tasks.values()
                if task.enabled
                and isinstance(task.trigger, OnGoingTrigger)
                and task.trigger.matches(hostname)
            ]
            return copy.deepcopy(due)

    async def tasks_due_by_schedule(self, now: datetime | None = None) -> list[Task]:
        now = as_aware(now) if now else local_now()
        async with self._lock:
            due = [
                task
                for task in self._tasks.values()
                if task.enabled
                and isinstance(task.trigger, ScheduledTrigger)
                and task.trigger.is_due(now, self._due_window)
            ]
            return copy.deepcopy(due)

    async def upcoming_schedule(self, now: datetime | None = None) -> list[UpcomingRun]:
        """Projected next runs for enabled scheduled tasks that are not running."""
        now = as_aware(now) if now else local_now()
        async with self._lock:
            upcoming = []
            for task in self._tasks.values():
                if not task.enabled or task.id in self._running:
                    continue
                if not isinstance(task.trigger, ScheduledTrigger):
                    continue
                next_run_at = task.trigger.next_run(now)
                upcoming.append(
                    UpcomingRun(
                        task_id=task.id,
                        name=task.name,
                        next_run_at=next_run_at,
                        next_run_in=max(next_run_at - now, timedelta(0)),
                    )
                )
        upcoming.sort(key=lambda run: run.next_run_in)
        return upcoming

    async def mark_scheduled_run(self, task_id: str, at: datetime | None = None) -> bool:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task or not isinstance(task.trigger, ScheduledTrigger):
                return False
            task.trigger.last_scheduled_run = as_aware(at) if at else utcnow()
            self._save()
            return True

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def set_max_concurrency(self, value: int) -> int:
        async with self._lock:
            self._max_concurrency = max(1, int(value))
            logger.info(f"Max concurrency set to {self._max_concurrency}")
            return self._max_concurrency

    async def can_admit(self) -> bool:
        async with self._lock:
            return len(self._running) < self._max_concurrency

    async def admit(self, task_id: str) -> bool:
        """Occupy a run slot; False when at capacity or already running."""
        async with self._lock:
            if task_id in self._running:
                return False
            if len(self._running) >= self._max_concurrency:
                return False
            self._running.add(task_id)
            logger.debug(f"Admitted task {task_id} ({len(self._running)}/{self._max_concurrency})")
            return True

    async def release(self, task_id: str) -> bool:
        async with self._lock:
            if task_id not in self._running:
                logger.warning(f"Release of task {task_id} which holds no slot")
                return False
            self._running.discard(task_id)
            logger.debug(f"Released task {task_id} ({len(self._running)}/{self._max_concurrency})")
            return True

    async def is_running(self, task_id: str) -> bool:
        async with self._lock:
            return task_id in self._running

    async def running_ids(self) -> list[str]:
        async with self._lock:
            return sorted(self._running)

    # ------------------------------------------------------------------
    # Run outcomes
    # ------------------------------------------------------------------

    async def apply_state_update(self, task_id: str, updates: dict[str, Any]) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task:
                return None
            task.state = merge_state(task.state, copy.deepcopy(updates))
            self._save()
            return copy.deepcopy(task)

    async def record_run_result(self, task_id: str, result: TaskRunResult) -> Task | None:
        """Record a run outcome; the only writer of ``last_run_status``."""
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task:
                logger.warning(f"Run result for unknown task {task_id}")
                return None
            task.last_run_at = utcnow()
            task.last_run_status = result.status
            if result.state_updates:
                task.state = merge_state(task.state, copy.deepcopy(result.state_updates))
            self._save()
            logger.info(f"Task {task_id} finished: {result.status.value}")
            return copy.deepcopy(task)
