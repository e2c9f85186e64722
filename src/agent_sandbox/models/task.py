"""Task model: triggers, run results and the state merge rule."""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar


class InvalidTaskError(ValueError):
    """Raised when task data cannot describe a runnable task."""


class TriggerType(str, Enum):
    ONE_TIME = "one-time"
    ON_GOING = "on-going"
    SCHEDULED = "scheduled"


class Frequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        return _FREQUENCY_INTERVALS[self]


_FREQUENCY_INTERVALS = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(weeks=1),
}


class DataType(str, Enum):
    UNIQUE = "unique"
    STREAM = "stream"


class LogicType(str, Enum):
    DOMAIN_DEPENDENT = "domain-dependent"
    DOMAIN_INDEPENDENT = "domain-independent"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


class ExecutionMode(str, Enum):
    ASK = "ask"
    AGENT = "agent"
    FULL_ACCESS = "full-access"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    """Attach the local zone to a naive datetime; aware values pass through."""
    return value if value.tzinfo is not None else value.astimezone()


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

_WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_TIMING_RE = re.compile(r"^(?:(?P<day>[A-Za-z]+)\s+)?(?P<hour>\d{1,2}):(?P<minute>\d{2})$")


@dataclass(frozen=True)
class Timing:
    """Parsed ``[Weekday ]HH:MM`` schedule timing."""

    hour: int
    minute: int
    weekday: int | None = None  # 0 = Monday

    @classmethod
    def parse(cls, value: str) -> "Timing":
        match = _TIMING_RE.match(value.strip())
        if not match:
            raise InvalidTaskError(f"Invalid timing {value!r}, expected HH:MM")
        hour, minute = int(match["hour"]), int(match["minute"])
        if hour > 23 or minute > 59:
            raise InvalidTaskError(f"Invalid timing {value!r}, out of range")
        weekday = None
        if match["day"]:
            day = match["day"][:3].lower()
            if day not in _WEEKDAYS:
                raise InvalidTaskError(f"Invalid weekday in timing {value!r}")
            weekday = _WEEKDAYS.index(day)
        return cls(hour=hour, minute=minute, weekday=weekday)

    def on_day_of(self, now: datetime) -> datetime:
        """The timing placed on the calendar day of ``now``."""
        return now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)


@dataclass
class OneTimeTrigger:
    type: ClassVar[TriggerType] = TriggerType.ONE_TIME

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass
class OnGoingTrigger:
    domain: str
    type: ClassVar[TriggerType] = TriggerType.ON_GOING

    def __post_init__(self) -> None:
        domain = (self.domain or "").strip().lower()
        domain = domain.removeprefix("*.").lstrip(".")
        if not domain:
            raise InvalidTaskError("On-going trigger requires a domain")
        self.domain = domain

    def matches(self, hostname: str) -> bool:
        hostname = hostname.lower()
        return hostname == self.domain or hostname.endswith("." + self.domain)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "domain": self.domain}


@dataclass
class ScheduledTrigger:
    frequency: Frequency
    timing: str | None = None
    last_scheduled_run: datetime | None = None
    type: ClassVar[TriggerType] = TriggerType.SCHEDULED

    def __post_init__(self) -> None:
        try:
            self.frequency = Frequency(self.frequency)
        except ValueError as e:
            raise InvalidTaskError(f"Unknown frequency {self.frequency!r}") from e
        if self.last_scheduled_run is not None:
            self.last_scheduled_run = as_aware(self.last_scheduled_run)
        if self.timing:
            parsed = Timing.parse(self.timing)
            if parsed.weekday is not None and self.frequency != Frequency.WEEKLY:
                raise InvalidTaskError("A weekday timing is only valid for weekly tasks")
        else:
            self.timing = None

    @property
    def parsed_timing(self) -> Timing | None:
        return Timing.parse(self.timing) if self.timing else None

    def is_due(self, now: datetime, window: timedelta) -> bool:
        """Whether the schedule should fire at ``now``.

        After a first run the fixed frequency interval governs. Before it, a
        task fires only inside ``[timing, timing + window)`` on the current
        day; without a timing it never fires on its own.
        """
        now = as_aware(now)
        if self.last_scheduled_run is not None:
            return now - self.last_scheduled_run >= self.frequency.interval
        timing = self.parsed_timing
        if timing is None:
            return False
        if timing.weekday is not None and now.weekday() != timing.weekday:
            return False
        scheduled = timing.on_day_of(now)
        return scheduled <= now < scheduled + window

    def next_run(self, now: datetime) -> datetime:
        """Projected next run time, for display only."""
        now = as_aware(now)
        if self.last_scheduled_run is not None:
            return self.last_scheduled_run + self.frequency.interval
        timing = self.parsed_timing
        if timing is None:
            return now + self.frequency.interval
        scheduled = timing.on_day_of(now)
        if timing.weekday is not None:
            scheduled += timedelta(days=(timing.weekday - now.weekday()) % 7)
            if scheduled <= now:
                scheduled += timedelta(weeks=1)
        elif scheduled <= now:
            scheduled += timedelta(days=1)
        return scheduled

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "frequency": self.frequency.value,
            "timing": self.timing,
            "last_scheduled_run": _format_datetime(self.last_scheduled_run),
        }


Trigger = OneTimeTrigger | OnGoingTrigger | ScheduledTrigger


def trigger_from_dict(data: dict[str, Any]) -> Trigger:
    kind = data.get("type")
    if kind == TriggerType.ONE_TIME:
        return OneTimeTrigger()
    if kind == TriggerType.ON_GOING:
        return OnGoingTrigger(domain=data.get("domain", ""))
    if kind == TriggerType.SCHEDULED:
        return ScheduledTrigger(
            frequency=data.get("frequency", ""),
            timing=data.get("timing"),
            last_scheduled_run=parse_datetime(data.get("last_scheduled_run")),
        )
    raise InvalidTaskError(f"Unknown trigger type {kind!r}")


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


@dataclass
class Task:
    """A stored, reproducible automation unit."""

    name: str
    original_prompt: str
    trigger: Trigger
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    optimized_prompt: str = ""
    start_url: str | None = None
    data_type: DataType = DataType.UNIQUE
    logic_type: LogicType = LogicType.DOMAIN_INDEPENDENT
    state: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    favorited: bool = False
    mode: ExecutionMode = ExecutionMode.AGENT
    created_at: datetime = field(default_factory=utcnow)
    last_run_at: datetime | None = None
    last_run_status: RunStatus | None = None

    @property
    def prompt(self) -> str:
        return self.optimized_prompt or self.original_prompt

    @property
    def uses_new_tab(self) -> bool:
        # On-going tasks act on the page the user is already looking at
        return not isinstance(self.trigger, OnGoingTrigger)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "original_prompt": self.original_prompt,
            "optimized_prompt": self.optimized_prompt,
            "start_url": self.start_url,
            "trigger": self.trigger.to_dict(),
            "data_type": self.data_type.value,
            "logic_type": self.logic_type.value,
            "state": self.state,
            "enabled": self.enabled,
            "favorited": self.favorited,
            "mode": self.mode.value,
            "created_at": _format_datetime(self.created_at),
            "last_run_at": _format_datetime(self.last_run_at),
            "last_run_status": self.last_run_status.value if self.last_run_status else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        try:
            status = data.get("last_run_status")
            return cls(
                id=data["id"],
                name=data["name"],
                original_prompt=data.get("original_prompt", ""),
                optimized_prompt=data.get("optimized_prompt", ""),
                start_url=data.get("start_url"),
                trigger=trigger_from_dict(data.get("trigger") or {}),
                data_type=DataType(data.get("data_type", DataType.UNIQUE.value)),
                logic_type=LogicType(
                    data.get("logic_type", LogicType.DOMAIN_INDEPENDENT.value)
                ),
                state=dict(data.get("state") or {}),
                enabled=data.get("enabled", True),
                favorited=data.get("favorited", False),
                mode=ExecutionMode(data.get("mode", ExecutionMode.AGENT.value)),
                created_at=parse_datetime(data.get("created_at")) or utcnow(),
                last_run_at=parse_datetime(data.get("last_run_at")),
                last_run_status=RunStatus(status) if status else None,
            )
        except InvalidTaskError:
            raise
        except (KeyError, ValueError) as e:
            raise InvalidTaskError(f"Malformed task record: {e}") from e


@dataclass
class TaskRunResult:
    """Outcome of one execution attempt."""

    success: bool = False
    blocked: bool = False
    block_reason: str | None = None
    output: str = ""
    state_updates: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> RunStatus:
        if self.blocked:
            return RunStatus.BLOCKED
        if self.success:
            return RunStatus.SUCCESS
        return RunStatus.FAILED


def _timestamp_of(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("timestamp") or None
    return None


def merge_state(existing: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge ``updates`` into a copy of ``existing``.

    Sequence values merge into an existing sequence: elements whose
    ``timestamp`` is already stored are dropped, everything else is appended.
    Any other value replaces what was stored under the key.
    """
    merged = dict(existing)
    for key, value in updates.items():
        current = merged.get(key)
        if not (isinstance(value, list) and isinstance(current, list)):
            merged[key] = value
            continue
        combined = list(current)
        seen = [stamp for stamp in map(_timestamp_of, current) if stamp is not None]
        for item in value:
            stamp = _timestamp_of(item)
            if stamp is not None:
                if stamp in seen:
                    continue
                seen.append(stamp)
            combined.append(item)
        merged[key] = combined
    return merged
