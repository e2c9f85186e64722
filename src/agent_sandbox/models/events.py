"""Execution events and their ``data: {json}`` stream framing."""

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "


@dataclass(frozen=True)
class StdoutEvent:
    data: str
    type = "stdout"


@dataclass(frozen=True)
class StderrEvent:
    data: str
    type = "stderr"


@dataclass(frozen=True)
class ExitEvent:
    """Terminal event; ``code`` is None when the process died from a signal."""

    code: int | None
    type = "exit"


HostEvent = StdoutEvent | StderrEvent | ExitEvent


def event_to_dict(event: HostEvent) -> dict[str, Any]:
    if isinstance(event, ExitEvent):
        return {"type": event.type, "code": event.code}
    return {"type": event.type, "data": event.data}


def event_from_dict(data: dict[str, Any]) -> HostEvent:
    kind = data.get("type")
    if kind == "stdout":
        return StdoutEvent(str(data.get("data", "")))
    if kind == "stderr":
        return StderrEvent(str(data.get("data", "")))
    if kind == "exit":
        code = data.get("code")
        return ExitEvent(int(code) if code is not None else None)
    raise ValueError(f"Unknown event type: {kind!r}")


def encode_event(event: HostEvent) -> str:
    return f"{DATA_PREFIX}{json.dumps(event_to_dict(event))}\n\n"


class EventDecoder:
    """Incremental decoder for the blank-line separated event stream.

    Text may arrive split at arbitrary points; ``feed`` returns only the
    events whose records are complete.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[HostEvent]:
        self._buffer += text.replace("\r\n", "\n")
        events: list[HostEvent] = []
        while "\n\n" in self._buffer:
            record, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_record(record)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[HostEvent]:
        """Decode whatever is left once the stream has ended."""
        record, self._buffer = self._buffer, ""
        event = self._parse_record(record)
        return [event] if event is not None else []

    def _parse_record(self, record: str) -> HostEvent | None:
        lines = [
            line[len(DATA_PREFIX):] if line.startswith(DATA_PREFIX) else line[5:]
            for line in record.split("\n")
            if line.startswith("data:")
        ]
        if not lines:
            return None
        payload = "\n".join(lines)
        try:
            return event_from_dict(json.loads(payload))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping malformed event record: {e}")
            return None
