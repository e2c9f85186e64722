from .api import (
    ActionResponse,
    ErrorResponse,
    ExecuteOptions,
    ExecuteRequest,
    HealthResponse,
    HeartbeatResponse,
    StatusResponse,
    ToolInfoResponse,
)
from .events import (
    EventDecoder,
    ExitEvent,
    HostEvent,
    StderrEvent,
    StdoutEvent,
    encode_event,
)
from .task import (
    DataType,
    ExecutionMode,
    Frequency,
    InvalidTaskError,
    LogicType,
    OneTimeTrigger,
    OnGoingTrigger,
    RunStatus,
    ScheduledTrigger,
    Task,
    TaskRunResult,
    Trigger,
    TriggerType,
    merge_state,
)

__all__ = [
    # Host protocol schemas
    "ActionResponse",
    "ErrorResponse",
    "ExecuteOptions",
    "ExecuteRequest",
    "HealthResponse",
    "HeartbeatResponse",
    "StatusResponse",
    "ToolInfoResponse",
    # Execution events
    "EventDecoder",
    "ExitEvent",
    "HostEvent",
    "StderrEvent",
    "StdoutEvent",
    "encode_event",
    # Domain models
    "DataType",
    "ExecutionMode",
    "Frequency",
    "InvalidTaskError",
    "LogicType",
    "OneTimeTrigger",
    "OnGoingTrigger",
    "RunStatus",
    "ScheduledTrigger",
    "Task",
    "TaskRunResult",
    "Trigger",
    "TriggerType",
    "merge_state",
]
