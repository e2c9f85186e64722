"""Host control protocol request/response schemas."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agent_sandbox.models.task import ExecutionMode


class ProtocolModel(BaseModel):
    """Wire models use camelCase keys and accept field names too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(ProtocolModel):
    status: str
    uptime: int  # milliseconds
    request_count: int
    agent_running: bool
    tool_running: bool
    mode: str
    endpoint: str | None = None


class StatusResponse(HealthResponse):
    heartbeat_enabled: bool
    last_heartbeat_ms: int | None = None  # milliseconds since last ping
    missed_heartbeats: int = 0
    port: int


class HeartbeatResponse(ProtocolModel):
    success: bool
    timeout_ms: int
    message: str = "Heartbeat received"


class ActionResponse(ProtocolModel):
    success: bool
    message: str


class ToolInfoResponse(ProtocolModel):
    endpoint: str | None = None
    mode: str


class ExecuteOptions(ProtocolModel):
    mode: ExecutionMode = ExecutionMode.AGENT
    model: str | None = None
    work_dir: str | None = None
    pre_prompt: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class ExecuteRequest(ExecuteOptions):
    prompt: str = Field(min_length=1)


class ErrorResponse(ProtocolModel):
    error: str
