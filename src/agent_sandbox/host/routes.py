"""Host control protocol endpoints."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from agent_sandbox.host.supervisor import ExecutionSession
from agent_sandbox.models.api import (
    ActionResponse,
    ErrorResponse,
    ExecuteRequest,
    HealthResponse,
    HeartbeatResponse,
    StatusResponse,
    ToolInfoResponse,
)
from agent_sandbox.models.events import encode_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["host"])


def _health_fields(request: Request) -> dict[str, Any]:
    state = request.app.state
    return {
        "status": "healthy",
        "uptime": int((time.monotonic() - state.started_at) * 1000),
        "request_count": state.request_count,
        "agent_running": state.agent.is_running,
        "tool_running": state.tool.is_running,
        "mode": state.settings.browser_mode,
        "endpoint": state.tool.endpoint,
    }


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(**_health_fields(request))


@router.get("/status", response_model=StatusResponse)
async def status(request: Request) -> StatusResponse:
    """Health plus heartbeat staleness and the listening port."""
    state = request.app.state
    watchdog = state.watchdog
    return StatusResponse(
        **_health_fields(request),
        heartbeat_enabled=state.settings.heartbeat_timeout_ms > 0,
        last_heartbeat_ms=watchdog.ms_since_last_ping(),
        missed_heartbeats=watchdog.missed_count,
        port=state.settings.api_port,
    )


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(request: Request) -> HeartbeatResponse:
    watchdog = request.app.state.watchdog
    watchdog.record_ping()
    return HeartbeatResponse(success=True, timeout_ms=watchdog.timeout_ms)


async def _event_stream(session: ExecutionSession) -> AsyncIterator[str]:
    # A client going away cancels this generator, not the session
    async for event in session.events():
        yield encode_event(event)


@router.post("/execute", responses={400: {"model": ErrorResponse}})
async def execute(body: ExecuteRequest, request: Request) -> StreamingResponse:
    """Start an agent session and stream its output until it exits."""
    logger.info(f"Execute requested (mode={body.mode.value}, {len(body.prompt)} chars)")
    session = await request.app.state.agent.start(body.prompt, body)
    return StreamingResponse(
        _event_stream(session),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Session-Id": session.session_id},
    )


@router.post("/stop", response_model=ActionResponse)
async def stop(request: Request) -> ActionResponse:
    success, message = await request.app.state.agent.stop()
    return ActionResponse(success=success, message=message)


@router.post("/tool/start", response_model=ActionResponse)
async def start_tool(request: Request) -> ActionResponse:
    success, message = await request.app.state.tool.start()
    return ActionResponse(success=success, message=message)


@router.post("/tool/stop", response_model=ActionResponse)
async def stop_tool(request: Request) -> ActionResponse:
    success, message = await request.app.state.tool.stop()
    return ActionResponse(success=success, message=message)


@router.get("/tool/info", response_model=ToolInfoResponse)
async def tool_info(request: Request) -> ToolInfoResponse:
    state = request.app.state
    return ToolInfoResponse(endpoint=state.tool.endpoint, mode=state.settings.browser_mode)
