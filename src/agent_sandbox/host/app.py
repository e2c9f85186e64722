"""Execution host FastAPI application factory."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent_sandbox.host.config import HostSettings
from agent_sandbox.host.routes import router
from agent_sandbox.host.supervisor import AgentSupervisor, ToolSupervisor, resolve_tool_endpoint
from agent_sandbox.host.watchdog import LivenessWatchdog
from agent_sandbox.models.api import ErrorResponse

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(ErrorResponse(error=message).model_dump(by_alias=True), status_code=status_code)


def _validation_message(exc: RequestValidationError) -> str:
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part != "body") or "body"
        if error["type"] in ("missing", "string_too_short"):
            return f"{field} is required"
        return f"{field}: {error['msg']}"
    return "Invalid request"


def create_app(
    settings: HostSettings | None = None,
    agent: AgentSupervisor | None = None,
    tool: ToolSupervisor | None = None,
    watchdog: LivenessWatchdog | None = None,
) -> FastAPI:
    """Create the host application; collaborators may be injected for tests."""
    settings = settings or HostSettings()

    agent = agent or AgentSupervisor(settings.agent_command, work_dir=settings.work_dir)
    tool = tool or ToolSupervisor(
        settings.tool_command,
        resolve_tool_endpoint(
            settings.browser_mode, settings.cdp_port, settings.external_cdp_endpoint
        ),
    )
    watchdog = watchdog or LivenessWatchdog(
        timeout_ms=settings.heartbeat_timeout_ms,
        grace_count=settings.heartbeat_grace_count,
        check_interval=settings.watchdog_interval,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            f"Execution host starting up on port {settings.api_port} "
            f"(browser mode {settings.browser_mode})"
        )
        if settings.heartbeat_timeout_ms > 0:
            watchdog.start()
        else:
            logger.info("Heartbeat watchdog disabled")

        yield

        await watchdog.stop()
        await agent.shutdown()
        await tool.stop()
        logger.info("Execution host shutting down")

    host_app = FastAPI(
        title="Agent Sandbox Host",
        description="Runs one agent process at a time and streams its output",
        version="0.1.0",
        lifespan=lifespan,
    )

    host_app.state.settings = settings
    host_app.state.agent = agent
    host_app.state.tool = tool
    host_app.state.watchdog = watchdog
    host_app.state.started_at = time.monotonic()
    host_app.state.request_count = 0

    @host_app.middleware("http")
    async def count_and_allow_cors(request: Request, call_next) -> Response:
        request.app.state.request_count += 1
        if request.method == "OPTIONS":
            response: Response = Response(status_code=204)
        else:
            response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @host_app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code in (404, 405):
            return _error("Not found", 404)
        return _error(str(exc.detail), exc.status_code)

    @host_app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(_validation_message(exc), 400)

    @host_app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.url.path}: {exc}")
        return _error(str(exc), 500)

    host_app.include_router(router)

    return host_app
