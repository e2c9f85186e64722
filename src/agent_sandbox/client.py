"""Controller-side client for the execution host control protocol.

None of the calls raise on a down or misbehaving host. Status helpers return
``None`` or an unreachable ``HealthResult``; execution streams turn every
failure into a stderr event followed by ``ExitEvent(1)``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from agent_sandbox.models.api import (
    ActionResponse,
    ExecuteOptions,
    HealthResponse,
    HeartbeatResponse,
    ProtocolModel,
    StatusResponse,
    ToolInfoResponse,
)
from agent_sandbox.models.events import (
    EventDecoder,
    ExitEvent,
    HostEvent,
    StderrEvent,
    StdoutEvent,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=ProtocolModel)


@dataclass
class HealthResult:
    """Outcome of one health query; ``reachable`` is False for a dead host."""

    reachable: bool
    health: HealthResponse | None = None
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.reachable and self.health is not None and self.health.status == "healthy"


class ExecutionHandle:
    """A running ``HostClient.execute`` call."""

    def __init__(self, task: asyncio.Task[None], client: "HostClient") -> None:
        self._task = task
        self._client = client

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        await self._task

    async def cancel(self) -> None:
        """Abort the stream and ask the host to stop the session."""
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._client.stop()


class HostClient:
    """Protocol driver for one execution host."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3000,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = f"http://{host}:{port}"
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._heartbeat_task: asyncio.Task[None] | None = None

    async def aclose(self) -> None:
        await self.stop_heartbeat()
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, model: type[ModelT]
    ) -> ModelT | None:
        try:
            response = await self._client.request(method, path)
            response.raise_for_status()
            return model.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.warning(f"{method} {path} failed: {e}")
            return None

    # ------------------------------------------------------------------
    # Health and liveness
    # ------------------------------------------------------------------

    async def health_check(self) -> HealthResult:
        try:
            response = await self._client.get("/health")
            response.raise_for_status()
            return HealthResult(reachable=True, health=HealthResponse.model_validate(response.json()))
        except httpx.TransportError as e:
            return HealthResult(reachable=False, error=str(e) or type(e).__name__)
        except (httpx.HTTPStatusError, ValueError, ValidationError) as e:
            return HealthResult(reachable=True, error=str(e))

    async def get_status(self) -> StatusResponse | None:
        return await self._request("GET", "/status", StatusResponse)

    async def wait_until_healthy(self, max_attempts: int = 30, interval: float = 1.0) -> bool:
        """Poll ``/health`` until it answers healthy or attempts run out."""
        for attempt in range(1, max_attempts + 1):
            result = await self.health_check()
            if result.healthy:
                logger.info(f"Host {self.base_url} healthy after {attempt} attempt(s)")
                return True
            logger.debug(f"Host not ready ({attempt}/{max_attempts}): {result.error}")
            if attempt < max_attempts:
                await asyncio.sleep(interval)
        logger.warning(f"Host {self.base_url} not healthy after {max_attempts} attempts")
        return False

    async def send_heartbeat(self) -> HeartbeatResponse | None:
        return await self._request("POST", "/heartbeat", HeartbeatResponse)

    def start_heartbeat(self, interval: float) -> None:
        """Ping the host every ``interval`` seconds, the first time immediately."""
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(interval))

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            if await self.send_heartbeat() is None:
                logger.warning("Heartbeat failed (will retry)")
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def stream(
        self, prompt: str, options: ExecuteOptions | None = None
    ) -> AsyncIterator[HostEvent]:
        """Run ``prompt`` on the host and yield its events, ending with exit."""
        options = options or ExecuteOptions()
        body: dict[str, Any] = {
            "prompt": prompt,
            **options.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        decoder = EventDecoder()
        try:
            # Runs have no wall-clock limit, only connecting is bounded
            async with self._client.stream(
                "POST", "/execute", json=body, timeout=httpx.Timeout(self._timeout, read=None)
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode(errors="replace")
                    yield StderrEvent(f"Request error: HTTP {response.status_code} {detail}")
                    yield ExitEvent(1)
                    return
                async for text in response.aiter_text():
                    for event in decoder.feed(text):
                        yield event
                        if isinstance(event, ExitEvent):
                            return
                for event in decoder.flush():
                    yield event
                    if isinstance(event, ExitEvent):
                        return
        except httpx.HTTPError as e:
            logger.warning(f"Execute stream failed: {e}")
            yield StderrEvent(f"Connection error: {str(e) or type(e).__name__}")
            yield ExitEvent(1)
            return
        yield StderrEvent("Connection error: stream ended without an exit event")
        yield ExitEvent(1)

    def execute(
        self,
        prompt: str,
        options: ExecuteOptions | None = None,
        on_stdout: Callable[[str], Any] | None = None,
        on_stderr: Callable[[str], Any] | None = None,
        on_exit: Callable[[int | None], Any] | None = None,
    ) -> ExecutionHandle:
        """Callback form of ``stream``; ``on_exit`` is called at most once, last."""

        def dispatch(callback: Callable[[Any], Any] | None, value: Any) -> None:
            if callback is None:
                return
            try:
                callback(value)
            except Exception as e:
                logger.exception(f"Execute callback error: {e}")

        async def run() -> None:
            async with aclosing(self.stream(prompt, options)) as events:
                async for event in events:
                    if isinstance(event, StdoutEvent):
                        dispatch(on_stdout, event.data)
                    elif isinstance(event, StderrEvent):
                        dispatch(on_stderr, event.data)
                    elif isinstance(event, ExitEvent):
                        dispatch(on_exit, event.code)
                        return

        return ExecutionHandle(asyncio.create_task(run()), self)

    async def stop(self) -> ActionResponse | None:
        return await self._request("POST", "/stop", ActionResponse)

    # ------------------------------------------------------------------
    # Browser tool
    # ------------------------------------------------------------------

    async def start_tool(self) -> ActionResponse | None:
        return await self._request("POST", "/tool/start", ActionResponse)

    async def stop_tool(self) -> ActionResponse | None:
        return await self._request("POST", "/tool/stop", ActionResponse)

    async def tool_info(self) -> ToolInfoResponse | None:
        return await self._request("GET", "/tool/info", ToolInfoResponse)
