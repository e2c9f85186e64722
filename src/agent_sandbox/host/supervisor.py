"""Agent and browser tool process supervision for the execution host.

A host runs at most one agent process. Starting a new session terminates
the previous one. Output is delivered as an ordered event stream that ends
with exactly one ``ExitEvent``.
"""

import asyncio
import codecs
import logging
import os
import uuid
from collections.abc import AsyncIterator

from agent_sandbox.models.api import ExecuteOptions
from agent_sandbox.models.events import ExitEvent, HostEvent, StderrEvent, StdoutEvent
from agent_sandbox.models.task import ExecutionMode

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
TOOL_STOP_TIMEOUT = 5.0

MODE_GUARDRAILS = {
    ExecutionMode.ASK: "You are in READ-ONLY mode. Do not click, type, or modify anything.",
    ExecutionMode.AGENT: "Confirm before critical actions (payments, final submissions).",
    ExecutionMode.FULL_ACCESS: "",
}


def compose_prompt(
    prompt: str,
    mode: ExecutionMode = ExecutionMode.AGENT,
    pre_prompt: str | None = None,
) -> str:
    """Guardrail text for the mode, then the pre-prompt, then the instruction."""
    parts = [MODE_GUARDRAILS[ExecutionMode(mode)], pre_prompt, prompt]
    return "\n\n".join(part for part in parts if part)


def resolve_tool_endpoint(
    mode: str,
    cdp_port: int,
    external_endpoint: str | None = None,
) -> str | None:
    """Debugging endpoint the browser tool should attach to."""
    if mode == "headless":
        return f"http://127.0.0.1:{cdp_port}"
    return external_endpoint


class ExecutionSession:
    """One agent process and its ordered output events."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.process: asyncio.subprocess.Process | None = None
        self.exit_code: int | None = None
        self.finished = False
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._events: asyncio.Queue[HostEvent] = asyncio.Queue()
        self._done = asyncio.Event()
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)

    def emit_stdout(self, data: str) -> None:
        if self.finished or not data:
            return
        self._stdout.append(data)
        self._events.put_nowait(StdoutEvent(data))

    def emit_stderr(self, data: str) -> None:
        if self.finished or not data:
            return
        self._stderr.append(data)
        self._events.put_nowait(StderrEvent(data))

    def finish(self, code: int | None) -> None:
        """Emit the terminal exit event; later calls are ignored."""
        if self.finished:
            return
        self.exit_code = code
        self.finished = True
        self._events.put_nowait(ExitEvent(code))
        self._done.set()

    async def events(self) -> AsyncIterator[HostEvent]:
        """Yield events in order, ending after the exit event."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, ExitEvent):
                return

    async def wait(self) -> int | None:
        await self._done.wait()
        return self.exit_code


class AgentSupervisor:
    """Runs the agent command, one session at a time."""

    def __init__(self, command: list[str], work_dir: str | None = None) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        self._command = list(command)
        self._work_dir = work_dir
        self._session: ExecutionSession | None = None

    @property
    def active(self) -> ExecutionSession | None:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None and not self._session.finished

    async def start(self, prompt: str, options: ExecuteOptions | None = None) -> ExecutionSession:
        """Spawn a new agent session, replacing any current one."""
        options = options or ExecuteOptions()
        previous = self._session
        if previous is not None:
            logger.info(f"Replacing agent session {previous.session_id}")
            self._terminate(previous)

        session = ExecutionSession()
        self._session = session

        command = list(self._command)
        if options.model:
            command += ["--model", options.model]
        env = {**os.environ, **options.env}
        cwd = options.work_dir or self._work_dir

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
            )
        except OSError as e:
            logger.error(f"Failed to spawn agent process {command[0]}: {e}")
            session.emit_stderr(f"Process error: {e}")
            session.finish(1)
            self._clear(session)
            return session

        session.process = process
        logger.info(f"Agent session {session.session_id} started (pid {process.pid})")
        instruction = compose_prompt(prompt, options.mode, options.pre_prompt)
        session._watch_task = asyncio.create_task(self._watch(session, instruction))
        return session

    async def stop(self) -> tuple[bool, str]:
        session = self._session
        if session is None or session.finished or session.process is None:
            return False, "No agent process running"
        self._terminate(session)
        return True, "Agent process stopped"

    async def shutdown(self, timeout: float = TOOL_STOP_TIMEOUT) -> None:
        """Terminate the current session and wait for it to finish."""
        session = self._session
        if session is None:
            return
        self._terminate(session)
        try:
            await asyncio.wait_for(session.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Agent session {session.session_id} ignored SIGTERM, killing")
            if session.process and session.process.returncode is None:
                session.process.kill()

    def _terminate(self, session: ExecutionSession) -> None:
        process = session.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    def _clear(self, session: ExecutionSession) -> None:
        if self._session is session:
            self._session = None

    async def _watch(self, session: ExecutionSession, instruction: str) -> None:
        process = session.process
        assert process is not None
        returncode: int | None = None
        try:
            await asyncio.gather(
                self._feed(process, instruction),
                self._pump(process.stdout, session.emit_stdout),
                self._pump(process.stderr, session.emit_stderr),
            )
            returncode = await process.wait()
        except Exception as e:
            logger.exception(f"Agent session {session.session_id} failed: {e}")
            session.emit_stderr(f"Process error: {e}")
            returncode = 1
        finally:
            # Also reached on cancellation, so readers of events() always see an exit
            if not session.finished:
                if process.returncode is None:
                    self._terminate(session)
                # Negative return codes mean the process was killed by a signal
                code = returncode if returncode is not None and returncode >= 0 else None
                logger.info(f"Agent session {session.session_id} exited with {code}")
                session.finish(code)
            self._clear(session)

    @staticmethod
    async def _feed(process: asyncio.subprocess.Process, instruction: str) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write(instruction.encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Agent process closed its input before reading the prompt")
        finally:
            stdin.close()

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, emit) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                emit(decoder.decode(b"", final=True))
                return
            emit(decoder.decode(chunk))


class ToolSupervisor:
    """Lifecycle of the browser automation tool process."""

    def __init__(self, command: list[str], endpoint: str | None) -> None:
        self._command = list(command)
        self._endpoint = endpoint
        self._process: asyncio.subprocess.Process | None = None
        self._log_task: asyncio.Task[None] | None = None

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> tuple[bool, str]:
        if self.is_running:
            return True, "Tool already running"
        if not self._endpoint:
            return False, "No browser endpoint configured"
        command = [*self._command, "--cdp-endpoint", self._endpoint]
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.error(f"Failed to start tool {command[0]}: {e}")
            self._process = None
            return False, f"Failed to start tool: {e}"
        self._log_task = asyncio.create_task(self._log_output(self._process))
        logger.info(f"Tool started (pid {self._process.pid}) on {self._endpoint}")
        return True, "Tool started"

    async def stop(self) -> tuple[bool, str]:
        process = self._process
        if process is None or process.returncode is not None:
            self._process = None
            return True, "Tool not running"
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), TOOL_STOP_TIMEOUT)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning("Tool ignored SIGTERM, killing")
            process.kill()
            await process.wait()
        self._process = None
        if self._log_task is not None:
            await self._log_task
            self._log_task = None
        logger.info("Tool stopped")
        return True, "Tool stopped"

    @staticmethod
    async def _log_output(process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        async for line in process.stdout:
            logger.info(f"[tool] {line.decode(errors='replace').rstrip()}")
        code = await process.wait()
        logger.info(f"Tool exited with {code}")
