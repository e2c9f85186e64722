"""Pytest configuration and fixtures for agent_sandbox tests."""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from agent_sandbox.client import HostClient
from agent_sandbox.models.events import ExitEvent, HostEvent, StdoutEvent
from agent_sandbox.services.host_pool import HostPool
from agent_sandbox.services.task_store import TaskStore


@pytest.fixture
def tasks_path(tmp_path):
    return tmp_path / "tasks.json"


@pytest.fixture
async def task_store(tasks_path):
    """Create a fresh, loaded TaskStore backed by a temp file."""
    store = TaskStore(tasks_path, max_concurrency=1, due_window=timedelta(minutes=5))
    await store.load()
    yield store
    await store.close()


@pytest.fixture
def local_morning():
    """A fixed, timezone-aware local time: Wednesday 2024-05-15 09:02."""
    return datetime(2024, 5, 15, 9, 2).astimezone()


class FakeHostClient:
    """Stands in for HostClient; replays scripted events per stream call."""

    def __init__(self, name: str = "sandbox", events: list[HostEvent] | None = None) -> None:
        self.base_url = f"http://{name}:3000"
        self.events = events if events is not None else [StdoutEvent("pong"), ExitEvent(0)]
        self.prompts: list[str] = []
        self.options = []
        self.stop_calls = 0
        self.closed_streams = 0
        self.closed = False
        self.gate: asyncio.Event | None = None

    async def stream(self, prompt, options=None):
        self.prompts.append(prompt)
        self.options.append(options)
        try:
            for event in self.events:
                if self.gate is not None:
                    await self.gate.wait()
                yield event
        finally:
            self.closed_streams += 1

    async def stop(self):
        self.stop_calls += 1
        return None

    async def aclose(self):
        self.closed = True


@pytest.fixture
def make_fake_client():
    """Factory for scripted stand-in host clients."""
    return FakeHostClient


@pytest.fixture
def fake_client():
    return FakeHostClient()


@pytest.fixture
def host_pool(fake_client):
    """A single-host pool backed by ``fake_client``."""
    return HostPool([fake_client])


@pytest.fixture
def make_host_client():
    """Factory for HostClients whose requests are answered by ``handler``."""

    def factory(handler, name: str = "sandbox") -> HostClient:
        return HostClient(host=name, port=3000, transport=httpx.MockTransport(handler))

    return factory
