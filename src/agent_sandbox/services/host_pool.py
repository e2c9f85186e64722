"""Pool of execution hosts, one leased per task run."""

import asyncio
import logging
from collections.abc import Iterable

from agent_sandbox.client import HostClient

logger = logging.getLogger(__name__)


class HostPool:
    """Leases execution hosts to task runs by task id.

    A host runs a single agent session, so two runs must never share one.
    Each lease is held until ``release``; a blocked run keeps its lease so the
    session it left open is not replaced by the next run.
    """

    def __init__(self, clients: Iterable[HostClient]) -> None:
        self._clients = list(clients)
        if not self._clients:
            raise ValueError("Host pool needs at least one host")
        self._free = list(self._clients)
        self._leases: dict[str, HostClient] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_ports(
        cls, address: str, ports: Iterable[int], timeout: float = 30.0
    ) -> "HostPool":
        return cls(HostClient(host=address, port=port, timeout=timeout) for port in ports)

    @property
    def size(self) -> int:
        return len(self._clients)

    @property
    def clients(self) -> list[HostClient]:
        return list(self._clients)

    # ── leases ──────────────────────────────────────────────────

    async def acquire(self, task_id: str) -> HostClient | None:
        """Lease a free host to ``task_id``; a task keeps a host it already holds."""
        async with self._lock:
            client = self._leases.get(task_id)
            if client is not None:
                return client
            if not self._free:
                logger.info(f"No free execution host for task {task_id}")
                return None
            client = self._free.pop(0)
            self._leases[task_id] = client
            logger.debug(f"Leased host {client.base_url} to task {task_id}")
            return client

    async def release(self, task_id: str) -> bool:
        async with self._lock:
            client = self._leases.pop(task_id, None)
            if client is None:
                return False
            self._free.append(client)
            logger.debug(f"Host {client.base_url} returned by task {task_id}")
            return True

    def lease_for(self, task_id: str) -> HostClient | None:
        return self._leases.get(task_id)

    def leased_ids(self) -> list[str]:
        return sorted(self._leases)

    # ── lifecycle ───────────────────────────────────────────────

    async def wait_until_healthy(self, max_attempts: int = 30, interval: float = 1.0) -> list[str]:
        """Wait for every host; returns the base URLs that never became healthy."""
        results = await asyncio.gather(
            *(c.wait_until_healthy(max_attempts, interval) for c in self._clients)
        )
        return [c.base_url for c, ok in zip(self._clients, results) if not ok]

    def start_heartbeat(self, interval: float) -> None:
        for client in self._clients:
            client.start_heartbeat(interval)

    async def aclose(self) -> None:
        for client in self._clients:
            await client.aclose()
        self._leases.clear()
        self._free = list(self._clients)
