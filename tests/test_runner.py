"""Tests for the TaskRunner orchestration."""

import asyncio
import sys
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agent_sandbox.client import HostClient
from agent_sandbox.host.app import create_app
from agent_sandbox.host.config import HostSettings
from agent_sandbox.host.watchdog import LivenessWatchdog
from agent_sandbox.models.events import ExitEvent, StderrEvent, StdoutEvent, encode_event
from agent_sandbox.models.task import (
    ExecutionMode,
    Frequency,
    OneTimeTrigger,
    OnGoingTrigger,
    RunStatus,
    ScheduledTrigger,
)
from agent_sandbox.services.host_pool import HostPool
from agent_sandbox.services.runner import TaskRunner, TriggerSource, TriggerStatus
from agent_sandbox.services.task_store import TaskStore


SLOW_AGENT = [
    sys.executable,
    "-c",
    "import sys, time; sys.stdin.read(); time.sleep(0.5); print('done')",
]


@pytest.fixture
def runner(task_store, host_pool):
    return TaskRunner(task_store, host_pool)


async def create_one_time(store: TaskStore, prompt: str = "ping", **kwargs):
    return await store.create(
        name="Ping",
        original_prompt="original",
        optimized_prompt=prompt,
        trigger=OneTimeTrigger(),
        **kwargs,
    )


class TestTrigger:
    """Tests for trigger admission outcomes."""

    @pytest.mark.asyncio
    async def test_end_to_end_success(self, task_store: TaskStore, make_host_client):
        """A one-time task run against a mock host records success."""
        seen = {}

        def handler(request):
            seen["body"] = request.content
            body = encode_event(StdoutEvent("pong")) + encode_event(ExitEvent(0))
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        client = make_host_client(handler)
        runner = TaskRunner(task_store, HostPool([client]))
        task = await create_one_time(task_store)

        result = await runner.trigger(task.id)
        assert result.status == TriggerStatus.STARTED
        outcome = await result.run

        stored = await task_store.get(task.id)
        assert outcome.success
        assert stored.last_run_status == RunStatus.SUCCESS
        assert stored.state == {}
        assert not await task_store.is_running(task.id)
        assert b'"prompt": "ping"' in seen["body"] or b'"prompt":"ping"' in seen["body"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_not_found(self, runner: TaskRunner):
        result = await runner.trigger("missing")
        assert result.status == TriggerStatus.NOT_FOUND
        assert result.run is None

    @pytest.mark.asyncio
    async def test_disabled_task_ignored(self, runner, task_store, fake_client):
        task = await create_one_time(task_store)
        await task_store.update(task.id, enabled=False)

        result = await runner.trigger(task.id)

        assert result.status == TriggerStatus.DISABLED
        assert fake_client.prompts == []
        assert await task_store.running_ids() == []

    @pytest.mark.asyncio
    async def test_at_capacity_starts_nothing(self, runner, task_store, fake_client):
        first = await create_one_time(task_store)
        second = await create_one_time(task_store)
        fake_client.gate = asyncio.Event()

        started = await runner.trigger(first.id)
        rejected = await runner.trigger(second.id)

        assert started.started
        assert rejected.status == TriggerStatus.AT_CAPACITY
        assert rejected.message == "Cannot run: at capacity"
        assert rejected.run is None

        fake_client.gate.set()
        await started.run
        assert fake_client.prompts == ["ping"]
        assert (await task_store.get(second.id)).last_run_status is None

    @pytest.mark.asyncio
    async def test_already_running(self, runner, task_store, fake_client):
        await task_store.set_max_concurrency(2)
        task = await create_one_time(task_store)
        fake_client.gate = asyncio.Event()

        first = await runner.trigger(task.id)
        again = await runner.trigger(task.id)

        assert again.status == TriggerStatus.ALREADY_RUNNING
        fake_client.gate.set()
        await first.run

    @pytest.mark.asyncio
    async def test_execute_options_carry_mode(self, runner, task_store, fake_client):
        task = await create_one_time(task_store, mode=ExecutionMode.ASK)
        result = await runner.trigger(task.id)
        await result.run
        assert fake_client.options[0].mode == ExecutionMode.ASK

    @pytest.mark.asyncio
    async def test_falls_back_to_original_prompt(self, runner, task_store, fake_client):
        task = await create_one_time(task_store, prompt="")
        await (await runner.trigger(task.id)).run
        assert fake_client.prompts == ["original"]


class TestRunOutcomes:
    """Tests for how stream outcomes are recorded."""

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_with_stderr(self, runner, task_store, fake_client):
        fake_client.events = [StdoutEvent("trying"), StderrEvent("agent crashed"), ExitEvent(2)]
        task = await create_one_time(task_store)

        outcome = await (await runner.trigger(task.id)).run

        assert not outcome.success
        assert outcome.output == "agent crashed"
        assert (await task_store.get(task.id)).last_run_status == RunStatus.FAILED
        assert await task_store.running_ids() == []

    @pytest.mark.asyncio
    async def test_transport_failure_is_a_failed_run(self, task_store, make_host_client):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_host_client(refuse)
        runner = TaskRunner(task_store, HostPool([client]))
        task = await create_one_time(task_store)

        outcome = await (await runner.trigger(task.id)).run

        assert outcome.output.startswith("Connection error:")
        assert (await task_store.get(task.id)).last_run_status == RunStatus.FAILED
        assert await task_store.running_ids() == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_state_updates_from_output(self, runner, task_store, fake_client):
        fake_client.events = [
            StdoutEvent('TASK_STATE: {"prices": [{"timestamp": "t1", "value": 5}]}\n'),
            ExitEvent(0),
        ]
        task = await create_one_time(task_store)

        await (await runner.trigger(task.id)).run
        await (await runner.trigger(task.id)).run

        stored = await task_store.get(task.id)
        assert stored.state == {"prices": [{"timestamp": "t1", "value": 5}]}

    @pytest.mark.asyncio
    async def test_block_detaches_without_stopping(self, runner, task_store, fake_client):
        fake_client.events = [
            StdoutEvent("Opening the site\n"),
            StdoutEvent("The page says: login required to continue\n"),
            StdoutEvent("never read"),
            ExitEvent(0),
        ]
        notices = []
        outputs = []

        async def on_blocked(notice):
            notices.append(notice)

        async def on_output(notice):
            outputs.append(notice.event)

        runner.on("task_blocked", on_blocked)
        runner.on("task_output", on_output)
        task = await create_one_time(task_store)

        outcome = await (await runner.trigger(task.id)).run

        assert outcome.blocked
        assert outcome.block_reason == "login"
        assert len(notices) == 1
        assert notices[0].type == "login"
        assert notices[0].hint
        assert StdoutEvent("never read") not in outputs
        assert fake_client.stop_calls == 0
        assert fake_client.closed_streams == 1
        assert (await task_store.get(task.id)).last_run_status == RunStatus.BLOCKED
        assert await task_store.running_ids() == []

    @pytest.mark.asyncio
    async def test_block_phrase_split_across_chunks(self, runner, task_store, fake_client):
        fake_client.events = [StdoutEvent("please verify you"), StdoutEvent(" are human"), ExitEvent(0)]
        task = await create_one_time(task_store)
        outcome = await (await runner.trigger(task.id)).run
        assert outcome.block_reason == "captcha"

    @pytest.mark.asyncio
    async def test_scheduled_task_stamped(self, runner, task_store, fake_client):
        fake_client.events = [ExitEvent(1)]
        task = await task_store.create(
            name="Daily",
            original_prompt="p",
            trigger=ScheduledTrigger(frequency=Frequency.DAILY, timing="09:00"),
        )

        await (await runner.trigger(task.id, TriggerSource.SCHEDULE)).run

        stored = await task_store.get(task.id)
        assert stored.trigger.last_scheduled_run is not None
        assert stored.last_run_status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_break_run(self, runner, task_store):
        async def broken(notice):
            raise RuntimeError("ui went away")

        runner.on("task_execute", broken)
        task = await create_one_time(task_store)
        outcome = await (await runner.trigger(task.id)).run
        assert outcome.success

    @pytest.mark.asyncio
    async def test_execute_notice(self, runner, task_store):
        notices = []

        async def on_execute(notice):
            notices.append(notice)

        runner.on("task_execute", on_execute)
        task = await create_one_time(task_store, start_url="https://shop.example.com")
        await (await runner.trigger(task.id)).run

        assert notices[0].task_id == task.id
        assert notices[0].prompt == "ping"
        assert notices[0].start_url == "https://shop.example.com"
        assert notices[0].use_new_tab is True


class TestCancellation:
    """Tests for stopping runs."""

    @pytest.mark.asyncio
    async def test_stop_releases_and_records(self, runner, task_store, fake_client):
        fake_client.gate = asyncio.Event()
        task = await create_one_time(task_store)
        result = await runner.trigger(task.id)
        await asyncio.sleep(0)

        assert await runner.stop(task.id)

        assert fake_client.stop_calls == 1
        assert await task_store.running_ids() == []
        stored = await task_store.get(task.id)
        assert stored.last_run_status == RunStatus.FAILED
        assert result.run.cancelled()
        assert runner.active_ids() == []

    @pytest.mark.asyncio
    async def test_stop_before_run_starts(self, runner, task_store, fake_client):
        """A run cancelled before its first step still releases its slot once."""
        task = await create_one_time(task_store)
        result = await runner.trigger(task.id)

        assert await runner.stop(task.id)

        assert await task_store.running_ids() == []
        assert (await task_store.get(task.id)).last_run_status == RunStatus.FAILED
        assert result.run.done()
        assert fake_client.prompts == []

    @pytest.mark.asyncio
    async def test_stop_unknown(self, runner):
        assert await runner.stop("nothing") is False

    @pytest.mark.asyncio
    async def test_release_exactly_once(self, task_store, host_pool, fake_client, monkeypatch):
        releases = []
        original = task_store.release

        async def counting_release(task_id):
            releases.append(task_id)
            return await original(task_id)

        monkeypatch.setattr(task_store, "release", counting_release)
        runner = TaskRunner(task_store, host_pool)
        await task_store.set_max_concurrency(4)

        ok = await create_one_time(task_store)
        failing = await create_one_time(task_store)
        cancelled = await create_one_time(task_store)

        await (await runner.trigger(ok.id)).run

        fake_client.events = [ExitEvent(1)]
        await (await runner.trigger(failing.id)).run

        fake_client.gate = asyncio.Event()
        await runner.trigger(cancelled.id)
        await asyncio.sleep(0)
        await runner.stop(cancelled.id)

        assert sorted(releases) == sorted([ok.id, failing.id, cancelled.id])


class TestTriggerSources:
    """Tests for domain visits and schedule polling."""

    @pytest.mark.asyncio
    async def test_domain_visit_triggers_matching(self, runner, task_store, fake_client):
        await task_store.set_max_concurrency(3)
        match = await task_store.create(
            name="m", original_prompt="p", trigger=OnGoingTrigger(domain="example.com")
        )
        await task_store.create(
            name="n", original_prompt="p", trigger=OnGoingTrigger(domain="other.com")
        )

        results = await runner.on_domain_visit("https://app.example.com/page")

        assert [r.task_id for r in results] == [match.id]
        await results[0].run

    @pytest.mark.asyncio
    async def test_domain_visit_stops_at_capacity(self, runner, task_store, fake_client):
        for name in ("a", "b", "c"):
            await task_store.create(
                name=name, original_prompt="p", trigger=OnGoingTrigger(domain="example.com")
            )
        fake_client.gate = asyncio.Event()

        results = await runner.on_domain_visit("https://example.com")

        assert [r.status for r in results] == [TriggerStatus.STARTED, TriggerStatus.AT_CAPACITY]
        fake_client.gate.set()
        await results[0].run

    @pytest.mark.asyncio
    async def test_run_due_scheduled(self, runner, task_store, local_morning):
        due = await task_store.create(
            name="due",
            original_prompt="p",
            trigger=ScheduledTrigger(
                frequency=Frequency.HOURLY,
                last_scheduled_run=local_morning - timedelta(hours=2),
            ),
        )
        await task_store.create(
            name="later",
            original_prompt="p",
            trigger=ScheduledTrigger(frequency=Frequency.DAILY, timing="17:00"),
        )

        results = await runner.run_due_scheduled(local_morning)

        assert [r.task_id for r in results] == [due.id]
        await results[0].run
        stored = await task_store.get(due.id)
        assert stored.trigger.last_scheduled_run > local_morning - timedelta(hours=2)


def host_app(tmp_path, name: str):
    """A real execution host app whose agent waits before answering."""
    work_dir = tmp_path / name
    work_dir.mkdir()
    settings = HostSettings(agent_command=SLOW_AGENT, work_dir=str(work_dir))
    tool = MagicMock()
    tool.is_running = False
    tool.endpoint = "http://127.0.0.1:9222"
    tool.start = AsyncMock(return_value=(True, "Tool started"))
    tool.stop = AsyncMock(return_value=(True, "Tool stopped"))
    watchdog = LivenessWatchdog(timeout_ms=0, on_terminate=MagicMock())
    return create_app(settings, tool=tool, watchdog=watchdog)


class TestHostIsolation:
    """Tests for leasing one execution host per run."""

    @pytest.mark.asyncio
    async def test_concurrent_runs_use_separate_hosts(self, task_store, make_fake_client):
        first_host, second_host = make_fake_client("a"), make_fake_client("b")
        first_host.gate = second_host.gate = asyncio.Event()
        runner = TaskRunner(task_store, HostPool([first_host, second_host]))
        await task_store.set_max_concurrency(2)
        first = await create_one_time(task_store, prompt="first")
        second = await create_one_time(task_store, prompt="second")

        a = await runner.trigger(first.id)
        b = await runner.trigger(second.id)
        await asyncio.sleep(0)

        assert a.started and b.started
        assert first_host.prompts == ["first"]
        assert second_host.prompts == ["second"]
        first_host.gate.set()
        await asyncio.gather(a.run, b.run)

    @pytest.mark.asyncio
    async def test_stop_only_reaches_own_host(self, task_store, make_fake_client):
        first_host, second_host = make_fake_client("a"), make_fake_client("b")
        first_host.gate = second_host.gate = asyncio.Event()
        pool = HostPool([first_host, second_host])
        runner = TaskRunner(task_store, pool)
        await task_store.set_max_concurrency(2)
        first = await create_one_time(task_store)
        second = await create_one_time(task_store)

        await runner.trigger(first.id)
        b = await runner.trigger(second.id)
        await asyncio.sleep(0)

        assert await runner.stop(first.id)

        assert first_host.stop_calls == 1
        assert second_host.stop_calls == 0
        assert runner.active_ids() == [second.id]
        assert pool.leased_ids() == [second.id]
        second_host.gate.set()
        outcome = await b.run
        assert outcome.success

    @pytest.mark.asyncio
    async def test_no_free_host_is_at_capacity(self, runner, task_store, fake_client):
        await task_store.set_max_concurrency(2)
        first = await create_one_time(task_store)
        second = await create_one_time(task_store)
        fake_client.gate = asyncio.Event()

        started = await runner.trigger(first.id)
        rejected = await runner.trigger(second.id)

        assert rejected.status == TriggerStatus.AT_CAPACITY
        assert await task_store.running_ids() == [first.id]
        fake_client.gate.set()
        await started.run

    @pytest.mark.asyncio
    async def test_blocked_run_keeps_its_host(self, runner, task_store, host_pool, fake_client):
        fake_client.events = [StdoutEvent("Please log in to continue\n"), ExitEvent(0)]
        blocked = await create_one_time(task_store)
        other = await create_one_time(task_store)

        outcome = await (await runner.trigger(blocked.id)).run

        assert outcome.blocked
        assert runner.blocked_ids() == [blocked.id]
        assert host_pool.leased_ids() == [blocked.id]
        assert (await runner.trigger(other.id)).status == TriggerStatus.AT_CAPACITY
        assert fake_client.stop_calls == 0

        assert await runner.stop(blocked.id)

        assert fake_client.stop_calls == 1
        assert host_pool.leased_ids() == []
        fake_client.events = [ExitEvent(0)]
        result = await runner.trigger(other.id)
        assert result.started
        await result.run

    @pytest.mark.asyncio
    async def test_retrigger_blocked_task_reuses_its_host(self, task_store, make_fake_client):
        first_host, second_host = make_fake_client("a"), make_fake_client("b")
        first_host.events = [StdoutEvent("Please log in to continue\n"), ExitEvent(0)]
        pool = HostPool([first_host, second_host])
        runner = TaskRunner(task_store, pool)
        task = await create_one_time(task_store)

        await (await runner.trigger(task.id)).run
        first_host.events = [ExitEvent(0)]
        outcome = await (await runner.trigger(task.id)).run

        assert outcome.success
        assert first_host.prompts == ["ping", "ping"]
        assert second_host.prompts == []
        assert pool.leased_ids() == []

    @pytest.mark.asyncio
    async def test_concurrent_runs_against_real_hosts(self, task_store, tmp_path):
        """Two overlapping runs on their own hosts both finish."""
        clients = [
            HostClient(host=name, transport=httpx.ASGITransport(app=host_app(tmp_path, name)))
            for name in ("sandbox-a", "sandbox-b")
        ]
        runner = TaskRunner(task_store, HostPool(clients))
        await task_store.set_max_concurrency(2)
        first = await create_one_time(task_store)
        second = await create_one_time(task_store)

        a = await runner.trigger(first.id)
        await asyncio.sleep(0.1)
        b = await runner.trigger(second.id)
        outcomes = await asyncio.gather(a.run, b.run)

        assert [o.success for o in outcomes] == [True, True]
        assert [o.output.strip() for o in outcomes] == ["done", "done"]
        for task in (first, second):
            assert (await task_store.get(task.id)).last_run_status == RunStatus.SUCCESS
        for client in clients:
            await client.aclose()
