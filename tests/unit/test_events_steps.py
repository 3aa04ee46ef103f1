"""
PropelAI Unit Tests: Event Bus and Durable Steps
================================================

Tests:
- Durable waits: match filters, timeouts, replay across bus instances
- Expiring a volume loop's waits by step prefix
- Cancellation observed by waiters and step runners
- Handler isolation (a crashing handler never reaches the sender)
- Step memoization and send-once triggers
"""

import asyncio
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from core.errors import JobCancelled
from core.events import TIMEOUT_MARKER, EventBus, EventName
from core.state import JobStatus, create_job
from checkpointing.step_runner import StepRunner


@pytest.fixture
async def seeded(store):
    await store.create_job(create_job("job-1", "acme"))
    return store


@pytest.fixture
def bus(seeded):
    return EventBus(seeded)


@pytest.fixture
def steps(seeded, bus):
    return StepRunner(seeded, bus)


# =============================================================================
# Durable Waits
# =============================================================================

@pytest.mark.unit
class TestDurableWaits:

    @pytest.mark.asyncio
    async def test_expect_then_send(self, bus):
        """A wait registered before the event receives its data"""
        pending = await bus.expect("job-1", "a1:assembly.wait", EventName.ASSEMBLY_COMPLETE, 5, match={"attempt": 1})
        await bus.send(EventName.ASSEMBLY_COMPLETE, {"job_id": "job-1", "attempt": 1, "success": True})

        assert await pending.result() == {"job_id": "job-1", "attempt": 1, "success": True}

    @pytest.mark.asyncio
    async def test_match_filters_other_scopes(self, bus, seeded):
        """An event for another volume leaves the wait open"""
        pending = await bus.expect("job-1", "v2_decision", EventName.VOLUME_DECISION, 5, match={"volume": 2})

        await bus.send(EventName.VOLUME_DECISION, {"job_id": "job-1", "volume": 1, "decision": "approved"})
        assert len(await seeded.list_open_waits("job-1")) == 1

        await bus.send(EventName.VOLUME_DECISION, {"job_id": "job-1", "volume": 2, "decision": "iterate"})
        data = await pending.result()
        assert data["decision"] == "iterate"

    @pytest.mark.asyncio
    async def test_timeout_returns_none_and_is_recorded(self, bus, seeded):
        """An expired wait yields None and stores the timeout marker"""
        pending = await bus.expect("job-1", "a1:scoring.wait", EventName.SCORING_COMPLETE, 0.05)

        assert await pending.result() is None
        wait = await seeded.get_wait("job-1", "a1:scoring.wait")
        assert wait.resolved
        assert wait.event_data == {TIMEOUT_MARKER: True}

    @pytest.mark.asyncio
    async def test_replay_on_new_bus(self, bus, seeded):
        """A wait resolved under one bus is replayed by a fresh bus on the same store"""
        pending = await bus.expect("job-1", "a1:data_approval", EventName.DATA_APPROVED, 5)
        await bus.send(EventName.DATA_APPROVED, {"job_id": "job-1", "approved": True})
        await pending.result()

        restarted = EventBus(seeded)
        replayed = await restarted.expect("job-1", "a1:data_approval", EventName.DATA_APPROVED, 5)
        assert (await replayed.result())["approved"] is True

    @pytest.mark.asyncio
    async def test_replayed_timeout_stays_a_timeout(self, bus, seeded):
        pending = await bus.expect("job-1", "a1:assembly.wait", EventName.ASSEMBLY_COMPLETE, 0.01)
        assert await pending.result() is None

        replayed = await EventBus(seeded).expect("job-1", "a1:assembly.wait", EventName.ASSEMBLY_COMPLETE, 5)
        assert await replayed.result() is None

    @pytest.mark.asyncio
    async def test_wait_for_registers_and_awaits(self, bus):
        async def send_later():
            await asyncio.sleep(0.01)
            await bus.send(EventName.DATA_APPROVED, {"job_id": "job-1", "approved": False})

        sender = asyncio.create_task(send_later())
        data = await bus.wait_for("job-1", "a1:data_approval", EventName.DATA_APPROVED, 5)
        await sender
        assert data["approved"] is False

    @pytest.mark.asyncio
    async def test_events_are_logged_in_order(self, bus, seeded):
        await bus.send(EventName.PREPARATION_START, {"job_id": "job-1", "attempt": 1})
        await bus.send(EventName.PREPARATION_COMPLETE, {"job_id": "job-1", "attempt": 1, "success": True})

        events = await seeded.list_events("job-1")
        assert [e["name"] for e in events] == [
            EventName.PREPARATION_START.value,
            EventName.PREPARATION_COMPLETE.value,
        ]
        assert len(await seeded.list_events("job-1", EventName.PREPARATION_START.value)) == 1

    @pytest.mark.asyncio
    async def test_expire_waits_by_prefix(self, bus, seeded):
        """Expired waits look like ordinary timeouts; other scopes stay open"""
        decision = await bus.expect("job-1", "v4_a1_i0_decision", EventName.VOLUME_DECISION, 5, match={"volume": 4})
        other = await bus.expect("job-1", "v3_a1_i0_decision", EventName.VOLUME_DECISION, 5, match={"volume": 3})

        expired = await bus.expire_waits("job-1", "v4_a1_")

        assert expired == ["v4_a1_i0_decision"]
        assert await decision.result() is None
        assert (await seeded.get_wait("job-1", "v4_a1_i0_decision")).event_data == {TIMEOUT_MARKER: True}
        assert [w.step_id for w in await seeded.list_open_waits("job-1")] == ["v3_a1_i0_decision"]

        # A late decision no longer reaches the expired wait
        await bus.send(EventName.VOLUME_DECISION, {"job_id": "job-1", "volume": 4, "decision": "approved"})
        assert (await seeded.get_wait("job-1", "v4_a1_i0_decision")).event_data == {TIMEOUT_MARKER: True}
        other.discard()


# =============================================================================
# Cancellation
# =============================================================================

@pytest.mark.unit
class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_event_wakes_waiters(self, bus):
        """Waiters raise JobCancelled instead of waiting out their timeout"""
        pending = await bus.expect("job-1", "v1_decision", EventName.VOLUME_DECISION, 60)
        await bus.send(EventName.GENERATE_CANCELLED, {"job_id": "job-1"})

        with pytest.raises(JobCancelled):
            await pending.result()

    @pytest.mark.asyncio
    async def test_expect_after_cancel_raises(self, bus):
        await bus.send(EventName.GENERATE_CANCELLED, {"job_id": "job-1"})

        with pytest.raises(JobCancelled):
            await bus.expect("job-1", "late", EventName.VOLUME_DECISION, 5)

    @pytest.mark.asyncio
    async def test_cancelled_status_in_store_is_observed(self, bus, seeded):
        await seeded.update_job("job-1", status=JobStatus.CANCELLED)
        assert await bus.is_cancelled("job-1")

    @pytest.mark.asyncio
    async def test_clear_cancelled(self, bus):
        """A retried job is no longer treated as cancelled"""
        await bus.send(EventName.GENERATE_CANCELLED, {"job_id": "job-1"})
        assert await bus.is_cancelled("job-1")

        bus.clear_cancelled("job-1")
        assert not await bus.is_cancelled("job-1")


# =============================================================================
# Handlers
# =============================================================================

@pytest.mark.unit
class TestHandlers:

    @pytest.mark.asyncio
    async def test_handler_runs_and_drain_waits(self, bus):
        seen = []

        async def handler(event):
            await asyncio.sleep(0.01)
            seen.append(event.data["attempt"])

        bus.subscribe(EventName.ASSEMBLY_START, handler)
        await bus.send(EventName.ASSEMBLY_START, {"job_id": "job-1", "attempt": 3})
        await bus.drain()

        assert seen == [3]

    @pytest.mark.asyncio
    async def test_crashing_handler_is_contained(self, bus):
        """send() succeeds and sibling handlers still run"""
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            seen.append(event.name)

        bus.subscribe(EventName.SCORING_START, broken)
        bus.subscribe(EventName.SCORING_START, healthy)

        await bus.send(EventName.SCORING_START, {"job_id": "job-1", "attempt": 1})
        await bus.drain()

        assert seen == [EventName.SCORING_START.value]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_handlers(self, bus):
        started = asyncio.Event()

        async def slow(event):
            started.set()
            await asyncio.sleep(60)

        bus.subscribe(EventName.ASSEMBLY_START, slow)
        await bus.send(EventName.ASSEMBLY_START, {"job_id": "job-1", "attempt": 1})
        await started.wait()

        await bus.shutdown()
        await bus.drain()


# =============================================================================
# Step Runner
# =============================================================================

@pytest.mark.unit
class TestStepRunner:

    @pytest.mark.asyncio
    async def test_run_is_memoized(self, steps):
        """The second run replays the stored output without calling fn"""
        calls = []

        async def work():
            calls.append(1)
            return {"pages": 12}

        first = await steps.run("job-1", "agent_0", work)
        second = await steps.run("job-1", "agent_0", work)

        assert first == second == {"pages": 12}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failed_step_is_not_memoized(self, steps):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return "ok"

        with pytest.raises(RuntimeError):
            await steps.run("job-1", "agent_1", flaky)
        assert await steps.run("job-1", "agent_1", flaky) == "ok"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_run_refuses_cancelled_job(self, steps, bus):
        await bus.send(EventName.GENERATE_CANCELLED, {"job_id": "job-1"})

        async def work():
            return 1

        with pytest.raises(JobCancelled):
            await steps.run("job-1", "agent_3", work)

    @pytest.mark.asyncio
    async def test_send_once(self, steps, bus):
        """A replayed trigger step does not send again"""
        received = []

        async def handler(event):
            received.append(event.data["volume"])

        bus.subscribe(EventName.VOLUME_GENERATE, handler)
        data = {"job_id": "job-1", "attempt": 1, "volume": 2}
        await steps.send_once("job-1", "a1:volume2.generate", EventName.VOLUME_GENERATE, data)
        await steps.send_once("job-1", "a1:volume2.generate", EventName.VOLUME_GENERATE, data)
        await bus.drain()

        assert received == [2]

    @pytest.mark.asyncio
    async def test_step_heartbeat_touches_job(self, steps, seeded):
        before = await seeded.get_job("job-1")

        async def work():
            return True

        await steps.run("job-1", "load_company_data", work)
        assert (await seeded.get_job("job-1")).version > before.version
