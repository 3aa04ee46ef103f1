"""
PropelAI Unit Tests: Stage Executor Contract
============================================

Tests:
- Completion event on success, carrying the trigger's scope keys
- Failures persisted through on_failure and converted to success=False
- A broken on_failure still yields a completion event
- Cancellation reported without touching the failure path
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from core.config import PipelineConfig
from core.errors import JobCancelled, StageFailed
from core.events import Event, EventBus, EventName
from checkpointing.step_runner import StepRunner
from pipeline.base import StageExecutor


class EchoStage(StageExecutor):
    """Returns ``result`` or raises ``error`` from execute"""

    stage = "echo"
    trigger = EventName.ASSEMBLY_START
    completion = EventName.ASSEMBLY_COMPLETE

    def __init__(self, *args, result=None, error=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result or {"success": True}
        self.error = error

    async def execute(self, job_id, data):
        if self.error:
            raise self.error
        return dict(self.result)


def make_stage(store, **kwargs):
    bus = EventBus(store)
    stage = EchoStage(store, bus, StepRunner(store, bus), MagicMock(), PipelineConfig(), **kwargs)
    return stage, bus


def trigger(**data):
    return Event(name=EventName.ASSEMBLY_START.value, data={"job_id": "job-1", **data})


@pytest.mark.unit
class TestStageExecutorContract:

    @pytest.mark.asyncio
    async def test_success_completion_carries_scope(self, store, job):
        stage, bus = make_stage(store, result={"success": True, "checks_passed": 10})

        payload = await stage.handle(trigger(attempt=3, volume=2, iteration=1, noise="x"))

        assert payload == {"success": True, "checks_passed": 10}
        events = await store.list_events("job-1", EventName.ASSEMBLY_COMPLETE.value)
        assert events[-1]["data"] == {
            "success": True, "checks_passed": 10,
            "job_id": "job-1", "attempt": 3, "volume": 2, "iteration": 1,
        }

    @pytest.mark.asyncio
    async def test_failure_is_persisted_then_reported(self, store, job):
        error = StageFailed("echo", "packaging broke")
        stage, bus = make_stage(store, error=error)
        stage.on_failure = AsyncMock()

        payload = await stage.handle(trigger(attempt=1))

        stage.on_failure.assert_awaited_once_with("job-1", {"job_id": "job-1", "attempt": 1}, error)
        assert payload == {"success": False, "error": "packaging broke"}
        events = await store.list_events("job-1", EventName.ASSEMBLY_COMPLETE.value)
        assert events[-1]["data"]["success"] is False

    @pytest.mark.asyncio
    async def test_default_on_failure_fails_job(self, store, job):
        stage, bus = make_stage(store, error=RuntimeError("boom"))

        await stage.handle(trigger())

        failed = await store.get_job("job-1")
        assert failed.status == "failed"
        assert failed.current_step == "Echo failed"
        assert failed.error_message == "boom"

    @pytest.mark.asyncio
    async def test_broken_on_failure_still_completes(self, store, job):
        stage, bus = make_stage(store, error=RuntimeError("boom"))
        stage.on_failure = AsyncMock(side_effect=ConnectionError("database gone"))

        payload = await stage.handle(trigger())

        assert payload["success"] is False
        assert await store.list_events("job-1", EventName.ASSEMBLY_COMPLETE.value)

    @pytest.mark.asyncio
    async def test_cancellation_skips_failure_path(self, store, job):
        stage, bus = make_stage(store, error=JobCancelled("job-1"))
        stage.on_failure = AsyncMock()

        payload = await stage.handle(trigger())

        stage.on_failure.assert_not_awaited()
        assert payload == {"success": False, "error": "Job cancelled", "cancelled": True}
