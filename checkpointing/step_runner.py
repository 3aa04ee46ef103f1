"""
PropelAI Durable Step Runner
Memoized, independently retryable pipeline steps

Each stage sub-step runs through ``StepRunner.run``. The first successful
execution persists the step output keyed by (job_id, step_id); re-running
the stage after a crash or retry replays that output instead of repeating
the work, so completed generation calls are never paid for twice.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from core.errors import JobCancelled
from core.events import EventBus, EventName, PendingWait
from database.store import JobStore

logger = logging.getLogger(__name__)


class StepRunner:
    """Durable step execution bound to a store and an event bus"""

    def __init__(self, store: JobStore, bus: EventBus):
        self.store = store
        self.bus = bus

    async def ensure_active(self, job_id: str) -> None:
        """Raise JobCancelled once cancellation has been observed"""
        if await self.bus.is_cancelled(job_id):
            raise JobCancelled(job_id)

    async def run(
        self,
        job_id: str,
        step_id: str,
        fn: Callable[[], Awaitable[Any]],
        heartbeat: bool = True,
    ) -> Any:
        """
        Run ``fn`` once per (job_id, step_id).

        ``fn`` must return a JSON-serialisable value.
        """
        cached = await self.store.get_step_result(job_id, step_id)
        if cached is not None:
            logger.debug(f"Replaying step {step_id}", extra={"job_id": job_id, "step_id": step_id})
            return cached["output"]

        await self.ensure_active(job_id)

        started = time.time()
        output = await fn()
        await self.store.save_step_result(job_id, step_id, output)

        if heartbeat:
            await self.store.touch(job_id)

        logger.debug(
            f"Step {step_id} done in {(time.time() - started) * 1000:.0f}ms",
            extra={"job_id": job_id, "step_id": step_id},
        )
        return output

    async def expect_event(
        self,
        job_id: str,
        step_id: str,
        name: EventName,
        timeout_seconds: float,
        match: Optional[Dict[str, Any]] = None,
    ) -> PendingWait:
        """Durable wait registered before its trigger is sent"""
        await self.ensure_active(job_id)
        return await self.bus.expect(job_id, step_id, name, timeout_seconds, match)

    async def wait_for_event(
        self,
        job_id: str,
        step_id: str,
        name: EventName,
        timeout_seconds: float,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Durable wait for an event sent by someone else (usually a human)"""
        pending = await self.expect_event(job_id, step_id, name, timeout_seconds, match)
        return await pending.result()

    async def send_once(self, job_id: str, step_id: str, name: EventName, data: Dict[str, Any]) -> None:
        """
        Send an event as a memoized step so a replayed stage does not
        re-trigger downstream work it already triggered.
        """
        async def _send():
            await self.bus.send(name, data)
            return {"sent": EventName(name).value}

        await self.run(job_id, step_id, _send, heartbeat=False)
