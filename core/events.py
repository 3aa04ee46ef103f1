"""
PropelAI Event Contracts
Stage-to-stage events and the in-process bus that routes them

Every stage is an event handler: it is triggered by a ``*.start`` style
event and always answers with a completion event, on success and on
failure alike. Waits are durable continuations keyed by (job_id, step_id)
and persisted through the JobStore, so a re-entered stage picks up an
already-delivered event or keeps waiting for whatever time is left.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from core.errors import JobCancelled
from core.state import JobStatus, utcnow
from database.store import JobStore, WaitRecord

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    """Event names exchanged between the orchestrator and the stages"""
    # Inbound
    GENERATE_REQUESTED = "proposal/generate.requested"
    GENERATE_CANCELLED = "proposal/generate.cancelled"
    DATA_APPROVED = "proposal/data.approved"
    VOLUME_DECISION = "proposal/volume.decision"

    # Stage triggers
    PREPARATION_START = "proposal/preparation.start"
    VOLUME_GENERATE = "proposal/volume.generate"
    VOLUME_CONSULT = "proposal/volume.consult"
    VOLUME_ITERATE = "proposal/volume.iterate"
    ASSEMBLY_START = "proposal/assembly.start"
    SCORING_START = "proposal/scoring.start"

    # Stage completions
    PREPARATION_COMPLETE = "proposal/preparation.complete"
    VOLUME_GENERATED = "proposal/volume.generated"
    VOLUME_ITERATION_COMPLETE = "proposal/volume.iteration.complete"
    VOLUME_CONSULTED = "proposal/volume.consulted"
    ASSEMBLY_COMPLETE = "proposal/assembly.complete"
    SCORING_COMPLETE = "proposal/scoring.complete"


# Stored in place of an event when a wait expires, so replay stays deterministic
TIMEOUT_MARKER = "__timed_out__"


@dataclass
class Event:
    """A named payload. ``data['job_id']`` scopes it to a job."""
    name: str
    data: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def job_id(self) -> Optional[str]:
        return self.data.get("job_id")


Handler = Callable[[Event], Awaitable[Any]]


class PendingWait:
    """Handle returned by ``EventBus.expect``; await ``result()`` for the event data"""

    def __init__(
        self,
        bus: "EventBus",
        job_id: str,
        step_id: str,
        future: "asyncio.Future",
        deadline: datetime,
    ):
        self.bus = bus
        self.job_id = job_id
        self.step_id = step_id
        self.future = future
        self.deadline = deadline

    async def result(self) -> Optional[Dict[str, Any]]:
        """
        Event data, or None on timeout.

        Raises JobCancelled if the job is cancelled while waiting.
        """
        try:
            if not self.future.done():
                remaining = (self.deadline - utcnow()).total_seconds()
                if remaining <= 0:
                    await self._expire()
                    return None
                try:
                    await asyncio.wait_for(asyncio.shield(self.future), timeout=remaining)
                except asyncio.TimeoutError:
                    if not self.future.done():
                        await self._expire()
                        return None

            data = self.future.result()
            if data.get(TIMEOUT_MARKER):
                return None
            return data
        finally:
            self.bus._forget(self.job_id, self.step_id, self.future)

    def discard(self) -> None:
        """Stop tracking a wait that will not be awaited"""
        self.bus._forget(self.job_id, self.step_id, self.future)

    async def _expire(self) -> None:
        logger.warning(
            f"Wait {self.step_id} timed out",
            extra={"job_id": self.job_id, "step_id": self.step_id},
        )
        await self.bus.store.resolve_wait(self.job_id, self.step_id, {TIMEOUT_MARKER: True})


class EventBus:
    """
    In-process event router with durable waits.

    Handlers run as tracked background tasks; ``drain()`` awaits them.
    """

    def __init__(self, store: JobStore):
        self.store = store
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._waiters: Dict[Tuple[str, str], asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._cancelled_jobs: Set[str] = set()

    def subscribe(self, name: EventName, handler: Handler) -> None:
        """Register ``handler`` to run for every event called ``name``"""
        self._handlers[EventName(name).value].append(handler)

    async def send(self, name: EventName, data: Dict[str, Any]) -> Event:
        """Record an event, resolve matching waits and dispatch handlers"""
        event = Event(name=EventName(name).value, data=dict(data))
        job_id = event.job_id

        await self.store.record_event(event.name, event.data)
        logger.info(
            f"Event {event.name}",
            extra={"job_id": job_id, "event": event.name},
        )

        if job_id:
            if event.name == EventName.GENERATE_CANCELLED.value:
                self._cancel_waiters(job_id)
            else:
                await self._resolve_waits(job_id, event)

        for handler in self._handlers.get(event.name, []):
            task = asyncio.create_task(self._run_handler(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return event

    async def expect(
        self,
        job_id: str,
        step_id: str,
        name: EventName,
        timeout_seconds: float,
        match: Optional[Dict[str, Any]] = None,
    ) -> PendingWait:
        """
        Register a durable wait for ``name`` filtered by job and ``match``.

        Call this before sending whatever triggers the awaited event.
        """
        if await self.is_cancelled(job_id):
            raise JobCancelled(job_id)

        key = (job_id, step_id)
        future = asyncio.get_running_loop().create_future()
        self._waiters[key] = future

        wait = await self.store.register_wait(WaitRecord(
            job_id=job_id,
            step_id=step_id,
            event_name=EventName(name).value,
            match=dict(match or {}),
            expires_at=utcnow() + timedelta(seconds=timeout_seconds),
        ))

        # Resolved before we registered in memory (or in a previous process)
        if wait.resolved and not future.done():
            future.set_result(wait.event_data or {})

        return PendingWait(self, job_id, step_id, future, wait.expires_at)

    async def wait_for(
        self,
        job_id: str,
        step_id: str,
        name: EventName,
        timeout_seconds: float,
        match: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Register and await in one call, for events not triggered by the caller"""
        pending = await self.expect(job_id, step_id, name, timeout_seconds, match)
        return await pending.result()

    async def is_cancelled(self, job_id: str) -> bool:
        if job_id in self._cancelled_jobs:
            return True
        job = await self.store.get_job(job_id)
        if job.status == JobStatus.CANCELLED.value:
            self._cancelled_jobs.add(job_id)
            return True
        return False

    async def drain(self) -> None:
        """Wait for every in-flight handler, including ones they spawn"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight handlers; their waits stay in the store for the next process"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def expire_waits(self, job_id: str, prefix: str) -> List[str]:
        """
        Time out every open wait whose step id starts with ``prefix``.

        The waiting side sees an ordinary timeout. Returns the expired step ids.
        """
        expired = []
        for wait in await self.store.list_open_waits(job_id):
            if not wait.step_id.startswith(prefix):
                continue
            await self.store.resolve_wait(job_id, wait.step_id, {TIMEOUT_MARKER: True})
            future = self._waiters.get((job_id, wait.step_id))
            if future and not future.done():
                future.set_result({TIMEOUT_MARKER: True})
            expired.append(wait.step_id)
        if expired:
            logger.info(f"Expired waits: {', '.join(expired)}", extra={"job_id": job_id})
        return expired

    def clear_cancelled(self, job_id: str) -> None:
        """Forget an observed cancellation once the job may run again"""
        self._cancelled_jobs.discard(job_id)

    # ------------------------------------------------------------------

    async def _resolve_waits(self, job_id: str, event: Event) -> None:
        for wait in await self.store.list_open_waits(job_id):
            if not wait.matches(event.name, event.data):
                continue
            await self.store.resolve_wait(job_id, wait.step_id, event.data)
            future = self._waiters.get((job_id, wait.step_id))
            if future and not future.done():
                future.set_result(dict(event.data))

    def _cancel_waiters(self, job_id: str) -> None:
        self._cancelled_jobs.add(job_id)
        for (jid, _), future in list(self._waiters.items()):
            if jid == job_id and not future.done():
                future.set_exception(JobCancelled(job_id))

    def _forget(self, job_id: str, step_id: str, future: "asyncio.Future") -> None:
        if self._waiters.get((job_id, step_id)) is future:
            del self._waiters[(job_id, step_id)]

    async def _run_handler(self, handler: Handler, event: Event) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        try:
            await handler(event)
        except JobCancelled:
            logger.info(f"{name} stopped: job cancelled", extra={"job_id": event.job_id})
        except Exception:
            # Stage handlers convert their own failures into events; reaching
            # here means a handler broke that contract.
            logger.exception(
                f"Handler {name} crashed on {event.name}",
                extra={"job_id": event.job_id, "event": event.name},
            )
