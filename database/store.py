"""
PropelAI Job Store Interface
State Store Adapter contract shared by the in-memory and PostgreSQL stores

Stage executors never write whole Job records. They update named fields
(``update_job``) or merge a single key of a shared map
(``merge_stage_progress``), which is read-merge-write with an optimistic
version check, retried with exponential backoff and jitter.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.errors import MergeConflictError
from core.state import Job, Volume, IterationRecord

logger = logging.getLogger(__name__)


@dataclass
class MergePolicy:
    """Bounded retry settings for read-merge-write"""
    max_attempts: int = 5
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter"""
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)


@dataclass
class WaitRecord:
    """A durable continuation keyed by (job_id, step_id)"""
    job_id: str
    step_id: str
    event_name: str
    match: Dict[str, Any]
    expires_at: datetime
    resolved: bool = False
    event_data: Optional[Dict[str, Any]] = None

    def matches(self, event_name: str, data: Dict[str, Any]) -> bool:
        if self.resolved or event_name != self.event_name:
            return False
        if data.get("job_id") != self.job_id:
            return False
        return all(data.get(key) == value for key, value in self.match.items())


class JobStore(ABC):
    """
    Abstract state store.

    Implementations must make ``_compare_and_set_stage_progress`` atomic
    with respect to the version it was read at.
    """

    def __init__(self, merge_policy: Optional[MergePolicy] = None):
        self.merge_policy = merge_policy or MergePolicy()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_job(self, job: Job) -> Job:
        """Persist a new job together with its four pending volumes"""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Job:
        """Load a job; raises JobNotFound"""
        pass

    @abstractmethod
    async def update_job(self, job_id: str, **fields) -> Job:
        """
        Field-level update. Always advances ``updated_at`` and ``version``.
        A ``status`` change is checked against the job state machine and
        raises InvalidTransition when not allowed.
        """
        pass

    @abstractmethod
    async def list_jobs(self, statuses: Optional[List[str]] = None) -> List[Job]:
        pass

    async def touch(self, job_id: str, step: Optional[str] = None) -> None:
        """Heartbeat: advance the liveness clock without changing status"""
        fields = {"current_step": step} if step else {}
        await self.update_job(job_id, **fields)

    # ------------------------------------------------------------------
    # Stage progress map
    # ------------------------------------------------------------------

    @abstractmethod
    async def _read_stage_progress(self, job_id: str) -> Tuple[Dict[str, Dict[str, Any]], int]:
        """Return (stage_progress, version)"""
        pass

    @abstractmethod
    async def _compare_and_set_stage_progress(
        self,
        job_id: str,
        stage_progress: Dict[str, Dict[str, Any]],
        expected_version: int,
    ) -> bool:
        """Write only if the job is still at ``expected_version``"""
        pass

    async def merge_stage_progress(self, job_id: str, stage_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge ``patch`` into ``stage_progress[stage_id]`` without clobbering
        entries written concurrently by sibling stages.
        """
        policy = self.merge_policy
        for attempt in range(1, policy.max_attempts + 1):
            progress, version = await self._read_stage_progress(job_id)
            merged = dict(progress)
            merged[stage_id] = {**progress.get(stage_id, {}), **patch}

            if await self._compare_and_set_stage_progress(job_id, merged, version):
                return merged[stage_id]

            delay = policy.delay(attempt)
            logger.debug(
                f"stage_progress merge conflict for {stage_id} (attempt {attempt}), retrying in {delay:.3f}s",
                extra={"job_id": job_id},
            )
            await asyncio.sleep(delay)

        raise MergeConflictError(job_id, f"stage_progress.{stage_id}", policy.max_attempts)

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_volume(self, job_id: str, number: int) -> Volume:
        pass

    @abstractmethod
    async def list_volumes(self, job_id: str) -> List[Volume]:
        pass

    @abstractmethod
    async def update_volume(self, job_id: str, number: int, **fields) -> Volume:
        pass

    # ------------------------------------------------------------------
    # Iteration records (append-only)
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_iteration_record(self, record: IterationRecord) -> IterationRecord:
        pass

    @abstractmethod
    async def list_iteration_records(self, job_id: str, volume: Optional[int] = None) -> List[IterationRecord]:
        pass

    # ------------------------------------------------------------------
    # Step memo
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_step_result(self, job_id: str, step_id: str) -> Optional[Dict[str, Any]]:
        """Return ``{"output": ...}`` for a completed step, else None"""
        pass

    @abstractmethod
    async def save_step_result(self, job_id: str, step_id: str, output: Any) -> None:
        pass

    # ------------------------------------------------------------------
    # Durable waits and event log
    # ------------------------------------------------------------------

    @abstractmethod
    async def register_wait(self, wait: WaitRecord) -> WaitRecord:
        """Insert a wait, or return the existing one for (job_id, step_id)"""
        pass

    @abstractmethod
    async def get_wait(self, job_id: str, step_id: str) -> Optional[WaitRecord]:
        pass

    @abstractmethod
    async def resolve_wait(self, job_id: str, step_id: str, event_data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def list_open_waits(self, job_id: str) -> List[WaitRecord]:
        pass

    @abstractmethod
    async def record_event(self, name: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def list_events(self, job_id: str, name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Events for a job, oldest first, as ``{"name", "data", "created_at"}``"""
        pass
