"""
PropelAI In-Memory Job Store
Process-local JobStore for tests and single-process development runs
"""

import asyncio
import copy
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from core.errors import InvalidTransition, JobNotFound
from core.state import (
    Job,
    Volume,
    IterationRecord,
    can_transition,
    create_volumes,
    utcnow,
)
from database.store import JobStore, MergePolicy, WaitRecord

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """
    Dict-backed store. Every read returns a deep copy so callers can never
    mutate stored state by accident.
    """

    def __init__(self, merge_policy: Optional[MergePolicy] = None):
        super().__init__(merge_policy)
        self._jobs: Dict[str, Job] = {}
        self._volumes: Dict[Tuple[str, int], Volume] = {}
        self._iterations: List[IterationRecord] = []
        self._steps: Dict[Tuple[str, str], Any] = {}
        self._waits: Dict[Tuple[str, str], WaitRecord] = {}
        self._events: List[Dict[str, Any]] = []

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    # Jobs

    async def create_job(self, job: Job) -> Job:
        self._jobs[job.job_id] = copy.deepcopy(job)
        for volume in create_volumes(job.job_id):
            self._volumes[(job.job_id, volume.number)] = volume
        return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> Job:
        return copy.deepcopy(self._require(job_id))

    async def update_job(self, job_id: str, **fields) -> Job:
        job = self._require(job_id)
        status = fields.get("status")
        if status is not None:
            status = getattr(status, "value", status)
            if not can_transition(job.status, status):
                raise InvalidTransition(job_id, job.status, status)
            fields["status"] = status

        updated = replace(
            job,
            **copy.deepcopy(fields),
            version=job.version + 1,
            updated_at=utcnow(),
        )
        self._jobs[job_id] = updated
        return copy.deepcopy(updated)

    async def list_jobs(self, statuses: Optional[List[str]] = None) -> List[Job]:
        jobs = list(self._jobs.values())
        if statuses:
            jobs = [j for j in jobs if j.status in statuses]
        return [copy.deepcopy(j) for j in jobs]

    # Stage progress

    async def _read_stage_progress(self, job_id: str) -> Tuple[Dict[str, Dict[str, Any]], int]:
        job = self._require(job_id)
        snapshot = (copy.deepcopy(job.stage_progress), job.version)
        # Yield so concurrent writers can interleave between read and write
        await asyncio.sleep(0)
        return snapshot

    async def _compare_and_set_stage_progress(
        self,
        job_id: str,
        stage_progress: Dict[str, Dict[str, Any]],
        expected_version: int,
    ) -> bool:
        job = self._require(job_id)
        if job.version != expected_version:
            return False
        self._jobs[job_id] = replace(
            job,
            stage_progress=copy.deepcopy(stage_progress),
            version=job.version + 1,
            updated_at=utcnow(),
        )
        return True

    # Volumes

    async def get_volume(self, job_id: str, number: int) -> Volume:
        self._require(job_id)
        return copy.deepcopy(self._volumes[(job_id, number)])

    async def list_volumes(self, job_id: str) -> List[Volume]:
        self._require(job_id)
        return [
            copy.deepcopy(v)
            for (jid, _), v in sorted(self._volumes.items())
            if jid == job_id
        ]

    async def update_volume(self, job_id: str, number: int, **fields) -> Volume:
        self._require(job_id)
        for key in ("status",):
            if key in fields:
                fields[key] = getattr(fields[key], "value", fields[key])
        volume = replace(
            self._volumes[(job_id, number)],
            **copy.deepcopy(fields),
            updated_at=utcnow(),
        )
        self._volumes[(job_id, number)] = volume
        return copy.deepcopy(volume)

    # Iteration records

    async def append_iteration_record(self, record: IterationRecord) -> IterationRecord:
        self._iterations.append(copy.deepcopy(record))
        return copy.deepcopy(record)

    async def list_iteration_records(self, job_id: str, volume: Optional[int] = None) -> List[IterationRecord]:
        return [
            copy.deepcopy(r)
            for r in self._iterations
            if r.job_id == job_id and (volume is None or r.volume == volume)
        ]

    # Step memo

    async def get_step_result(self, job_id: str, step_id: str) -> Optional[Dict[str, Any]]:
        key = (job_id, step_id)
        if key not in self._steps:
            return None
        return {"output": copy.deepcopy(self._steps[key])}

    async def save_step_result(self, job_id: str, step_id: str, output: Any) -> None:
        self._steps[(job_id, step_id)] = copy.deepcopy(output)

    # Waits and events

    async def register_wait(self, wait: WaitRecord) -> WaitRecord:
        key = (wait.job_id, wait.step_id)
        if key not in self._waits:
            self._waits[key] = copy.deepcopy(wait)
        return copy.deepcopy(self._waits[key])

    async def get_wait(self, job_id: str, step_id: str) -> Optional[WaitRecord]:
        wait = self._waits.get((job_id, step_id))
        return copy.deepcopy(wait) if wait else None

    async def resolve_wait(self, job_id: str, step_id: str, event_data: Dict[str, Any]) -> None:
        wait = self._waits.get((job_id, step_id))
        if wait and not wait.resolved:
            wait.resolved = True
            wait.event_data = copy.deepcopy(event_data)

    async def list_open_waits(self, job_id: str) -> List[WaitRecord]:
        return [
            copy.deepcopy(w)
            for (jid, _), w in self._waits.items()
            if jid == job_id and not w.resolved
        ]

    async def record_event(self, name: str, data: Dict[str, Any]) -> None:
        self._events.append({"name": name, "data": copy.deepcopy(data), "created_at": utcnow()})

    async def list_events(self, job_id: str, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(e)
            for e in self._events
            if e["data"].get("job_id") == job_id and (name is None or e["name"] == name)
        ]
