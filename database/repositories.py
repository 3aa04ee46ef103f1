"""
PropelAI Database Repositories
PostgreSQL-backed JobStore built on SQLAlchemy async sessions
"""

import logging
from dataclasses import fields as dataclass_fields
from typing import Optional, List, Dict, Any, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.errors import InvalidTransition, JobNotFound
from core.state import (
    Job,
    Volume,
    IterationRecord,
    can_transition,
    create_volumes,
    utcnow,
)
from database.connection import session_scope
from database.models import (
    ProposalJob,
    ProposalVolume,
    IterationRecordRow,
    StepResult,
    EventWait,
    JobEvent,
)
from database.store import JobStore, MergePolicy, WaitRecord

logger = logging.getLogger(__name__)

JOB_FIELDS = [f.name for f in dataclass_fields(Job)]
VOLUME_FIELDS = [f.name for f in dataclass_fields(Volume)]


def _plain(value: Any) -> Any:
    """Enum members become their values before hitting a column"""
    return getattr(value, "value", value)


def _job_from_row(row: ProposalJob) -> Job:
    return Job(**{name: getattr(row, name) for name in JOB_FIELDS})


def _volume_from_row(row: ProposalVolume) -> Volume:
    return Volume(**{name: getattr(row, name) for name in VOLUME_FIELDS})


def _wait_from_row(row: EventWait) -> WaitRecord:
    return WaitRecord(
        job_id=row.job_id,
        step_id=row.step_id,
        event_name=row.event_name,
        match=row.match or {},
        expires_at=row.expires_at,
        resolved=row.resolved,
        event_data=row.event_data,
    )


class SqlJobStore(JobStore):
    """JobStore over the proposal_* tables. One short transaction per call."""

    def __init__(self, session_factory: async_sessionmaker, merge_policy: Optional[MergePolicy] = None):
        super().__init__(merge_policy)
        self.session_factory = session_factory

    # ============================================
    # Jobs
    # ============================================

    async def create_job(self, job: Job) -> Job:
        async with session_scope(self.session_factory) as session:
            session.add(ProposalJob(**{name: getattr(job, name) for name in JOB_FIELDS}))
            await session.flush()
            for volume in create_volumes(job.job_id):
                session.add(ProposalVolume(
                    **{name: getattr(volume, name) for name in VOLUME_FIELDS}
                ))
        return job

    async def get_job(self, job_id: str) -> Job:
        async with session_scope(self.session_factory) as session:
            row = await session.get(ProposalJob, job_id)
            if row is None:
                raise JobNotFound(job_id)
            return _job_from_row(row)

    async def update_job(self, job_id: str, **fields) -> Job:
        values = {name: _plain(value) for name, value in fields.items()}
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ProposalJob).where(ProposalJob.job_id == job_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise JobNotFound(job_id)

            status = values.get("status")
            if status is not None and not can_transition(row.status, status):
                raise InvalidTransition(job_id, row.status, status)

            for name, value in values.items():
                setattr(row, name, value)
            row.version = row.version + 1
            row.updated_at = utcnow()
            await session.flush()
            return _job_from_row(row)

    async def list_jobs(self, statuses: Optional[List[str]] = None) -> List[Job]:
        async with session_scope(self.session_factory) as session:
            query = select(ProposalJob)
            if statuses:
                query = query.where(ProposalJob.status.in_(statuses))
            result = await session.execute(query.order_by(ProposalJob.created_at))
            return [_job_from_row(row) for row in result.scalars().all()]

    # ============================================
    # Stage progress
    # ============================================

    async def _read_stage_progress(self, job_id: str) -> Tuple[Dict[str, Dict[str, Any]], int]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ProposalJob.stage_progress, ProposalJob.version)
                .where(ProposalJob.job_id == job_id)
            )
            row = result.one_or_none()
            if row is None:
                raise JobNotFound(job_id)
            return dict(row.stage_progress or {}), row.version

    async def _compare_and_set_stage_progress(
        self,
        job_id: str,
        stage_progress: Dict[str, Dict[str, Any]],
        expected_version: int,
    ) -> bool:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(ProposalJob)
                .where(ProposalJob.job_id == job_id, ProposalJob.version == expected_version)
                .values(
                    stage_progress=stage_progress,
                    version=expected_version + 1,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    # ============================================
    # Volumes
    # ============================================

    async def get_volume(self, job_id: str, number: int) -> Volume:
        async with session_scope(self.session_factory) as session:
            row = await session.get(ProposalVolume, (job_id, number))
            if row is None:
                raise JobNotFound(job_id)
            return _volume_from_row(row)

    async def list_volumes(self, job_id: str) -> List[Volume]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(ProposalVolume)
                .where(ProposalVolume.job_id == job_id)
                .order_by(ProposalVolume.number)
            )
            return [_volume_from_row(row) for row in result.scalars().all()]

    async def update_volume(self, job_id: str, number: int, **fields) -> Volume:
        values = {name: _plain(value) for name, value in fields.items()}
        values["updated_at"] = utcnow()
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(ProposalVolume)
                .where(ProposalVolume.job_id == job_id, ProposalVolume.number == number)
                .values(**values)
            )
            row = await session.get(ProposalVolume, (job_id, number))
            if row is None:
                raise JobNotFound(job_id)
            await session.refresh(row)
            return _volume_from_row(row)

    # ============================================
    # Iteration records
    # ============================================

    async def append_iteration_record(self, record: IterationRecord) -> IterationRecord:
        async with session_scope(self.session_factory) as session:
            session.add(IterationRecordRow(
                job_id=record.job_id,
                volume=record.volume,
                iteration=record.iteration,
                user_feedback=record.user_feedback,
                issues_addressed=list(record.issues_addressed),
                created_at=record.created_at,
            ))
        return record

    async def list_iteration_records(self, job_id: str, volume: Optional[int] = None) -> List[IterationRecord]:
        async with session_scope(self.session_factory) as session:
            query = select(IterationRecordRow).where(IterationRecordRow.job_id == job_id)
            if volume is not None:
                query = query.where(IterationRecordRow.volume == volume)
            result = await session.execute(
                query.order_by(IterationRecordRow.iteration, IterationRecordRow.created_at)
            )
            return [
                IterationRecord(
                    job_id=row.job_id,
                    volume=row.volume,
                    iteration=row.iteration,
                    user_feedback=row.user_feedback,
                    issues_addressed=list(row.issues_addressed or []),
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]

    # ============================================
    # Step memo
    # ============================================

    async def get_step_result(self, job_id: str, step_id: str) -> Optional[Dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            row = await session.get(StepResult, (job_id, step_id))
            if row is None:
                return None
            return {"output": row.output}

    async def save_step_result(self, job_id: str, step_id: str, output: Any) -> None:
        async with session_scope(self.session_factory) as session:
            stmt = insert(StepResult).values(job_id=job_id, step_id=step_id, output=output)
            await session.execute(stmt.on_conflict_do_update(
                index_elements=[StepResult.job_id, StepResult.step_id],
                set_={"output": stmt.excluded.output},
            ))

    # ============================================
    # Waits & events
    # ============================================

    async def register_wait(self, wait: WaitRecord) -> WaitRecord:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                insert(EventWait)
                .values(
                    job_id=wait.job_id,
                    step_id=wait.step_id,
                    event_name=wait.event_name,
                    match=wait.match,
                    expires_at=wait.expires_at,
                    resolved=False,
                )
                .on_conflict_do_nothing(index_elements=[EventWait.job_id, EventWait.step_id])
            )
            row = await session.get(EventWait, (wait.job_id, wait.step_id))
            return _wait_from_row(row)

    async def get_wait(self, job_id: str, step_id: str) -> Optional[WaitRecord]:
        async with session_scope(self.session_factory) as session:
            row = await session.get(EventWait, (job_id, step_id))
            return _wait_from_row(row) if row else None

    async def resolve_wait(self, job_id: str, step_id: str, event_data: Dict[str, Any]) -> None:
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(EventWait)
                .where(
                    EventWait.job_id == job_id,
                    EventWait.step_id == step_id,
                    EventWait.resolved.is_(False),
                )
                .values(resolved=True, event_data=event_data)
            )

    async def list_open_waits(self, job_id: str) -> List[WaitRecord]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(EventWait).where(EventWait.job_id == job_id, EventWait.resolved.is_(False))
            )
            return [_wait_from_row(row) for row in result.scalars().all()]

    async def record_event(self, name: str, data: Dict[str, Any]) -> None:
        async with session_scope(self.session_factory) as session:
            session.add(JobEvent(job_id=data.get("job_id"), name=name, data=data))

    async def list_events(self, job_id: str, name: Optional[str] = None) -> List[Dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            query = select(JobEvent).where(JobEvent.job_id == job_id)
            if name:
                query = query.where(JobEvent.name == name)
            result = await session.execute(query.order_by(JobEvent.created_at))
            return [
                {"name": row.name, "data": row.data, "created_at": row.created_at}
                for row in result.scalars().all()
            ]
