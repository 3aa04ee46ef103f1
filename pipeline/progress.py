"""
PropelAI Progress Reporter

Every stage reports through here so that:
- progress_percent only ever moves forward
- each report advances updated_at (the stall monitor's liveness clock)
- a write that would move a terminal job (cancelled, failed by the
  monitor, ...) is dropped instead of crashing the stage
"""

import logging
from typing import Any, Optional

from core.errors import InvalidTransition
from core.state import (
    VOLUME_CATALOGUE,
    Job,
    JobStatus,
    StageProgress,
    TERMINAL_JOB_STATUSES,
    utcnow,
)
from database.store import JobStore

logger = logging.getLogger(__name__)


ORCHESTRATOR_STAGE = "orchestrator"


class ProgressReporter:
    """Job-level progress and status writes shared by all stage executors"""

    def __init__(self, store: JobStore):
        self.store = store

    async def update(
        self,
        job_id: str,
        progress: Optional[int] = None,
        step: Optional[str] = None,
        **fields: Any,
    ) -> Optional[Job]:
        """
        Update job fields, keeping progress monotonic.

        Returns None when the job is already terminal and the requested
        status change was refused.
        """
        if progress is not None:
            job = await self.store.get_job(job_id)
            fields["progress_percent"] = max(job.progress_percent, int(round(progress)))
        if step is not None:
            fields["current_step"] = step

        try:
            return await self.store.update_job(job_id, **fields)
        except InvalidTransition as e:
            if JobStatus(e.current) in TERMINAL_JOB_STATUSES:
                logger.info(
                    f"Job already {e.current}; ignoring move to {e.requested}",
                    extra={"job_id": job_id},
                )
                return None
            raise

    async def stage(self, job_id: str, stage_id: str, progress: StageProgress, **extra: Any) -> None:
        """Merge one entry of the stage progress map"""
        await self.store.merge_stage_progress(job_id, stage_id, {**progress.to_patch(), **extra})

    async def volume(self, job_id: str, number: int, percent: int, step: str) -> None:
        """Map a volume's own 0-100 progress into its window of the job bar"""
        entry = VOLUME_CATALOGUE[number]
        span = entry.progress_end - entry.progress_start
        overall = entry.progress_start + span * max(0, min(100, percent)) / 100
        await self.update(job_id, progress=overall, step=f"Volume {number}: {step}", current_volume=number)

    async def fail(self, job_id: str, step: str, error: str, **fields: Any) -> Optional[Job]:
        """Move the job to failed with a human-readable step and the raw error"""
        return await self.update(
            job_id,
            step=step,
            status=JobStatus.FAILED,
            error_message=error,
            completed_at=utcnow(),
            **fields,
        )

    async def resume_after_gate(self, job_id: str, step: str, **fields: Any) -> Optional[Job]:
        """
        Leave a human gate (blocked/review) and restart the active clock
        the monitor's hard cap is measured from.
        """
        job = await self.update(job_id, step=step, status=JobStatus.PROCESSING, **fields)
        if job is not None:
            await self.store.merge_stage_progress(job_id, ORCHESTRATOR_STAGE, {
                "active_since": utcnow().isoformat(),
            })
        return job
