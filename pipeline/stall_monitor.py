"""
PropelAI Stall/Timeout Monitor

Periodic sweep, independent of the pipeline:
- stall: no heartbeat (updated_at) within the inactivity window
- hard cap: active for longer than the maximum duration

Only active statuses are swept; blocked and review jobs are governed by
their own wait timeouts. The hard cap is measured from the last time the
job (re)entered active processing, so days spent at a human gate do not
count against it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from core.config import MonitorConfig, get_config
from core.events import EventBus, EventName
from core.state import Job, utcnow
from database.store import JobStore
from pipeline.progress import ORCHESTRATOR_STAGE, ProgressReporter

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    job_id: str
    reason: str         # stalled | hard_cap
    message: str


def active_since(job: Job) -> datetime:
    """When the job last entered active processing"""
    marker = (job.stage_progress.get(ORCHESTRATOR_STAGE) or {}).get("active_since")
    if marker:
        try:
            return max(job.created_at, datetime.fromisoformat(marker))
        except ValueError:
            logger.debug(f"Bad active_since marker {marker!r}", extra={"job_id": job.job_id})
    return job.created_at


class StallMonitor:
    """Fails jobs that stopped heartbeating or ran past the hard cap"""

    def __init__(self, store: JobStore, bus: Optional[EventBus] = None, config: Optional[MonitorConfig] = None):
        self.store = store
        self.bus = bus
        self.config = config or get_config().monitor
        self.progress = ProgressReporter(store)

    def classify(self, job: Job, now: datetime) -> Optional[SweepResult]:
        cfg = self.config
        if now - active_since(job) > timedelta(minutes=cfg.hard_cap_minutes):
            return SweepResult(
                job.job_id, "hard_cap",
                f"Job exceeded maximum duration of {cfg.hard_cap_minutes:g} minutes",
            )
        if now - job.updated_at > timedelta(minutes=cfg.stall_minutes):
            return SweepResult(
                job.job_id, "stalled",
                f"Job stalled - no activity for {cfg.stall_minutes:g} minutes",
            )
        return None

    async def sweep(self, now: Optional[datetime] = None) -> List[SweepResult]:
        """One pass over active jobs; returns the jobs it terminated"""
        now = now or utcnow()
        terminated: List[SweepResult] = []

        for job in await self.store.list_jobs(self.config.active_statuses):
            result = self.classify(job, now)
            if result is None:
                continue

            logger.warning(result.message, extra={"job_id": job.job_id, "stage": "monitor"})
            updated = await self.progress.fail(job.job_id, result.message, result.message)
            if updated is None:
                continue
            terminated.append(result)

            # In-flight stages observe this as cancellation and schedule nothing further
            if self.bus is not None:
                await self.bus.send(EventName.GENERATE_CANCELLED, {
                    "job_id": job.job_id,
                    "reason": result.reason,
                })

        if terminated:
            logger.info(f"Monitor terminated {len(terminated)} job(s)")
        return terminated

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """Sweep every ``sweep_interval_seconds`` until ``stop`` is set"""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Monitor sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.config.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
