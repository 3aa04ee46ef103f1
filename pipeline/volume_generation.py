"""
PropelAI Volume Generation Stage

One handler invocation per volume. All four are triggered together and
run side by side under a per-job concurrency cap; each volume's outcome
is independent of its siblings.

A volume with a valid checkpoint is never regenerated: the writer is not
called and the stored content is left byte-identical.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from core.errors import StageFailed
from core.events import EventName
from core.state import VOLUME_CATALOGUE, StageProgress, VolumeStatus
from checkpointing.volume_checkpoints import generation_stage_id, load_checkpoint, save_checkpoint
from agents.base import AgentContext
from pipeline.base import StageExecutor

logger = logging.getLogger(__name__)


class VolumeGenerationStage(StageExecutor):
    """Writes one volume and checkpoints it"""

    stage = "volume_generation"
    trigger = EventName.VOLUME_GENERATE
    completion = EventName.VOLUME_GENERATED

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._slots: Dict[str, asyncio.Semaphore] = {}
        self._slot_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _slot(self, job_id: str):
        """Hold one of the job's generation slots; the job's entry goes once nobody uses it"""
        if job_id not in self._slots:
            self._slots[job_id] = asyncio.Semaphore(self.config.volume_concurrency)
        self._slot_users[job_id] = self._slot_users.get(job_id, 0) + 1
        try:
            async with self._slots[job_id]:
                yield
        finally:
            self._slot_users[job_id] -= 1
            if not self._slot_users[job_id]:
                del self._slot_users[job_id]
                del self._slots[job_id]

    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        number = int(data["volume"])
        entry = VOLUME_CATALOGUE[number]
        log_ctx = {"job_id": job_id, "stage": self.stage, "volume": number}

        cached = await load_checkpoint(self.store, job_id, number)
        if cached is not None:
            if cached.status in (VolumeStatus.PENDING.value, VolumeStatus.GENERATING.value, VolumeStatus.BLOCKED.value):
                await self.store.update_volume(job_id, number, status=VolumeStatus.READY_FOR_SCORING)
            return {"success": True, "page_count": cached.page_count, "cached": True}

        async with self._slot(job_id):
            await self.steps.ensure_active(job_id)

            await self.store.update_volume(job_id, number, status=VolumeStatus.GENERATING)
            await self.progress.stage(job_id, generation_stage_id(number), StageProgress.running())
            await self.progress.update(
                job_id,
                progress=entry.progress_start,
                step=f"Generating Volume {number}: {entry.name}",
                current_stage=self.stage,
                current_volume=number,
            )

            job = await self.store.get_job(job_id)
            context = AgentContext.from_job(job, target_volume=number)

            async def report(percent: int, step: str) -> None:
                await self.progress.volume(job_id, number, percent, step)

            result = await self.agents.writer.run(context, progress=report)
            if not result.ok:
                raise StageFailed(self.stage, "; ".join(result.errors) or f"Volume {number} generation failed")

            content = result.data["content"]
            page_count = result.data["page_count"]

            await save_checkpoint(self.store, job_id, number, content, page_count)
            await self.store.update_volume(job_id, number, status=VolumeStatus.READY_FOR_SCORING)
            await self.progress.update(
                job_id,
                progress=entry.progress_end,
                step=f"Volume {number} ({entry.name}) generated - {page_count} pages",
            )

        failed_sections = result.data.get("failed_sections") or []
        if failed_sections:
            logger.warning(
                f"Volume {number} checkpointed with {len(failed_sections)} failed section(s)",
                extra=log_ctx,
            )
        else:
            logger.info(f"Volume {number} checkpointed ({page_count} pages)", extra=log_ctx)

        return {"success": True, "page_count": page_count, "failed_sections": failed_sections}

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        # Only the volume is marked; the orchestrator decides what the job does
        number = int(data["volume"])
        await self.store.update_volume(job_id, number, status=VolumeStatus.BLOCKED)
        await self.progress.stage(job_id, generation_stage_id(number), StageProgress.failed(str(error)))
