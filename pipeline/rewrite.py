"""
PropelAI Rewrite Handler

Handles ``proposal/volume.iterate``: bumps the volume to the requested
iteration, runs the two-pass rewriter, checkpoints the new content and
answers with ``proposal/volume.iteration.complete``.
"""

import logging
from typing import Any, Dict

from core.errors import StageFailed
from core.events import TIMEOUT_MARKER, EventName
from core.state import VolumeStatus
from checkpointing.volume_checkpoints import save_checkpoint
from agents.base import AgentContext
from pipeline.base import StageExecutor

logger = logging.getLogger(__name__)


class RewriteStage(StageExecutor):
    stage = "rewrite"
    trigger = EventName.VOLUME_ITERATE
    completion = EventName.VOLUME_ITERATION_COMPLETE

    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        number = int(data["volume"])
        iteration = int(data["iteration"])
        attempt = data.get("attempt", 1)
        feedback = data.get("feedback") or ""

        # The iteration number comes from the event, so a replay never double-counts
        await self.store.update_volume(job_id, number, status=VolumeStatus.ITERATING, iteration=iteration)
        await self.progress.update(
            job_id,
            step=f"Rewriting Volume {number} (iteration {iteration})",
            current_stage=self.stage,
            current_volume=number,
        )

        async def rewrite():
            job = await self.store.get_job(job_id)
            volume = await self.store.get_volume(job_id, number)
            context = AgentContext.from_job(job, volumes={number: volume.content}, target_volume=number)
            result = await self.agents.rewriter.run(
                context,
                insights=data.get("insights") or volume.insights,
                user_feedback=feedback,
                iteration=iteration,
            )
            if not result.ok:
                raise StageFailed(self.stage, f"Volume {number} rewrite failed: {'; '.join(result.errors)}")
            return result.data

        rewritten = await self.steps.run(job_id, f"v{number}_a{attempt}_i{iteration}_rewrite_run", rewrite)

        await save_checkpoint(
            self.store, job_id, number, rewritten["rewritten_content"], rewritten["page_count"],
        )
        if await self._loop_gave_up(job_id, number, attempt, iteration):
            # The volume stays blocked; a retry scores the saved rewrite
            logger.warning(
                f"Volume {number} rewrite finished after its loop timed out; leaving the volume blocked",
                extra={"job_id": job_id, "stage": self.stage, "volume": number},
            )
        else:
            await self.store.update_volume(job_id, number, status=VolumeStatus.READY_FOR_SCORING)

        logger.info(
            f"Volume {number} rewritten for iteration {iteration}: "
            f"{len(rewritten.get('changes_applied') or [])} changes, {rewritten['page_count']} pages",
            extra={"job_id": job_id, "stage": self.stage, "volume": number},
        )
        return {
            "success": True,
            "page_count": rewritten["page_count"],
            "changes_applied": len(rewritten.get("changes_applied") or []),
        }

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        number = int(data["volume"])
        await self.store.update_volume(job_id, number, status=VolumeStatus.BLOCKED)
        await self.progress.fail(job_id, f"Volume {number} rewrite failed", str(error))

    async def _loop_gave_up(self, job_id: str, number: int, attempt: int, iteration: int) -> bool:
        """True when the consultation loop stopped waiting for this rewrite"""
        wait = await self.store.get_wait(job_id, f"v{number}_a{attempt}_i{iteration - 1}_rewrite")
        return bool(wait and wait.resolved and (wait.event_data or {}).get(TIMEOUT_MARKER))
