"""
PropelAI Volume Checkpoints
Rules for reusing persisted volume content instead of regenerating it
"""

import logging
from typing import Optional

from core.state import Job, StageStatus, Volume, VolumeStatus, utcnow
from database.store import JobStore

logger = logging.getLogger(__name__)

def generation_stage_id(volume: int) -> str:
    """Key of a volume's generation entry in Job.stage_progress"""
    return f"volume_{volume}"


def has_valid_checkpoint(job: Job, volume: Volume) -> bool:
    """
    A checkpoint is valid iff there is content AND its paired status flag
    says it was completed: the generation entry in stage_progress is
    ``complete`` or the volume itself has been approved.
    """
    if not volume.content:
        return False
    progress = job.stage_progress.get(generation_stage_id(volume.number), {})
    if progress.get("status") == StageStatus.COMPLETE.value:
        return True
    return volume.status in (VolumeStatus.APPROVED.value, VolumeStatus.COMPLETE.value)


async def load_checkpoint(store: JobStore, job_id: str, number: int) -> Optional[Volume]:
    """
    Return the volume when its checkpoint is reusable.

    Stale content (present but never flagged complete) is discarded so
    the caller regenerates from scratch.
    """
    job = await store.get_job(job_id)
    volume = await store.get_volume(job_id, number)

    if has_valid_checkpoint(job, volume):
        logger.info(
            f"Volume {number} checkpoint found ({len(volume.content)} chars), skipping generation",
            extra={"job_id": job_id, "volume": number},
        )
        return volume

    if volume.content:
        logger.warning(
            f"Volume {number} has content without a completion flag; discarding stale checkpoint",
            extra={"job_id": job_id, "volume": number},
        )
        await store.update_volume(job_id, number, content="", page_count=0)

    return None


async def save_checkpoint(store: JobStore, job_id: str, number: int, content: str, page_count: int) -> Volume:
    """Persist volume content and flag its generation entry complete"""
    volume = await store.update_volume(job_id, number, content=content, page_count=page_count)
    await store.merge_stage_progress(job_id, generation_stage_id(number), {
        "status": StageStatus.COMPLETE.value,
        "completed_at": utcnow().isoformat(),
        "pages": page_count,
    })
    return volume
