"""
PropelAI Assembly Stage

Barrier check over the four volumes, then packaging into ``final_html``.
A failed critical check aborts assembly with the list of failed checks;
no partial document is ever produced.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from core.config import PipelineConfig
from core.errors import QualityGateFailed, StageFailed
from core.events import EventName
from core.state import VOLUME_NUMBERS, Job, StageStatus, Volume, VolumeStatus
from agents.base import AgentContext
from pipeline.base import StageExecutor

logger = logging.getLogger(__name__)


@dataclass
class QualityCheck:
    check: str
    passed: bool
    details: str
    critical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def run_quality_checks(job: Job, volumes: List[Volume], config: PipelineConfig) -> List[QualityCheck]:
    """Deterministic barrier checks; ``critical`` follows config.critical_checks"""
    by_number = {v.number: v for v in volumes}
    checks: List[QualityCheck] = []

    present = [n for n in VOLUME_NUMBERS if by_number.get(n) and by_number[n].content]
    checks.append(QualityCheck(
        check="All 4 volumes present",
        passed=len(present) == len(VOLUME_NUMBERS),
        details=f"{len(present)}/{len(VOLUME_NUMBERS)} volumes have content",
    ))

    for n in VOLUME_NUMBERS:
        volume: Optional[Volume] = by_number.get(n)
        content = volume.content if volume else ""
        pages = volume.page_count if volume else 0

        limit = config.resolve_page_limit(n, job.volume_page_limits)
        checks.append(QualityCheck(
            check=f"volume{n} page limit",
            passed=limit is None or pages <= limit,
            details=f"{pages}/{limit} pages" if limit is not None else f"{pages} pages (no limit)",
        ))
        checks.append(QualityCheck(
            check=f"volume{n} minimum content",
            passed=len(content) >= config.min_volume_chars,
            details=f"{len(content)} characters (minimum {config.min_volume_chars})",
        ))

    approved = [
        n for n in VOLUME_NUMBERS
        if by_number.get(n) and by_number[n].status in (VolumeStatus.APPROVED.value, VolumeStatus.COMPLETE.value)
    ]
    checks.append(QualityCheck(
        check="All volumes approved",
        passed=len(approved) == len(VOLUME_NUMBERS),
        details=f"{len(approved)}/{len(VOLUME_NUMBERS)} volumes approved",
    ))

    for c in checks:
        c.critical = c.check in config.critical_checks
    return checks


class AssemblyStage(StageExecutor):
    """Quality barrier and final packaging"""

    stage = "assembly"
    trigger = EventName.ASSEMBLY_START
    completion = EventName.ASSEMBLY_COMPLETE

    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        log_ctx = {"job_id": job_id, "stage": self.stage}

        await self.progress.update(
            job_id,
            progress=85,
            step="Final assembly - running quality checks",
            current_stage=self.stage,
            current_volume=None,
            assembly_status=StageStatus.RUNNING.value,
        )

        job = await self.store.get_job(job_id)
        volumes = await self.store.list_volumes(job_id)
        checks = run_quality_checks(job, volumes, self.config)
        await self.store.update_job(job_id, quality_checks=[c.to_dict() for c in checks])

        for c in checks:
            if not c.passed:
                logger.warning(f"QA check failed: {c.check} ({c.details})", extra=log_ctx)

        critical_failures = [c.check for c in checks if c.critical and not c.passed]
        if critical_failures:
            raise QualityGateFailed(critical_failures)

        await self.progress.update(job_id, progress=88, step="Final assembly - packaging proposal")
        context = AgentContext.from_job(job, volumes={v.number: v.content for v in volumes})
        result = await self.agents.packager.run(context, page_counts={v.number: v.page_count for v in volumes})
        if not result.ok:
            raise StageFailed(self.stage, f"Packaging failed: {'; '.join(result.errors)}")

        await self.progress.update(
            job_id,
            progress=90,
            step="Final assembly complete",
            final_html=result.data["final_html"],
            assembly_status=StageStatus.COMPLETE.value,
        )

        passed = sum(1 for c in checks if c.passed)
        logger.info(f"Assembly complete: {passed}/{len(checks)} QA checks passed", extra=log_ctx)
        return {"success": True, "checks_passed": passed, "checks_total": len(checks)}

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        await self.progress.fail(
            job_id,
            "Final assembly failed",
            str(error),
            assembly_status=StageStatus.FAILED.value,
        )

    def failure_payload(self, error: Exception) -> Dict[str, Any]:
        payload = super().failure_payload(error)
        if isinstance(error, QualityGateFailed):
            payload["failed_checks"] = error.failed_checks
        return payload
