"""
PropelAI Final Scoring Stage

Cross-volume checks no single volume can see:
- duplicate content (20-word sliding window fingerprints)
- terminology and company-name consistency
- completeness (minimum size, expected sections somewhere in the set)
- RFP alignment (mean and minimum of the volume scores)

Resolves the job to ``needs_revision`` or ``completed``.
"""

import logging
import re
from typing import Any, Dict, List

from core.config import PipelineConfig
from core.events import EventName
from core.state import VOLUME_NUMBERS, JobStatus, StageStatus, Volume, utcnow
from pipeline.base import StageExecutor

logger = logging.getLogger(__name__)


WINDOW_WORDS = 20
MIN_CHUNK_CHARS = 100
CONSISTENCY_MIN_CHARS = 1000
KEY_TERMS = ("proposal", "requirement", "solution", "approach")
TERM_USAGE_RATIO = 0.3

EXPECTED_SECTIONS = (
    ("Executive Summary", re.compile(r"executive\s+summary", re.IGNORECASE)),
    ("Technical Approach", re.compile(r"technical\s+approach", re.IGNORECASE)),
    ("Experience", re.compile(r"experience|past\s+performance", re.IGNORECASE)),
    ("Pricing", re.compile(r"pric(e|ing)|cost", re.IGNORECASE)),
)


def count_duplicate_chunks(texts: List[str]) -> int:
    """Repeats of any 20-word window (over 100 chars) across all texts"""
    seen: Dict[str, int] = {}
    duplicates = 0
    for text in texts:
        words = text.split()
        for i in range(len(words) - WINDOW_WORDS):
            chunk = " ".join(words[i:i + WINDOW_WORDS])
            if len(chunk) <= MIN_CHUNK_CHARS:
                continue
            if seen.get(chunk, 0) > 0:
                duplicates += 1
            seen[chunk] = seen.get(chunk, 0) + 1
    return duplicates


def duplicate_content_check(texts: List[str], config: PipelineConfig) -> Dict[str, Any]:
    count = count_duplicate_chunks(texts)
    passed = count < config.duplicate_threshold
    return {
        "passed": passed,
        "details": (
            f"Minimal duplicate content detected ({count} chunks)"
            if passed else f"Excessive duplicate content detected ({count} chunks)"
        ),
        "duplicate_count": count,
    }


def consistency_check(texts: List[str], company_name: str) -> Dict[str, Any]:
    inconsistencies: List[str] = []

    if company_name:
        pattern = re.compile(re.escape(company_name), re.IGNORECASE)
        for i, text in enumerate(texts, 1):
            if len(text) > CONSISTENCY_MIN_CHARS and not pattern.search(text):
                inconsistencies.append(f"Volume {i} may not reference company name")

    for term in KEY_TERMS:
        pattern = re.compile(term, re.IGNORECASE)
        counts = [len(pattern.findall(text)) for text in texts]
        average = sum(counts) / len(counts) if counts else 0
        for i, (text, count) in enumerate(zip(texts, counts), 1):
            if len(text) > CONSISTENCY_MIN_CHARS and count < average * TERM_USAGE_RATIO:
                inconsistencies.append(f'Volume {i} has unusual "{term}" usage')

    return {
        "passed": not inconsistencies,
        "details": (
            "All volumes show consistent terminology and formatting"
            if not inconsistencies else f"Found {len(inconsistencies)} potential inconsistencies"
        ),
        "inconsistencies": inconsistencies,
    }


def completeness_check(texts: List[str], config: PipelineConfig) -> Dict[str, Any]:
    missing: List[str] = [
        f"Volume {i} may be incomplete (too short)"
        for i, text in enumerate(texts, 1)
        if len(text) < config.min_volume_chars
    ]
    for name, pattern in EXPECTED_SECTIONS:
        if not any(pattern.search(text) for text in texts):
            missing.append(f'No "{name}" section found across volumes')

    return {
        "passed": not missing,
        "details": "All expected content elements present" if not missing else f"Missing {len(missing)} expected elements",
        "missing_elements": missing,
    }


def alignment_check(scores: List[int], config: PipelineConfig) -> Dict[str, Any]:
    average = sum(scores) / len(scores) if scores else 0.0
    minimum = min(scores) if scores else 0
    passed = minimum >= config.alignment_min_threshold and average >= config.alignment_mean_threshold
    return {
        "passed": passed,
        "details": (
            f"Strong RFP alignment (avg: {average:.1f}%, min: {minimum}%)"
            if passed else f"Some volumes need improvement (avg: {average:.1f}%, min: {minimum}%)"
        ),
        "alignment_score": round(average, 1),
        "minimum_score": minimum,
    }


def build_final_report(
    volumes: List[Volume],
    company_name: str,
    quality_checks: List[Dict[str, Any]],
    config: PipelineConfig,
) -> Dict[str, Any]:
    by_number = {v.number: v for v in volumes}
    texts = [by_number[n].content if n in by_number else "" for n in VOLUME_NUMBERS]
    scores = [(by_number[n].score or 0) if n in by_number else 0 for n in VOLUME_NUMBERS]

    analysis = {
        "duplicate_content_check": duplicate_content_check(texts, config),
        "consistency_check": consistency_check(texts, company_name),
        "completeness_check": completeness_check(texts, config),
        "rfp_alignment_check": alignment_check(scores, config),
    }

    critical_gaps = [
        f"volume{n}: {gap}"
        for n in VOLUME_NUMBERS if n in by_number
        for gap in (by_number[n].compliance_details or {}).get("critical_gaps") or []
    ]

    needs_revision = (
        not analysis["rfp_alignment_check"]["passed"]
        or not analysis["duplicate_content_check"]["passed"]
        or not analysis["completeness_check"]["passed"]
        or len(critical_gaps) > config.max_critical_gaps
    )

    return {
        "overall_compliance_score": analysis["rfp_alignment_check"]["alignment_score"],
        "volume_scores": {f"volume{n}": scores[i] for i, n in enumerate(VOLUME_NUMBERS)},
        "cross_volume_analysis": analysis,
        "quality_checks": quality_checks,
        "all_critical_gaps": critical_gaps,
        "needs_revision": needs_revision,
        "recommendation": (
            "Manual review recommended before submission" if needs_revision else "Proposal ready for submission"
        ),
        "generated_at": utcnow().isoformat(),
    }


class FinalScoringStage(StageExecutor):
    """Cross-volume report and the job's final status"""

    stage = "final_scoring"
    trigger = EventName.SCORING_START
    completion = EventName.SCORING_COMPLETE

    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        await self.progress.update(
            job_id,
            progress=95,
            step="Final scoring - cross-volume analysis",
            current_stage=self.stage,
            final_scoring_status=StageStatus.RUNNING.value,
        )

        job = await self.store.get_job(job_id)
        volumes = await self.store.list_volumes(job_id)
        company = (job.company_data.get("company") or {}).get("name") or job.company_data.get("name") or ""

        report = build_final_report(volumes, company, job.quality_checks, self.config)
        status = JobStatus.NEEDS_REVISION if report["needs_revision"] else JobStatus.COMPLETED

        await self.progress.update(
            job_id,
            progress=100,
            step=(
                "Complete - Manual review recommended" if report["needs_revision"]
                else "Complete - Ready for submission"
            ),
            status=status,
            final_report=report,
            final_scoring_status=StageStatus.COMPLETE.value,
            completed_at=utcnow(),
        )

        logger.info(
            f"Final scoring: {report['overall_compliance_score']}% overall, status {status.value}",
            extra={"job_id": job_id, "stage": self.stage},
        )
        return {
            "success": True,
            "status": status.value,
            "overall_score": report["overall_compliance_score"],
            "needs_revision": report["needs_revision"],
        }

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        await self.progress.fail(
            job_id,
            "Final scoring failed",
            str(error),
            final_scoring_status=StageStatus.FAILED.value,
        )
