"""
PropelAI Compliance Agent - "The Auditor"

Scores a single volume against the RFP:
1. Format check: estimated page count against the volume's page limit
2. Requirement-level scoring: each requirement scored 0-100 with rationale
   and gaps (below 70 is a gap, below 50 is critical)
3. Volume score, fix priorities and an estimated win probability

If the generation service cannot score the requirements, a substring
check on the requirement text gives a reduced-confidence score instead.
"""

import json
import logging
import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from core.config import PipelineConfig, get_config
from core.errors import GenerationError
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.json_repair import parse_json_response
from agents.integrations.llm_clients import TaskType

logger = logging.getLogger(__name__)


COMPLIANCE_AUDIT_SYSTEM_PROMPT = """You are an expert federal proposal compliance auditor. Your job is to:
1. Verify all RFP requirements are addressed
2. Check format compliance (page limits, structure)
3. Score against evaluation criteria
4. Identify any disqualifying issues

Be thorough and specific. Return JSON only."""

REQUIREMENT_SCORING_PROMPT = """Score each requirement for Volume {volume}. Return a detailed requirement-level assessment.

For each requirement, assess:
1. How well it is addressed (score 0-100)
2. Quality of the response
3. Specific gaps

REQUIREMENTS:
{requirements}

VOLUME {volume} CONTENT:
{content}

Return JSON:
{{
  "requirementScores": [
    {{"requirementId": "REQ-001", "requirementText": "requirement text", "score": 85,
      "rationale": "Addressed in Section 2 with good detail", "gaps": ["Missing specific methodology"]}}
  ],
  "strengths": ["What's working well"],
  "criticalGaps": ["Most important missing elements"]
}}

Return ONLY JSON, no markdown."""

MAX_SCORED_REQUIREMENTS = 20
MAX_FALLBACK_REQUIREMENTS = 10
CONTENT_WINDOW = 30000
FALLBACK_MATCH_CHARS = 50
FALLBACK_FOUND_SCORE = 75
FALLBACK_MISSING_SCORE = 40


@dataclass
class ComplianceCheck:
    """One format or content check on a volume"""
    category: str                       # format | content
    item: str
    status: str                         # pass | fail | warning
    details: str
    fix_priority: Optional[str] = None  # critical | high

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def estimate_win_probability(score: int, critical_issues: int) -> int:
    if critical_issues > 0:
        return max(0, 30 - critical_issues * 10)
    if score >= 95:
        return 85
    if score >= 90:
        return 75
    if score >= 85:
        return 65
    if score >= 80:
        return 50
    return max(20, score - 30)


def fix_priority(score: int, config: PipelineConfig) -> Optional[str]:
    if score < config.critical_threshold:
        return "critical"
    if score < config.gap_threshold:
        return "high"
    return None


class ComplianceAgent(BaseAgent):
    """
    The Compliance Agent - scores one volume per call.

    Used by the consultation loop on every (re)score.
    """

    def __init__(self, gateway: Optional[GenerationGateway] = None, config: Optional[PipelineConfig] = None):
        super().__init__(
            AgentConfig(
                name="agent_5",
                temperature=0.2,
                max_tokens=8000,
                system_prompt=COMPLIANCE_AUDIT_SYSTEM_PROMPT,
                task_type=TaskType.COMPLIANCE_SCORING,
            ),
            gateway,
        )
        self.pipeline_config = config

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        config = self.pipeline_config or get_config().pipeline
        number = context.target_volume
        content = context.volumes.get(number) if number else None
        if not content:
            return AgentResult(status="error", errors=[f"Volume {number} content not found"])

        checks: List[ComplianceCheck] = [self._page_check(number, content, context, config)]

        requirements = context.requirements
        try:
            scored = await self._score_requirements(context, number, content, requirements)
            requirement_scores = scored["requirement_scores"]
            strengths = scored["strengths"]
            critical_gaps = scored["critical_gaps"]
            for req in requirement_scores:
                checks.append(ComplianceCheck(
                    category="content",
                    item=req["requirement_id"],
                    status="pass" if req["score"] >= config.gap_threshold else "fail",
                    details=f"{req['requirement_id']}: Score {req['score']}% - {req['rationale']}",
                    fix_priority=fix_priority(req["score"], config),
                ))
        except GenerationError as e:
            logger.warning(
                f"Requirement scoring unavailable, using substring check: {e}",
                extra={"job_id": context.job_id, "volume": number},
            )
            requirement_scores, fallback_checks = self._fallback_scores(number, content, requirements)
            checks.extend(fallback_checks)
            strengths = []
            critical_gaps = [
                f"{r['requirement_id']}: {', '.join(r['gaps'])}"
                for r in requirement_scores if r["score"] < config.critical_threshold
            ]

        passed = sum(1 for c in checks if c.status == "pass")
        score = round(passed / len(checks) * 100)

        critical_fixes = [c.details for c in checks if c.status == "fail" and c.fix_priority == "critical"]
        high_fixes = [c.details for c in checks if c.status == "fail" and c.fix_priority == "high"]

        data = {
            "volume_number": number,
            "overall_score": score,
            "page_count": math.ceil(len(content) / config.chars_per_page),
            "format_compliance": [c.to_dict() for c in checks if c.category == "format"],
            "content_compliance": [c.to_dict() for c in checks if c.category == "content"],
            "requirement_scores": requirement_scores,
            "strengths": strengths,
            "critical_gaps": critical_gaps,
            "critical_fixes": critical_fixes,
            "high_priority_fixes": high_fixes,
            "estimated_win_probability": estimate_win_probability(score, len(critical_fixes)),
        }

        logger.info(
            f"Volume {number} scored {score}% ({len(critical_fixes)} critical fixes)",
            extra={"job_id": context.job_id, "volume": number},
        )
        return AgentResult(
            status="warning" if critical_fixes else "success",
            data=data,
            warnings=critical_fixes,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _page_check(number: int, content: str, context: AgentContext, config: PipelineConfig) -> ComplianceCheck:
        pages = math.ceil(len(content) / config.chars_per_page)
        limit = config.resolve_page_limit(number, context.volume_page_limits)
        if limit is None:
            return ComplianceCheck("format", f"Volume {number} Page Limit", "pass",
                                   f"Volume {number} is ~{pages} pages (no limit)")
        within = pages <= limit
        return ComplianceCheck(
            category="format",
            item=f"Volume {number} Page Limit",
            status="pass" if within else "fail",
            details=f"Volume {number} is ~{pages} pages (limit: {limit})",
            fix_priority=None if within else "critical",
        )

    async def _score_requirements(
        self,
        context: AgentContext,
        number: int,
        content: str,
        requirements: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        listing = "\n".join(f"{r['id']}: {r['text']}" for r in requirements[:MAX_SCORED_REQUIREMENTS])
        response = await self._call_llm(
            REQUIREMENT_SCORING_PROMPT.format(
                volume=number,
                requirements=listing or "(no explicit requirements)",
                content=content[:CONTENT_WINDOW],
            ),
            job_id=context.job_id,
        )
        parsed = parse_json_response(response, default=None, context="requirement scores")
        if not isinstance(parsed, dict):
            raise GenerationError(f"Unparseable scoring response: {json.dumps(response[:200])}")

        scores = []
        for item in parsed.get("requirementScores") or []:
            if not isinstance(item, dict) or not item.get("requirementId"):
                continue
            try:
                value = int(round(float(item.get("score", 0))))
            except (TypeError, ValueError):
                value = 0
            scores.append({
                "requirement_id": str(item["requirementId"]),
                "requirement_text": str(item.get("requirementText") or ""),
                "score": max(0, min(100, value)),
                "rationale": str(item.get("rationale") or ""),
                "gaps": [str(g) for g in item.get("gaps") or []],
            })

        return {
            "requirement_scores": scores,
            "strengths": [str(s) for s in parsed.get("strengths") or []],
            "critical_gaps": [str(g) for g in parsed.get("criticalGaps") or []],
        }

    @staticmethod
    def _fallback_scores(number: int, content: str, requirements: List[Dict[str, Any]]):
        lowered = content.lower()
        scores = []
        checks = []
        for r in requirements[:MAX_FALLBACK_REQUIREMENTS]:
            found = r["text"].lower()[:FALLBACK_MATCH_CHARS] in lowered
            scores.append({
                "requirement_id": r["id"],
                "requirement_text": r["text"],
                "score": FALLBACK_FOUND_SCORE if found else FALLBACK_MISSING_SCORE,
                "rationale": "Requirement appears to be addressed" if found else "Requirement not clearly addressed",
                "gaps": [] if found else ["Requirement not found in volume content"],
            })
            checks.append(ComplianceCheck(
                category="content",
                item=r["id"],
                status="pass" if found else "warning",
                details=f"Requirement {r['id']} check in Volume {number}",
                fix_priority=None if found else "high",
            ))
        return scores, checks


def create_compliance_agent(
    gateway: Optional[GenerationGateway] = None,
    config: Optional[PipelineConfig] = None,
) -> ComplianceAgent:
    """Factory function to create the compliance agent"""
    return ComplianceAgent(gateway, config)
