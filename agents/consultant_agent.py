"""
PropelAI Volume Consultant Agent

Turns a volume's requirement-level score breakdown into a ranked
improvement plan. Runs only for volumes scoring below the consult
threshold. Issues that were already worked on in earlier iterations and
still show up as gaps are promoted to critical priority.
"""

import logging
from typing import Any, Dict, List, Optional

from core.config import PipelineConfig, get_config
from core.errors import GenerationError
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent, volume_name
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.json_repair import parse_json_response
from agents.integrations.llm_clients import TaskType

logger = logging.getLogger(__name__)


CONSULTANT_SYSTEM_PROMPT = """You are an expert federal proposal compliance consultant with 20+ years of experience winning multi-million dollar government contracts.

Your job is to analyze a proposal volume that scored below 80% and provide SPECIFIC, ACTIONABLE recommendations to improve compliance and win probability.

Focus on:
1. Compliance gaps - where RFP requirements are not fully addressed
2. Evaluation criteria - how to maximize scores on Section M factors
3. Format and structure - page limits, required sections, submission compliance

Return ONLY valid JSON matching the specified schema. Be specific, not generic."""

PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2}


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _history_block(history: List[Dict[str, Any]]) -> str:
    if not history:
        return ""
    lines = ["## PREVIOUS ITERATION HISTORY"]
    for record in history:
        lines.append(f"### Iteration {record['iteration']}")
        lines.append(f"User Feedback: {record.get('user_feedback') or '(none)'}")
        lines.append(f"Issues Addressed: {', '.join(record.get('issues_addressed') or []) or '(none)'}")
    lines.append("IMPORTANT: flag any issue that REPEATS across iterations as critical priority.")
    return "\n".join(lines)


def build_consultant_prompt(
    number: int,
    content: str,
    score_result: Dict[str, Any],
    iteration: int,
    history: List[Dict[str, Any]],
    config: PipelineConfig,
) -> str:
    requirement_lines = "\n".join(
        f"**{r['requirement_id']}** - Score: {r['score']}%\n"
        f"Requirement: {r['requirement_text']}\n"
        f"Rationale: {r['rationale']}\n"
        f"Gaps: {'; '.join(r['gaps'])}"
        for r in score_result.get("requirement_scores") or []
    )
    strengths = "\n".join(f"{i}. {s}" for i, s in enumerate(score_result.get("strengths") or [], 1))
    gaps = "\n".join(f"{i}. {g}" for i, g in enumerate(score_result.get("critical_gaps") or [], 1))

    return f"""# TASK: Analyze Volume {number} ({volume_name(number)}) for Compliance Improvement

## CURRENT SITUATION
- Current Score: {score_result.get('overall_score')}%
- Target Score: {config.consultant_target_score}%+
- Iteration: {iteration} of {config.max_iterations} max

{_history_block(history)}

## SCORING BREAKDOWN
### Strengths (Keep These)
{strengths or '(none listed)'}

### Critical Gaps
{gaps or '(none listed)'}

### Requirement-Level Scores
{requirement_lines or '(no requirement scores)'}

## VOLUME CONTENT (first 3000 chars)
{content[:3000]}

Return ONLY a JSON object:
{{
  "estimatedScoreIncrease": 8,
  "complianceGaps": [
    {{"requirementId": "REQ-001", "requirement": "text", "currentIssue": "what is missing",
      "recommendedFix": "what to add", "priority": "critical", "estimatedScoreImpact": 8}}
  ],
  "recommendations": [
    {{"category": "Compliance", "action": "Add dedicated subsection", "rationale": "RFP requires it",
      "exampleLanguage": "Our approach to ... includes ..."}}
  ],
  "iterationContext": {{"repeatedIssues": [], "successfulChanges": [], "areasToPreserve": []}}
}}"""


class ConsultantAgent(BaseAgent):
    """Improvement-analysis unit used inside the consultation loop"""

    def __init__(self, gateway: Optional[GenerationGateway] = None, config: Optional[PipelineConfig] = None):
        super().__init__(
            AgentConfig(
                name="volume_consultant",
                temperature=0.4,
                max_tokens=8000,
                system_prompt=CONSULTANT_SYSTEM_PROMPT,
                task_type=TaskType.CONSULTING,
            ),
            gateway,
        )
        self.pipeline_config = config

    async def _execute(
        self,
        context: AgentContext,
        score_result: Optional[Dict[str, Any]] = None,
        iteration: int = 0,
        history: Optional[List[Dict[str, Any]]] = None,
        **kwargs,
    ) -> AgentResult:
        config = self.pipeline_config or get_config().pipeline
        number = context.target_volume
        score_result = score_result or {}
        history = history or []
        content = context.volumes.get(number, "")

        warnings: List[str] = []
        try:
            response = await self._call_llm(
                build_consultant_prompt(number, content, score_result, iteration, history, config),
                job_id=context.job_id,
            )
            parsed = parse_json_response(response, default=None, context="consultant")
            if not isinstance(parsed, dict) or not isinstance(parsed.get("complianceGaps"), list):
                raise GenerationError("Invalid consultant response format")
            insights = self._normalize(parsed, number, score_result, config)
        except GenerationError as e:
            logger.warning(
                f"Consultant analysis failed, using score-derived plan: {e}",
                extra={"job_id": context.job_id, "volume": number},
            )
            warnings.append(str(e))
            insights = self.fallback_insights(number, score_result, config)

        self._promote_repeated_issues(insights, history)

        logger.info(
            f"Consultant plan for Volume {number}: {len(insights['compliance_gaps'])} gaps, "
            f"{len(insights['recommendations'])} recommendations, "
            f"+{insights['estimated_score_increase']} estimated",
            extra={"job_id": context.job_id, "volume": number},
        )
        return AgentResult(status="warning" if warnings else "success", data=insights, warnings=warnings)

    @staticmethod
    def _normalize(parsed: Dict[str, Any], number: int, score_result: Dict[str, Any], config: PipelineConfig) -> Dict[str, Any]:
        gaps = []
        for gap in parsed.get("complianceGaps") or []:
            if not isinstance(gap, dict):
                continue
            priority = str(gap.get("priority") or "medium").lower()
            gaps.append({
                "requirement_id": str(gap.get("requirementId") or ""),
                "requirement": str(gap.get("requirement") or ""),
                "current_issue": str(gap.get("currentIssue") or ""),
                "recommended_fix": str(gap.get("recommendedFix") or ""),
                "priority": priority if priority in PRIORITY_RANK else "medium",
                "estimated_score_impact": _as_int(gap.get("estimatedScoreImpact"), 0),
            })

        recommendations = [
            {
                "category": str(r.get("category") or "Compliance"),
                "action": str(r.get("action") or ""),
                "rationale": str(r.get("rationale") or ""),
                "example_language": r.get("exampleLanguage"),
            }
            for r in parsed.get("recommendations") or [] if isinstance(r, dict)
        ]

        context = parsed.get("iterationContext") or {}
        return {
            "volume_number": number,
            "current_score": score_result.get("overall_score"),
            "target_score": config.consultant_target_score,
            "estimated_score_increase": _as_int(parsed.get("estimatedScoreIncrease"), 5),
            "compliance_gaps": gaps,
            "recommendations": recommendations,
            "iteration_context": {
                "repeated_issues": [str(i) for i in context.get("repeatedIssues") or []],
                "successful_changes": [str(i) for i in context.get("successfulChanges") or []],
                "areas_to_preserve": [str(i) for i in context.get("areasToPreserve") or []],
            },
        }

    @staticmethod
    def fallback_insights(number: int, score_result: Dict[str, Any], config: PipelineConfig) -> Dict[str, Any]:
        """Gaps straight from the requirement scores below the gap threshold"""
        gaps = [
            {
                "requirement_id": r["requirement_id"],
                "requirement": r["requirement_text"],
                "current_issue": "; ".join(r["gaps"]),
                "recommended_fix": "Address the identified gaps with specific, detailed content",
                "priority": "high",
                "estimated_score_impact": 5,
            }
            for r in score_result.get("requirement_scores") or []
            if r["score"] < config.gap_threshold
        ]
        return {
            "volume_number": number,
            "current_score": score_result.get("overall_score"),
            "target_score": config.consultant_target_score,
            "estimated_score_increase": 5,
            "compliance_gaps": gaps,
            "recommendations": [{
                "category": "Compliance",
                "action": f"Review and address all requirements scoring below {config.gap_threshold}%",
                "rationale": "These gaps significantly impact overall compliance score",
                "example_language": None,
            }],
            "iteration_context": {"repeated_issues": [], "successful_changes": [], "areas_to_preserve": []},
        }

    @staticmethod
    def _promote_repeated_issues(insights: Dict[str, Any], history: List[Dict[str, Any]]) -> None:
        """Gaps already addressed in an earlier iteration become critical, then rank"""
        addressed = {issue for record in history for issue in record.get("issues_addressed") or []}
        repeated = insights["iteration_context"]["repeated_issues"]
        for gap in insights["compliance_gaps"]:
            if gap["requirement_id"] and gap["requirement_id"] in addressed:
                gap["priority"] = "critical"
                if gap["requirement_id"] not in repeated:
                    repeated.append(gap["requirement_id"])

        insights["compliance_gaps"].sort(
            key=lambda g: (PRIORITY_RANK.get(g["priority"], 2), -g["estimated_score_impact"])
        )


def create_consultant_agent(
    gateway: Optional[GenerationGateway] = None,
    config: Optional[PipelineConfig] = None,
) -> ConsultantAgent:
    """Factory function to create the consultant agent"""
    return ConsultantAgent(gateway, config)
