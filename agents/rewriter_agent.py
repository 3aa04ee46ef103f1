"""
PropelAI Volume Rewriter Agent

Two-pass rewrite of a single volume:
- Pass 1 fixes the consultant's ranked compliance gaps and the user's
  feedback (which wins over automated suggestions on conflict), leaving
  the listed areas to preserve untouched
- Pass 2 polishes readability and flow without adding substantive claims

A failed pass 1 returns the original content with an error status; a
failed pass 2 keeps the pass 1 content.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from core.config import PipelineConfig, get_config
from core.errors import GenerationError
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent, volume_name
from agents.writer_agent import sanitize_content
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.llm_clients import TaskType

logger = logging.getLogger(__name__)


PASS1_SYSTEM_PROMPT = """You are an expert federal proposal writer specializing in compliance and technical accuracy.

This is PASS 1 of a two-pass rewriting process. Your ONLY job in this pass is to:
1. Fix compliance gaps identified by the consultant
2. Address specific user feedback (if provided)
3. Ensure all RFP requirements are fully met
4. Maintain proper structure and format

Do NOT focus on style, tone, or readability yet.
Do NOT remove or significantly alter sections that are already scoring well.
Return the complete rewritten volume content in HTML format, maintaining the original structure."""

PASS2_SYSTEM_PROMPT = """You are an expert federal proposal editor specializing in quality, readability, and competitive positioning.

This is PASS 2 of a two-pass rewriting process. The compliance issues have been fixed in Pass 1.
Your job now is to enhance readability and flow, strengthen win themes, and ensure consistency and polish.

Do NOT change factual content or compliance elements from Pass 1.
Do NOT add new substantive content - only refine what's there.
Return the complete polished volume content in HTML format."""

REWRITE_MAX_TOKENS = 16000
REQUIREMENTS_WINDOW = 4000


def build_pass1_prompt(
    number: int,
    content: str,
    insights: Dict[str, Any],
    user_feedback: str,
    requirements_text: str,
    iteration: int,
    max_pages: Optional[int],
    current_pages: int,
    config: PipelineConfig,
) -> str:
    parts = [
        f"# TASK: Pass 1 Compliance Rewrite - Volume {number} ({volume_name(number)})",
        "",
        "## CONTEXT",
        f"- Iteration: {iteration} of {config.max_iterations} max",
        f"- Current Score: {insights.get('current_score')}%",
        f"- Target Score: {insights.get('target_score', config.consultant_target_score)}%",
        f"- Page Limit: {max_pages or 'none'} pages (currently {current_pages} pages)",
    ]

    if user_feedback:
        parts += [
            "",
            "## USER FEEDBACK (HIGHEST PRIORITY)",
            f'"{user_feedback}"',
            "Address this feedback directly. The user's requests override consultant recommendations if they conflict.",
        ]

    preserve = (insights.get("iteration_context") or {}).get("areas_to_preserve") or []
    if preserve:
        parts += ["", "## AREAS TO PRESERVE (Do NOT modify these)"] + [f"- {a}" for a in preserve]

    parts += ["", "## COMPLIANCE GAPS TO FIX (Prioritized)"]
    for i, gap in enumerate(insights.get("compliance_gaps") or [], 1):
        parts += [
            f"### {i}. [{gap['priority'].upper()}] {gap['requirement_id']}",
            f"Requirement: {gap['requirement']}",
            f"Current Issue: {gap['current_issue']}",
            f"Recommended Fix: {gap['recommended_fix']}",
            f"Score Impact: +{gap['estimated_score_impact']} points",
        ]

    parts += ["", "## SPECIFIC RECOMMENDATIONS"]
    for i, rec in enumerate(insights.get("recommendations") or [], 1):
        parts.append(f"{i}. {rec['category']}: {rec['action']} (Rationale: {rec['rationale']})")
        if rec.get("example_language"):
            parts.append(f'   Example: "{rec["example_language"]}"')

    parts += [
        "",
        "## RFP REQUIREMENTS (Key Sections)",
        requirements_text[:REQUIREMENTS_WINDOW],
        "",
        "## CURRENT VOLUME CONTENT",
        content,
        "",
        "Rewrite the volume to address ALL identified compliance gaps and user feedback.",
        "Return ONLY the complete rewritten HTML content.",
    ]
    return "\n".join(parts)


def build_pass2_prompt(number: int, pass1_content: str, insights: Dict[str, Any], max_pages: Optional[int]) -> str:
    amplify = [
        f"- {r['action']}" for r in insights.get("recommendations") or []
        if r.get("category") in ("Competitive Positioning", "Win Themes")
    ] or ["- Maintain professional federal proposal standards"]

    return "\n".join([
        f"# TASK: Pass 2 Quality Enhancement - Volume {number} ({volume_name(number)})",
        "",
        "Polish the compliance-fixed content below for readability, persuasiveness and consistent tone.",
        f"Page target: {max_pages or 'no limit'} pages.",
        "",
        "## STRENGTHS TO AMPLIFY",
        *amplify,
        "",
        "## PASS 1 CONTENT (Compliance-Fixed)",
        pass1_content,
        "",
        "Maintain all compliance fixes. Do NOT add new substantive content.",
        "Return ONLY the complete polished HTML content.",
    ])


def track_changes(insights: Dict[str, Any], user_feedback: str, polished: bool) -> List[Dict[str, str]]:
    changes = []
    if user_feedback:
        changes.append({
            "section": "User-Specified",
            "change_type": "user_feedback",
            "description": user_feedback[:200],
        })
    for gap in insights.get("compliance_gaps") or []:
        changes.append({
            "section": gap["requirement_id"],
            "change_type": "compliance_fix",
            "description": gap["recommended_fix"][:200],
        })
    if polished:
        changes.append({
            "section": "Overall",
            "change_type": "quality_enhancement",
            "description": "Enhanced readability, flow, and professional tone in Pass 2",
        })
    return changes


class RewriterAgent(BaseAgent):
    """Rewrites one volume from consultant insights and user feedback"""

    def __init__(self, gateway: Optional[GenerationGateway] = None, config: Optional[PipelineConfig] = None):
        super().__init__(
            AgentConfig(
                name="volume_rewriter",
                temperature=0.4,
                max_tokens=REWRITE_MAX_TOKENS,
                system_prompt=PASS1_SYSTEM_PROMPT,
                task_type=TaskType.REWRITING,
            ),
            gateway,
        )
        self.pipeline_config = config

    async def _execute(
        self,
        context: AgentContext,
        insights: Optional[Dict[str, Any]] = None,
        user_feedback: str = "",
        iteration: int = 1,
        **kwargs,
    ) -> AgentResult:
        config = self.pipeline_config or get_config().pipeline
        number = context.target_volume
        original = context.volumes.get(number, "")
        insights = insights or {}

        if not original:
            return AgentResult(status="error", errors=[f"Volume {number} has no content to rewrite"])

        max_pages = config.resolve_page_limit(number, context.volume_page_limits)
        current_pages = math.ceil(len(original) / config.chars_per_page)
        requirements_text = "\n".join(f"{r['id']}: {r['text']}" for r in context.requirements)

        def result(status: str, content: str, polished: bool, errors: List[str]) -> AgentResult:
            return AgentResult(
                status=status,
                data={
                    "volume_number": number,
                    "rewritten_content": content,
                    "page_count": math.ceil(len(content) / config.chars_per_page),
                    "changes_applied": track_changes(insights, user_feedback, polished) if content != original else [],
                    "preserved_sections": (insights.get("iteration_context") or {}).get("areas_to_preserve") or [],
                    "iteration": iteration,
                },
                errors=errors,
            )

        logger.info(
            f"Pass 1: fixing {len(insights.get('compliance_gaps') or [])} compliance gaps"
            f"{' with user feedback' if user_feedback else ''}",
            extra={"job_id": context.job_id, "volume": number},
        )
        try:
            pass1 = sanitize_content(await self._call_llm(
                build_pass1_prompt(
                    number, original, insights, user_feedback, requirements_text,
                    iteration, max_pages, current_pages, config,
                ),
                job_id=context.job_id,
                system_prompt=PASS1_SYSTEM_PROMPT,
            ))
        except GenerationError as e:
            logger.error(
                f"Rewrite pass 1 failed, keeping original content: {e}",
                extra={"job_id": context.job_id, "volume": number},
            )
            return result("error", original, False, [str(e)])

        logger.info("Pass 2: enhancing quality", extra={"job_id": context.job_id, "volume": number})
        try:
            final = sanitize_content(await self._call_llm(
                build_pass2_prompt(number, pass1, insights, max_pages),
                job_id=context.job_id,
                system_prompt=PASS2_SYSTEM_PROMPT,
            ))
        except GenerationError as e:
            logger.warning(
                f"Rewrite pass 2 failed, keeping pass 1 content: {e}",
                extra={"job_id": context.job_id, "volume": number},
            )
            out = result("warning", pass1, False, [])
            out.warnings.append(f"Quality pass skipped: {e}")
            return out

        return result("success", final, True, [])


def create_rewriter_agent(
    gateway: Optional[GenerationGateway] = None,
    config: Optional[PipelineConfig] = None,
) -> RewriterAgent:
    """Factory function to create the rewriter agent"""
    return RewriterAgent(gateway, config)
