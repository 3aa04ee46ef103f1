"""
PropelAI Volume Writer Agent

Writes one volume section-by-section. Sections are generated in parallel;
a section that fails is replaced by an inline error marker so its
siblings and the volume as a whole still complete.
"""

import asyncio
import logging
import math
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.state import VOLUME_CATALOGUE
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent, volume_name
from agents.content_mapper_agent import outline_sections, requirements_for_volume
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.llm_clients import TaskType

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[int, str], Awaitable[None]]

CHARS_PER_PAGE = 3000
TOKENS_PER_PAGE = 750
TOKEN_BUFFER = 1.3
MIN_SECTION_TOKENS = 3000
MAX_SECTION_TOKENS = 12000
ROMAN = {1: "I", 2: "II", 3: "III", 4: "IV"}

BASE_SYSTEM_PROMPT = """You are an expert federal proposal writer with 20+ years of experience winning multi-million dollar government contracts.

APPLY THESE COMPLIANCE FRAMEWORKS:
- Section L/M Alignment: directly address each evaluation factor from Section M
- Requirement Traceability: every requirement is explicitly addressed with its ID
- Evidence-Based Claims: support statements with past performance, certifications or methodologies

WRITING RULES:
- NEVER use generic buzzwords like "proven track record", "robust", "innovative", "seamless"
- Use specific examples and tool names from the company's actual work
- Focus on HOW the work will be done, not just WHAT will be done
{focus}

OUTPUT: Return ONLY clean HTML content. No markdown, no code blocks, no explanations.
Start directly with content - no preamble."""

VOLUME_FOCUS = {
    1: "- Technical depth: specific methodologies, tools, architecture and implementation steps",
    2: "- Management depth: organization, reporting lines, staffing, transition and quality control",
    3: "- Past performance: cite contracts by name, agency, value and quantified outcomes",
    4: "- Pricing: labor categories, rates and a cost narrative consistent with FAR Part 15",
}

_CODE_FENCE = re.compile(r"```(?:html)?\n?")


def section_token_budget(pages: float) -> int:
    """Output budget for a section of the given page allocation"""
    return min(MAX_SECTION_TOKENS, max(MIN_SECTION_TOKENS, math.ceil(pages * TOKENS_PER_PAGE * TOKEN_BUFFER)))


def sanitize_content(content: str) -> str:
    """Strip code fences and any preamble before the first tag"""
    clean = _CODE_FENCE.sub("", content.strip()).strip()
    html_start = clean.find("<")
    if html_start > 0:
        clean = clean[html_start:]
    if not clean.startswith("<"):
        clean = f"<div>{clean}</div>"
    return clean


def section_error_marker(title: str, message: str) -> str:
    return (
        f'<div class="section-error"><h2>{title}</h2>'
        f'<p class="error-message">This section failed to generate: {message}</p></div>'
    )


def count_pages(sections: List[str]) -> int:
    return sum(math.ceil(len(s) / CHARS_PER_PAGE) for s in sections)


def wrap_volume(number: int, sections: List[str], rfp_parsed_data: Dict[str, Any]) -> str:
    metadata = (rfp_parsed_data or {}).get("metadata") or {}
    header = (
        '<div class="volume-header">\n'
        f"    <h1>Volume {ROMAN.get(number, number)}: {volume_name(number)}</h1>\n"
        f'    <p class="solicitation">Solicitation: {metadata.get("solicitation_num", "Unknown")}</p>\n'
        f'    <p class="agency">{metadata.get("agency", "")}</p>\n'
        "</div>\n"
    )
    return header + '\n<hr class="section-divider"/>\n'.join(sections)


def company_summary(company_data: Dict[str, Any]) -> Dict[str, Any]:
    """Compact view of company data shared by every section prompt"""
    company = company_data.get("company") or {}
    personnel = company_data.get("personnel") or []
    contracts = company_data.get("past_performance") or []

    capabilities: List[str] = []
    for source in [pp.get("relevance_tags") or [] for pp in contracts] + [p.get("expertise") or [] for p in personnel]:
        for tag in source:
            if tag not in capabilities:
                capabilities.append(tag)

    return {
        "name": company.get("name", ""),
        "capabilities": capabilities[:20],
        "certifications": list(company.get("certifications") or []),
        "personnel": [
            f"{p.get('name')} ({p.get('role')}, {p.get('years_experience', 0)} years)"
            for p in personnel[:5]
        ],
        "past_performance": [
            f"{pp.get('project_name')} ({pp.get('agency', 'Unknown agency')})"
            for pp in contracts[:3]
        ],
        "labor_rates": [
            f"{r.get('category')}: ${r.get('hourly_rate')}/hr" for r in company_data.get("labor_rates") or []
        ],
    }


class WriterAgent(BaseAgent):
    """Writes the sections of one volume and assembles them"""

    def __init__(self, gateway: Optional[GenerationGateway] = None):
        super().__init__(
            AgentConfig(
                name="agent_4",
                temperature=0.3,
                max_tokens=MAX_SECTION_TOKENS,
                task_type=TaskType.SECTION_WRITING,
            ),
            gateway,
        )

    async def _execute(
        self,
        context: AgentContext,
        progress: Optional[ProgressCallback] = None,
        **kwargs,
    ) -> AgentResult:
        number = context.target_volume
        if number not in VOLUME_CATALOGUE:
            return AgentResult(status="error", errors=[f"Unknown volume {number}"])

        sections = outline_sections(context.content_outlines, number)
        requirements = requirements_for_volume(context.content_outlines, number)
        summary = company_summary(context.company_data)
        system_prompt = BASE_SYSTEM_PROMPT.format(focus=VOLUME_FOCUS[number])

        logger.info(
            f"Writing {len(sections)} sections of Volume {number} in parallel",
            extra={"job_id": context.job_id, "volume": number},
        )

        done = 0

        async def write(index: int, section: Dict[str, Any]) -> str:
            nonlocal done
            prompt = self._section_prompt(context, number, index, len(sections), section, requirements, summary)
            content = await self._call_llm(
                prompt,
                job_id=context.job_id,
                system_prompt=system_prompt,
                max_tokens=section_token_budget(section.get("page_allocation") or 5),
            )
            done += 1
            if progress is not None:
                await progress(
                    round(done / len(sections) * 100),
                    f"Section {done}/{len(sections)} complete: {section['title']}",
                )
            return sanitize_content(content)

        results = await asyncio.gather(
            *(write(i, s) for i, s in enumerate(sections)),
            return_exceptions=True,
        )

        contents: List[str] = []
        failed: List[str] = []
        for section, result in zip(sections, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Section '{section['title']}' failed: {result}",
                    extra={"job_id": context.job_id, "volume": number},
                )
                failed.append(section["title"])
                contents.append(section_error_marker(section["title"], str(result)))
            else:
                contents.append(result)

        if failed and len(failed) == len(sections):
            return AgentResult(
                status="error",
                errors=[f"All {len(sections)} sections of Volume {number} failed to generate"],
            )

        page_count = count_pages(contents)
        data = {
            "volume_number": number,
            "content": wrap_volume(number, contents, context.rfp_parsed_data),
            "page_count": page_count,
            "sections_written": [s["title"] for s in sections],
            "failed_sections": failed,
            "requirements_addressed": [r for s in sections for r in s.get("requirements_addressed") or []],
        }

        if failed:
            logger.warning(
                f"{len(failed)} section(s) failed but Volume {number} generation continued",
                extra={"job_id": context.job_id, "volume": number},
            )
            return AgentResult(status="warning", data=data, warnings=[f"Section failed: {t}" for t in failed])
        return AgentResult(status="success", data=data)

    @staticmethod
    def _section_prompt(
        context: AgentContext,
        number: int,
        index: int,
        total: int,
        section: Dict[str, Any],
        requirements: List[Dict[str, Any]],
        summary: Dict[str, Any],
    ) -> str:
        pages = section.get("page_allocation") or 5
        metadata = context.rfp_parsed_data.get("metadata") or {}
        factors = (context.rfp_parsed_data.get("section_m") or {}).get("factors") or []

        addressed = set(section.get("requirements_addressed") or [])
        focus = [r for r in requirements if r["req_id"] in addressed] or requirements
        req_lines = "\n".join(
            f"- [{'MANDATORY' if r.get('mandatory') else 'OPTIONAL'}] {r['req_id']}: {r['requirement'][:200]}"
            for r in focus[:10]
        ) or "General requirements for this volume"

        subsections = ""
        if section.get("subsections"):
            subsections = "\nSUBSECTIONS TO INCLUDE:\n" + "\n".join(
                f"- {s['title']} ({s['page_allocation']} pages)" for s in section["subsections"]
            )

        return f"""Write the "{section['title']}" section for the {volume_name(number)} Volume.

COMPLIANCE REQUIREMENTS:
{req_lines}

EVALUATION FACTORS TO MAXIMIZE:
{chr(10).join(f"- {f.get('name')} (Weight: {f.get('weight')})" for f in factors)}

COMPANY CAPABILITIES: {', '.join(summary['capabilities'][:10]) or 'Not specified'}
KEY PERSONNEL: {'; '.join(summary['personnel']) or 'Not specified'}
PAST PERFORMANCE: {'; '.join(summary['past_performance']) or 'Not specified'}
{('LABOR RATES: ' + '; '.join(summary['labor_rates'])) if number == 4 else ''}

CONTEXT:
- Company: {summary['name'] or context.company_id}
- Solicitation: {metadata.get('solicitation_num', 'Unknown')}
- Agency: {metadata.get('agency', 'Unknown')}
- This is section {index + 1} of {total}

TARGET LENGTH: {pages} pages (~{pages * CHARS_PER_PAGE} characters)
{subsections}

Address each requirement explicitly by ID. OUTPUT HTML ONLY - START DIRECTLY WITH <h2> TAG."""


def create_writer_agent(gateway: Optional[GenerationGateway] = None) -> WriterAgent:
    """Factory function to create the volume writer agent"""
    return WriterAgent(gateway)
