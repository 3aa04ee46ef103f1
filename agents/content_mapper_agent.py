"""
PropelAI Content Mapper Agent - "The Architect"

Builds the content outline for all four volumes and a compliance matrix
that maps every requirement to a target volume and section. Requirements
the generation service leaves unmapped are placed by keyword so no
requirement is ever dropped between parsing and writing.
"""

import logging
from typing import Any, Dict, List, Optional

from core.errors import GenerationError
from core.state import VOLUME_CATALOGUE, VOLUME_NUMBERS
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.json_repair import parse_json_response
from agents.integrations.llm_clients import TaskType

logger = logging.getLogger(__name__)


VOLUME_OUTLINE_PROMPT = """You are an expert federal proposal architect. Create volume outlines for a government proposal.

PAGE LIMITS:
{page_limits}

EVALUATION FACTORS:
{eval_factors}

Return ONLY valid JSON with keys volume_1 .. volume_4:
{{
  "volume_1": {{
    "volume_number": 1,
    "volume_name": "Technical",
    "page_limit": 50,
    "page_allocated": 45,
    "sections": [
      {{"title": "Executive Summary", "page_allocation": 2, "requirements_addressed": []}},
      {{"title": "Technical Approach", "page_allocation": 25, "requirements_addressed": []}}
    ]
  }}
}}"""

COMPLIANCE_MAPPING_PROMPT = """Map these requirements to proposal sections. For each requirement, identify which volume and section will address it.

VOLUME STRUCTURE:
{volume_structure}

REQUIREMENTS TO MAP:
{requirements}

Return ONLY a JSON array:
[
  {{"req_id": "REQ-001", "requirement": "Brief text", "mandatory": true, "eval_factor": "Technical",
    "volume": 1, "section": "Technical Approach", "page_range": "12-18", "evidence": "How we'll address this"}}
]"""

MAPPING_CHUNK = 30
DEFAULT_SECTION_PAGES = 5


def guess_volume(requirement: Dict[str, Any]) -> int:
    """Keyword placement for a requirement the mapper did not place"""
    text = f"{requirement.get('text', '')} {requirement.get('eval_factor') or ''}".lower()
    if "past performance" in text or "reference" in text:
        return 3
    if "price" in text or "cost" in text or "rate" in text:
        return 4
    if "management" in text or "staffing" in text or "organization" in text:
        return 2
    return 1


def default_outline(number: int, page_limit: Optional[int]) -> Dict[str, Any]:
    entry = VOLUME_CATALOGUE[number]
    sections = list(entry.default_sections)
    per_section = max(1, (page_limit or len(sections) * DEFAULT_SECTION_PAGES) // len(sections))
    return {
        "volume_number": number,
        "volume_name": entry.name,
        "page_limit": page_limit,
        "page_allocated": per_section * len(sections),
        "sections": [
            {"title": title, "page_allocation": per_section, "requirements_addressed": []}
            for title in sections
        ],
    }


def _normalize_sections(sections: Any) -> List[Dict[str, Any]]:
    normalized = []
    for section in sections if isinstance(sections, list) else []:
        if not isinstance(section, dict):
            continue
        entry = {
            "title": str(section.get("title") or "Section"),
            "page_allocation": int(section.get("page_allocation") or DEFAULT_SECTION_PAGES),
            "requirements_addressed": [str(r) for r in section.get("requirements_addressed") or []],
        }
        if section.get("subsections"):
            entry["subsections"] = _normalize_sections(section["subsections"])
        normalized.append(entry)
    return normalized


def normalize_outline(data: Any, number: int, page_limit: Optional[int]) -> Dict[str, Any]:
    fallback = default_outline(number, page_limit)
    if not isinstance(data, dict):
        return fallback
    sections = _normalize_sections(data.get("sections"))
    return {
        "volume_number": number,
        "volume_name": str(data.get("volume_name") or fallback["volume_name"]),
        "page_limit": page_limit,
        "page_allocated": int(data.get("page_allocated") or sum(s["page_allocation"] for s in sections)),
        "sections": sections or fallback["sections"],
    }


def outline_sections(content_outlines: Dict[str, Any], number: int) -> List[Dict[str, Any]]:
    """Sections the writer should produce for a volume"""
    outline = (content_outlines or {}).get(f"volume_{number}") or {}
    sections = outline.get("sections") or []
    if sections:
        return sections
    return default_outline(number, None)["sections"]


def requirements_for_volume(content_outlines: Dict[str, Any], number: int) -> List[Dict[str, Any]]:
    """Compliance matrix entries mapped to a volume"""
    return [
        item for item in (content_outlines or {}).get("compliance_matrix") or []
        if item.get("volume") == number
    ]


class ContentMapperAgent(BaseAgent):
    """Two passes: volume outlines, then the requirement mapping"""

    def __init__(self, gateway: Optional[GenerationGateway] = None):
        super().__init__(
            AgentConfig(
                name="agent_3",
                temperature=0.2,
                max_tokens=8000,
                system_prompt="Return ONLY valid JSON. No markdown, no explanation.",
                task_type=TaskType.CONTENT_MAPPING,
            ),
            gateway,
        )

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        if not context.rfp_parsed_data:
            return AgentResult(status="error", errors=["RFP parsed data is required"])

        limits = context.volume_page_limits or {}
        requirements = context.requirements
        warnings: List[str] = []

        try:
            outlines = await self._generate_outlines(context, limits)
            matrix = await self._map_requirements(context, requirements, outlines)
        except GenerationError as e:
            logger.warning(
                f"Content mapping unavailable, using default outlines: {e}",
                extra={"job_id": context.job_id},
            )
            warnings.append(f"Default outlines used: {e}")
            outlines = {
                f"volume_{n}": default_outline(n, limits.get(str(n))) for n in VOLUME_NUMBERS
            }
            matrix = []

        matrix = self._complete_matrix(matrix, requirements)
        self._attach_requirements(outlines, matrix)

        content_outlines = dict(outlines)
        content_outlines["compliance_matrix"] = matrix

        per_volume = {n: len(requirements_for_volume(content_outlines, n)) for n in VOLUME_NUMBERS}
        logger.info(
            f"Content mapping complete: {len(matrix)} requirements mapped {per_volume}",
            extra={"job_id": context.job_id},
        )
        return AgentResult(
            status="warning" if warnings else "success",
            data=content_outlines,
            warnings=warnings,
        )

    async def _generate_outlines(self, context: AgentContext, limits: Dict[str, Optional[int]]) -> Dict[str, Any]:
        page_limits = "\n".join(
            f"- Volume {n} ({VOLUME_CATALOGUE[n].name}): "
            f"{limits.get(str(n)) if limits.get(str(n)) else 'No limit'}"
            + (" pages" if limits.get(str(n)) else "")
            for n in VOLUME_NUMBERS
        )
        factors = (context.rfp_parsed_data.get("section_m") or {}).get("factors") or []
        eval_factors = "\n".join(f"- {f.get('name')}: {f.get('weight')}" for f in factors) or "- Not specified"

        response = await self._call_llm(
            VOLUME_OUTLINE_PROMPT.format(page_limits=page_limits, eval_factors=eval_factors),
            job_id=context.job_id,
        )
        parsed = parse_json_response(response, default={}, context="volume outlines")
        if not isinstance(parsed, dict):
            parsed = {}
        return {
            f"volume_{n}": normalize_outline(parsed.get(f"volume_{n}"), n, limits.get(str(n)))
            for n in VOLUME_NUMBERS
        }

    async def _map_requirements(
        self,
        context: AgentContext,
        requirements: List[Dict[str, Any]],
        outlines: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        structure = "\n".join(
            f"Volume {o['volume_number']}: {o['volume_name']}\n"
            + "\n".join(f"  - {s['title']} ({s['page_allocation']} pages)" for s in o["sections"])
            for o in outlines.values()
        )

        mappings: List[Dict[str, Any]] = []
        total_chunks = -(-len(requirements) // MAPPING_CHUNK)
        for start in range(0, len(requirements), MAPPING_CHUNK):
            chunk = requirements[start:start + MAPPING_CHUNK]
            logger.debug(
                f"Mapping requirements chunk {start // MAPPING_CHUNK + 1}/{total_chunks}",
                extra={"job_id": context.job_id},
            )
            listing = "\n".join(
                f"- {r['id']} ({'MANDATORY' if r.get('mandatory') else 'Optional'}): {r['text'][:150]}"
                + (f" [{r['eval_factor']}]" if r.get("eval_factor") else "")
                for r in chunk
            )
            response = await self._call_llm(
                COMPLIANCE_MAPPING_PROMPT.format(volume_structure=structure, requirements=listing),
                job_id=context.job_id,
                system_prompt="Return ONLY a valid JSON array. No markdown.",
            )
            parsed = parse_json_response(response, default=[], context="compliance mapping")
            mappings.extend(self._normalize_mappings(parsed))
        return mappings

    @staticmethod
    def _normalize_mappings(items: Any) -> List[Dict[str, Any]]:
        normalized = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict) or not item.get("req_id"):
                continue
            try:
                volume = int(item.get("volume") or 1)
            except (TypeError, ValueError):
                volume = 1
            normalized.append({
                "req_id": str(item["req_id"]),
                "requirement": str(item.get("requirement") or ""),
                "mandatory": bool(item.get("mandatory")),
                "eval_factor": str(item.get("eval_factor") or ""),
                "volume": volume if volume in VOLUME_CATALOGUE else 1,
                "section": str(item.get("section") or "TBD"),
                "page_range": str(item.get("page_range") or "TBD"),
                "status": "pending",
                "evidence": str(item.get("evidence") or ""),
            })
        return normalized

    @staticmethod
    def _complete_matrix(matrix: List[Dict[str, Any]], requirements: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Drop unknown ids and add every requirement the mapping missed"""
        known = {r["id"]: r for r in requirements}
        seen = set()
        completed = []
        for item in matrix:
            if item["req_id"] not in known or item["req_id"] in seen:
                continue
            seen.add(item["req_id"])
            completed.append(item)

        missing = [r for r in requirements if r["id"] not in seen]
        if missing:
            logger.warning(f"{len(missing)} requirements not mapped, placing by keyword")
        for r in missing:
            completed.append({
                "req_id": r["id"],
                "requirement": r["text"][:200],
                "mandatory": r.get("mandatory", True),
                "eval_factor": r.get("eval_factor") or "",
                "volume": guess_volume(r),
                "section": "TBD",
                "page_range": "TBD",
                "status": "pending",
                "evidence": "",
            })
        return completed

    @staticmethod
    def _attach_requirements(outlines: Dict[str, Any], matrix: List[Dict[str, Any]]) -> None:
        """Record each mapped requirement on its target (or first) section"""
        for item in matrix:
            outline = outlines[f"volume_{item['volume']}"]
            sections = outline["sections"]
            target = next(
                (s for s in sections if s["title"].lower() in item["section"].lower()),
                sections[0],
            )
            if item["req_id"] not in target["requirements_addressed"]:
                target["requirements_addressed"].append(item["req_id"])


def create_content_mapper_agent(gateway: Optional[GenerationGateway] = None) -> ContentMapperAgent:
    """Factory function to create the content mapper agent"""
    return ContentMapperAgent(gateway)
