"""
PropelAI RFP Parser Agent - "The Paralegal"

Extracts the structured RFP the rest of the pipeline works from:
1. Metadata, Section L format rules and Section M evaluation factors
2. Every requirement in the document (chunked for large RFPs)
3. CLINs and disqualifying requirements

When the generation service is unavailable the agent falls back to a
regex "shall/must" sweep so preparation can still proceed with a
reduced-confidence requirement list.
"""

import re
import logging
from typing import Any, Dict, List, Optional

from core.errors import GenerationError
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.json_repair import parse_json_response
from agents.integrations.llm_clients import TaskType

logger = logging.getLogger(__name__)


METADATA_PROMPT = """You are a federal RFP analyst. Extract ONLY the following from this RFP.
Return ONLY valid JSON, no markdown:

{
  "metadata": {
    "agency": "Full agency name",
    "solicitation_num": "Solicitation number",
    "title": "RFP title",
    "deadline": "Submission deadline with timezone",
    "contract_type": "FFP/T&M/Cost-Plus/IDIQ etc",
    "set_aside": "Small business set-aside type or null"
  },
  "section_l": {
    "volumes_required": 4,
    "page_limits": {
      "volume_1_technical": 50,
      "volume_2_management": 30,
      "volume_3_past_performance": 25,
      "volume_4_price": null
    },
    "format": {"font": "Font name", "font_size": "Size", "margins": "Margin size", "spacing": "Line spacing"}
  },
  "section_m": {
    "factors": [{"name": "Factor name", "weight": "Percentage or points", "description": "Brief description"}],
    "total_points": 100
  }
}

RFP TEXT:
"""

REQUIREMENTS_PROMPT = """You are a federal RFP analyst. Extract ALL requirements from this RFP section.
Extract EVERY "shall", "must", "will", "required" statement. Missing one could disqualify the proposal.

Return ONLY a JSON array, no markdown:
[
  {"id": "REQ-001", "section": "C.2.1", "text": "Full requirement text - do NOT truncate",
   "mandatory": true, "eval_factor": "Technical Approach"}
]

RFP TEXT:
"""

DISQUALIFIERS_PROMPT = """You are a federal RFP analyst. Extract:
1. ALL Contract Line Items (CLINs) from Section B
2. ALL disqualifying requirements (things that will auto-reject if missing/wrong)

Look for page limits, volume requirements, formatting rules, required certifications,
set-aside requirements, mandatory experience and security clearances.

Return ONLY valid JSON, no markdown:
{
  "section_b": {"clins": [{"clin": "0001", "description": "Description", "quantity": "1", "unit": "LOT"}]},
  "disqualifying_requirements": ["Must submit exactly 4 separate volumes"]
}

RFP TEXT:
"""

JSON_ONLY_SYSTEM = "Return ONLY valid JSON. No markdown, no explanation."

METADATA_WINDOW = 100000
DISQUALIFIER_WINDOW = 120000
CHUNK_SIZE = 80000
CHUNK_OVERLAP = 5000
DUPLICATE_SIMILARITY = 0.9

# Regex patterns for the offline requirement sweep
REQUIREMENT_PATTERNS = {
    "mandatory": [
        r"\bshall\b",
        r"\bmust\b",
        r"\bis required to\b",
        r"\bare required to\b",
        r"\bwill be required\b",
    ],
    "prohibition": [
        r"\bshall not\b",
        r"\bmust not\b",
        r"\bprohibited\b",
    ],
}

SECTION_REF = re.compile(r"\b([CLM]\.\d+(?:\.\d+)*)\b")
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n{2,}")

DEFAULT_FACTORS = [
    {"name": "Technical Approach", "weight": "40%"},
    {"name": "Past Performance", "weight": "30%"},
    {"name": "Price", "weight": "30%"},
]


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity on lower-cased words"""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def split_chunks(text: str, size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[str]:
    """Overlapping chunks so requirements on a boundary are not lost"""
    if not text:
        return []
    step = size - overlap
    return [text[i:i + size] for i in range(0, len(text), step)]


def extract_requirements_by_pattern(rfp_text: str) -> List[Dict[str, Any]]:
    """Sentence-level shall/must sweep used when generation is unavailable"""
    compiled = [
        re.compile(p, re.IGNORECASE)
        for patterns in REQUIREMENT_PATTERNS.values()
        for p in patterns
    ]

    requirements: List[Dict[str, Any]] = []
    seen = set()
    for sentence in SENTENCE_SPLIT.split(rfp_text):
        sentence = " ".join(sentence.split())
        if len(sentence) < 20 or sentence.lower() in seen:
            continue
        if not any(p.search(sentence) for p in compiled):
            continue
        seen.add(sentence.lower())

        ref = SECTION_REF.search(sentence)
        requirements.append({
            "id": f"REQ-{len(requirements) + 1:03d}",
            "section": ref.group(1) if ref else "Unknown",
            "text": sentence,
            "mandatory": True,
            "eval_factor": None,
        })
    return requirements


def normalize_requirements(items: Any, chunk_index: int = 0) -> List[Dict[str, Any]]:
    if not isinstance(items, list):
        return []
    normalized = []
    for i, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("text"):
            continue
        normalized.append({
            "id": str(item.get("id") or f"CHUNK{chunk_index}-REQ-{i + 1}"),
            "section": str(item.get("section") or "Unknown"),
            "text": str(item["text"]),
            "mandatory": item.get("mandatory") is not False,
            "eval_factor": str(item["eval_factor"]) if item.get("eval_factor") else None,
        })
    return normalized


def normalize_parsed_rfp(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill the defaults every downstream agent relies on"""
    metadata = data.get("metadata") or {}
    section_l = data.get("section_l") or {}
    section_m = data.get("section_m") or {}
    section_c = data.get("section_c") or {}
    fmt = section_l.get("format") or {}

    factors = section_m.get("factors")
    if not isinstance(factors, list) or not factors:
        factors = [dict(f) for f in DEFAULT_FACTORS]
    else:
        factors = [
            {
                "name": str(f.get("name") or f"Factor {i + 1}"),
                "weight": str(f.get("weight") or "Unknown"),
                "description": f.get("description"),
            }
            for i, f in enumerate(factors)
            if isinstance(f, dict)
        ]

    requirements = normalize_requirements(section_c.get("requirements") or [])

    return {
        "metadata": {
            "agency": metadata.get("agency") or "Unknown Agency",
            "solicitation_num": metadata.get("solicitation_num") or "Unknown",
            "title": metadata.get("title") or "Government RFP",
            "deadline": metadata.get("deadline") or "Not specified",
            "contract_type": metadata.get("contract_type"),
            "set_aside": metadata.get("set_aside"),
        },
        "section_l": {
            "volumes_required": section_l.get("volumes_required") or 4,
            "page_limits": dict(section_l.get("page_limits") or {}),
            "format": {
                "font": fmt.get("font") or "Times New Roman",
                "font_size": fmt.get("font_size") or "12pt",
                "margins": fmt.get("margins") or "1 inch",
                "spacing": fmt.get("spacing") or "Single",
            },
        },
        "section_m": {
            "factors": factors,
            "total_points": section_m.get("total_points"),
        },
        "section_c": {"requirements": requirements},
        "section_b": data.get("section_b") or {"clins": []},
        "disqualifying_requirements": list(data.get("disqualifying_requirements") or []),
    }


class RfpParserAgent(BaseAgent):
    """
    Multi-pass RFP extraction.

    A job that already carries parsed RFP data (uploaded and parsed
    elsewhere) skips the generation passes entirely.
    """

    def __init__(self, gateway: Optional[GenerationGateway] = None):
        super().__init__(
            AgentConfig(
                name="agent_1",
                temperature=0.1,
                max_tokens=4000,
                system_prompt=JSON_ONLY_SYSTEM,
                task_type=TaskType.RFP_PARSING,
            ),
            gateway,
        )

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        if context.rfp_parsed_data:
            parsed = normalize_parsed_rfp(context.rfp_parsed_data)
            logger.info(
                f"Using provided RFP data ({len(parsed['section_c']['requirements'])} requirements)",
                extra={"job_id": context.job_id},
            )
            return AgentResult(status="success", data=parsed)

        if not context.rfp_text:
            return AgentResult(status="error", errors=["RFP text is required"])

        rfp_text = context.rfp_text
        logger.info(
            f"RFP received ({len(rfp_text)} chars, ~{-(-len(rfp_text) // 3000)} pages)",
            extra={"job_id": context.job_id},
        )

        try:
            head = await self._extract_metadata(rfp_text, context.job_id)
            requirements = await self._extract_requirements(rfp_text, context.job_id)
            tail = await self._extract_disqualifiers(rfp_text, context.job_id)
        except GenerationError as e:
            logger.warning(
                f"RFP extraction unavailable, falling back to pattern sweep: {e}",
                extra={"job_id": context.job_id},
            )
            requirements = extract_requirements_by_pattern(rfp_text)
            return AgentResult(
                status="warning",
                data=normalize_parsed_rfp({"section_c": {"requirements": requirements}}),
                warnings=[f"RFP parsed without generation service: {e}"],
            )

        parsed = normalize_parsed_rfp({**head, **tail, "section_c": {"requirements": requirements}})
        mandatory = sum(1 for r in requirements if r["mandatory"])
        logger.info(
            f"RFP parsing complete: {len(requirements)} requirements ({mandatory} mandatory), "
            f"{len(parsed['section_m']['factors'])} factors, "
            f"{len(parsed['disqualifying_requirements'])} disqualifiers",
            extra={"job_id": context.job_id},
        )
        return AgentResult(status="success", data=parsed)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _extract_metadata(self, rfp_text: str, job_id: str) -> Dict[str, Any]:
        response = await self._call_llm(METADATA_PROMPT + rfp_text[:METADATA_WINDOW], job_id=job_id)
        parsed = parse_json_response(response, default={}, context="metadata")
        return parsed if isinstance(parsed, dict) else {}

    async def _extract_requirements(self, rfp_text: str, job_id: str) -> List[Dict[str, Any]]:
        chunks = split_chunks(rfp_text)
        logger.info(f"Processing {len(chunks)} chunk(s) for requirements", extra={"job_id": job_id})

        collected: List[Dict[str, Any]] = []
        for index, chunk in enumerate(chunks):
            response = await self._call_llm(
                REQUIREMENTS_PROMPT + chunk,
                job_id=job_id,
                system_prompt="Return ONLY a valid JSON array of requirements. No markdown, no explanation.",
                max_tokens=16000,
            )
            found = normalize_requirements(
                parse_json_response(response, default=[], context=f"requirements chunk {index}"),
                index,
            )
            for requirement in found:
                if any(text_similarity(r["text"], requirement["text"]) > DUPLICATE_SIMILARITY for r in collected):
                    continue
                requirement["id"] = f"REQ-{len(collected) + 1:03d}"
                collected.append(requirement)

            logger.debug(
                f"Chunk {index + 1}/{len(chunks)}: {len(found)} found, {len(collected)} total",
                extra={"job_id": job_id},
            )
        return collected

    async def _extract_disqualifiers(self, rfp_text: str, job_id: str) -> Dict[str, Any]:
        response = await self._call_llm(DISQUALIFIERS_PROMPT + rfp_text[:DISQUALIFIER_WINDOW], job_id=job_id)
        parsed = parse_json_response(response, default={}, context="disqualifiers")
        if not isinstance(parsed, dict):
            return {}

        clins = ((parsed.get("section_b") or {}).get("clins")) or []
        return {
            "section_b": {
                "clins": [
                    {key: str(c.get(key) or "") for key in ("clin", "description", "quantity", "unit")}
                    for c in clins if isinstance(c, dict)
                ],
            },
            "disqualifying_requirements": [
                str(d) for d in (parsed.get("disqualifying_requirements") or [])
            ],
        }


def create_rfp_parser_agent(gateway: Optional[GenerationGateway] = None) -> RfpParserAgent:
    """Factory function to create the RFP parser agent"""
    return RfpParserAgent(gateway)
