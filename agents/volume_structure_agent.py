"""
PropelAI Volume Structure Agent

Fixes the four-volume structure before any writing begins and sets the
page limit of each volume from the RFP (Section L) or the configured
defaults. A missing limit is resolved through the configured
missing-page-limit policy.
"""

import logging
import re
from typing import Any, Dict, Optional

from core.config import PipelineConfig, get_config
from core.state import VOLUME_CATALOGUE, VOLUME_NUMBERS
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent

logger = logging.getLogger(__name__)


# Section L spells volume keys several ways: "volume_1_technical", "volume_1", "1"
_VOLUME_KEY = re.compile(r"^(?:volume[_\s]?)?([1-4])(?:_.*)?$", re.IGNORECASE)


def extract_page_limits(rfp_parsed_data: Optional[Dict[str, Any]]) -> Dict[int, Optional[int]]:
    """Page limits stated in parsed Section L, keyed by volume number"""
    section_l = (rfp_parsed_data or {}).get("section_l") or {}
    raw = section_l.get("page_limits") or {}

    limits: Dict[int, Optional[int]] = {}
    for key, value in raw.items():
        match = _VOLUME_KEY.match(str(key).strip())
        if not match:
            continue
        try:
            limits[int(match.group(1))] = int(value) if value else None
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric page limit {key}={value!r}")
    return limits


def build_page_limits(
    rfp_parsed_data: Optional[Dict[str, Any]],
    config: Optional[PipelineConfig] = None,
) -> Dict[str, Optional[int]]:
    """Page limit per volume (string keys, JSON-friendly); None means unlimited"""
    config = config or get_config().pipeline
    stated = extract_page_limits(rfp_parsed_data)
    return {
        str(number): config.resolve_page_limit(number, {number: stated.get(number)})
        for number in VOLUME_NUMBERS
    }


def validate_page_count(volume: int, pages: int, limits: Dict[str, Optional[int]]) -> Dict[str, Any]:
    """
    Compare a page count against its volume limit.

    Warns once the volume reaches 90% of its limit.
    """
    limit = limits.get(str(volume), limits.get(volume))
    if limit is None:
        return {
            "within_limit": True,
            "warning": False,
            "message": f"Volume {volume}: {pages} pages (no limit)",
        }

    warning_threshold = int(limit * 0.9)
    within_limit = pages <= limit
    warning = warning_threshold <= pages <= limit

    if not within_limit:
        message = f"Volume {volume}: {pages}/{limit} pages - EXCEEDS LIMIT"
    elif warning:
        message = f"Volume {volume}: {pages}/{limit} pages - APPROACHING LIMIT"
    else:
        message = f"Volume {volume}: {pages}/{limit} pages - OK"

    return {"within_limit": within_limit, "warning": warning, "message": message}


class VolumeStructureAgent(BaseAgent):
    """Sets up the four volume containers and their page limits"""

    def __init__(self, config: Optional[PipelineConfig] = None):
        super().__init__(AgentConfig(name="agent_0"))
        self.pipeline_config = config

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        if not context.job_id or not context.company_id:
            return AgentResult(status="error", errors=["Job ID and Company ID are required"])

        limits = build_page_limits(context.rfp_parsed_data, self.pipeline_config)

        for number in VOLUME_NUMBERS:
            limit = limits[str(number)]
            logger.info(
                f"Volume {number} ({VOLUME_CATALOGUE[number].name}): "
                f"{f'{limit} pages max' if limit else 'no limit'}",
                extra={"job_id": context.job_id},
            )

        return AgentResult(
            status="success",
            data={
                "volume_page_limits": limits,
                "total_volume_limit": sum(v for v in limits.values() if v),
            },
        )


def create_volume_structure_agent(config: Optional[PipelineConfig] = None) -> VolumeStructureAgent:
    """Factory function to create the volume structure agent"""
    return VolumeStructureAgent(config)
