"""
PropelAI Base Agent
Foundation class for the generation units the stage executors call.

Each agent:
- Receives an AgentContext built from the persisted Job
- Performs its specialized function (usually one or more generation calls)
- Returns an AgentResult; it never writes to the store itself
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.state import Job, VOLUME_CATALOGUE
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.llm_clients import TaskType


logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Configuration for an agent."""
    name: str
    temperature: float = 0.7
    max_tokens: int = 8000
    system_prompt: str = ""
    task_type: TaskType = TaskType.GENERAL


@dataclass
class AgentContext:
    """Everything an agent may read about the job it works for"""
    job_id: str
    company_id: str
    rfp_text: str = ""
    rfp_parsed_data: Dict[str, Any] = field(default_factory=dict)
    company_data: Dict[str, Any] = field(default_factory=dict)
    volume_page_limits: Dict[str, Optional[int]] = field(default_factory=dict)
    content_outlines: Dict[str, Any] = field(default_factory=dict)
    validation_report: Dict[str, Any] = field(default_factory=dict)
    volumes: Dict[int, str] = field(default_factory=dict)
    target_volume: Optional[int] = None

    @classmethod
    def from_job(cls, job: Job, volumes: Optional[Dict[int, str]] = None, target_volume: Optional[int] = None) -> "AgentContext":
        return cls(
            job_id=job.job_id,
            company_id=job.company_id,
            rfp_text=job.inputs.get("rfp_text", ""),
            rfp_parsed_data=job.rfp_parsed_data or {},
            company_data=job.company_data or {},
            volume_page_limits=job.volume_page_limits or {},
            content_outlines=job.content_outlines or {},
            validation_report=job.validation_report or {},
            volumes=dict(volumes or {}),
            target_volume=target_volume,
        )

    @property
    def requirements(self) -> List[Dict[str, Any]]:
        """Section C requirements from the parsed RFP"""
        return (self.rfp_parsed_data.get("section_c") or {}).get("requirements") or []

    @property
    def company_name(self) -> str:
        company = self.company_data.get("company") or {}
        return company.get("name") or self.company_data.get("name") or ""


@dataclass
class AgentResult:
    """Outcome of one agent execution"""
    status: str                     # success | warning | blocked | error
    data: Any = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    latency_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status != "error"


def volume_name(number: int) -> str:
    return VOLUME_CATALOGUE[number].name


class BaseAgent(ABC):
    """
    Base class for all generation agents.

    Subclasses implement ``_execute``; ``run`` wraps it with timing and
    logging. Agents that have a deterministic fallback catch their own
    generation failures and return a reduced-confidence result instead.
    """

    def __init__(self, config: AgentConfig, gateway: Optional[GenerationGateway] = None):
        self.config = config
        self.name = config.name
        self.gateway = gateway

    async def run(self, context: AgentContext, **kwargs) -> AgentResult:
        """Execute the agent's main logic with timing and logging."""
        start_time = time.time()
        logger.info(
            f"Starting {self.name}",
            extra={"job_id": context.job_id, "volume": context.target_volume},
        )

        result = await self._execute(context, **kwargs)

        result.latency_ms = int((time.time() - start_time) * 1000)
        log = logger.warning if result.status in ("error", "blocked") else logger.info
        log(
            f"Completed {self.name} ({result.status}) in {result.latency_ms}ms",
            extra={"job_id": context.job_id, "volume": context.target_volume},
        )
        return result

    @abstractmethod
    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        """The agent's core logic. Must be implemented by subclasses."""
        pass

    async def _call_llm(
        self,
        prompt: str,
        job_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Call the generation service through the gateway.

        Args:
            prompt: The user prompt
            job_id: Job whose liveness clock is touched during the call
            system_prompt: Optional system prompt override
            max_tokens: Optional output budget override
            temperature: Optional temperature override

        Returns:
            The response text
        """
        if self.gateway is None:
            raise RuntimeError(f"{self.name} has no generation gateway configured")

        return await self.gateway.invoke(
            system_prompt=system_prompt or self.config.system_prompt,
            user_prompt=prompt,
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=self.config.temperature if temperature is None else temperature,
            heartbeat_job_id=job_id,
            task_type=self.config.task_type,
        )
