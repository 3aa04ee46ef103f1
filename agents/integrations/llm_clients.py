"""
Generation Provider Interface

What the GenerationGateway needs from a provider: one ``generate`` call,
one attempt, provider failures already translated into RateLimited,
GenerationConnectionError or GenerationError. Retries, backoff and
heartbeats stay in the gateway.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict
from datetime import datetime

from core.state import utcnow

logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    """Which generation unit is calling, for logs and cost attribution"""
    RFP_PARSING = "rfp_parsing"
    CONTENT_MAPPING = "content_mapping"
    SECTION_WRITING = "section_writing"
    COMPLIANCE_SCORING = "compliance_scoring"
    CONSULTING = "consulting"
    REWRITING = "rewriting"
    GENERAL = "general"


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.estimated_cost_usd + other.estimated_cost_usd,
        )


@dataclass
class LLMMessage:
    role: str  # system | user | assistant
    content: str


@dataclass
class LLMResponse:
    """Text of one completed call plus its accounting"""
    content: str
    model: str
    task_type: Optional[TaskType] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    latency_ms: float = 0.0
    received_at: datetime = field(default_factory=utcnow)

    @property
    def truncated(self) -> bool:
        """The provider stopped at the output token limit"""
        return self.finish_reason == "max_tokens"


@dataclass
class GenerationConfig:
    temperature: float = 0.7
    max_output_tokens: int = 8000
    stop_sequences: List[str] = field(default_factory=list)


class BaseLLMClient(ABC):
    """Single-attempt generation provider with cumulative usage counters"""

    def __init__(self):
        self.total_usage = TokenUsage()
        self.request_count = 0

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass

    @abstractmethod
    async def generate(
        self,
        messages: List[LLMMessage],
        config: Optional[GenerationConfig] = None,
        task_type: Optional[TaskType] = None
    ) -> LLMResponse:
        """One completion. Raises GenerationError subclasses on failure."""
        pass

    def _track_usage(self, usage: TokenUsage) -> None:
        self.total_usage = self.total_usage + usage
        self.request_count += 1
        logger.debug(
            f"[{self.model_name}] call {self.request_count}: {usage.total_tokens} tokens, "
            f"${usage.estimated_cost_usd:.4f} (running total ${self.total_usage.estimated_cost_usd:.2f})"
        )


# USD per million tokens
MODEL_COSTS: Dict[str, Dict[str, float]] = {
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
    "claude-opus-4-1-20250805": {"input": 15.00, "output": 75.00},
}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimated USD cost of one call; unknown models cost nothing"""
    rates = MODEL_COSTS.get(model)
    if rates is None:
        return 0.0
    return (prompt_tokens * rates["input"] + completion_tokens * rates["output"]) / 1_000_000
