"""
PropelAI External Integrations

The external generation service and the gateway the stages call it through:
- BaseLLMClient: single-attempt provider interface
- ClaudeClient: Anthropic implementation
- GenerationGateway: retries, rate-limit waits and liveness heartbeats
- json_repair: recovery of malformed structured output
"""

# LLM Client Base Classes
from .llm_clients import (
    BaseLLMClient,
    TaskType,
    TokenUsage,
    LLMMessage,
    LLMResponse,
    GenerationConfig,
    calculate_cost,
    MODEL_COSTS,
)

# Claude Client
from .claude_client import ClaudeClient

# Gateway
from .generation_gateway import GenerationGateway

# Structured output repair
from .json_repair import parse_json_response, repair_json, strip_code_fences

__all__ = [
    # LLM Base
    "BaseLLMClient",
    "TaskType",
    "TokenUsage",
    "LLMMessage",
    "LLMResponse",
    "GenerationConfig",
    "calculate_cost",
    "MODEL_COSTS",
    # Claude
    "ClaudeClient",
    # Gateway
    "GenerationGateway",
    # Repair
    "parse_json_response",
    "repair_json",
    "strip_code_fences",
]
