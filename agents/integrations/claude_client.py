"""
Claude Client - the external generation service

One attempt per call. Retries, backoff and liveness heartbeats belong to
the GenerationGateway, so the SDK's own retry loop is switched off and
provider failures are mapped onto the orchestrator error types.
"""

import os
import time
import logging
from typing import Optional, List

import anthropic
from anthropic import AsyncAnthropic

from core.errors import GenerationConnectionError, GenerationError, RateLimited
from .llm_clients import (
    BaseLLMClient,
    TaskType,
    TokenUsage,
    LLMMessage,
    LLMResponse,
    GenerationConfig,
    calculate_cost,
)

logger = logging.getLogger(__name__)


def _retry_after_seconds(error: anthropic.APIStatusError) -> Optional[float]:
    """Parse the retry-after header of a 429 response"""
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class ClaudeClient(BaseLLMClient):
    """Anthropic Messages API client"""

    DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = 600.0,
    ):
        super().__init__()
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY is required for the generation service")

        self._model = model or self.DEFAULT_MODEL
        self._client = AsyncAnthropic(
            api_key=self.api_key,
            max_retries=0,
            timeout=timeout_seconds,
        )

        logger.info(f"Generation service: Anthropic {self._model} (single attempt per call)")

    @property
    def model_name(self) -> str:
        return self._model

    async def generate(
        self,
        messages: List[LLMMessage],
        config: Optional[GenerationConfig] = None,
        task_type: Optional[TaskType] = None
    ) -> LLMResponse:
        """One Messages API call; SDK errors become orchestrator errors"""
        config = config or GenerationConfig()
        started = time.time()

        # The Messages API takes the system prompt separately from the turns
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        kwargs = {
            "model": self._model,
            "max_tokens": config.max_output_tokens,
            "temperature": config.temperature,
            "messages": [{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
        }
        if system:
            kwargs["system"] = system
        if config.stop_sequences:
            kwargs["stop_sequences"] = config.stop_sequences

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            raise RateLimited(str(e), retry_after_seconds=_retry_after_seconds(e)) from e
        except anthropic.APIConnectionError as e:
            # Includes APITimeoutError
            raise GenerationConnectionError(str(e)) from e
        except anthropic.APIError as e:
            logger.error(f"Claude API error: {e}")
            raise GenerationError(str(e)) from e

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        tokens_in, tokens_out = response.usage.input_tokens, response.usage.output_tokens
        usage = TokenUsage(tokens_in, tokens_out, calculate_cost(self._model, tokens_in, tokens_out))
        self._track_usage(usage)

        return LLMResponse(
            content=text,
            model=self._model,
            task_type=task_type,
            token_usage=usage,
            finish_reason=response.stop_reason or "stop",
            latency_ms=(time.time() - started) * 1000,
        )
