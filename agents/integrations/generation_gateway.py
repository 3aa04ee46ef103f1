"""
Generation Call Gateway

Wraps a single-attempt LLM client with:
- A fixed retry budget (3 attempts)
- Rate-limit-aware waiting (retry-after + 2s, or 30s when unknown)
- Longer waits for connection failures (30s, 60s, 60s)
- Exponential backoff for everything else
- Liveness heartbeats on the job record during long calls and long waits,
  so the stall monitor does not fail slow-but-alive jobs
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from core.config import GatewayConfig, get_config
from core.errors import ExhaustedRetries, GenerationConnectionError, RateLimited
from database.store import JobStore
from .llm_clients import BaseLLMClient, GenerationConfig, LLMMessage, TaskType

logger = logging.getLogger(__name__)


SleepFn = Callable[[float], Awaitable[None]]


class GenerationGateway:
    """Retrying, heartbeat-emitting front door to the generation service"""

    def __init__(
        self,
        client: BaseLLMClient,
        store: Optional[JobStore] = None,
        config: Optional[GatewayConfig] = None,
        sleep: Optional[SleepFn] = None,
    ):
        self.client = client
        self.store = store
        self.config = config or get_config().gateway
        self._sleep = sleep or asyncio.sleep

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        heartbeat_job_id: Optional[str] = None,
        task_type: Optional[TaskType] = None,
    ) -> str:
        """
        Run one generation call with retries and return the response text.

        Raises:
            ExhaustedRetries: every attempt failed
        """
        cfg = self.config
        max_tokens = min(max_tokens or cfg.default_max_tokens, cfg.max_tokens_cap)
        temperature = cfg.default_temperature if temperature is None else temperature

        messages = [
            LLMMessage(role="system", content=system_prompt),
            LLMMessage(role="user", content=user_prompt),
        ]
        gen_config = GenerationConfig(temperature=temperature, max_output_tokens=max_tokens)

        logger.debug(
            f"Generation call (max_tokens: {max_tokens}, temp: {temperature}, "
            f"system: {len(system_prompt)} chars, user: {len(user_prompt)} chars)",
            extra={"job_id": heartbeat_job_id},
        )

        started = time.time()
        if heartbeat_job_id:
            await self._heartbeat(heartbeat_job_id, "Calling generation service...")

        last_error: Optional[BaseException] = None
        for attempt in range(1, cfg.max_attempts + 1):
            pinger = self._start_pinger(heartbeat_job_id, started)
            try:
                response = await self.client.generate(messages, gen_config, task_type)
                elapsed = time.time() - started
                logger.info(
                    f"Generation succeeded in {elapsed:.1f}s ({len(response.content)} chars, "
                    f"{response.token_usage.total_tokens} tokens, attempt {attempt}/{cfg.max_attempts})",
                    extra={"job_id": heartbeat_job_id},
                )
                if response.truncated:
                    logger.warning(
                        f"Generation hit the {max_tokens} token limit; output may be cut off",
                        extra={"job_id": heartbeat_job_id},
                    )
                return response.content
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Generation attempt {attempt}/{cfg.max_attempts} failed after "
                    f"{time.time() - started:.1f}s: {e}",
                    extra={"job_id": heartbeat_job_id},
                )
            finally:
                if pinger is not None:
                    pinger.cancel()
                    try:
                        await pinger
                    except asyncio.CancelledError:
                        pass

            if attempt == cfg.max_attempts:
                break

            wait_seconds = self.backoff_seconds(last_error, attempt)
            logger.info(
                f"Waiting {wait_seconds:.0f}s before retry",
                extra={"job_id": heartbeat_job_id},
            )
            await self._wait(wait_seconds, heartbeat_job_id)

        raise ExhaustedRetries(cfg.max_attempts, last_error)

    def backoff_seconds(self, error: BaseException, attempt: int) -> float:
        """Wait before the next attempt, chosen by failure kind"""
        cfg = self.config
        if isinstance(error, RateLimited):
            if error.retry_after_seconds:
                return error.retry_after_seconds + cfg.rate_limit_padding_seconds
            return cfg.rate_limit_default_wait_seconds
        if isinstance(error, GenerationConnectionError):
            return min(cfg.connection_backoff_seconds * attempt, cfg.connection_backoff_cap_seconds)
        return float(2 ** attempt)

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def _start_pinger(self, job_id: Optional[str], started: float) -> Optional[asyncio.Task]:
        if not job_id or self.store is None:
            return None
        return asyncio.create_task(self._ping_while_running(job_id, started))

    async def _ping_while_running(self, job_id: str, started: float) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            elapsed = time.time() - started
            await self._heartbeat(job_id, f"Generation call in progress ({elapsed:.0f}s)")

    async def _wait(self, seconds: float, job_id: Optional[str]) -> None:
        """Sleep, touching the job every chunk when the wait is long"""
        chunk = self.config.wait_heartbeat_interval_seconds
        if not job_id or seconds <= chunk:
            await self._sleep(seconds)
            if job_id:
                await self._heartbeat(job_id, "Retrying generation call...")
            return

        remaining = seconds
        beats = 0
        while remaining > 0:
            step = min(chunk, remaining)
            await self._sleep(step)
            remaining -= step
            beats += 1
            await self._heartbeat(job_id, f"Rate limited - waiting to retry ({beats})")

    async def _heartbeat(self, job_id: str, step: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.touch(job_id, step)
        except Exception as e:
            # A missed heartbeat must not fail the call it is guarding
            logger.debug(f"Heartbeat failed: {e}", extra={"job_id": job_id})
