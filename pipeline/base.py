"""
PropelAI Stage Executor Base

A stage is an event handler: its trigger event starts it and it answers
with exactly one completion event, carrying ``success: False`` when
anything went wrong. Errors never escape ``handle``; they are logged with
job/stage/volume context, persisted through ``on_failure`` and converted
into the completion payload.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from core.config import PipelineConfig, get_config
from core.errors import JobCancelled
from core.events import Event, EventBus, EventName
from checkpointing.step_runner import StepRunner
from database.store import JobStore
from agents.bundle import AgentBundle
from pipeline.progress import ProgressReporter

logger = logging.getLogger(__name__)


# Keys copied from the trigger into the completion so waiters can match on them
SCOPE_KEYS = ("job_id", "attempt", "volume", "iteration")


class StageExecutor(ABC):
    """Base class for the idempotent pipeline stages"""

    stage: str = ""
    trigger: EventName
    completion: EventName

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        steps: StepRunner,
        agents: AgentBundle,
        config: Optional[PipelineConfig] = None,
    ):
        self.store = store
        self.bus = bus
        self.steps = steps
        self.agents = agents
        self.config = config or get_config().pipeline
        self.progress = ProgressReporter(store)

    def register(self) -> None:
        """Subscribe this stage to its trigger event"""
        self.bus.subscribe(self.trigger, self.handle)

    async def handle(self, event: Event) -> Dict[str, Any]:
        """Run the stage and always emit its completion event"""
        data = event.data
        job_id = event.job_id
        context = {"job_id": job_id, "stage": self.stage, "volume": data.get("volume")}

        try:
            payload = await self.execute(job_id, data)
        except JobCancelled:
            logger.info(f"{self.stage} stopped: job cancelled", extra=context)
            payload = {"success": False, "error": "Job cancelled", "cancelled": True}
        except Exception as e:
            logger.exception(f"{self.stage} failed: {e}", extra=context)
            try:
                await self.on_failure(job_id, data, e)
            except Exception:
                logger.exception(f"Could not record {self.stage} failure", extra=context)
            payload = self.failure_payload(e)

        scope = {key: data[key] for key in SCOPE_KEYS if key in data}
        await self.bus.send(self.completion, {**payload, **scope})
        return payload

    @abstractmethod
    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Do the stage's work; return the completion payload (``success`` included)"""
        pass

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        """Persist the failure state. Default: the job fails."""
        await self.progress.fail(job_id, f"{self.stage.replace('_', ' ').capitalize()} failed", str(error))

    def failure_payload(self, error: Exception) -> Dict[str, Any]:
        return {"success": False, "error": str(error)}
