"""
PropelAI Pipeline Runtime

Wires one process together: state store, event bus, step runner,
generation gateway, agents, stage executors, orchestrator and monitor.
The HTTP surface and the CLI only ever talk to a PipelineRuntime.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine

from core.config import OrchestratorSettings, get_config
from core.errors import InvalidTransition
from core.events import EventBus, EventName
from core.orchestrator import ProposalOrchestrator
from core.state import Decision, Job, JobStatus, VolumeStatus, create_job
from checkpointing.step_runner import StepRunner
from database.connection import create_engine, create_session_factory, init_db
from database.memory_store import InMemoryJobStore
from database.repositories import SqlJobStore
from database.store import JobStore
from agents.bundle import AgentBundle, create_agent_bundle
from agents.integrations.claude_client import ClaudeClient
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.llm_clients import BaseLLMClient
from pipeline.assembly import AssemblyStage
from pipeline.base import StageExecutor
from pipeline.consultation import ConsultationStage
from pipeline.final_scoring import FinalScoringStage
from pipeline.preparation import PreparationStage
from pipeline.rewrite import RewriteStage
from pipeline.stall_monitor import StallMonitor
from pipeline.volume_generation import VolumeGenerationStage

logger = logging.getLogger(__name__)


STAGE_CLASSES = (
    PreparationStage,
    VolumeGenerationStage,
    ConsultationStage,
    RewriteStage,
    AssemblyStage,
    FinalScoringStage,
)

# Statuses a restarted process picks back up
RECOVERABLE_STATUSES = [
    JobStatus.QUEUED.value,
    JobStatus.PROCESSING.value,
    JobStatus.REVIEW.value,
    JobStatus.BLOCKED.value,
]


class PipelineRuntime:
    """Everything one process needs to run proposal jobs"""

    def __init__(
        self,
        store: JobStore,
        agents: AgentBundle,
        settings: Optional[OrchestratorSettings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings or get_config()
        self.store = store
        self.engine = engine
        self.agents = agents
        self.bus = EventBus(store)
        self.steps = StepRunner(store, self.bus)

        pipeline_config = self.settings.pipeline
        self.stages: List[StageExecutor] = [
            cls(store, self.bus, self.steps, agents, pipeline_config) for cls in STAGE_CLASSES
        ]
        self.orchestrator = ProposalOrchestrator(store, self.bus, self.steps, pipeline_config)
        self.monitor = StallMonitor(store, self.bus, self.settings.monitor)

        for stage in self.stages:
            stage.register()
        self.orchestrator.register()

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def submit(
        self,
        company_id: str,
        rfp_text: str,
        company_data: Optional[Dict[str, Any]] = None,
        rfp_parsed_data: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        """Create a queued job and request generation"""
        inputs: Dict[str, Any] = {"rfp_text": rfp_text, "company_data": company_data or {}}
        if rfp_parsed_data:
            inputs["rfp_parsed_data"] = rfp_parsed_data

        job = await self.store.create_job(create_job(job_id or str(uuid.uuid4()), company_id, inputs))
        logger.info(f"Job created for company {company_id}", extra={"job_id": job.job_id})
        await self.bus.send(EventName.GENERATE_REQUESTED, {"job_id": job.job_id})
        return job

    async def cancel(self, job_id: str) -> None:
        await self.orchestrator.cancel(job_id)

    async def retry(self, job_id: str) -> int:
        return await self.orchestrator.retry(job_id)

    async def approve_data(
        self,
        job_id: str,
        approved: bool = True,
        company_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        job = await self.store.get_job(job_id)
        if job.status != JobStatus.BLOCKED.value:
            raise InvalidTransition(job_id, job.status, JobStatus.PROCESSING.value)

        data: Dict[str, Any] = {"job_id": job_id, "approved": approved}
        if company_data:
            data["company_data"] = company_data
        await self.bus.send(EventName.DATA_APPROVED, data)

    async def decide(self, job_id: str, volume: int, decision: Decision, feedback: str = "") -> None:
        """Human decision on a volume under review"""
        decision = Decision(decision)
        if decision == Decision.ITERATE and not feedback.strip():
            raise ValueError("Feedback is required to iterate on a volume")

        current = await self.store.get_volume(job_id, volume)
        if current.status != VolumeStatus.AWAITING_APPROVAL.value:
            raise InvalidTransition(job_id, f"volume {volume} {current.status}", decision.value)

        await self.bus.send(EventName.VOLUME_DECISION, {
            "job_id": job_id,
            "volume": volume,
            "decision": decision.value,
            "feedback": feedback.strip(),
        })

    async def startup(self) -> int:
        """Create tables when backed by PostgreSQL, then recover unfinished jobs"""
        if self.engine is not None:
            await init_db(self.engine)
        return await self.recover()

    async def recover(self) -> int:
        """Re-enter every job a previous process left unfinished"""
        jobs = await self.store.list_jobs(RECOVERABLE_STATUSES)
        for job in jobs:
            await self.orchestrator.recover(job.job_id)
        if jobs:
            logger.info(f"Recovered {len(jobs)} unfinished job(s)")
        return len(jobs)

    async def drain(self) -> None:
        await self.bus.drain()

    async def shutdown(self) -> None:
        """Stop in-flight stages and release the database pool"""
        await self.bus.shutdown()
        if self.engine is not None:
            await self.engine.dispose()


def create_store(settings: Optional[OrchestratorSettings] = None) -> Tuple[JobStore, Optional[AsyncEngine]]:
    """In-memory store when PROPOSAL_STORE=memory, PostgreSQL otherwise"""
    settings = settings or get_config()
    if settings.database.use_memory_store:
        return InMemoryJobStore(), None

    engine = create_engine(settings.database)
    return SqlJobStore(create_session_factory(engine)), engine


def create_runtime(
    settings: Optional[OrchestratorSettings] = None,
    store: Optional[JobStore] = None,
    client: Optional[BaseLLMClient] = None,
    agents: Optional[AgentBundle] = None,
) -> PipelineRuntime:
    """Factory function wiring a runtime from settings"""
    settings = settings or get_config()

    engine = None
    if store is None:
        store, engine = create_store(settings)

    if agents is None:
        if client is None:
            client = ClaudeClient(api_key=settings.llm.anthropic_api_key, model=settings.llm.claude_model)
        gateway = GenerationGateway(client, store=store, config=settings.gateway)
        agents = create_agent_bundle(gateway, settings.pipeline)

    return PipelineRuntime(store, agents, settings, engine=engine)
