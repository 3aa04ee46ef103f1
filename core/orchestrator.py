"""
PropelAI Orchestration Engine
Top-level proposal state machine, implemented as a LangGraph StateGraph

The orchestrator sequences the stages by event:

    load -> prepare -> generate_volumes -> review_volumes -> assemble -> score

It triggers each stage with an event and waits for that stage's
completion event, registering the wait before sending the trigger. All
state lives in the JobStore, so a crashed run is re-entered by starting
the graph again: the load node skips stages that are already done and
every stage replays its finished steps.

Retries run under a new attempt number; every trigger and wait carries
it, so a retry never mistakes an old completion for a new one.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from langgraph.graph import StateGraph, END
from langgraph.checkpoint.memory import MemorySaver

from core.config import PipelineConfig, get_config
from core.errors import InvalidTransition, JobCancelled
from core.events import EventBus, EventName, Event
from core.state import (
    VOLUME_NUMBERS,
    JobStatus,
    PipelineState,
    StageStatus,
    VolumeStatus,
    create_pipeline_state,
    utcnow,
)
from checkpointing.step_runner import StepRunner
from database.store import JobStore

logger = logging.getLogger(__name__)


ORCHESTRATOR_STAGE = "orchestrator"
RETRYABLE_STATUSES = {JobStatus.FAILED.value, JobStatus.NEEDS_REVISION.value, JobStatus.BLOCKED.value}

# Stage the load node routes to
STAGE_ROUTES = {
    "prepare": "prepare",
    "generate": "generate_volumes",
    "assemble": "assemble",
    "score": "score",
}


def estimate_generation_time(input_bytes: int) -> Dict[str, int]:
    """Best-effort minute range by RFP size"""
    if input_bytes < 20 * 1024:
        return {"min": 4, "max": 8}
    if input_bytes < 100 * 1024:
        return {"min": 6, "max": 12}
    return {"min": 10, "max": 15}


class ProposalOrchestrator:
    """
    The Supervisor - drives one job through the five stages.

    Stateless between invocations: ``start`` re-reads the job and
    continues from the first stage that has not completed.
    """

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        steps: Optional[StepRunner] = None,
        config: Optional[PipelineConfig] = None,
        checkpointer: Optional[Any] = None,
    ):
        self.store = store
        self.bus = bus
        self.steps = steps or StepRunner(store, bus)
        self.config = config or get_config().pipeline
        self.checkpointer = checkpointer or MemorySaver()

        self.graph = self._build_graph()

    def _build_graph(self):
        """Build the LangGraph StateGraph for the job lifecycle"""
        builder = StateGraph(PipelineState)

        builder.add_node("load", self._load_node)
        builder.add_node("prepare", self._prepare_node)
        builder.add_node("generate_volumes", self._generate_node)
        builder.add_node("review_volumes", self._review_node)
        builder.add_node("assemble", self._assemble_node)
        builder.add_node("score", self._score_node)

        builder.set_entry_point("load")
        builder.add_conditional_edges("load", lambda s: s["stage"], STAGE_ROUTES)
        builder.add_conditional_edges(
            "prepare",
            lambda s: "continue" if s["preparation_ok"] else "stop",
            {"continue": "generate_volumes", "stop": END},
        )
        builder.add_conditional_edges(
            "generate_volumes",
            lambda s: "continue" if len(s["generated_volumes"]) == len(VOLUME_NUMBERS) else "stop",
            {"continue": "review_volumes", "stop": END},
        )
        builder.add_conditional_edges(
            "review_volumes",
            lambda s: "stop" if s["stage"] == "halted" else "continue",
            {"continue": "assemble", "stop": END},
        )
        builder.add_conditional_edges(
            "assemble",
            lambda s: "continue" if s["assembly_ok"] else "stop",
            {"continue": "score", "stop": END},
        )
        builder.add_edge("score", END)

        return builder.compile(checkpointer=self.checkpointer)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def register(self) -> None:
        self.bus.subscribe(EventName.GENERATE_REQUESTED, self.handle_requested)

    async def handle_requested(self, event: Event) -> Optional[PipelineState]:
        return await self.start(event.job_id, resume=bool(event.data.get("resume")))

    async def start(self, job_id: str, resume: bool = False) -> Optional[PipelineState]:
        """
        Drive a job to a terminal or human-gated state.

        Skips a job that is already under way unless ``resume`` is set.
        """
        job = await self.store.get_job(job_id)
        if job.is_terminal:
            logger.info(f"Job is {job.status}; nothing to run", extra={"job_id": job_id})
            return None
        if not resume and job.progress_percent > 0 and job.status != JobStatus.QUEUED.value:
            logger.info(
                f"Job already in progress ({job.status}, {job.progress_percent}%), skipping duplicate start",
                extra={"job_id": job_id},
            )
            return None

        attempt = (job.stage_progress.get(ORCHESTRATOR_STAGE) or {}).get("attempt", 1)
        rfp_text = job.inputs.get("rfp_text") or ""
        estimate = estimate_generation_time(len(rfp_text.encode("utf-8")))

        now = utcnow().isoformat()
        await self.store.merge_stage_progress(job_id, ORCHESTRATOR_STAGE, {
            "status": StageStatus.RUNNING.value,
            "attempt": attempt,
            "started_at": now,
            "active_since": now,
        })
        await self._update(
            job_id,
            status=JobStatus.PROCESSING,
            current_step="Starting proposal generation",
            current_stage=ORCHESTRATOR_STAGE,
            estimated_minutes=estimate,
        )
        logger.info(
            f"Starting job (attempt {attempt}, estimated {estimate['min']}-{estimate['max']} min)",
            extra={"job_id": job_id, "stage": ORCHESTRATOR_STAGE},
        )

        try:
            final = await self.graph.ainvoke(
                create_pipeline_state(job_id, attempt),
                config={
                    "configurable": {"thread_id": f"{job_id}:a{attempt}:{uuid.uuid4().hex[:8]}"},
                    "recursion_limit": 25,
                },
            )
        except JobCancelled:
            logger.info("Orchestrator stopped: job cancelled", extra={"job_id": job_id})
            await self.store.merge_stage_progress(job_id, ORCHESTRATOR_STAGE, {"status": StageStatus.FAILED.value})
            return None
        except Exception as e:
            logger.exception(f"Orchestrator error: {e}", extra={"job_id": job_id, "stage": ORCHESTRATOR_STAGE})
            await self._update(
                job_id,
                status=JobStatus.FAILED,
                current_step=f"Error: {e}",
                error_message=str(e),
                completed_at=utcnow(),
            )
            await self.store.merge_stage_progress(
                job_id, ORCHESTRATOR_STAGE, {"status": StageStatus.FAILED.value, "error": str(e)},
            )
            return None

        if final["final_status"]:
            outcome = StageStatus.COMPLETE
        elif (await self.store.get_job(job_id)).status == JobStatus.FAILED.value:
            outcome = StageStatus.FAILED
        else:
            outcome = StageStatus.BLOCKED
        await self.store.merge_stage_progress(job_id, ORCHESTRATOR_STAGE, {
            "status": outcome.value,
            "completed_at": utcnow().isoformat(),
        })
        return final

    async def retry(self, job_id: str) -> int:
        """
        Retry from checkpoint under a new attempt number.

        Completed volumes keep their content; only unfinished work reruns.
        Returns the new attempt number.
        """
        job = await self.store.get_job(job_id)
        if job.status not in RETRYABLE_STATUSES:
            raise InvalidTransition(job_id, job.status, JobStatus.PROCESSING.value)

        attempt = (job.stage_progress.get(ORCHESTRATOR_STAGE) or {}).get("attempt", 1) + 1
        await self.store.merge_stage_progress(job_id, ORCHESTRATOR_STAGE, {"attempt": attempt})

        fields: Dict[str, Any] = {"error_message": None, "completed_at": None}
        if job.assembly_status != StageStatus.COMPLETE.value:
            fields["assembly_status"] = StageStatus.PENDING.value
        fields["final_scoring_status"] = StageStatus.PENDING.value
        if job.preparation_phase_status != StageStatus.COMPLETE.value:
            fields["preparation_phase_status"] = StageStatus.PENDING.value
        await self.store.update_job(
            job_id,
            status=JobStatus.PROCESSING,
            current_step=f"Retrying from checkpoint (attempt {attempt})",
            **fields,
        )

        # A monitor termination is observed as cancellation; the retry lifts it
        self.bus.clear_cancelled(job_id)
        logger.info(f"Retry scheduled (attempt {attempt})", extra={"job_id": job_id})
        await self.bus.send(EventName.GENERATE_REQUESTED, {"job_id": job_id, "resume": True})
        return attempt

    async def recover(self, job_id: str) -> int:
        """
        Re-enter a job left unfinished by a previous process.

        Runs under a new attempt so every stage is triggered again; the
        stages replay their memoized steps. Returns the new attempt number.
        """
        job = await self.store.get_job(job_id)
        attempt = (job.stage_progress.get(ORCHESTRATOR_STAGE) or {}).get("attempt", 1) + 1
        await self.store.merge_stage_progress(job_id, ORCHESTRATOR_STAGE, {"attempt": attempt})

        logger.info(f"Recovering {job.status} job (attempt {attempt})", extra={"job_id": job_id})
        await self.bus.send(EventName.GENERATE_REQUESTED, {"job_id": job_id, "resume": True})
        return attempt

    async def cancel(self, job_id: str, reason: str = "Cancelled by user") -> None:
        """Terminal cancel; every in-flight stage observes it at its next step"""
        await self.store.update_job(
            job_id,
            status=JobStatus.CANCELLED,
            current_step=reason,
            completed_at=utcnow(),
        )
        await self.bus.send(EventName.GENERATE_CANCELLED, {"job_id": job_id, "reason": reason})

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _load_node(self, state: PipelineState) -> Dict[str, Any]:
        """Pick the first stage that has not completed"""
        job = await self.store.get_job(state["job_id"])
        volumes = await self.store.list_volumes(state["job_id"])

        if job.preparation_phase_status != StageStatus.COMPLETE.value:
            stage = "prepare"
        elif any(v.status not in (VolumeStatus.APPROVED.value, VolumeStatus.COMPLETE.value) for v in volumes):
            stage = "generate"
        elif job.assembly_status != StageStatus.COMPLETE.value:
            stage = "assemble"
        else:
            stage = "score"

        if stage != "prepare":
            logger.info(f"Resuming at {stage}", extra={"job_id": job.job_id, "stage": ORCHESTRATOR_STAGE})
        return {"stage": stage, "preparation_ok": stage != "prepare"}

    async def _prepare_node(self, state: PipelineState) -> Dict[str, Any]:
        job_id, attempt = state["job_id"], state["attempt"]
        cfg = self.config
        scope = {"attempt": attempt}

        await self._update(job_id, current_step="Phase 1: Preparation", current_stage="preparation")

        # Two waits on the same event: the normal window and one that also
        # covers a data-approval block
        pending = await self.steps.expect_event(
            job_id, f"a{attempt}:preparation.wait", EventName.PREPARATION_COMPLETE,
            cfg.preparation_timeout, match=scope,
        )
        gated = await self.steps.expect_event(
            job_id, f"a{attempt}:preparation.wait_gated", EventName.PREPARATION_COMPLETE,
            cfg.preparation_timeout + cfg.data_approval_timeout, match=scope,
        )
        await self.steps.send_once(job_id, f"a{attempt}:preparation.trigger", EventName.PREPARATION_START, {
            "job_id": job_id,
            **scope,
        })

        result = await pending.result()
        if result is None and await self._passed_validation_gate(job_id):
            logger.info("Preparation is waiting on data approval", extra={"job_id": job_id})
            result = await gated.result()
        else:
            gated.discard()

        if result is None:
            message = f"Preparation phase timed out after {cfg.preparation_timeout / 60:g} minutes"
            await self._fail(job_id, message)
            return {"stage": "prepare", "preparation_ok": False, "errors": [message]}
        if result.get("cancelled"):
            raise JobCancelled(job_id)
        if not result.get("success"):
            message = f"Preparation failed: {result.get('error', 'unknown error')}"
            await self._fail(job_id, message)
            return {"stage": "prepare", "preparation_ok": False, "errors": [message]}

        return {"stage": "generate", "preparation_ok": True}

    async def _generate_node(self, state: PipelineState) -> Dict[str, Any]:
        job_id, attempt = state["job_id"], state["attempt"]
        await self._update(job_id, current_step="Phase 2: Generating volumes in parallel", current_stage="volume_generation")

        waits = {}
        for n in VOLUME_NUMBERS:
            waits[n] = await self.steps.expect_event(
                job_id, f"a{attempt}:volume{n}.generated", EventName.VOLUME_GENERATED,
                self.config.volume_generation_timeout, match={"volume": n, "attempt": attempt},
            )
        for n in VOLUME_NUMBERS:
            await self.steps.send_once(job_id, f"a{attempt}:volume{n}.generate", EventName.VOLUME_GENERATE, {
                "job_id": job_id,
                "attempt": attempt,
                "volume": n,
            })

        results = await asyncio.gather(*(waits[n].result() for n in VOLUME_NUMBERS))
        if any(r and r.get("cancelled") for r in results):
            raise JobCancelled(job_id)

        generated = [n for n, r in zip(VOLUME_NUMBERS, results) if r and r.get("success")]
        failed = [n for n in VOLUME_NUMBERS if n not in generated]
        if failed:
            for n, r in zip(VOLUME_NUMBERS, results):
                if r is None:
                    logger.warning(f"Volume {n} generation timed out", extra={"job_id": job_id, "volume": n})
            message = f"Volume generation failed for volume(s) {', '.join(str(n) for n in failed)}"
            await self._fail(job_id, message)
            return {"stage": "generate", "generated_volumes": generated, "errors": [message]}

        await self._update(job_id, current_step="All volumes generated - starting review")
        return {"stage": "review", "generated_volumes": generated}

    async def _review_node(self, state: PipelineState) -> Dict[str, Any]:
        job_id, attempt = state["job_id"], state["attempt"]

        waits = {}
        for n in VOLUME_NUMBERS:
            waits[n] = await self.steps.expect_event(
                job_id, f"a{attempt}:volume{n}.consulted", EventName.VOLUME_CONSULTED,
                self.config.review_window, match={"volume": n, "attempt": attempt},
            )
        for n in VOLUME_NUMBERS:
            await self.steps.send_once(job_id, f"a{attempt}:volume{n}.consult", EventName.VOLUME_CONSULT, {
                "job_id": job_id,
                "attempt": attempt,
                "volume": n,
            })

        results = await asyncio.gather(*(waits[n].result() for n in VOLUME_NUMBERS))
        if any(r and r.get("cancelled") for r in results):
            raise JobCancelled(job_id)

        approved = [n for n, r in zip(VOLUME_NUMBERS, results) if r and r.get("decision") == "approved"]
        unresolved = [
            f"volume {n}: {r.get('decision')}"
            for n, r in zip(VOLUME_NUMBERS, results)
            if r is not None and r.get("decision") != "approved"
        ]
        if unresolved:
            # The loops already moved the job to blocked/failed
            logger.warning(
                f"Review ended without approval for {', '.join(unresolved)}",
                extra={"job_id": job_id, "stage": ORCHESTRATOR_STAGE},
            )
            return {"stage": "halted", "approved_volumes": approved, "errors": unresolved}

        pending = [n for n, r in zip(VOLUME_NUMBERS, results) if r is None]
        if pending:
            message = await self._halt_review(job_id, attempt, pending)
            return {"stage": "halted", "approved_volumes": approved, "errors": [message]}

        return {"stage": "assemble", "approved_volumes": approved}

    async def _assemble_node(self, state: PipelineState) -> Dict[str, Any]:
        job_id, attempt = state["job_id"], state["attempt"]
        await self._update(job_id, current_step="Phase 4: Final assembly", current_stage="assembly")

        pending = await self.steps.expect_event(
            job_id, f"a{attempt}:assembly.wait", EventName.ASSEMBLY_COMPLETE,
            self.config.assembly_timeout, match={"attempt": attempt},
        )
        await self.steps.send_once(job_id, f"a{attempt}:assembly.trigger", EventName.ASSEMBLY_START, {
            "job_id": job_id,
            "attempt": attempt,
        })
        result = await pending.result()

        if result is None:
            logger.warning("Final assembly timed out - completing job", extra={"job_id": job_id})
            await self._update(
                job_id,
                status=JobStatus.COMPLETED,
                current_step="Completed with assembly timeout",
                assembly_status=StageStatus.FAILED.value,
                completed_at=utcnow(),
            )
            return {"assembly_ok": False, "final_status": JobStatus.COMPLETED.value}
        if result.get("cancelled"):
            raise JobCancelled(job_id)
        if not result.get("success"):
            return {"assembly_ok": False, "errors": [result.get("error", "Assembly failed")]}

        return {"stage": "score", "assembly_ok": True}

    async def _score_node(self, state: PipelineState) -> Dict[str, Any]:
        job_id, attempt = state["job_id"], state["attempt"]
        await self._update(job_id, current_step="Phase 5: Final scoring", current_stage="final_scoring")

        pending = await self.steps.expect_event(
            job_id, f"a{attempt}:scoring.wait", EventName.SCORING_COMPLETE,
            self.config.scoring_timeout, match={"attempt": attempt},
        )
        await self.steps.send_once(job_id, f"a{attempt}:scoring.trigger", EventName.SCORING_START, {
            "job_id": job_id,
            "attempt": attempt,
        })
        result = await pending.result()

        if result is None:
            logger.warning("Final scoring timed out - completing job", extra={"job_id": job_id})
            await self._update(
                job_id,
                status=JobStatus.COMPLETED,
                current_step="Completed with scoring timeout",
                final_scoring_status=StageStatus.FAILED.value,
                progress_percent=100,
                completed_at=utcnow(),
            )
            return {"stage": "done", "final_status": JobStatus.COMPLETED.value}
        if result.get("cancelled"):
            raise JobCancelled(job_id)
        if not result.get("success"):
            return {"stage": "done", "errors": [result.get("error", "Final scoring failed")]}

        logger.info(
            f"Job finished: {result.get('status')} ({result.get('overall_score')}% overall)",
            extra={"job_id": job_id, "stage": ORCHESTRATOR_STAGE},
        )
        return {"stage": "done", "final_status": result.get("status")}

    # ------------------------------------------------------------------

    async def _update(self, job_id: str, **fields) -> None:
        """Job update that yields to a job already moved to a terminal state"""
        try:
            await self.store.update_job(job_id, **fields)
        except InvalidTransition as e:
            job = await self.store.get_job(job_id)
            if not job.is_terminal:
                raise
            logger.info(f"Job already {e.current}; not moving to {e.requested}", extra={"job_id": job_id})

    async def _passed_validation_gate(self, job_id: str) -> bool:
        """True once preparation has parked on the data-approval gate"""
        job = await self.store.get_job(job_id)
        return job.status == JobStatus.BLOCKED.value or bool((job.stage_progress.get("agent_2") or {}).get("gated"))

    async def _halt_review(self, job_id: str, attempt: int, pending: list) -> str:
        """
        Park the job when the review window closes with volumes still open.

        The volumes and the job go to blocked so a retry can pick them up,
        and the loops still holding waits for them are released.
        """
        listed = ", ".join(str(n) for n in pending)
        message = f"Review window elapsed with volume(s) {listed} unapproved - manual review required"
        logger.warning(message, extra={"job_id": job_id, "stage": ORCHESTRATOR_STAGE})

        for n in pending:
            volume = await self.store.get_volume(job_id, n)
            if volume.status != VolumeStatus.APPROVED.value:
                await self.store.update_volume(job_id, n, status=VolumeStatus.BLOCKED)
        await self._update(
            job_id,
            status=JobStatus.BLOCKED,
            current_step=message,
            error_message=message,
            awaiting_user_approval=False,
        )
        for n in pending:
            await self.bus.expire_waits(job_id, f"v{n}_a{attempt}_")
        return message

    async def _fail(self, job_id: str, message: str) -> None:
        logger.error(message, extra={"job_id": job_id, "stage": ORCHESTRATOR_STAGE})
        await self._update(
            job_id,
            status=JobStatus.FAILED,
            current_step=message,
            error_message=message,
            completed_at=utcnow(),
        )


def create_orchestrator(
    store: JobStore,
    bus: EventBus,
    steps: Optional[StepRunner] = None,
    config: Optional[PipelineConfig] = None,
) -> ProposalOrchestrator:
    """Factory function to create the orchestrator"""
    return ProposalOrchestrator(store, bus, steps, config)
