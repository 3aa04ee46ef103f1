"""
PropelAI Consultation Stage - the per-volume iteration loop

A LangGraph state machine, one run per volume:

    check -> score -> (score < 80) consult -> await_decision
                   -> (score >= 80) -------> await_decision
    await_decision -> approved            -> finish
                   -> iterate (< max)      -> rewrite -> score
                   -> iterate (at max)     -> finish (job blocked)
                   -> no decision in time  -> finish (volume blocked)

Each transition is strictly sequential within a volume; the four volume
loops run independently of each other. Scoring and consulting are keyed
by volume and iteration, so a recovered or retried loop replays them
instead of paying for them again while the content is unchanged. Waits
and triggers also carry the attempt, so a new attempt never consumes a
decision or completion meant for an old one.
"""

import logging
import uuid
from typing import Any, Dict, Optional, TypedDict

from langgraph.graph import StateGraph, END
from langgraph.checkpoint.memory import MemorySaver

from core.errors import InvalidScoreError, JobCancelled, StageFailed
from core.events import EventName
from core.state import Decision, IterationRecord, JobStatus, VolumeStatus
from agents.base import AgentContext
from pipeline.base import StageExecutor

logger = logging.getLogger(__name__)


class Outcome:
    """How a volume's loop ended; sent as ``decision`` on volume.consulted"""
    APPROVED = "approved"
    MAX_ITERATIONS = "max_iterations_reached"
    TIMEOUT = "timeout"
    FAILED = "failed"


class VolumeLoopState(TypedDict):
    job_id: str
    volume: int
    attempt: int
    iteration: int
    score: Optional[int]
    score_result: Dict[str, Any]
    insights: Dict[str, Any]
    decision: Optional[str]
    feedback: str
    outcome: Optional[str]
    detail: str


def validate_score(volume: int, score: Any) -> int:
    """Scores must be numbers within 0-100"""
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise InvalidScoreError(volume, score)
    if not 0 <= score <= 100:
        raise InvalidScoreError(volume, score)
    return int(round(score))


class ConsultationStage(StageExecutor):
    """Score, consult, human decision and rewrite for one volume"""

    stage = "consultation"
    trigger = EventName.VOLUME_CONSULT
    completion = EventName.VOLUME_CONSULTED

    def __init__(self, *args, checkpointer: Optional[Any] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.checkpointer = checkpointer or MemorySaver()
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(VolumeLoopState)

        builder.add_node("check", self._check_node)
        builder.add_node("score", self._score_node)
        builder.add_node("consult", self._consult_node)
        builder.add_node("await_decision", self._decision_node)
        builder.add_node("rewrite", self._rewrite_node)
        builder.add_node("finish", self._finish_node)

        builder.set_entry_point("check")
        builder.add_conditional_edges("check", self._route_check, {"score": "score", "finish": "finish"})
        builder.add_conditional_edges(
            "score",
            self._route_score,
            {"consult": "consult", "await_decision": "await_decision"},
        )
        builder.add_edge("consult", "await_decision")
        builder.add_conditional_edges(
            "await_decision",
            self._route_decision,
            {"rewrite": "rewrite", "finish": "finish"},
        )
        builder.add_conditional_edges("rewrite", self._route_rewrite, {"score": "score", "finish": "finish"})
        builder.add_edge("finish", END)

        return builder.compile(checkpointer=self.checkpointer)

    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        number = int(data["volume"])
        attempt = data.get("attempt", 1)

        initial = VolumeLoopState(
            job_id=job_id,
            volume=number,
            attempt=attempt,
            iteration=0,
            score=None,
            score_result={},
            insights={},
            decision=None,
            feedback="",
            outcome=None,
            detail="",
        )
        # Enough super-steps for every allowed iteration plus entry and exit
        limit = (self.config.max_iterations + 2) * 5
        final = await self.graph.ainvoke(
            initial,
            config={
                "configurable": {"thread_id": f"{job_id}:volume{number}:a{attempt}:{uuid.uuid4().hex[:8]}"},
                "recursion_limit": limit,
            },
        )

        outcome = final["outcome"]
        return {
            "success": outcome == Outcome.APPROVED,
            "decision": outcome,
            "score": final["score"],
            "iteration": final["iteration"],
        }

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        number = int(data["volume"])
        await self.store.update_volume(job_id, number, status=VolumeStatus.BLOCKED)
        await self.progress.fail(job_id, f"Volume {number} scoring failed", str(error))

    def failure_payload(self, error: Exception) -> Dict[str, Any]:
        return {"success": False, "error": str(error), "decision": Outcome.FAILED}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    @staticmethod
    def _prefix(state: VolumeLoopState) -> str:
        """Scope for waits and triggers; a new attempt opens fresh ones"""
        return f"v{state['volume']}_a{state['attempt']}_i{state['iteration']}"

    @staticmethod
    def _content_key(state: VolumeLoopState) -> str:
        """Scope for generation steps over unchanged content, shared by every attempt"""
        return f"v{state['volume']}_i{state['iteration']}"

    async def _context(self, job_id: str, number: int) -> AgentContext:
        job = await self.store.get_job(job_id)
        volume = await self.store.get_volume(job_id, number)
        return AgentContext.from_job(job, volumes={number: volume.content}, target_volume=number)

    async def _check_node(self, state: VolumeLoopState) -> Dict[str, Any]:
        volume = await self.store.get_volume(state["job_id"], state["volume"])
        if volume.status in (VolumeStatus.APPROVED.value, VolumeStatus.COMPLETE.value):
            logger.info(
                f"Volume {volume.number} already approved",
                extra={"job_id": state["job_id"], "stage": self.stage, "volume": volume.number},
            )
            return {"iteration": volume.iteration, "score": volume.score, "outcome": Outcome.APPROVED}
        return {"iteration": volume.iteration}

    async def _score_node(self, state: VolumeLoopState) -> Dict[str, Any]:
        job_id, number, iteration = state["job_id"], state["volume"], state["iteration"]
        await self.steps.ensure_active(job_id)

        await self.store.update_volume(job_id, number, status=VolumeStatus.SCORING)
        await self.progress.update(
            job_id,
            step=f"Scoring Volume {number} (iteration {iteration})",
            current_stage=self.stage,
            current_volume=number,
        )

        async def score():
            result = await self.agents.scorer.run(await self._context(job_id, number))
            if not result.ok:
                raise StageFailed(self.stage, f"Volume {number} scoring failed: {'; '.join(result.errors)}")
            # Rejected before memoizing so a retry scores again
            validate_score(number, result.data.get("overall_score"))
            return result.data

        score_result = await self.steps.run(job_id, f"{self._content_key(state)}_score", score)
        value = validate_score(number, score_result.get("overall_score"))

        await self.store.update_volume(job_id, number, score=value, compliance_details=score_result)
        logger.info(
            f"Volume {number} scored {value}% (iteration {iteration})",
            extra={"job_id": job_id, "stage": self.stage, "volume": number},
        )
        return {"score": value, "score_result": score_result, "insights": {}}

    async def _consult_node(self, state: VolumeLoopState) -> Dict[str, Any]:
        job_id, number = state["job_id"], state["volume"]
        await self.progress.update(job_id, step=f"Consulting on Volume {number} (score {state['score']}%)")

        async def consult():
            history = [r.to_dict() for r in await self.store.list_iteration_records(job_id, number)]
            result = await self.agents.consultant.run(
                await self._context(job_id, number),
                score_result=state["score_result"],
                iteration=state["iteration"],
                history=history,
            )
            if not result.ok:
                raise StageFailed(self.stage, f"Volume {number} consultation failed: {'; '.join(result.errors)}")
            return result.data

        insights = await self.steps.run(job_id, f"{self._content_key(state)}_consult", consult)
        await self.store.update_volume(job_id, number, insights=insights)
        return {"insights": insights}

    async def _decision_node(self, state: VolumeLoopState) -> Dict[str, Any]:
        job_id, number, iteration = state["job_id"], state["volume"], state["iteration"]
        log_ctx = {"job_id": job_id, "stage": self.stage, "volume": number}

        # Registered before the volume is shown as awaiting approval, so no decision is missed
        pending = await self.steps.expect_event(
            job_id,
            f"{self._prefix(state)}_decision",
            EventName.VOLUME_DECISION,
            self.config.decision_timeout,
            match={"volume": number},
        )
        await self.store.update_volume(job_id, number, status=VolumeStatus.AWAITING_APPROVAL)
        await self._enter_review(job_id, f"Volume {number} awaiting approval (score {state['score']}%)")

        received = await pending.result()
        if received is None:
            logger.warning(f"No decision for Volume {number} before the deadline", extra=log_ctx)
            return {"outcome": Outcome.TIMEOUT, "detail": "decision"}

        choice = received.get("decision")
        if choice == Decision.APPROVED.value:
            logger.info(f"Volume {number} approved", extra=log_ctx)
            return {"decision": choice, "outcome": Outcome.APPROVED}

        if choice != Decision.ITERATE.value:
            raise StageFailed(self.stage, f"Unknown decision {choice!r} for Volume {number}")

        if iteration >= self.config.max_iterations:
            logger.warning(
                f"Iterate refused: Volume {number} already at {iteration}/{self.config.max_iterations} iterations",
                extra=log_ctx,
            )
            return {"decision": choice, "outcome": Outcome.MAX_ITERATIONS}

        await self.store.update_volume(job_id, number, status=VolumeStatus.ITERATING)
        await self._leave_review(job_id, number, f"Volume {number}: rework requested")
        return {"decision": choice, "feedback": received.get("feedback") or ""}

    async def _rewrite_node(self, state: VolumeLoopState) -> Dict[str, Any]:
        job_id, number, attempt = state["job_id"], state["volume"], state["attempt"]
        target = state["iteration"] + 1
        prefix = self._prefix(state)
        insights = state["insights"] or {}

        async def record():
            entry = IterationRecord(
                job_id=job_id,
                volume=number,
                iteration=target,
                user_feedback=state["feedback"],
                issues_addressed=[
                    gap["requirement_id"]
                    for gap in insights.get("compliance_gaps") or []
                    if gap.get("requirement_id")
                ],
            )
            await self.store.append_iteration_record(entry)
            return entry.to_dict()

        await self.steps.run(job_id, f"{prefix}_record", record)

        scope = {"volume": number, "attempt": attempt, "iteration": target}
        pending = await self.steps.expect_event(
            job_id, f"{prefix}_rewrite", EventName.VOLUME_ITERATION_COMPLETE, self.config.rewrite_timeout, match=scope,
        )
        await self.steps.send_once(job_id, f"{prefix}_iterate", EventName.VOLUME_ITERATE, {
            "job_id": job_id,
            **scope,
            "feedback": state["feedback"],
            "insights": insights,
        })

        done = await pending.result()
        if done is None:
            logger.warning(
                f"Rewrite of Volume {number} (iteration {target}) did not finish in time",
                extra={"job_id": job_id, "stage": self.stage, "volume": number},
            )
            return {"iteration": target, "outcome": Outcome.TIMEOUT, "detail": "rewrite"}
        if done.get("cancelled"):
            raise JobCancelled(job_id)
        if not done.get("success"):
            return {"iteration": target, "outcome": Outcome.FAILED, "detail": done.get("error") or ""}

        return {"iteration": target, "decision": None, "feedback": ""}

    async def _finish_node(self, state: VolumeLoopState) -> Dict[str, Any]:
        job_id, number, outcome = state["job_id"], state["volume"], state["outcome"]

        if outcome == Outcome.APPROVED:
            await self.store.update_volume(job_id, number, status=VolumeStatus.APPROVED)
            await self._leave_review(job_id, number, f"Volume {number} approved")

        elif outcome == Outcome.MAX_ITERATIONS:
            await self.store.update_volume(job_id, number, status=VolumeStatus.BLOCKED)
            await self._block(
                job_id,
                f"Volume {number} reached max iterations ({self.config.max_iterations}) - manual review required",
            )

        elif outcome == Outcome.TIMEOUT:
            await self.store.update_volume(job_id, number, status=VolumeStatus.BLOCKED)
            if state["detail"] == "rewrite":
                message = f"Volume {number} rewrite timed out - manual review required"
            else:
                message = f"Volume {number} decision timed out - manual review required"
            await self._block(job_id, message)

        # Outcome.FAILED: the rewrite handler already failed the job
        return {}

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    @staticmethod
    def _route_check(state: VolumeLoopState) -> str:
        return "finish" if state["outcome"] else "score"

    def _route_score(self, state: VolumeLoopState) -> str:
        if state["score"] < self.config.consult_threshold:
            return "consult"
        return "await_decision"

    @staticmethod
    def _route_decision(state: VolumeLoopState) -> str:
        return "finish" if state["outcome"] else "rewrite"

    @staticmethod
    def _route_rewrite(state: VolumeLoopState) -> str:
        return "finish" if state["outcome"] else "score"

    # ------------------------------------------------------------------
    # Job status around the human gate
    # ------------------------------------------------------------------

    async def _enter_review(self, job_id: str, step: str) -> None:
        job = await self.store.get_job(job_id)
        fields: Dict[str, Any] = {"awaiting_user_approval": True}
        if job.status == JobStatus.PROCESSING.value:
            fields["status"] = JobStatus.REVIEW
        await self.progress.update(job_id, step=step, **fields)

    async def _leave_review(self, job_id: str, number: int, step: str) -> None:
        """Back to processing once no other volume is waiting on a human"""
        volumes = await self.store.list_volumes(job_id)
        waiting = [
            v.number for v in volumes
            if v.number != number and v.status == VolumeStatus.AWAITING_APPROVAL.value
        ]
        if waiting:
            await self.progress.update(job_id, step=step)
            return

        job = await self.store.get_job(job_id)
        if job.status == JobStatus.REVIEW.value:
            await self.progress.resume_after_gate(job_id, step, awaiting_user_approval=False)
        else:
            await self.progress.update(job_id, step=step, awaiting_user_approval=False)

    async def _block(self, job_id: str, message: str) -> None:
        logger.warning(message, extra={"job_id": job_id, "stage": self.stage})
        await self.progress.update(job_id, step=message, status=JobStatus.BLOCKED, error_message=message)
