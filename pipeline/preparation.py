"""
PropelAI Preparation Stage

Sequential sub-steps, each memoized so a crash resumes at the first
unfinished one:

1. agent_0  volume structure and page limits         0 -> 5%
2. company data load
3. agent_1  RFP parsing                               5 -> 15%
4. agent_2  data validation (the blocking gate)      15 -> 20%
5. agent_3  content mapping                          20 -> 25%

When validation blocks, the job parks in ``blocked`` until a
``proposal/data.approved`` event arrives or the approval window expires.
"""

import logging
from typing import Any, Dict

from core.errors import StageFailed
from core.events import EventName
from core.state import JobStatus, StageStatus, StageProgress
from agents.base import AgentContext, BaseAgent
from agents.volume_structure_agent import build_page_limits, extract_page_limits
from pipeline.base import StageExecutor

logger = logging.getLogger(__name__)


class PreparationStage(StageExecutor):
    """Volume structure, parsing, validation gate and content outlines"""

    stage = "preparation"
    trigger = EventName.PREPARATION_START
    completion = EventName.PREPARATION_COMPLETE

    async def execute(self, job_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        attempt = data.get("attempt", 1)
        log_ctx = {"job_id": job_id, "stage": self.stage}

        await self.progress.update(
            job_id,
            step="Preparation Phase - Analyzing RFP and Company Data",
            status=JobStatus.PROCESSING,
            current_stage=self.stage,
            preparation_phase_status=StageStatus.RUNNING.value,
        )
        job = await self.store.get_job(job_id)
        provided_rfp = job.inputs.get("rfp_parsed_data") or {}

        # Agent 0: volume structure
        context = AgentContext.from_job(job)
        context.rfp_parsed_data = provided_rfp
        structure = await self._run_agent(
            job_id, "agent_0", self.agents.volume_structure, context, 0,
            "Agent 0: Setting up volume structure",
        )
        limits = structure["data"]["volume_page_limits"]
        await self.progress.update(job_id, progress=5, volume_page_limits=limits)

        # Company data
        async def load_company_data():
            company_data = job.inputs.get("company_data") or {}
            await self.store.update_job(job_id, company_data=company_data)
            logger.info(
                f"Company data loaded: {len(company_data.get('past_performance') or [])} contracts, "
                f"{len(company_data.get('personnel') or [])} personnel",
                extra=log_ctx,
            )
            return company_data

        company_data = await self.steps.run(job_id, "load_company_data", load_company_data)

        # Agent 1: RFP parser
        context = AgentContext.from_job(await self.store.get_job(job_id))
        context.rfp_parsed_data = provided_rfp
        parsed = await self._run_agent(
            job_id, "agent_1", self.agents.rfp_parser, context, 5,
            "Agent 1: Parsing RFP requirements",
        )
        rfp_parsed_data = parsed["data"]
        if extract_page_limits(rfp_parsed_data):
            limits = build_page_limits(rfp_parsed_data, self.config)
        await self.progress.update(
            job_id, progress=15, rfp_parsed_data=rfp_parsed_data, volume_page_limits=limits,
        )

        # Agent 2: validation gate
        context = AgentContext.from_job(await self.store.get_job(job_id))
        validation = await self._run_agent(
            job_id, "agent_2", self.agents.validator, context, 15,
            "Agent 2: Validating company data", complete=False,
        )
        report = validation["data"]
        await self.progress.update(job_id, progress=20, validation_report=report)

        if self._gate_blocks(report):
            await self._wait_for_data_approval(job_id, attempt, report)
        else:
            await self.progress.stage(job_id, "agent_2", StageProgress.complete())

        # Agent 3: content mapper
        context = AgentContext.from_job(await self.store.get_job(job_id))
        mapped = await self._run_agent(
            job_id, "agent_3", self.agents.content_mapper, context, 20,
            "Agent 3: Mapping requirements to volumes",
        )
        await self.progress.update(
            job_id,
            progress=25,
            step="Preparation complete - ready for volume generation",
            content_outlines=mapped["data"],
            preparation_phase_status=StageStatus.COMPLETE.value,
            current_agent=None,
        )

        logger.info(
            f"Preparation complete ({len(rfp_parsed_data.get('section_c', {}).get('requirements') or [])} "
            f"requirements, validation {report.get('status')}, "
            f"{len(company_data.get('personnel') or [])} personnel)",
            extra=log_ctx,
        )
        return {"success": True, "validation_status": report.get("status")}

    async def on_failure(self, job_id: str, data: Dict[str, Any], error: Exception) -> None:
        await self.progress.fail(
            job_id,
            "Preparation phase failed",
            str(error),
            preparation_phase_status=StageStatus.FAILED.value,
        )

    # ------------------------------------------------------------------

    async def _run_agent(
        self,
        job_id: str,
        stage_id: str,
        agent: BaseAgent,
        context: AgentContext,
        start_percent: int,
        label: str,
        complete: bool = True,
    ) -> Dict[str, Any]:
        """One memoized agent sub-step with its stage_progress bookkeeping"""

        async def run():
            await self.progress.stage(job_id, stage_id, StageProgress.running())
            await self.progress.update(job_id, progress=start_percent, step=label, current_agent=stage_id)

            result = await agent.run(context)
            if not result.ok:
                message = "; ".join(result.errors) or "unknown error"
                await self.progress.stage(job_id, stage_id, StageProgress.failed(message))
                raise StageFailed(self.stage, f"{stage_id} failed: {message}")

            if complete:
                await self.progress.stage(job_id, stage_id, StageProgress.complete())
            return {"status": result.status, "data": result.data, "warnings": result.warnings}

        return await self.steps.run(job_id, stage_id, run)

    def _gate_blocks(self, report: Dict[str, Any]) -> bool:
        status = report.get("status")
        if status == "blocked":
            return True
        return status == "warnings" and self.config.block_on_validation_warnings

    async def _wait_for_data_approval(self, job_id: str, attempt: int, report: Dict[str, Any]) -> None:
        log_ctx = {"job_id": job_id, "stage": self.stage}
        pending = await self.steps.expect_event(
            job_id,
            f"a{attempt}:data_approval",
            EventName.DATA_APPROVED,
            self.config.data_approval_timeout,
        )
        await self.progress.stage(job_id, "agent_2", StageProgress.blocked(), gated=True)
        await self.progress.update(
            job_id,
            step="Data validation - user action required",
            status=JobStatus.BLOCKED,
            preparation_phase_status=StageStatus.BLOCKED.value,
        )
        logger.warning(
            f"Blocked on data validation ({len(report.get('blockers') or [])} blockers, "
            f"{len(report.get('warnings') or [])} warnings) - waiting for approval",
            extra=log_ctx,
        )

        approval = await pending.result()
        if approval is None:
            days = self.config.data_approval_timeout / 86400
            raise StageFailed(self.stage, f"Data approval not received within {days:g} days")
        if approval.get("approved") is False:
            raise StageFailed(self.stage, "Company data was rejected during review")

        if approval.get("company_data"):
            await self.store.update_job(job_id, company_data=approval["company_data"])

        logger.info("Data approved by user", extra=log_ctx)
        await self.progress.stage(job_id, "agent_2", StageProgress.complete())
        await self.progress.resume_after_gate(
            job_id,
            "Data approved - continuing preparation",
            preparation_phase_status=StageStatus.RUNNING.value,
        )
