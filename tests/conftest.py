"""
PropelAI Orchestrator Test Configuration
========================================

Fixtures:
- In-memory job store with fast pipeline and monitor settings
- Scripted agents standing in for the generation units
- ScriptedLLMClient for driving the real agents through the gateway
- Company data that passes (and fails) the validation gate
- Polling helpers for waiting on background stages
"""

import asyncio
import math
import os
import sys
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import GatewayConfig, MonitorConfig, OrchestratorSettings, PipelineConfig
from core.errors import GenerationError
from core.events import EventName
from core.state import VOLUME_CATALOGUE, Decision, Job, VolumeStatus, create_job, utcnow
from database.memory_store import InMemoryJobStore
from database.store import MergePolicy, WaitRecord
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent
from agents.bundle import AgentBundle
from agents.content_mapper_agent import create_content_mapper_agent
from agents.integrations.generation_gateway import GenerationGateway
from agents.integrations.llm_clients import BaseLLMClient, LLMResponse
from agents.packaging_agent import create_packaging_agent
from agents.rfp_parser_agent import create_rfp_parser_agent
from agents.validation_agent import create_validation_agent
from agents.volume_structure_agent import create_volume_structure_agent
from pipeline.runtime import create_runtime


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (stages wired through the event bus)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full workflow)")
    config.addinivalue_line("markers", "slow: Slow tests (>5s)")


# =============================================================================
# Golden Inputs
# =============================================================================

COMPANY_NAME = "Acme Federal Solutions"

GOLDEN_RFP_TEXT = """
C.2 TECHNICAL REQUIREMENTS
C.2.1 The Contractor shall ensure 99.99% system uptime for all production environments.
C.2.2 The Contractor shall implement automated failover within 30 seconds of detected failure.
C.3.1 The Contractor shall comply with FedRAMP High baseline requirements.

L.1 PROPOSAL FORMAT
L.1.1 Proposals shall be limited to 40 pages for the Technical Volume.

M.2 TECHNICAL APPROACH
The Government will evaluate the Offeror's understanding of requirements.
"""

GOLDEN_PARSED_RFP = {
    "metadata": {
        "agency": "General Services Administration",
        "solicitation_num": "47QTCA-26-R-0001",
        "title": "Cloud Operations Support",
    },
    "section_l": {
        "page_limits": {"volume_1_technical": 40, "volume_2_management": 25},
    },
    "section_m": {
        "factors": [
            {"name": "Technical Approach", "weight": "50%"},
            {"name": "Past Performance", "weight": "30%"},
            {"name": "Price", "weight": "20%"},
        ],
    },
    "section_c": {
        "requirements": [
            {"id": "REQ-001", "section": "C.2.1",
             "text": "The Contractor shall ensure 99.99% system uptime for all production environments.",
             "mandatory": True},
            {"id": "REQ-002", "section": "C.2.2",
             "text": "The Contractor shall implement automated failover within 30 seconds of detected failure.",
             "mandatory": True},
            {"id": "REQ-003", "section": "C.3.1",
             "text": "The Contractor shall comply with FedRAMP High baseline requirements.",
             "mandatory": True},
        ],
    },
}


def make_company_data() -> Dict[str, Any]:
    """Company data with no blockers and no warnings"""
    verified = utcnow().isoformat()
    return {
        "company": {
            "name": COMPANY_NAME,
            "uei": "QJ7KLM3NP8R2",
            "cage_code": "7XK42",
            "employee_count": 120,
        },
        "past_performance": [
            {
                "project_name": f"Cloud Modernization Phase {i}",
                "agency": "GSA",
                "contract_number": f"GS-35F-00{i}1X",
                "contract_value": 4_500_000,
                "poc_verified_date": verified,
                "quantified_outcomes": ["99.99% uptime", "30% cost reduction"],
                "relevance_tags": ["cloud", "devsecops"],
            }
            for i in range(1, 4)
        ],
        "personnel": [
            {"name": "Dana Reyes", "role": "Program Manager", "years_experience": 15,
             "resume_summary": "Fifteen years leading federal cloud programs"},
            {"name": "Sam Okafor", "role": "Technical Lead", "years_experience": 12,
             "resume_url": "https://files.example.gov/resumes/okafor.pdf"},
            {"name": "Lee Chen", "role": "Security Engineer", "years_experience": 9,
             "resume_summary": "FedRAMP High authorizations for three agencies"},
            {"name": "Ari Novak", "role": "Cloud Engineer", "years_experience": 7,
             "resume_summary": "AWS GovCloud migrations"},
        ],
        "labor_rates": [
            {"category": "Program Manager", "hourly_rate": 185},
            {"category": "Cloud Engineer", "hourly_rate": 150},
        ],
    }


def make_blocked_company_data() -> Dict[str, Any]:
    """One contract, two people, no Program Manager, no rates"""
    data = make_company_data()
    data["past_performance"] = data["past_performance"][:1]
    data["personnel"] = data["personnel"][1:3]
    data["labor_rates"] = []
    return data


def volume_body(number: int, tag: str = "", words: int = 900) -> str:
    """
    Volume HTML whose words are unique to (volume, tag), long enough to pass
    the minimum content check and titled with the volume's default sections.
    """
    entry = VOLUME_CATALOGUE[number]
    per_section = words // len(entry.default_sections)
    parts = [f"<h1>Volume {number}: {entry.name}</h1>", f"<p>{COMPANY_NAME}</p>"]
    for s, title in enumerate(entry.default_sections):
        text = " ".join(f"v{number}{tag}s{s}w{i}" for i in range(per_section))
        parts.append(f"<h2>{title}</h2>\n<p>{text}</p>")
    return "\n".join(parts)


# =============================================================================
# Scripted Agents
# =============================================================================

class ScriptedWriter(BaseAgent):
    """Writes volume_body() content; tracks calls and peak concurrency"""

    def __init__(self, fail_volumes: Iterable[int] = (), delay: float = 0.0):
        super().__init__(AgentConfig(name="agent_4"))
        self.fail_volumes = set(fail_volumes)
        self.delay = delay
        self.calls: List[int] = []
        self.active = 0
        self.max_active = 0

    async def _execute(self, context: AgentContext, progress=None, **kwargs) -> AgentResult:
        number = context.target_volume
        self.calls.append(number)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if progress is not None:
                await progress(50, "Section 1/2 complete")
        finally:
            self.active -= 1

        if number in self.fail_volumes:
            return AgentResult(status="error", errors=[f"All sections of Volume {number} failed to generate"])

        content = volume_body(number)
        return AgentResult(status="success", data={
            "volume_number": number,
            "content": content,
            "page_count": math.ceil(len(content) / 3000),
            "failed_sections": [],
        })


class ScriptedScorer(BaseAgent):
    """Pops the next score per volume from ``scores``, else ``default``"""

    def __init__(self, scores: Optional[Dict[int, List[Any]]] = None, default: Any = 90):
        super().__init__(AgentConfig(name="agent_5"))
        self.scores = {k: list(v) for k, v in (scores or {}).items()}
        self.default = default
        self.fail_volumes = set()
        self.calls: List[int] = []

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        number = context.target_volume
        self.calls.append(number)
        if number in self.fail_volumes:
            return AgentResult(status="error", errors=["scoring service unavailable"])

        queue = self.scores.get(number)
        score = queue.pop(0) if queue else self.default
        low = isinstance(score, (int, float)) and score < 70
        return AgentResult(status="success", data={
            "volume_number": number,
            "overall_score": score,
            "requirement_scores": [{
                "requirement_id": "REQ-001",
                "requirement_text": "The Contractor shall ensure 99.99% system uptime",
                "score": score,
                "rationale": "Scripted",
                "gaps": ["Missing failover methodology"] if low else [],
            }],
            "strengths": [],
            "critical_gaps": [],
        })


class ScriptedConsultant(BaseAgent):
    def __init__(self):
        super().__init__(AgentConfig(name="volume_consultant"))
        self.calls: List[Dict[str, Any]] = []

    async def _execute(self, context: AgentContext, score_result=None, iteration=0, history=None, **kwargs) -> AgentResult:
        self.calls.append({"volume": context.target_volume, "iteration": iteration, "history": history or []})
        return AgentResult(status="success", data={
            "volume_number": context.target_volume,
            "current_score": (score_result or {}).get("overall_score"),
            "target_score": 85,
            "estimated_score_increase": 10,
            "compliance_gaps": [{
                "requirement_id": "REQ-001",
                "requirement": "99.99% uptime",
                "current_issue": "No failover methodology",
                "recommended_fix": "Describe the automated failover design",
                "priority": "high",
                "estimated_score_impact": 10,
            }],
            "recommendations": [],
            "iteration_context": {"repeated_issues": [], "successful_changes": [], "areas_to_preserve": []},
        })


class ScriptedRewriter(BaseAgent):
    def __init__(self):
        super().__init__(AgentConfig(name="volume_rewriter"))
        self.calls: List[Dict[str, Any]] = []
        self.fail = False
        self.delay = 0.0

    async def _execute(self, context: AgentContext, insights=None, user_feedback="", iteration=1, **kwargs) -> AgentResult:
        number = context.target_volume
        self.calls.append({"volume": number, "iteration": iteration, "feedback": user_feedback})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return AgentResult(status="error", errors=["rewrite service unavailable"])

        content = volume_body(number, tag=f"r{iteration}")
        return AgentResult(status="success", data={
            "volume_number": number,
            "rewritten_content": content,
            "page_count": math.ceil(len(content) / 3000),
            "changes_applied": [{"section": "User-Specified", "change_type": "user_feedback", "description": user_feedback}],
            "iteration": iteration,
        })


class FailingAgent(BaseAgent):
    """Always reports an error result"""

    def __init__(self, name: str, message: str = "unit failed"):
        super().__init__(AgentConfig(name=name))
        self.message = message

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        return AgentResult(status="error", errors=[self.message])


# =============================================================================
# Scripted LLM Client
# =============================================================================

class ScriptedLLMClient(BaseLLMClient):
    """
    Replies from a queue, then ``default``. A reply may be a string, an
    exception instance (raised) or a callable ``(messages, task_type)``
    returning either.
    """

    def __init__(self, responses: Optional[List[Any]] = None, default: Any = None):
        super().__init__()
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    @property
    def model_name(self) -> str:
        return "scripted-model"

    async def generate(self, messages, config=None, task_type=None) -> LLMResponse:
        self.calls.append({"messages": messages, "config": config, "task_type": task_type})
        reply = self.responses.pop(0) if self.responses else self.default
        if callable(reply):
            reply = reply(messages, task_type)
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            raise GenerationError("No scripted response left")
        return LLMResponse(content=reply, model=self.model_name, task_type=task_type)


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


def make_gateway(client: BaseLLMClient, store=None, sleeps: Optional[List[float]] = None) -> GenerationGateway:
    """Gateway whose backoff waits are recorded instead of slept"""
    async def record(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)
        await asyncio.sleep(0)

    return GenerationGateway(client, store=store, config=GatewayConfig(), sleep=record)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def pipeline_config():
    """Production thresholds with wait timeouts cut to seconds"""
    return PipelineConfig(
        preparation_timeout=5,
        volume_generation_timeout=5,
        data_approval_timeout=5,
        decision_timeout=5,
        rewrite_timeout=5,
        approvals_timeout=10,
        assembly_timeout=5,
        scoring_timeout=5,
    )


@pytest.fixture
def settings(pipeline_config):
    return OrchestratorSettings(
        pipeline=pipeline_config,
        monitor=MonitorConfig(sweep_interval_seconds=0.05),
    )


@pytest.fixture
def store():
    return InMemoryJobStore(MergePolicy(max_attempts=20, base_delay_seconds=0.001, max_delay_seconds=0.01))


@pytest.fixture
def agents(pipeline_config):
    """Deterministic units are real; generation units are scripted"""
    offline = make_gateway(ScriptedLLMClient(default=GenerationError("generation service offline")))
    return AgentBundle(
        volume_structure=create_volume_structure_agent(pipeline_config),
        rfp_parser=create_rfp_parser_agent(offline),
        validator=create_validation_agent(),
        content_mapper=create_content_mapper_agent(offline),
        writer=ScriptedWriter(),
        scorer=ScriptedScorer(),
        consultant=ScriptedConsultant(),
        rewriter=ScriptedRewriter(),
        packager=create_packaging_agent(),
    )


@pytest.fixture
async def runtime(settings, store, agents):
    rt = create_runtime(settings, store=store, agents=agents)
    yield rt
    await rt.shutdown()


@pytest.fixture
def company_data():
    return make_company_data()


@pytest.fixture
def blocked_company_data():
    return make_blocked_company_data()


@pytest.fixture
async def job(store, company_data) -> Job:
    """A queued job with intake inputs, not yet started"""
    return await store.create_job(create_job("job-1", "acme", {
        "rfp_text": GOLDEN_RFP_TEXT,
        "company_data": company_data,
        "rfp_parsed_data": GOLDEN_PARSED_RFP,
    }))


# =============================================================================
# Helper Functions
# =============================================================================

async def wait_until(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.01) -> Any:
    """Poll a sync or async predicate until it returns something truthy"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


async def wait_for_status(store, job_id: str, *statuses: str, timeout: float = 5.0) -> Job:
    async def check():
        job = await store.get_job(job_id)
        return job if job.status in statuses else None
    return await wait_until(check, timeout)


async def wait_for_gate(store, job_id: str, name: EventName, prefix: str = "", timeout: float = 5.0) -> WaitRecord:
    """Block until a stage has registered an open wait on ``name``"""
    async def check():
        for wait in await store.list_open_waits(job_id):
            if wait.event_name == EventName(name).value and wait.step_id.startswith(prefix):
                return wait
        return None
    return await wait_until(check, timeout)


async def decide_when_ready(
    runtime,
    job_id: str,
    volume: int,
    decision: str = "approved",
    feedback: str = "",
    attempt: int = 1,
    timeout: float = 5.0,
) -> None:
    """Answer a volume's decision gate once its loop is waiting"""
    await wait_for_gate(runtime.store, job_id, EventName.VOLUME_DECISION, f"v{volume}_a{attempt}_", timeout)

    async def awaiting():
        current = await runtime.store.get_volume(job_id, volume)
        return current.status == VolumeStatus.AWAITING_APPROVAL.value
    await wait_until(awaiting, timeout)

    await runtime.decide(job_id, volume, Decision(decision), feedback)


async def approve_all(runtime, job_id: str, attempt: int = 1, volumes: Iterable[int] = (1, 2, 3, 4)) -> None:
    for number in volumes:
        await decide_when_ready(runtime, job_id, number, attempt=attempt)
