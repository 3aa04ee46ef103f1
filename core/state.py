"""
PropelAI Proposal Generation Orchestrator
Core State Schema - jobs, volumes and the records that make them resumable

A Job is the single source of truth for one proposal-generation request.
Everything a stage needs to resume after a crash lives on the Job, its four
Volumes, the append-only IterationRecords and the persisted step outputs.
"""

from typing import TypedDict, List, Dict, Optional, Any, Annotated
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
import operator


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every persisted clock"""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Overall status of a proposal job"""
    QUEUED = "queued"
    PROCESSING = "processing"
    BLOCKED = "blocked"                 # Waiting on a human (data fixes, manual review)
    REVIEW = "review"                   # One or more volumes awaiting a decision
    FAILED = "failed"
    NEEDS_REVISION = "needs_revision"   # Finished, but cross-volume checks failed
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """Status of a single entry in the stage progress map"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    FAILED = "failed"


class VolumeStatus(str, Enum):
    """Lifecycle of a volume sub-job"""
    PENDING = "pending"
    GENERATING = "generating"
    READY_FOR_SCORING = "ready_for_scoring"
    SCORING = "scoring"
    AWAITING_APPROVAL = "awaiting_approval"
    ITERATING = "iterating"
    APPROVED = "approved"
    BLOCKED = "blocked"
    COMPLETE = "complete"


class Decision(str, Enum):
    """Human decision on a volume under review"""
    APPROVED = "approved"
    ITERATE = "iterate"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

# Allowed job status moves. Same-status writes are always permitted.
# failed/needs_revision may re-enter processing through retry-from-checkpoint.
JOB_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {
        JobStatus.BLOCKED, JobStatus.REVIEW, JobStatus.FAILED,
        JobStatus.NEEDS_REVISION, JobStatus.COMPLETED, JobStatus.CANCELLED,
    },
    JobStatus.BLOCKED: {JobStatus.PROCESSING, JobStatus.REVIEW, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.REVIEW: {
        JobStatus.PROCESSING, JobStatus.BLOCKED, JobStatus.FAILED,
        JobStatus.NEEDS_REVISION, JobStatus.COMPLETED, JobStatus.CANCELLED,
    },
    JobStatus.FAILED: {JobStatus.PROCESSING},
    JobStatus.NEEDS_REVISION: {JobStatus.PROCESSING},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


def can_transition(current: str, requested: str) -> bool:
    """Check a job status change against the job state machine"""
    if current == requested:
        return True
    return JobStatus(requested) in JOB_TRANSITIONS[JobStatus(current)]


# ============================================
# Volume catalogue
# ============================================

@dataclass(frozen=True)
class VolumeSpec:
    """Fixed description of one of the four proposal volumes"""
    number: int
    name: str
    progress_start: int
    progress_end: int
    default_sections: tuple

    @property
    def key(self) -> str:
        return f"volume{self.number}"


VOLUME_CATALOGUE: Dict[int, VolumeSpec] = {
    1: VolumeSpec(1, "Technical", 30, 50, (
        "Executive Summary", "Technical Approach", "Implementation Plan", "Risk Management",
    )),
    2: VolumeSpec(2, "Management", 50, 60, (
        "Management Approach", "Organizational Structure", "Key Personnel", "Quality Control",
    )),
    3: VolumeSpec(3, "Past Performance", 60, 70, (
        "Past Performance Overview", "Relevant Experience", "Customer References",
    )),
    4: VolumeSpec(4, "Pricing", 70, 80, (
        "Pricing Summary", "Labor Categories and Rates", "Cost Narrative",
    )),
}

VOLUME_NUMBERS = tuple(sorted(VOLUME_CATALOGUE))


# ============================================
# Records
# ============================================

@dataclass
class StageProgress:
    """Per-stage progress entry, merged into Job.stage_progress"""
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    def to_patch(self) -> Dict[str, Any]:
        """Only the fields that are set, so a merge never erases siblings"""
        patch = {"status": StageStatus(self.status).value}
        for name in ("started_at", "completed_at", "error"):
            value = getattr(self, name)
            if value is not None:
                patch[name] = value
        return patch

    @classmethod
    def running(cls) -> "StageProgress":
        return cls(status=StageStatus.RUNNING, started_at=utcnow().isoformat())

    @classmethod
    def complete(cls) -> "StageProgress":
        return cls(status=StageStatus.COMPLETE, completed_at=utcnow().isoformat())

    @classmethod
    def failed(cls, error: str) -> "StageProgress":
        return cls(status=StageStatus.FAILED, completed_at=utcnow().isoformat(), error=error)

    @classmethod
    def blocked(cls) -> "StageProgress":
        return cls(status=StageStatus.BLOCKED, completed_at=utcnow().isoformat())


@dataclass
class Job:
    """One proposal-generation request"""
    job_id: str
    company_id: str
    status: str = JobStatus.QUEUED.value
    progress_percent: int = 0
    current_step: str = "Queued"
    current_stage: Optional[str] = None
    current_agent: Optional[str] = None
    current_volume: Optional[int] = None
    error_message: Optional[str] = None

    # Intake payload: rfp_text, company_data, optional rfp_parsed_data
    inputs: Dict[str, Any] = field(default_factory=dict)

    # Concurrently-updated progress map (stage id -> StageProgress patch)
    stage_progress: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    # Preparation outputs
    volume_page_limits: Dict[str, Optional[int]] = field(default_factory=dict)
    company_data: Dict[str, Any] = field(default_factory=dict)
    rfp_parsed_data: Dict[str, Any] = field(default_factory=dict)
    validation_report: Dict[str, Any] = field(default_factory=dict)
    content_outlines: Dict[str, Any] = field(default_factory=dict)

    # Assembly / final scoring outputs
    quality_checks: List[Dict[str, Any]] = field(default_factory=list)
    final_html: Optional[str] = None
    final_report: Dict[str, Any] = field(default_factory=dict)

    preparation_phase_status: str = StageStatus.PENDING.value
    assembly_status: str = StageStatus.PENDING.value
    final_scoring_status: str = StageStatus.PENDING.value
    awaiting_user_approval: bool = False
    estimated_minutes: Dict[str, int] = field(default_factory=dict)

    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("created_at", "updated_at", "completed_at"):
            value = data.get(name)
            data[name] = value.isoformat() if value else None
        return data


@dataclass
class Volume:
    """One independently generated, scored and approved content unit"""
    job_id: str
    number: int
    name: str
    content: str = ""
    page_count: int = 0
    status: str = VolumeStatus.PENDING.value
    score: Optional[int] = None
    iteration: int = 0
    insights: Dict[str, Any] = field(default_factory=dict)
    compliance_details: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        if not include_content:
            data.pop("content")
        return data


@dataclass
class IterationRecord:
    """Append-only entry per rework cycle. Never mutated after creation."""
    job_id: str
    volume: int
    iteration: int
    user_feedback: str = ""
    issues_addressed: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


def create_job(job_id: str, company_id: str, inputs: Optional[Dict[str, Any]] = None) -> Job:
    """Factory function to create a new queued Job"""
    return Job(job_id=job_id, company_id=company_id, inputs=dict(inputs or {}))


def create_volumes(job_id: str) -> List[Volume]:
    """The four pending volumes of a new job"""
    return [
        Volume(job_id=job_id, number=entry.number, name=entry.name)
        for entry in VOLUME_CATALOGUE.values()
    ]


# ============================================
# Orchestrator graph state
# ============================================

class PipelineState(TypedDict):
    """
    LangGraph state threaded through the top-level orchestrator.

    Only JSON-friendly values live here; the Job record in the store
    remains authoritative.
    """
    job_id: str
    attempt: int
    stage: str
    preparation_ok: bool
    generated_volumes: List[int]
    approved_volumes: List[int]
    assembly_ok: bool
    final_status: Optional[str]
    cancelled: bool
    errors: Annotated[List[str], operator.add]


def create_pipeline_state(job_id: str, attempt: int = 1) -> PipelineState:
    """Factory function for a fresh orchestrator graph state"""
    return PipelineState(
        job_id=job_id,
        attempt=attempt,
        stage="start",
        preparation_ok=False,
        generated_volumes=[],
        approved_volumes=[],
        assembly_ok=False,
        final_status=None,
        cancelled=False,
        errors=[],
    )
