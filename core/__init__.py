"""PropelAI Core - job state, configuration, events and errors"""

from .state import (
    Job,
    Volume,
    IterationRecord,
    JobStatus,
    StageStatus,
    VolumeStatus,
    Decision,
    create_job,
    create_volumes,
)
from .errors import OrchestratorError, JobCancelled, StageFailed

__all__ = [
    "Job",
    "Volume",
    "IterationRecord",
    "JobStatus",
    "StageStatus",
    "VolumeStatus",
    "Decision",
    "create_job",
    "create_volumes",
    "OrchestratorError",
    "JobCancelled",
    "StageFailed",
]
