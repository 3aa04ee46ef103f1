"""
PropelAI Orchestrator Errors
Exception taxonomy shared by the gateway, the store and the stage executors
"""

from typing import List, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors"""
    pass


# ============================================
# Generation service
# ============================================

class GenerationError(OrchestratorError):
    """The external generation service failed"""
    pass


class RateLimited(GenerationError):
    """Provider asked us to slow down"""

    def __init__(self, message: str = "Rate limited", retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class GenerationConnectionError(GenerationError):
    """DNS, socket or timeout failure talking to the provider"""
    pass


class ExhaustedRetries(GenerationError):
    """All gateway attempts failed"""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"API failed after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


# ============================================
# State store
# ============================================

class StoreError(OrchestratorError):
    """State store failure"""
    pass


class JobNotFound(StoreError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class MergeConflictError(StoreError):
    """Read-merge-write lost the race on every attempt"""

    def __init__(self, job_id: str, field_name: str, attempts: int):
        super().__init__(
            f"Could not merge {field_name} for job {job_id} after {attempts} attempts"
        )
        self.job_id = job_id
        self.field_name = field_name
        self.attempts = attempts


# ============================================
# Pipeline control
# ============================================

class JobCancelled(OrchestratorError):
    """Cancellation was observed; no further steps may be scheduled"""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class StageFailed(OrchestratorError):
    """Unrecoverable stage error"""

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage


class QualityGateFailed(StageFailed):
    """One or more critical assembly checks failed"""

    def __init__(self, failed_checks: List[str]):
        super().__init__("assembly", f"Critical QA checks failed: {', '.join(failed_checks)}")
        self.failed_checks = failed_checks


class InvalidScoreError(StageFailed):
    def __init__(self, volume: int, score: object):
        super().__init__("consultation", f"Volume {volume} scoring produced invalid score: {score}")
        self.volume = volume
        self.score = score


class InvalidTransition(StoreError):
    """Job status change not permitted by the job state machine"""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id}: cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested
