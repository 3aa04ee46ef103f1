# PropelAI Pipeline
# Stage executors, progress reporting, the stall monitor and the runtime that wires them

from pipeline.base import StageExecutor
from pipeline.progress import ProgressReporter
from pipeline.preparation import PreparationStage
from pipeline.volume_generation import VolumeGenerationStage
from pipeline.consultation import ConsultationStage, Outcome
from pipeline.rewrite import RewriteStage
from pipeline.assembly import AssemblyStage, run_quality_checks
from pipeline.final_scoring import FinalScoringStage, build_final_report
from pipeline.stall_monitor import StallMonitor
from pipeline.runtime import PipelineRuntime, create_runtime

__all__ = [
    "StageExecutor",
    "ProgressReporter",
    "PreparationStage",
    "VolumeGenerationStage",
    "ConsultationStage",
    "Outcome",
    "RewriteStage",
    "AssemblyStage",
    "run_quality_checks",
    "FinalScoringStage",
    "build_final_report",
    "StallMonitor",
    "PipelineRuntime",
    "create_runtime",
]
