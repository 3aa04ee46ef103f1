# PropelAI Checkpointing Layer
# Durable steps, event waits and volume checkpoint rules

from checkpointing.step_runner import StepRunner
from checkpointing.volume_checkpoints import (
    generation_stage_id,
    has_valid_checkpoint,
    load_checkpoint,
    save_checkpoint,
)

__all__ = [
    "StepRunner",
    "generation_stage_id",
    "has_valid_checkpoint",
    "load_checkpoint",
    "save_checkpoint",
]
