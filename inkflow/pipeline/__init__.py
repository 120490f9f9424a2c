"""Pipeline topology, stage execution and orchestration."""

from .run_status import RunRecord, RunStatusStore
from .runner import PipelineOutcome, PipelineRunner
from .stages import PIPELINE_STAGES, StageExecutor, StageSpec
from .state import PipelineState, PipelineStatus

__all__ = [
    "PIPELINE_STAGES",
    "PipelineOutcome",
    "PipelineRunner",
    "PipelineState",
    "PipelineStatus",
    "RunRecord",
    "RunStatusStore",
    "StageExecutor",
    "StageSpec",
]
