"""管线执行引擎 - 依赖图调度与并发执行"""

from research_workflow.pipeline.context import TaskContext, TaskProgress, TaskResult, TraceEvent
from research_workflow.pipeline.executor import ProgressStream, TaskExecutor
from research_workflow.pipeline.graph import CycleDetectedError, InvalidGraphError, TaskDAG
from research_workflow.pipeline.model import Pipeline, PipelineStage, PipelineTask, default_pipeline
from research_workflow.pipeline.registry import TaskRegistry, TaskTypeNotFoundError, get_default_registry
from research_workflow.pipeline.runner import (
    CancellationToken,
    DeadlockError,
    PipelineExecutionError,
    PipelineRunner,
    RunResult,
    RunStatus,
    run_pipeline,
)
from research_workflow.pipeline.staged import StagedPipelineRunner
from research_workflow.pipeline.task_base import Task

__all__ = [
    "CancellationToken",
    "CycleDetectedError",
    "DeadlockError",
    "InvalidGraphError",
    "Pipeline",
    "PipelineExecutionError",
    "PipelineRunner",
    "PipelineStage",
    "PipelineTask",
    "ProgressStream",
    "RunResult",
    "RunStatus",
    "StagedPipelineRunner",
    "Task",
    "TaskContext",
    "TaskDAG",
    "TaskExecutor",
    "TaskProgress",
    "TaskRegistry",
    "TaskResult",
    "TaskTypeNotFoundError",
    "TraceEvent",
    "default_pipeline",
    "get_default_registry",
    "run_pipeline",
]
