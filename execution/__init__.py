"""
EXECUTION MODULE - Where a tick's unit of work actually runs

Components:
- CodeExecutor: in-process actions (stop-loss, take-profit, health check)
- PipelineExecutor: registered scripted pipelines
- WorkerExecutor: external reasoning workers
"""

from execution.code_executor import CodeExecutor
from execution.pipelines import PipelineExecutor, PipelineResult
from execution.worker import (
    SubprocessWorkerExecutor,
    WorkerContext,
    WorkerExecutor,
    compose_prompt,
)

__all__ = [
    "CodeExecutor",
    "PipelineExecutor",
    "PipelineResult",
    "SubprocessWorkerExecutor",
    "WorkerContext",
    "WorkerExecutor",
    "compose_prompt",
]
