"""Executor capability: protocol plus subprocess and scripted implementations."""

from pm_orchestrator.executor.base import (
    ExecutionCancelledError,
    ExecutorError,
    ExecutorRequest,
    ExecutorResult,
    ExecutorStatus,
    TaskExecutor,
)
from pm_orchestrator.executor.command_executor import CommandExecutor
from pm_orchestrator.executor.scripted import ScriptedExecutor

__all__ = [
    "CommandExecutor",
    "ExecutionCancelledError",
    "ExecutorError",
    "ExecutorRequest",
    "ExecutorResult",
    "ExecutorStatus",
    "ScriptedExecutor",
    "TaskExecutor",
]
