"""Agent backend implementations."""

from ivan.orchestrator.backend.base import (
    AgentExecutor,
    CancellationToken,
    ExecutionResult,
    cancel_on_interrupt,
    resolve_origin_repo,
)
from ivan.orchestrator.backend.factory import build_executor
from ivan.orchestrator.backend.process_backend import ProcessAgentExecutor
from ivan.orchestrator.backend.session_backend import SessionAgentExecutor

__all__ = [
    "AgentExecutor",
    "CancellationToken",
    "ExecutionResult",
    "ProcessAgentExecutor",
    "SessionAgentExecutor",
    "build_executor",
    "cancel_on_interrupt",
    "resolve_origin_repo",
]
