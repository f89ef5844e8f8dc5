"""Select the agent backend from configuration."""

from __future__ import annotations

from ivan.config import Settings
from ivan.orchestrator.backend.base import AgentExecutor, CancellationToken
from ivan.orchestrator.backend.process_backend import ProcessAgentExecutor
from ivan.orchestrator.backend.session_backend import SessionAgentExecutor


def build_executor(
    settings: Settings,
    *,
    cancel_token: CancellationToken | None = None,
) -> AgentExecutor:
    """``sdk`` selects the session backend, ``cli`` the plain process backend."""

    executor_type = settings.agent.executor_type
    kwargs = {
        "command": settings.agent.command,
        "model": settings.agent.model,
        "allowed_tools": settings.repos.allowed_tools,
        "cancel_token": cancel_token,
    }
    if executor_type == "cli":
        return ProcessAgentExecutor(**kwargs)
    if executor_type == "sdk":
        return SessionAgentExecutor(**kwargs)
    raise ValueError(f"Unsupported executor type: {executor_type!r}")
