"""Bounded commit-repair loop for pre-commit hook failures."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ivan.orchestrator.backend.base import AgentExecutor
from ivan.orchestrator.errors import ValidationFailed
from ivan.vcs.worktree import WorktreeManager

logger = logging.getLogger(__name__)

MAX_COMMIT_ATTEMPTS = 3

FIX_PROMPT_TEMPLATE = (
    "Fix the following pre-commit hook errors:\n\n{errors}\n\n"
    "Please fix all linting, formatting, type-check and test problems preventing the commit."
)


@dataclass(slots=True)
class RepairDecision:
    """Decision returned by repair policy."""

    should_repair: bool
    reason: str


@dataclass(slots=True)
class CommitOutcome:
    """Result of a commit that may have needed agent repairs."""

    commit_sha: str | None
    attempts: int
    repairs: int
    session_id: str | None


def decide_repair(*, attempt: int, max_attempts: int = MAX_COMMIT_ATTEMPTS) -> RepairDecision:
    """Allow an agent repair after every failed commit except the last."""

    if attempt >= max_attempts:
        return RepairDecision(
            should_repair=False,
            reason=f"Commit failed {attempt} times; attempts exhausted.",
        )
    return RepairDecision(
        should_repair=True,
        reason=f"Commit attempt {attempt} of {max_attempts} failed; asking the agent to fix.",
    )


def fix_log_entry(attempt: int, transcript: str) -> str:
    return f"\n\n--- Pre-commit Fix Attempt {attempt} ---\n{transcript}"


def commit_with_repair(  # noqa: PLR0913
    *,
    worktrees: WorktreeManager,
    executor: AgentExecutor,
    working_dir: Path,
    message: str,
    session_id: str | None,
    on_fix_log: Callable[[str], None],
    max_attempts: int = MAX_COMMIT_ATTEMPTS,
) -> CommitOutcome:
    """Commit, re-invoking the agent on hook failures, at most ``max_attempts`` times.

    Every retry runs the same ``add --all`` + ``commit`` on the tree the agent just
    fixed. The hook is never bypassed. Raises ``ValidationFailed`` once attempts
    are exhausted.
    """

    repairs = 0
    attempt = 0
    while True:
        attempt += 1
        try:
            sha = worktrees.commit_changes(working_dir, message)
        except ValidationFailed as failure:
            decision = decide_repair(attempt=attempt, max_attempts=max_attempts)
            if not decision.should_repair:
                raise ValidationFailed(
                    f"Could not satisfy pre-submit checks after {attempt} attempts",
                    output=failure.output,
                ) from failure
            logger.warning(decision.reason)
            result = executor.execute_task(
                FIX_PROMPT_TEMPLATE.format(errors=failure.output),
                working_dir,
                session_id,
            )
            repairs += 1
            session_id = result.session_id or session_id
            on_fix_log(fix_log_entry(attempt, result.transcript))
            continue
        return CommitOutcome(
            commit_sha=sha,
            attempts=attempt,
            repairs=repairs,
            session_id=session_id,
        )
