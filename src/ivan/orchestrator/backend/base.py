"""Executor contract shared by the session and process backends."""

from __future__ import annotations

import re
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

BREAKDOWN_PROMPT = (
    "Return a new-line separated list of tasks you would do to best accomplish the "
    "following: '{description}'. Respond with ONLY the new line separated list, do not "
    "introduce the results. Each task should be considered as something that should be "
    "opened as a pull request. do NOT include tasks like searching, finding/locating files "
    "or researching, analyzing the codebase or looking for certain parts of the code."
)

_NUMBERING_RE = re.compile(r"^\d+\.\s*")
_BULLET_RE = re.compile(r"^-\s*")


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one agent call."""

    transcript: str
    last_message: str
    session_id: str


class AgentExecutor(Protocol):
    """Protocol implemented by agent backends."""

    def validate_installation(self) -> None:
        """Raise ``NotInstalled`` when the agent binary is unavailable."""

    def execute_task(
        self,
        prompt: str,
        working_dir: Path,
        session_id: str | None = None,
    ) -> ExecutionResult:
        """Run the agent on ``prompt`` inside ``working_dir``."""

    def generate_breakdown(self, description: str, working_dir: Path) -> list[str]:
        """Split a request into ordered, PR-sized task descriptions."""


class CancellationToken:
    """Process-wide abort signal observed by in-flight agent calls."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@contextmanager
def cancel_on_interrupt(token: CancellationToken) -> Iterator[None]:
    """Route SIGINT to ``token`` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)

    def _handler(_signum: int, _frame: object | None) -> None:
        token.cancel()

    try:
        signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)


def resolve_origin_repo(working_dir: Path) -> Path:
    """Map a worktree checkout back to the clone it was created from.

    A worktree's ``.git`` is a file reading ``gitdir: <clone>/.git/worktrees/<name>``;
    anything else is treated as the original checkout itself.
    """

    git_path = working_dir / ".git"
    if not git_path.is_file():
        return working_dir
    try:
        git_info = git_path.read_text("utf-8").strip()
    except OSError:
        return working_dir
    if not git_info.startswith("gitdir:"):
        return working_dir
    git_dir = git_info.removeprefix("gitdir:").strip()
    if "/worktrees/" not in git_dir.replace("\\", "/"):
        return working_dir
    git_dir_path = Path(git_dir)
    if not git_dir_path.is_absolute():
        git_dir_path = working_dir / git_dir_path
    return (git_dir_path / ".." / ".." / "..").resolve()


def parse_breakdown(raw: str) -> list[str]:
    """Turn a numbered or bulleted agent reply into task descriptions."""

    tasks: list[str] = []
    for line in raw.splitlines():
        task = line.strip()
        if not task:
            continue
        task = _NUMBERING_RE.sub("", task)
        task = _BULLET_RE.sub("", task)
        if task:
            tasks.append(task)
    return tasks


def allowed_tools_args(allowed_tools: list[str] | None) -> list[str]:
    """CLI flags for a tool allow-list; ``*`` or empty means unrestricted."""

    if not allowed_tools or "*" in allowed_tools:
        return []
    return ["--allowed-tools", ",".join(allowed_tools)]
