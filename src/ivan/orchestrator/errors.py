"""Error taxonomy shared by executors, git plumbing and the orchestrator."""

from __future__ import annotations

_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "429",
    "overloaded",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "timed out",
)


class IvanError(RuntimeError):
    """Base class for orchestration errors."""


class NotInstalled(IvanError):
    """A required external tool is missing; the whole run aborts."""


class AuthenticationRequired(IvanError):
    """The code host or agent is not authenticated; the whole run aborts."""


class ExecutionFailed(IvanError):
    """Agent call failed. The task becomes retry-eligible."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr

    @property
    def transient(self) -> bool:
        haystack = f"{self} {self.stderr or ''}".lower()
        return any(pattern in haystack for pattern in _TRANSIENT_PATTERNS)


class ExecutionCancelled(ExecutionFailed):
    """Operator interrupted the in-flight agent call."""

    def __init__(self, message: str = "Task execution cancelled by user") -> None:
        super().__init__(message)


class ValidationFailed(IvanError):
    """Commit rejected by a pre-submit hook."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output or message


class WorktreeConflict(IvanError):
    """Branch or path already taken; resolved internally by forced recreate."""


class PublishFailed(IvanError):
    """Push or pull-request creation failed."""


class GitCommandError(IvanError):
    """A git invocation exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: "
            f"{(stderr or stdout).strip()}",
        )
        self.git_args = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


FATAL_ERRORS: tuple[type[IvanError], ...] = (NotInstalled, AuthenticationRequired)
