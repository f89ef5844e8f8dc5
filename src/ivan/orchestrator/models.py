"""Domain models for jobs, tasks and their lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

ERROR_LOG_PREFIX = "ERROR:"


class TaskStatus(str, Enum):
    """Durable task lifecycle states.

    ``not_started -> active -> completed`` on success; ``active -> not_started``
    when a step fails. There is no terminal failed state.
    """

    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"


class TaskType(str, Enum):
    """What a task asks the agent to do."""

    BUILD = "build"
    ADDRESS = "address"
    LINT_AND_TEST = "lint_and_test"


_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.ACTIVE}),
    TaskStatus.ACTIVE: frozenset({TaskStatus.COMPLETED, TaskStatus.NOT_STARTED}),
    TaskStatus.COMPLETED: frozenset(),
}


def is_valid_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True when ``current -> target`` is a legal status move."""

    return current == target or target in _ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class RepositoryView:
    """Repository a job was run against."""

    repository_id: int
    directory: str
    remote_url: str | None
    name: str
    created_at: datetime


@dataclass(slots=True)
class JobView:
    """Readable job view."""

    job_id: int
    description: str
    working_directory: str
    repository_id: int | None
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for adding a task to a job."""

    description: str
    task_type: TaskType = TaskType.BUILD
    branch: str | None = None
    pr_link: str | None = None
    comment_url: str | None = None
    comment_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and orchestrator logic."""

    task_id: int
    job_id: int
    description: str
    status: TaskStatus
    task_type: TaskType
    branch: str | None
    pr_link: str | None
    execution_log: str | None
    commit_sha: str | None
    comment_url: str | None
    comment_id: str | None
    repository_id: int | None
    created_at: datetime
    updated_at: datetime

    @property
    def retry_eligible(self) -> bool:
        """A reverted task whose log records the failure that reverted it."""

        if self.status is not TaskStatus.NOT_STARTED or not self.execution_log:
            return False
        return any(
            line.startswith(ERROR_LOG_PREFIX) for line in self.execution_log.splitlines()
        )

    @property
    def pr_number(self) -> int | None:
        if not self.pr_link:
            return None
        tail = self.pr_link.rstrip("/").rsplit("/", 1)[-1]
        return int(tail) if tail.isdigit() else None
