"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from ivan.config import Settings
from ivan.hosting.base import CodeHost
from ivan.hosting.factory import build_code_host
from ivan.orchestrator.backend import (
    AgentExecutor,
    CancellationToken,
    build_executor,
    cancel_on_interrupt,
)
from ivan.orchestrator.collaborators import OpenAiTextGenerator, TextGenerator
from ivan.orchestrator.models import JobView, TaskCreate, TaskStatus, TaskType, TaskView
from ivan.orchestrator.repository import OrchestratorRepository
from ivan.orchestrator.service import RunSummary, TaskOrchestrator
from ivan.review.resolver import ReviewResolver
from ivan.vcs.git import git_output, remote_url
from ivan.vcs.worktree import WorktreeManager

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[..., AgentExecutor]
HostFactory = Callable[[Settings, Path], CodeHost]


@dataclass(slots=True)
class RunCommand:
    """Input for creating a job from a request and running its tasks."""

    db_path: Path | None
    request: str
    tasks: tuple[str, ...] = ()
    single_pr: bool = False
    wait_for_reviews: bool = False
    sync: bool = True
    repo_dir: Path | None = None


@dataclass(slots=True)
class AddressCommand:
    db_path: Path | None
    pr_numbers: tuple[int, ...] = ()
    author: str | None = None
    include_checks: bool = False
    sync: bool = True
    repo_dir: Path | None = None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    limit: int = 20


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    job_id: int | None = None
    status: str | None = None
    retry_eligible: bool = False
    limit: int = 50


@dataclass(slots=True)
class RetryCommand:
    db_path: Path | None
    job_id: int
    single_pr: bool = False
    repo_dir: Path | None = None


@dataclass(slots=True)
class _Runtime:
    repo_dir: Path
    repository_id: int
    host: CodeHost
    executor: AgentExecutor
    orchestrator: TaskOrchestrator


class OrchestratorCliController:
    """Coordinates job creation, execution and inspection CLI operations."""

    def __init__(
        self,
        *,
        executor_factory: ExecutorFactory = build_executor,
        host_factory: HostFactory = build_code_host,
        text_generator: TextGenerator | None = None,
        sleeper: Callable[[float], bool | None] | None = None,
    ) -> None:
        self.executor_factory = executor_factory
        self.host_factory = host_factory
        self.text_generator = text_generator
        self.sleeper = sleeper

    def run(self, command: RunCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        token = CancellationToken()
        with _repository(settings) as repository, cancel_on_interrupt(token):
            runtime = self._runtime(settings, repository, command.repo_dir, token)
            if command.sync:
                runtime.orchestrator.worktrees.cleanup_and_sync_main()
            descriptions = list(command.tasks) or runtime.executor.generate_breakdown(
                command.request,
                runtime.repo_dir,
            )
            job = repository.create_job(
                description=command.request,
                working_directory=runtime.repo_dir,
                repository_id=runtime.repository_id,
            )
            tasks = repository.add_tasks(
                job.job_id,
                [TaskCreate(description=text, task_type=TaskType.BUILD) for text in descriptions],
            )
            lines = _job_header(job, tasks)
            summary = runtime.orchestrator.run_tasks(
                tasks,
                single_pr=command.single_pr,
                wait_for_reviews=command.wait_for_reviews,
            )
        return lines + _summary_lines(summary)

    def address(self, command: AddressCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        token = CancellationToken()
        with _repository(settings) as repository, cancel_on_interrupt(token):
            runtime = self._runtime(settings, repository, command.repo_dir, token)
            if command.sync:
                runtime.orchestrator.worktrees.cleanup_and_sync_main()
            job = repository.create_job(
                description=_address_job_description(command),
                working_directory=runtime.repo_dir,
                repository_id=runtime.repository_id,
            )
            resolver = ReviewResolver(host=runtime.host, repository=repository)
            if command.pr_numbers:
                tasks = resolver.collect_tasks(
                    job.job_id,
                    list(command.pr_numbers),
                    include_checks=command.include_checks,
                )
            else:
                tasks = resolver.collect_open_tasks(
                    job.job_id,
                    author=command.author,
                    include_checks=command.include_checks,
                )
            lines = _job_header(job, tasks)
            if not tasks:
                return [*lines, "Nothing to address."]
            summary = runtime.orchestrator.run_address_tasks(tasks)
        return lines + _summary_lines(summary)

    def retry(self, command: RetryCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        token = CancellationToken()
        with _repository(settings) as repository, cancel_on_interrupt(token):
            job = repository.get_job(command.job_id)
            if job is None:
                raise ValueError(f"Job not found: {command.job_id}")
            eligible = repository.list_retry_eligible_tasks(job_id=job.job_id)
            if not eligible:
                return [f"Job {job.job_id} has no retry-eligible tasks."]
            repo_dir = command.repo_dir or Path(job.working_directory)
            runtime = self._runtime(settings, repository, repo_dir, token)
            summary = runtime.orchestrator.retry_job(job.job_id, single_pr=command.single_pr)
        return [f"Retrying {len(eligible)} task(s) of job {job.job_id}", *_summary_lines(summary)]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _load_settings(command.db_path, validate=False)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(limit=command.limit)
            if not jobs:
                return ["No jobs."]
            lines: list[str] = []
            for job in jobs:
                tasks = repository.list_tasks(job_id=job.job_id)
                done = sum(1 for task in tasks if task.status is TaskStatus.COMPLETED)
                lines.append(
                    f"job_id={job.job_id} tasks={done}/{len(tasks)} "
                    f"created={job.created_at.isoformat()} dir={job.working_directory} "
                    f"description={job.description}",
                )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _load_settings(command.db_path, validate=False)
        with _repository(settings) as repository:
            if command.retry_eligible:
                tasks = repository.list_retry_eligible_tasks(job_id=command.job_id)
            else:
                tasks = repository.list_tasks(
                    job_id=command.job_id,
                    status=_parse_status(command.status),
                    limit=command.limit,
                )
        if not tasks:
            return ["No tasks."]
        return [_task_line(task) for task in tasks]

    def _runtime(
        self,
        settings: Settings,
        repository: OrchestratorRepository,
        repo_dir: Path | None,
        token: CancellationToken,
    ) -> _Runtime:
        root = Path(git_output(["rev-parse", "--show-toplevel"], cwd=repo_dir or Path.cwd()))
        executor = self.executor_factory(settings, cancel_token=token)
        executor.validate_installation()
        host = self.host_factory(settings, root)
        host.ensure_authenticated()
        record = repository.get_or_create_repository(
            directory=root,
            remote_url=remote_url(cwd=root),
        )
        worktrees = WorktreeManager(
            root,
            host=host,
            suffix=settings.worktree.suffix,
            install_dependencies=settings.worktree.install_dependencies,
        )
        orchestrator = TaskOrchestrator(
            repository=repository,
            executor=executor,
            worktrees=worktrees,
            host=host,
            text=self.text_generator or _text_generator(settings),
            instructions=settings.repos.instructions_for(root),
            review_agent=settings.review.agent,
            review_wait_seconds=settings.review.wait_seconds,
            sleeper=self.sleeper or token.wait,
        )
        logger.info("Using repository %s (%s)", root, settings.agent.executor_type)
        return _Runtime(
            repo_dir=root,
            repository_id=record.repository_id,
            host=host,
            executor=executor,
            orchestrator=orchestrator,
        )


def _load_settings(db_path: Path | None, *, validate: bool = True) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if validate:
        settings.validate()
    return settings


def _text_generator(settings: Settings) -> TextGenerator | None:
    if not settings.text.openai_api_key:
        return None
    return OpenAiTextGenerator(
        api_key=settings.text.openai_api_key,
        model=settings.text.model,
        api_url=settings.text.api_url,
        timeout_seconds=settings.text.request_timeout_seconds,
    )


def _address_job_description(command: AddressCommand) -> str:
    if command.pr_numbers:
        numbers = ", ".join(f"#{number}" for number in command.pr_numbers)
        return f"Address review feedback on PR {numbers}"
    if command.author:
        return f"Address review feedback on open PRs by @{command.author}"
    return "Address review feedback on open PRs"


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _job_header(job: JobView, tasks: list[TaskView]) -> list[str]:
    lines = [f"Job created: job_id={job.job_id} tasks={len(tasks)}"]
    lines.extend(
        f"  [{task.task_id}] {task.task_type.value}: {_first_line(task)}" for task in tasks
    )
    return lines


def _summary_lines(summary: RunSummary) -> list[str]:
    lines = [
        "Run summary: "
        f"processed={summary.processed} completed={summary.completed} "
        f"failed={summary.failed} unchanged={summary.unchanged} replies={summary.replies}",
    ]
    lines.extend(f"Pull request: {link}" for link in summary.pr_links)
    if summary.failed:
        lines.append("Failed tasks can be re-run with `ivan retry <job_id>`.")
    return lines


def _task_line(task: TaskView) -> str:
    return (
        f"task_id={task.task_id} job_id={task.job_id} type={task.task_type.value} "
        f"status={task.status.value} branch={task.branch or '-'} pr={task.pr_link or '-'} "
        f"retry={'yes' if task.retry_eligible else 'no'} {_first_line(task)}"
    )


def _first_line(task: TaskView) -> str:
    return task.description.splitlines()[0] if task.description else ""


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
