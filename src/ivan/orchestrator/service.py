"""Task orchestrator: drives build and address tasks through worktrees and the agent."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ivan.hosting.base import CodeHost, pr_number_from_url
from ivan.orchestrator.backend.base import AgentExecutor
from ivan.orchestrator.collaborators import (
    NullPriorResolutionSource,
    PriorResolutionSource,
    ResilientTextGenerator,
    TextGenerator,
    render_learnings,
)
from ivan.orchestrator.errors import (
    FATAL_ERRORS,
    ExecutionCancelled,
    ExecutionFailed,
    GitCommandError,
    PublishFailed,
    ValidationFailed,
    WorktreeConflict,
)
from ivan.orchestrator.models import TaskStatus, TaskType, TaskView
from ivan.orchestrator.repair import commit_with_repair
from ivan.orchestrator.repository import OrchestratorRepository
from ivan.review.resolver import (
    LINT_AND_TEST_COMMIT_MESSAGE,
    ReviewResolver,
    build_address_prompt,
    build_fix_reply,
    build_no_change_reply,
)
from ivan.vcs.worktree import WorktreeManager

logger = logging.getLogger(__name__)

TASK_ERRORS: tuple[type[Exception], ...] = (
    ExecutionFailed,
    ValidationFailed,
    PublishFailed,
    GitCommandError,
    WorktreeConflict,
)
INSTRUCTIONS_HEADER = "\n\nRepository-specific instructions:\n"
MULTIPLE_TASKS_PREFIX = "Multiple tasks: "
TRANSIENT_NOTE = "(transient, retry later)"


@dataclass(slots=True)
class RunSummary:
    """Aggregate counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    unchanged: int = 0
    replies: int = 0
    pr_links: list[str] = field(default_factory=list)

    def merge(self, other: RunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.unchanged += other.unchanged
        self.replies += other.replies
        for link in other.pr_links:
            if link not in self.pr_links:
                self.pr_links.append(link)


@dataclass(slots=True)
class _BranchProgress:
    session_id: str | None = None
    fix_diffs: list[str] = field(default_factory=list)
    fix_files: list[str] = field(default_factory=list)


class TaskOrchestrator:
    """Runs tasks of one repository, one worktree per branch."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        executor: AgentExecutor,
        worktrees: WorktreeManager,
        host: CodeHost | None = None,
        text: TextGenerator | None = None,
        learnings: PriorResolutionSource | None = None,
        instructions: str | None = None,
        review_agent: str = "@codex",
        review_wait_seconds: int = 1800,
        sleeper: Callable[[float], bool | None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.worktrees = worktrees
        self.host = host
        if not isinstance(text, ResilientTextGenerator):
            text = ResilientTextGenerator(text)
        self.text = text
        self.learnings = learnings or NullPriorResolutionSource()
        self.instructions = instructions
        self.review_agent = review_agent
        self.review_wait_seconds = review_wait_seconds
        self.sleeper = sleeper
        self.resolver = (
            ReviewResolver(host=host, repository=repository) if host is not None else None
        )

    # -- entry points ------------------------------------------------------

    def run_tasks(
        self,
        tasks: list[TaskView],
        *,
        single_pr: bool = False,
        wait_for_reviews: bool = False,
    ) -> RunSummary:
        """Run build tasks, one PR each or one PR for the batch."""

        if not tasks:
            return RunSummary()
        if single_pr:
            summary = self._run_single_pr(tasks)
        else:
            summary = RunSummary()
            for task in tasks:
                self._guarded(
                    task,
                    summary,
                    lambda task=task: self._run_build_task(task, summary),
                )
        if wait_for_reviews and summary.pr_links:
            summary.merge(self.wait_for_reviews(tasks[0].job_id, summary.pr_links))
        return summary

    def run_address_tasks(self, tasks: list[TaskView]) -> RunSummary:
        """Run address and lint/test tasks grouped by PR branch, lint/test first."""

        summary = RunSummary()
        groups: dict[str, list[TaskView]] = {}
        for task in tasks:
            if not task.branch:
                summary.processed += 1
                summary.failed += 1
                self.repository.record_failure(task.task_id, "Address task has no branch")
                continue
            groups.setdefault(task.branch, []).append(task)
        for branch, group in groups.items():
            group.sort(key=lambda item: item.task_type is not TaskType.LINT_AND_TEST)
            self._address_branch(branch, group, summary)
        return summary

    def wait_for_reviews(self, job_id: int, pr_links: list[str]) -> RunSummary:
        """Block for the review window, then address whatever reviewers left."""

        if self.resolver is None or self.host is None:
            logger.warning("No code host configured; skipping review wait")
            return RunSummary()
        logger.info(
            "Waiting %d seconds for reviews on %d pull request(s)",
            self.review_wait_seconds,
            len(pr_links),
        )
        if self.sleeper(self.review_wait_seconds):
            raise ExecutionCancelled("Review wait cancelled by user")
        tasks: list[TaskView] = []
        for link in pr_links:
            try:
                pr = self.host.get_pr(pr_number_from_url(link))
                tasks.extend(self.resolver.create_address_tasks(job_id, pr))
            except FATAL_ERRORS:
                raise
            except PublishFailed as error:
                logger.error("Could not collect review comments for %s: %s", link, error)
        if not tasks:
            logger.info("No unaddressed review comments after waiting")
            return RunSummary()
        return self.run_address_tasks(tasks)

    def retry_job(self, job_id: int, *, single_pr: bool = False) -> RunSummary:
        """Re-run the retry-eligible tasks of ``job_id``."""

        eligible = self.repository.list_retry_eligible_tasks(job_id=job_id)
        build = [task for task in eligible if task.task_type is TaskType.BUILD]
        review = [task for task in eligible if task.task_type is not TaskType.BUILD]
        summary = self.run_tasks(build, single_pr=single_pr)
        if review:
            summary.merge(self.run_address_tasks(review))
        return summary

    def build_prompt(self, description: str, request: str | None = None) -> str:
        """Agent prompt for ``description``; ``request`` replaces it as the prompt body."""

        prompt = request or description
        if self.instructions:
            prompt = f"{prompt}{INSTRUCTIONS_HEADER}{self.instructions}"
        return f"{prompt}{render_learnings(self.learnings.relevant_learnings(description))}"

    # -- build flow --------------------------------------------------------

    def _run_build_task(self, task: TaskView, summary: RunSummary) -> None:
        self.repository.update_status(task.task_id, TaskStatus.ACTIVE)
        branch = task.branch or self.worktrees.generate_branch_name(task.description)
        self.repository.assign_branch(task.task_id, branch)
        working_dir = self.worktrees.create_worktree(branch)
        try:
            result = self.executor.execute_task(self.build_prompt(task.description), working_dir)
            self.repository.set_execution_log(task.task_id, result.transcript)
            changed = self.worktrees.get_changed_files(working_dir)
            if not changed:
                logger.info("Task %d produced no changes", task.task_id)
                summary.unchanged += 1
                self.repository.update_status(task.task_id, TaskStatus.COMPLETED)
                return
            diff = self.worktrees.get_diff(working_dir)
            message = self.text.commit_message(diff, changed)
            sha = self._commit(task, working_dir, message, result.session_id)[0]
            if sha is None:
                summary.unchanged += 1
                self.repository.update_status(task.task_id, TaskStatus.COMPLETED)
                return
            self.worktrees.push_branch(working_dir, branch)
            pr_text = self.text.pull_request(task.description, diff, changed)
            url = self.worktrees.create_pull_request(
                title=pr_text.title,
                body=pr_text.body,
                branch=branch,
            )
            self.repository.set_pr_link(task.task_id, url)
            self.repository.update_status(task.task_id, TaskStatus.COMPLETED)
        finally:
            self.worktrees.remove_worktree(branch)

    def _run_single_pr(self, tasks: list[TaskView]) -> RunSummary:
        summary = RunSummary()
        first = tasks[0]
        branch = first.branch or self.worktrees.generate_branch_name(first.description)
        working_dir = self._open_worktree(branch, tasks, summary)
        if working_dir is None:
            return summary
        progress = _BranchProgress()
        committed: list[TaskView] = []
        try:
            for task in tasks:

                def work(task: TaskView = task) -> None:
                    if self._run_batched_task(task, branch, working_dir, progress, summary):
                        committed.append(task)

                if not self._guarded(task, summary, work, counted=False):
                    self.worktrees.discard_changes(working_dir)
            if committed:
                self._publish_batch(committed, branch, working_dir, summary)
        except (*FATAL_ERRORS, ExecutionCancelled) as error:
            self._revert_unpublished(committed, error)
            raise
        finally:
            self.worktrees.remove_worktree(branch)
        return summary

    def _revert_unpublished(self, committed: list[TaskView], error: Exception) -> None:
        """Committed batch tasks wait in ``active`` for the PR; abort sends them back."""

        for task in committed:
            if self.repository.get_task(task.task_id).status is TaskStatus.ACTIVE:
                self.repository.record_failure(task.task_id, str(error))

    def _run_batched_task(  # noqa: PLR0913
        self,
        task: TaskView,
        branch: str,
        working_dir: Path,
        progress: _BranchProgress,
        summary: RunSummary,
    ) -> bool:
        """Run one task of a single-PR batch; True when it left a commit."""

        self.repository.update_status(task.task_id, TaskStatus.ACTIVE)
        self.repository.assign_branch(task.task_id, branch)
        result = self.executor.execute_task(
            self.build_prompt(task.description),
            working_dir,
            progress.session_id,
        )
        progress.session_id = result.session_id or progress.session_id
        self.repository.set_execution_log(task.task_id, result.transcript)
        changed = self.worktrees.get_changed_files(working_dir)
        sha: str | None = None
        if changed:
            diff = self.worktrees.get_diff(working_dir)
            message = self.text.commit_message(diff, changed)
            sha, progress.session_id = self._commit(
                task,
                working_dir,
                message,
                progress.session_id,
            )
        if sha is None:
            summary.unchanged += 1
            self.repository.update_status(task.task_id, TaskStatus.COMPLETED)
            return False
        return True

    def _publish_batch(
        self,
        committed: list[TaskView],
        branch: str,
        working_dir: Path,
        summary: RunSummary,
    ) -> None:
        try:
            self.worktrees.push_branch(working_dir, branch)
            base = self.worktrees.base_ref(working_dir)
            diff = self.worktrees.get_diff(working_dir, base, "HEAD")
            changed = self.worktrees.get_changed_files(working_dir, base, "HEAD")
            if len(committed) == 1:
                description = committed[0].description
            else:
                description = MULTIPLE_TASKS_PREFIX + "; ".join(
                    task.description for task in committed
                )
            pr_text = self.text.pull_request(description, diff, changed)
            url = self.worktrees.create_pull_request(
                title=pr_text.title,
                body=pr_text.body,
                branch=branch,
            )
        except FATAL_ERRORS:
            raise
        except TASK_ERRORS as error:
            logger.error("Publishing %s failed: %s", branch, error)
            for task in committed:
                self.repository.record_failure(task.task_id, str(error))
            summary.completed -= len(committed)
            summary.failed += len(committed)
            return
        for task in committed:
            self.repository.set_pr_link(task.task_id, url)
            self.repository.update_status(task.task_id, TaskStatus.COMPLETED)
        summary.pr_links.append(url)

    # -- address flow ------------------------------------------------------

    def _address_branch(self, branch: str, group: list[TaskView], summary: RunSummary) -> None:
        working_dir = self._open_worktree(branch, group, summary)
        if working_dir is None:
            return
        progress = _BranchProgress()
        pr_number = next((task.pr_number for task in group if task.pr_number), None)
        try:
            for task in group:
                ok = self._guarded(
                    task,
                    summary,
                    lambda task=task: self._run_address_task(task, working_dir, progress, summary),
                )
                if not ok:
                    self.worktrees.discard_changes(working_dir)
            if progress.fix_diffs and pr_number is not None:
                self._request_review(
                    pr_number,
                    "\n".join(progress.fix_diffs),
                    sorted(set(progress.fix_files)),
                    addressing=True,
                )
        finally:
            self.worktrees.remove_worktree(branch)

    def _run_address_task(
        self,
        task: TaskView,
        working_dir: Path,
        progress: _BranchProgress,
        summary: RunSummary,
    ) -> None:
        self.repository.update_status(task.task_id, TaskStatus.ACTIVE)
        result = self.executor.execute_task(
            self.build_prompt(task.description, self._address_request(task)),
            working_dir,
            progress.session_id,
        )
        progress.session_id = result.session_id or progress.session_id
        self.repository.set_execution_log(task.task_id, result.transcript)
        changed = self.worktrees.get_changed_files(working_dir)
        sha: str | None = None
        diff = ""
        if changed:
            diff = self.worktrees.get_diff(working_dir)
            if task.task_type is TaskType.LINT_AND_TEST:
                message = LINT_AND_TEST_COMMIT_MESSAGE
            else:
                message = self.text.commit_message(diff, changed)
            sha, progress.session_id = self._commit(
                task,
                working_dir,
                message,
                progress.session_id,
            )
            if sha is not None:
                self.worktrees.push_branch(working_dir, task.branch or "")

        pr_number = task.pr_number
        if task.task_type is TaskType.LINT_AND_TEST:
            if sha is not None and pr_number is not None:
                self._request_review(pr_number, diff, changed, addressing=True)
        else:
            if sha is not None:
                progress.fix_diffs.append(diff)
                progress.fix_files.extend(changed)
                reply = build_fix_reply(sha, result.last_message)
            else:
                reply = build_no_change_reply(result.last_message)
            if self.resolver is not None and pr_number is not None:
                if self.resolver.reply_to_comment(pr_number, task, reply):
                    summary.replies += 1
        if sha is None:
            summary.unchanged += 1
        self.repository.update_status(task.task_id, TaskStatus.COMPLETED)

    def _address_request(self, task: TaskView) -> str | None:
        """Full review comment for an address task; the stored description is a preview."""

        if task.task_type is not TaskType.ADDRESS or self.resolver is None or not task.pr_number:
            return None
        match = self.resolver.find_thread(task.pr_number, task)
        if match is None:
            logger.warning("No review thread for task %d; using its description", task.task_id)
            return None
        return build_address_prompt(match[1])

    def _request_review(
        self,
        pr_number: int,
        diff: str,
        changed: list[str],
        *,
        addressing: bool,
    ) -> None:
        if self.host is None:
            return
        instructions = self.text.review_instructions(diff, changed, addressing=addressing)
        self.host.add_pr_comment(pr_number, f"{self.review_agent} {instructions}")
        logger.info("Requested review on PR #%d from %s", pr_number, self.review_agent)

    # -- shared ------------------------------------------------------------

    def _open_worktree(
        self,
        branch: str,
        tasks: list[TaskView],
        summary: RunSummary,
    ) -> Path | None:
        """Create the shared worktree; on failure every task in the group is reverted."""

        try:
            return self.worktrees.create_worktree(branch)
        except FATAL_ERRORS:
            raise
        except TASK_ERRORS as error:
            logger.error("Could not prepare worktree for %s: %s", branch, error)
            for task in tasks:
                self.repository.record_failure(task.task_id, str(error))
            summary.processed += len(tasks)
            summary.failed += len(tasks)
            return None

    def _commit(
        self,
        task: TaskView,
        working_dir: Path,
        message: str,
        session_id: str | None,
    ) -> tuple[str | None, str | None]:
        outcome = commit_with_repair(
            worktrees=self.worktrees,
            executor=self.executor,
            working_dir=working_dir,
            message=message,
            session_id=session_id,
            on_fix_log=lambda entry: self.repository.append_execution_log(task.task_id, entry),
        )
        if outcome.commit_sha is not None:
            self.repository.set_commit_sha(task.task_id, outcome.commit_sha)
        return outcome.commit_sha, outcome.session_id

    def _guarded(
        self,
        task: TaskView,
        summary: RunSummary,
        work: Callable[[], None],
        *,
        counted: bool = True,
    ) -> bool:
        """Run ``work`` for ``task`` applying the per-task error policy.

        Fatal errors and cancellation revert the task and abort the run. Any
        other task error is logged, recorded in the task log, and the task is
        reverted to ``not_started`` so the run can continue.
        """

        summary.processed += 1
        try:
            work()
        except FATAL_ERRORS as fatal:
            logger.error("Task %d aborted the run: %s", task.task_id, fatal)
            self.repository.record_failure(task.task_id, str(fatal))
            raise
        except ExecutionCancelled as cancelled:
            logger.warning("Task %d cancelled", task.task_id)
            self.repository.record_failure(task.task_id, str(cancelled))
            raise
        except TASK_ERRORS as error:
            logger.error("Task %d failed: %s", task.task_id, error)
            self.repository.record_failure(task.task_id, _failure_message(error))
            summary.failed += 1
            return False
        summary.completed += 1
        latest = self.repository.get_task(task.task_id)
        if counted and latest.pr_link and latest.task_type is TaskType.BUILD:
            summary.pr_links.append(latest.pr_link)
        return True


def _failure_message(error: Exception) -> str:
    if isinstance(error, ExecutionFailed) and error.transient:
        return f"{error} {TRANSIENT_NOTE}"
    return str(error)
