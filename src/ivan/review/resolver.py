"""Map open review feedback onto address tasks and reply in the right thread."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ivan.hosting.base import CheckRun, CodeHost, PullRequest, ReviewComment, ReviewThread
from ivan.orchestrator.models import TaskCreate, TaskType, TaskView
from ivan.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

REPLY_PREFIX = "Ivan:"
REPLY_LIMIT = 60_000
NO_CHANGE_REPLY = "After reviewing, no code changes were necessary to address this comment."
COMMENT_PREVIEW_CHARS = 100
MATCH_PREFIX_CHARS = 50
FAILING_STATES = frozenset({"FAILURE", "ERROR"})
LINT_AND_TEST_COMMIT_MESSAGE = "Fix test and lint failures"

TEST_OR_LINT_MARKERS: tuple[str, ...] = (
    "test",
    "lint",
    "eslint",
    "prettier",
    "jest",
    "mocha",
    "pytest",
    "ruff",
    "black",
    "flake8",
    "mypy",
    "typecheck",
    "type-check",
    "tsc",
    "clippy",
    "rustfmt",
)

_DISCUSSION_RE = re.compile(r"#discussion_r(\d+)")


@dataclass(slots=True)
class CheckFailure:
    """A failing test/lint check with the tail of its logs."""

    check: CheckRun
    logs: str


def is_addressable(thread: ReviewThread) -> bool:
    """Unresolved, unanswered, and anchored to a file."""

    if thread.is_resolved:
        return False
    if thread.total_comments != 1 or len(thread.comments) != 1:
        return False
    return bool(thread.comments[0].path)


def classify_check(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in TEST_OR_LINT_MARKERS)


def build_fix_reply(commit_sha: str, last_message: str | None) -> str:
    short_sha = commit_sha[:7]
    if last_message and last_message.strip():
        reply = (
            f"{REPLY_PREFIX} {last_message.strip()}\n\n"
            f"This has been addressed in commit {short_sha}"
        )
    else:
        reply = f"{REPLY_PREFIX} This has been addressed in commit {short_sha}"
    return reply[:REPLY_LIMIT]


def build_no_change_reply(last_message: str | None) -> str:
    text = last_message.strip() if last_message and last_message.strip() else NO_CHANGE_REPLY
    return f"{REPLY_PREFIX} {text}"[:REPLY_LIMIT]


def comment_location(comment: ReviewComment) -> str:
    if comment.line is None:
        return comment.path or ""
    return f"{comment.path}:{comment.line}"


def describe_comment(pr_number: int, comment: ReviewComment) -> str:
    preview = comment.body[:COMMENT_PREVIEW_CHARS]
    ellipsis = "..." if len(comment.body) > COMMENT_PREVIEW_CHARS else ""
    return (
        f'Address PR #{pr_number} comment from @{comment.author}: "{preview}{ellipsis}" '
        f"(in {comment_location(comment)})"
    )


def build_address_prompt(comment: ReviewComment) -> str:
    prompt = (
        "Address the following PR review comment:\n\n"
        f'Comment from @{comment.author}:\n"{comment.body}"\n\n'
    )
    if comment.path:
        location = f" (line {comment.line})" if comment.line else ""
        prompt += f"File: {comment.path}{location}\n\n"
    return prompt + "Please make the necessary changes to address this comment."


class ReviewResolver:
    """Turns review threads and failing checks into tasks, and answers threads."""

    def __init__(self, *, host: CodeHost, repository: OrchestratorRepository) -> None:
        self.host = host
        self.repository = repository

    def comment_url(self, pr_number: int, comment: ReviewComment) -> str:
        return (
            f"https://github.com/{self.host.owner}/{self.host.repo}/pull/{pr_number}"
            f"#discussion_r{comment.comment_id}"
        )

    def get_unaddressed_comments(self, pr_number: int) -> list[ReviewComment]:
        threads = self.host.get_review_threads(pr_number)
        comments = [thread.comments[0] for thread in threads if is_addressable(thread)]
        logger.info(
            "PR #%d: %d of %d review threads need attention",
            pr_number,
            len(comments),
            len(threads),
        )
        return comments

    def create_address_tasks(self, job_id: int, pr: PullRequest) -> list[TaskView]:
        """One ``address`` task per unaddressed inline comment."""

        comments = self.get_unaddressed_comments(pr.number)
        if not comments:
            return []
        return self.repository.add_tasks(
            job_id,
            [
                TaskCreate(
                    description=describe_comment(pr.number, comment),
                    task_type=TaskType.ADDRESS,
                    branch=pr.head_branch,
                    pr_link=pr.url,
                    comment_url=self.comment_url(pr.number, comment),
                    comment_id=comment.comment_id,
                )
                for comment in comments
            ],
        )

    def get_failing_test_checks(self, pr_number: int) -> list[CheckFailure]:
        failures: list[CheckFailure] = []
        for check in self.host.get_check_runs(pr_number):
            if check.state not in FAILING_STATES or not classify_check(check.name):
                continue
            failures.append(
                CheckFailure(check=check, logs=self.host.get_failed_check_logs(pr_number, check)),
            )
        return failures

    def create_lint_and_test_task(
        self,
        job_id: int,
        pr: PullRequest,
        failures: list[CheckFailure],
    ) -> TaskView | None:
        """One consolidated task for every failing test/lint check on the branch."""

        if not failures:
            return None
        names = ", ".join(failure.check.name for failure in failures)
        logs = "\n\n".join(
            f"=== {failure.check.name} ===\n{failure.logs}" for failure in failures if failure.logs
        )
        description = f"Fix test and lint failures in PR #{pr.number}: {names}"
        if logs:
            description = f"{description}\n\n{logs}"
        (task,) = self.repository.add_tasks(
            job_id,
            [
                TaskCreate(
                    description=description,
                    task_type=TaskType.LINT_AND_TEST,
                    branch=pr.head_branch,
                    pr_link=pr.url,
                ),
            ],
        )
        return task

    def collect_tasks(
        self,
        job_id: int,
        pr_numbers: list[int],
        *,
        include_checks: bool = True,
    ) -> list[TaskView]:
        """Build lint/test and address tasks for each PR; one lint task per branch."""

        pulls = [self.host.get_pr(number) for number in pr_numbers]
        return self._collect(job_id, pulls, include_checks=include_checks)

    def collect_open_tasks(
        self,
        job_id: int,
        *,
        author: str | None = None,
        include_checks: bool = True,
    ) -> list[TaskView]:
        """Scan open PRs (optionally by ``author``); PRs without issues add nothing."""

        pulls = self.host.list_prs(state="open", author=author)
        logger.info("Scanning %d open pull request(s)", len(pulls))
        return self._collect(job_id, pulls, include_checks=include_checks)

    def _collect(
        self,
        job_id: int,
        pulls: list[PullRequest],
        *,
        include_checks: bool,
    ) -> list[TaskView]:
        tasks: list[TaskView] = []
        branches_with_lint_task: set[str] = set()
        for pr in pulls:
            if include_checks and pr.head_branch not in branches_with_lint_task:
                lint_task = self.create_lint_and_test_task(
                    job_id,
                    pr,
                    self.get_failing_test_checks(pr.number),
                )
                if lint_task is not None:
                    branches_with_lint_task.add(pr.head_branch)
                    tasks.append(lint_task)
            tasks.extend(self.create_address_tasks(job_id, pr))
        return tasks

    def find_thread(
        self,
        pr_number: int,
        task: TaskView,
    ) -> tuple[ReviewThread, ReviewComment] | None:
        """Locate the live thread an address task was created from."""

        known_id = task.comment_id or _comment_id_from_url(task.comment_url)
        for thread in self.host.get_review_threads(pr_number):
            if not thread.comments:
                continue
            first = thread.comments[0]
            if known_id is not None:
                if first.comment_id == known_id:
                    return thread, first
                continue
            if _matches_description(first, task.description):
                return thread, first
        return None

    def find_comment_id(self, pr_number: int, task: TaskView) -> str | None:
        match = self.find_thread(pr_number, task)
        return match[1].comment_id if match is not None else None

    def reply_to_comment(self, pr_number: int, task: TaskView, body: str) -> bool:
        """Reply inside the task's thread; False when the thread cannot be found."""

        match = self.find_thread(pr_number, task)
        if match is None:
            logger.warning("No review thread found for task %d on PR #%d", task.task_id, pr_number)
            return False
        thread, comment = match
        self.host.reply_to_thread(thread.thread_id, body)
        if task.comment_id != comment.comment_id:
            self.repository.set_comment_id(task.task_id, comment.comment_id)
        logger.info("Replied to comment %s on PR #%d", comment.comment_id, pr_number)
        return True


def _comment_id_from_url(url: str | None) -> str | None:
    if not url:
        return None
    match = _DISCUSSION_RE.search(url)
    return match.group(1) if match else None


def _matches_description(comment: ReviewComment, description: str) -> bool:
    return (
        f"@{comment.author}:" in description
        and comment.body[:MATCH_PREFIX_CHARS] in description
        and f"(in {comment_location(comment)})" in description
    )
