"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ivan.hosting.base import CheckRun, PullRequest, ReviewComment, ReviewThread
from ivan.orchestrator.backend.base import ExecutionResult
from ivan.orchestrator.errors import AuthenticationRequired

ECHO_AGENT_COMMAND = (sys.executable, "-m", "ivan.orchestrator.backend.echo_agent")

_IVAN_ENV = (
    "IVAN_DB_PATH",
    "IVAN_LOG_LEVEL",
    "IVAN_EXECUTOR_TYPE",
    "IVAN_CLAUDE_MODEL",
    "IVAN_CLAUDE_COMMAND",
    "IVAN_GITHUB_AUTH_TYPE",
    "IVAN_GITHUB_TOKEN",
    "GITHUB_TOKEN",
    "IVAN_GITHUB_API_URL",
    "IVAN_REVIEW_AGENT",
    "IVAN_REVIEW_WAIT_SECONDS",
    "IVAN_WORKTREE_SUFFIX",
    "IVAN_INSTALL_DEPENDENCIES",
    "OPENAI_API_KEY",
    "IVAN_TEXT_MODEL",
    "IVAN_TEXT_API_URL",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path) -> None:
    """Keep host configuration and git identity out of tests."""

    for name in _IVAN_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("IVAN_CONFIG_PATH", str(tmp_path / "ivan-config.json"))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@dataclass(slots=True)
class GitRepo:
    """Bare ``origin`` plus a working clone with one commit on ``main``."""

    remote: Path
    clone: Path

    def git(self, *args: str, cwd: Path | None = None) -> str:
        return run_git(cwd or self.clone, *args)

    def remote_git(self, *args: str) -> str:
        return run_git(self.remote, *args)

    def install_hook(self, script: str) -> None:
        hook = self.clone / ".git" / "hooks" / "pre-commit"
        hook.parent.mkdir(parents=True, exist_ok=True)
        hook.write_text(f"#!/bin/sh\n{script}\n", "utf-8")
        hook.chmod(0o755)


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepo:
    remote = tmp_path / "origin.git"
    clone = tmp_path / "work" / "widgets"
    clone.parent.mkdir(parents=True)
    run_git(tmp_path, "init", "--bare", "--initial-branch=main", str(remote))
    run_git(tmp_path, "clone", str(remote), str(clone))
    run_git(clone, "symbolic-ref", "HEAD", "refs/heads/main")
    (clone / "README.md").write_text("# widgets\n\nTeh widget library.\n", "utf-8")
    run_git(clone, "add", "README.md")
    run_git(clone, "commit", "-m", "Initial commit")
    run_git(clone, "push", "-u", "origin", "main")
    return GitRepo(remote=remote, clone=clone)


@dataclass
class FakeCodeHost:
    """In-memory code host recording every write."""

    owner: str = "acme"
    repo: str = "widgets"
    default_branch: str | None = "main"
    authenticated: bool = True
    prs: dict[int, PullRequest] = field(default_factory=dict)
    threads: dict[int, list[ReviewThread]] = field(default_factory=dict)
    checks: dict[int, list[CheckRun]] = field(default_factory=dict)
    logs: dict[str, str] = field(default_factory=dict)
    created: list[dict[str, object]] = field(default_factory=list)
    replies: list[tuple[str, str]] = field(default_factory=list)
    comments: list[tuple[int, str]] = field(default_factory=list)
    next_number: int = 1

    def ensure_authenticated(self) -> None:
        if not self.authenticated:
            raise AuthenticationRequired("not logged in")

    def get_default_branch(self) -> str | None:
        return self.default_branch

    def create_pr(self, *, title: str, body: str, head: str, base: str, draft: bool) -> str:
        number = self.next_number
        self.next_number += 1
        url = f"https://github.com/{self.owner}/{self.repo}/pull/{number}"
        self.prs[number] = PullRequest(
            number=number,
            url=url,
            title=title,
            state="OPEN",
            head_branch=head,
            base_branch=base,
            author="ivan-agent",
            is_draft=draft,
        )
        self.created.append(
            {"title": title, "body": body, "head": head, "base": base, "draft": draft},
        )
        return url

    def add_pull_request(self, number: int, head_branch: str) -> PullRequest:
        pr = PullRequest(
            number=number,
            url=f"https://github.com/{self.owner}/{self.repo}/pull/{number}",
            title=f"PR {number}",
            state="OPEN",
            head_branch=head_branch,
            base_branch="main",
            author="octocat",
        )
        self.prs[number] = pr
        self.next_number = max(self.next_number, number + 1)
        return pr

    def list_prs(self, *, state: str = "open", author: str | None = None) -> list[PullRequest]:
        pulls = [pr for pr in self.prs.values() if pr.state.lower() == state.lower()]
        if author:
            pulls = [pr for pr in pulls if pr.author == author]
        return pulls

    def get_pr(self, number: int) -> PullRequest:
        return self.prs[number]

    def get_review_threads(self, number: int) -> list[ReviewThread]:
        return list(self.threads.get(number, []))

    def reply_to_thread(self, thread_id: str, body: str) -> None:
        self.replies.append((thread_id, body))

    def add_pr_comment(self, number: int, body: str) -> None:
        self.comments.append((number, body))

    def get_check_runs(self, number: int) -> list[CheckRun]:
        return list(self.checks.get(number, []))

    def get_failed_check_logs(self, number: int, check: CheckRun) -> str:
        return self.logs.get(check.name, "")


def make_thread(  # noqa: PLR0913
    thread_id: str,
    comment_id: str,
    *,
    author: str = "reviewer",
    body: str = "Please rename this variable",
    path: str | None = "README.md",
    line: int | None = 3,
    resolved: bool = False,
    replies: int = 0,
) -> ReviewThread:
    first = ReviewComment(
        comment_id=comment_id,
        node_id=f"node-{comment_id}",
        author=author,
        body=body,
        path=path,
        line=line,
    )
    extra = [
        ReviewComment(
            comment_id=f"{comment_id}-{index}",
            node_id=f"node-{comment_id}-{index}",
            author="someone",
            body="reply",
            path=path,
            line=line,
        )
        for index in range(replies)
    ]
    comments = [first, *extra]
    return ReviewThread(
        thread_id=thread_id,
        is_resolved=resolved,
        comments=comments,
        total_comments=len(comments),
    )


Action = Callable[[str, Path], str | None]


@dataclass
class ScriptedExecutor:
    """In-process agent: each call runs the next action (or the default) in the worktree."""

    actions: list[Action] = field(default_factory=list)
    default: Action | None = None
    session_prefix: str = "sess"
    calls: list[tuple[str, Path, str | None]] = field(default_factory=list)
    breakdown: list[str] = field(default_factory=lambda: ["Fix typo in README"])

    def validate_installation(self) -> None:
        return None

    def execute_task(
        self,
        prompt: str,
        working_dir: Path,
        session_id: str | None = None,
    ) -> ExecutionResult:
        self.calls.append((prompt, working_dir, session_id))
        action = self.actions.pop(0) if self.actions else self.default
        message = action(prompt, working_dir) if action is not None else None
        return ExecutionResult(
            transcript=f"transcript {len(self.calls)}",
            last_message=message or "",
            session_id=session_id or f"{self.session_prefix}-1",
        )

    def generate_breakdown(self, description: str, working_dir: Path) -> list[str]:  # noqa: ARG002
        return list(self.breakdown)


def write_file(relative: str, content: str, message: str | None = None) -> Action:
    def _action(_prompt: str, working_dir: Path) -> str | None:
        target = working_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, "utf-8")
        return message

    return _action


def remove_file(relative: str, message: str | None = None) -> Action:
    def _action(_prompt: str, working_dir: Path) -> str | None:
        (working_dir / relative).unlink(missing_ok=True)
        return message

    return _action


def say(message: str) -> Action:
    def _action(_prompt: str, _working_dir: Path) -> str | None:
        return message

    return _action


@pytest.fixture()
def fake_host() -> FakeCodeHost:
    return FakeCodeHost()
