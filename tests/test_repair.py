from __future__ import annotations

import allure
import pytest
from conftest import GitRepo, ScriptedExecutor, remove_file, say

from ivan.orchestrator.errors import ValidationFailed
from ivan.orchestrator.repair import (
    FIX_PROMPT_TEMPLATE,
    MAX_COMMIT_ATTEMPTS,
    commit_with_repair,
    decide_repair,
)
from ivan.vcs.worktree import WorktreeManager

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Commit Repair"),
]

REJECT_BAD_FILE = (
    'if [ -e bad.txt ]; then\n  echo "bad.txt is not allowed" >&2\n  exit 1\nfi\nexit 0'
)


def test_decide_repair_stops_at_the_last_attempt() -> None:
    assert decide_repair(attempt=1).should_repair is True
    assert decide_repair(attempt=MAX_COMMIT_ATTEMPTS - 1).should_repair is True
    final = decide_repair(attempt=MAX_COMMIT_ATTEMPTS)
    assert final.should_repair is False
    assert "exhausted" in final.reason


def test_clean_commit_needs_no_repair(git_repo: GitRepo) -> None:
    manager = WorktreeManager(git_repo.clone, install_dependencies=False)
    path = manager.create_worktree("ivan/clean-000001")
    (path / "good.txt").write_text("fine\n", "utf-8")
    executor = ScriptedExecutor()
    logs: list[str] = []

    outcome = commit_with_repair(
        worktrees=manager,
        executor=executor,
        working_dir=path,
        message="feat: good file",
        session_id="sess-9",
        on_fix_log=logs.append,
    )

    assert outcome.commit_sha == git_repo.git("rev-parse", "HEAD", cwd=path)
    assert (outcome.attempts, outcome.repairs, outcome.session_id) == (1, 0, "sess-9")
    assert executor.calls == []
    assert logs == []
    manager.remove_worktree("ivan/clean-000001")


def test_agent_fixes_hook_failure_in_the_same_session(git_repo: GitRepo) -> None:
    git_repo.install_hook(REJECT_BAD_FILE)
    manager = WorktreeManager(git_repo.clone, install_dependencies=False)
    path = manager.create_worktree("ivan/repair-000002")
    (path / "good.txt").write_text("fine\n", "utf-8")
    (path / "bad.txt").write_text("nope\n", "utf-8")
    executor = ScriptedExecutor(actions=[remove_file("bad.txt", "Removed bad.txt")])
    logs: list[str] = []

    outcome = commit_with_repair(
        worktrees=manager,
        executor=executor,
        working_dir=path,
        message="feat: add files",
        session_id="sess-7",
        on_fix_log=logs.append,
    )

    assert outcome.commit_sha is not None
    assert (outcome.attempts, outcome.repairs) == (2, 1)
    ((prompt, working_dir, session_id),) = executor.calls
    assert prompt.startswith(FIX_PROMPT_TEMPLATE.split("{errors}")[0])
    assert "bad.txt is not allowed" in prompt
    assert working_dir == path
    assert session_id == "sess-7"
    assert logs == ["\n\n--- Pre-commit Fix Attempt 1 ---\ntranscript 1"]
    committed = git_repo.git("show", "--name-only", "--format=", "HEAD", cwd=path)
    assert committed.splitlines() == ["good.txt"]
    manager.remove_worktree("ivan/repair-000002")


def test_repair_gives_up_after_max_attempts(git_repo: GitRepo) -> None:
    git_repo.install_hook('echo "tests failed" >&2\nexit 1')
    manager = WorktreeManager(git_repo.clone, install_dependencies=False)
    path = manager.create_worktree("ivan/stuck-000003")
    (path / "file.txt").write_text("x\n", "utf-8")
    executor = ScriptedExecutor(default=say("Tried my best"))
    logs: list[str] = []
    head = git_repo.git("rev-parse", "HEAD", cwd=path)

    with pytest.raises(ValidationFailed, match="after 3 attempts") as error:
        commit_with_repair(
            worktrees=manager,
            executor=executor,
            working_dir=path,
            message="feat: file",
            session_id=None,
            on_fix_log=logs.append,
        )

    assert "tests failed" in error.value.output
    assert len(executor.calls) == MAX_COMMIT_ATTEMPTS - 1
    assert executor.calls[1][2] == "sess-1"
    assert [entry.split("\n")[2] for entry in logs] == [
        "--- Pre-commit Fix Attempt 1 ---",
        "--- Pre-commit Fix Attempt 2 ---",
    ]
    assert git_repo.git("rev-parse", "HEAD", cwd=path) == head
    manager.remove_worktree("ivan/stuck-000003")
