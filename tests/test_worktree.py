from __future__ import annotations

import re
import subprocess
from pathlib import Path

import allure
import pytest
from conftest import FakeCodeHost, GitRepo

from ivan.orchestrator.errors import PublishFailed, ValidationFailed
from ivan.vcs import worktree as worktree_module
from ivan.vcs.worktree import (
    CO_AUTHOR_TRAILER,
    PR_ATTRIBUTION,
    PR_BODY_LIMIT,
    PR_TRUNCATION_NOTICE,
    WorktreeManager,
    generate_branch_name,
    prepare_pr_body,
)

pytestmark = [
    allure.epic("Version Control"),
    allure.feature("Worktree Lifecycle"),
]


def _manager(git_repo: GitRepo, host: FakeCodeHost | None = None) -> WorktreeManager:
    return WorktreeManager(git_repo.clone, host=host, install_dependencies=False)


def test_worktree_is_a_sibling_directory(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)

    path = manager.create_worktree("ivan/fix-typo-000001")

    expected_root = git_repo.clone.resolve().parent / ".widgets-ivan-worktrees"
    assert path == expected_root / "ivan" / "fix-typo-000001"
    assert (path / "README.md").exists()
    assert git_repo.git("rev-parse", "--abbrev-ref", "HEAD", cwd=path) == "ivan/fix-typo-000001"
    manager.remove_worktree("ivan/fix-typo-000001")


def test_remove_leaves_no_residue(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    manager.create_worktree("ivan/cleanup-000002")

    manager.remove_worktree("ivan/cleanup-000002")

    assert not manager.worktrees_root.exists()
    listing = git_repo.git("worktree", "list", "--porcelain")
    assert "cleanup-000002" not in listing
    manager.remove_worktree("ivan/cleanup-000002")


def test_create_recovers_from_stale_directory(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    stale = manager.worktree_path("ivan/stale-000003")
    stale.mkdir(parents=True)
    (stale / "leftover.txt").write_text("junk", "utf-8")

    path = manager.create_worktree("ivan/stale-000003")

    assert (path / "README.md").exists()
    assert not (path / "leftover.txt").exists()
    manager.remove_worktree("ivan/stale-000003")


def test_create_twice_recreates_the_same_branch(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    first = manager.create_worktree("ivan/again-000004")
    (first / "draft.txt").write_text("draft", "utf-8")

    second = manager.create_worktree("ivan/again-000004")

    assert second == first
    assert (second / "README.md").exists()
    manager.remove_worktree("ivan/again-000004")


def test_create_tracks_existing_remote_branch(git_repo: GitRepo, tmp_path: Path) -> None:
    other = tmp_path / "other"
    subprocess.run(["git", "clone", str(git_repo.remote), str(other)], check=True)
    subprocess.run(["git", "checkout", "-b", "feature/remote"], cwd=other, check=True)
    (other / "remote.txt").write_text("from remote\n", "utf-8")
    subprocess.run(["git", "add", "remote.txt"], cwd=other, check=True)
    subprocess.run(["git", "commit", "-m", "Remote work"], cwd=other, check=True)
    subprocess.run(["git", "push", "origin", "feature/remote"], cwd=other, check=True)
    manager = _manager(git_repo)

    path = manager.create_worktree("feature/remote")

    assert (path / "remote.txt").read_text("utf-8") == "from remote\n"
    manager.remove_worktree("feature/remote")


def test_changed_files_include_untracked_and_modified(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    path = manager.create_worktree("ivan/changes-000005")
    (path / "README.md").write_text("# widgets\n\nThe widget library.\n", "utf-8")
    (path / "docs").mkdir()
    (path / "docs" / "guide.md").write_text("guide\n", "utf-8")

    assert sorted(manager.get_changed_files(path)) == ["README.md", "docs/guide.md"]
    diff = manager.get_diff(path)
    assert "+The widget library." in diff
    assert "docs/guide.md" in diff
    assert git_repo.git("diff", "--cached", "--name-only", cwd=path) == ""
    manager.remove_worktree("ivan/changes-000005")


def test_commit_without_changes_is_a_no_op(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    path = manager.create_worktree("ivan/noop-000006")
    head = git_repo.git("rev-parse", "HEAD", cwd=path)

    assert manager.commit_changes(path, "chore: nothing") is None
    assert git_repo.git("rev-parse", "HEAD", cwd=path) == head
    manager.remove_worktree("ivan/noop-000006")


def test_commit_adds_co_author_trailer_and_returns_sha(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    path = manager.create_worktree("ivan/commit-000007")
    (path / "README.md").write_text("# widgets\n\nThe widget library.\n", "utf-8")

    sha = manager.commit_changes(path, 'fix: correct "teh" typo')

    assert sha == git_repo.git("rev-parse", "HEAD", cwd=path)
    message = git_repo.git("log", "-1", "--format=%B", cwd=path)
    assert message == f'fix: correct "teh" typo{CO_AUTHOR_TRAILER}'.strip()
    assert manager.get_changed_files(path, "main", "HEAD") == ["README.md"]
    manager.remove_worktree("ivan/commit-000007")


def test_rejected_commit_raises_validation_failed_with_hook_output(git_repo: GitRepo) -> None:
    git_repo.install_hook('echo "lint: trailing whitespace" >&2\nexit 1')
    manager = _manager(git_repo)
    path = manager.create_worktree("ivan/hook-000008")
    (path / "new.txt").write_text("x \n", "utf-8")

    with pytest.raises(ValidationFailed) as error:
        manager.commit_changes(path, "feat: add file")

    assert "lint: trailing whitespace" in error.value.output
    manager.remove_worktree("ivan/hook-000008")


def test_push_publishes_branch_to_origin(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    path = manager.create_worktree("ivan/push-000009")
    (path / "file.txt").write_text("content\n", "utf-8")
    sha = manager.commit_changes(path, "feat: file")

    manager.push_branch(path, "ivan/push-000009")

    assert git_repo.remote_git("rev-parse", "refs/heads/ivan/push-000009") == sha
    manager.remove_worktree("ivan/push-000009")


def test_push_failure_is_publish_failed(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    path = manager.create_worktree("ivan/nopush-000010")
    git_repo.git("remote", "set-url", "origin", str(git_repo.remote.parent / "missing.git"))

    with pytest.raises(PublishFailed):
        manager.push_branch(path, "ivan/nopush-000010")
    manager.remove_worktree("ivan/nopush-000010")


def test_create_pull_request_opens_draft_with_attribution(
    git_repo: GitRepo,
    fake_host: FakeCodeHost,
) -> None:
    manager = _manager(git_repo, fake_host)

    url = manager.create_pull_request(title="Fix typo", body="Body", branch="ivan/x-000011")

    assert url == "https://github.com/acme/widgets/pull/1"
    (created,) = fake_host.created
    assert created == {
        "title": "Fix typo",
        "body": f"Body{PR_ATTRIBUTION}",
        "head": "ivan/x-000011",
        "base": "main",
        "draft": True,
    }


def test_create_pull_request_without_host_fails(git_repo: GitRepo) -> None:
    with pytest.raises(PublishFailed):
        _manager(git_repo).create_pull_request(title="t", body="b", branch="ivan/y-1")


def test_cleanup_and_sync_main_stashes_dirty_checkout(git_repo: GitRepo) -> None:
    manager = _manager(git_repo)
    git_repo.git("checkout", "-b", "scratch")
    (git_repo.clone / "README.md").write_text("local edit\n", "utf-8")
    (git_repo.clone / "untracked.txt").write_text("scratch\n", "utf-8")

    assert manager.cleanup_and_sync_main() == "main"

    assert git_repo.git("rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert git_repo.git("status", "--porcelain") == ""
    assert "ivan auto-stash" in git_repo.git("stash", "list")


def test_main_branch_prefers_host_default(git_repo: GitRepo) -> None:
    assert _manager(git_repo, FakeCodeHost(default_branch="trunk")).get_main_branch() == "trunk"
    assert _manager(git_repo, FakeCodeHost(default_branch=None)).get_main_branch() == "main"
    assert _manager(git_repo).get_main_branch() == "main"


def test_generate_branch_name(monkeypatch) -> None:
    monkeypatch.setattr(worktree_module, "_unique_suffix", lambda: "123456")

    assert generate_branch_name("Fix the typo in README!") == "ivan/fix-the-typo-in-readme-123456"
    assert generate_branch_name("  ***  ") == "ivan/task-123456"
    long_name = generate_branch_name("word " * 30)
    slug = long_name.removeprefix("ivan/").removesuffix("-123456")
    assert len(slug) <= 50
    assert not slug.endswith("-")


def test_generated_branch_names_have_numeric_suffix() -> None:
    assert re.fullmatch(r"ivan/add-logging-\d{6}", generate_branch_name("Add logging"))


def test_prepare_pr_body_truncates_to_limit() -> None:
    body = prepare_pr_body("x" * (PR_BODY_LIMIT + 10))

    assert len(body) == PR_BODY_LIMIT
    assert body.endswith(PR_TRUNCATION_NOTICE)
    assert prepare_pr_body("short") == f"short{PR_ATTRIBUTION}"


def test_branch_checked_out_in_the_clone_is_forced_into_a_worktree(git_repo: GitRepo) -> None:
    git_repo.git("checkout", "-b", "feature/x")
    manager = _manager(git_repo)

    path = manager.create_worktree("feature/x")

    assert git_repo.git("rev-parse", "--abbrev-ref", "HEAD", cwd=path) == "feature/x"
    assert (path / "README.md").exists()
    manager.remove_worktree("feature/x")
    listing = git_repo.git("worktree", "list", "--porcelain")
    assert str(path) not in listing
    assert not manager.worktrees_root.exists()
    assert git_repo.git("rev-parse", "--abbrev-ref", "HEAD") == "feature/x"


class _CountingHost(FakeCodeHost):
    lookups: int = 0

    def get_default_branch(self) -> str | None:
        self.lookups += 1
        return super().get_default_branch()


def test_main_branch_is_resolved_once(git_repo: GitRepo) -> None:
    host = _CountingHost(default_branch="trunk")
    manager = _manager(git_repo, host)

    assert [manager.get_main_branch() for _ in range(3)] == ["trunk", "trunk", "trunk"]
    assert host.lookups == 1
