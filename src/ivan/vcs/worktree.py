"""Isolated per-branch git worktrees next to the original clone.

Every operation takes the checkout it acts on explicitly; nothing here changes
the process working directory.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time
from datetime import UTC, datetime
from pathlib import Path

from ivan.hosting.base import CodeHost
from ivan.orchestrator.errors import (
    GitCommandError,
    PublishFailed,
    ValidationFailed,
    WorktreeConflict,
)
from ivan.vcs.git import config_value, git_output, ref_exists, run_git

logger = logging.getLogger(__name__)

CO_AUTHOR_TRAILER = "\n\nCo-authored-by: ivan-agent <ivan-agent@users.noreply.github.com>"
PR_ATTRIBUTION = "\n\n---\n*Co-authored with @ivan-agent*"
PR_BODY_LIMIT = 65_536
PR_TRUNCATION_NOTICE = "\n\n... (description truncated to fit GitHub limits)"
BRANCH_PREFIX = "ivan/"
BRANCH_SLUG_MAX_CHARS = 50

_ALREADY_CHECKED_OUT = ("is already checked out", "is already used by worktree")
_ALREADY_EXISTS = "already exists"
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_INSTALL_TIMEOUT_SECONDS = 900


def _unique_suffix() -> str:
    return str(int(time.time() * 1000))[-6:]


class WorktreeManager:
    """Creates, inspects, commits in, and removes sibling worktrees of one clone."""

    def __init__(
        self,
        repo_dir: Path,
        *,
        host: CodeHost | None = None,
        suffix: str = "ivan",
        install_dependencies: bool = True,
    ) -> None:
        self.repo_dir = repo_dir.resolve()
        self.host = host
        self.suffix = suffix
        self.install_dependencies = install_dependencies
        self._main_branch: str | None = None

    @property
    def worktrees_root(self) -> Path:
        return self.repo_dir.parent / f".{self.repo_dir.name}-{self.suffix}-worktrees"

    def worktree_path(self, branch: str) -> Path:
        return self.worktrees_root / branch

    # -- lifecycle ---------------------------------------------------------

    def create_worktree(self, branch: str) -> Path:
        """Check ``branch`` out into its own directory, resolving stale state first."""

        path = self.worktree_path(branch)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._drop_registration(path)

        exists_locally = ref_exists(f"refs/heads/{branch}", cwd=self.repo_dir)
        fetched = run_git(["fetch", "origin", branch], cwd=self.repo_dir, check=False)
        exists_remotely = fetched.returncode == 0 and ref_exists(
            f"refs/remotes/origin/{branch}",
            cwd=self.repo_dir,
        )
        if exists_remotely:
            self._sync_local_branch(branch)
            exists_locally = True

        try:
            self._add_worktree(path, branch, exists_locally=exists_locally, force=False)
        except WorktreeConflict as conflict:
            logger.info("Worktree conflict for %s (%s); recreating", branch, conflict)
            self._resolve_conflict(path, branch, exists_locally=exists_locally, reason=conflict)

        self._match_permissions(path)
        self._copy_identity(path)
        if self.install_dependencies:
            self._install_dependencies(path)
        logger.info("Created worktree for %s at %s", branch, path)
        return path

    def remove_worktree(self, branch: str) -> None:
        """Unregister the worktree and delete its directory; never raises on stale state."""

        path = self.worktree_path(branch)
        self._drop_registration(path)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        self._prune_empty_parents(path)
        logger.info("Removed worktree for %s", branch)

    # -- inspection --------------------------------------------------------

    def get_changed_files(
        self,
        working_dir: Path,
        from_ref: str | None = None,
        to_ref: str | None = None,
    ) -> list[str]:
        """Files changed in the working tree, or between two refs when given."""

        if from_ref is not None:
            output = run_git(
                ["diff", "--name-only", f"{from_ref}..{to_ref or 'HEAD'}"],
                cwd=working_dir,
            ).stdout
            return [line.strip() for line in output.splitlines() if line.strip()]

        output = run_git(
            ["status", "--porcelain", "--untracked-files=all"],
            cwd=working_dir,
        ).stdout
        files: list[str] = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            entry = line[3:]
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            files.append(entry.strip().strip('"'))
        return files

    def get_diff(
        self,
        working_dir: Path,
        from_ref: str | None = None,
        to_ref: str | None = None,
    ) -> str:
        """Working tree diff against HEAD (including new files), or a ref range."""

        if from_ref is not None:
            return run_git(["diff", f"{from_ref}..{to_ref or 'HEAD'}"], cwd=working_dir).stdout
        run_git(["add", "-A"], cwd=working_dir)
        try:
            return run_git(["diff", "--cached"], cwd=working_dir).stdout
        finally:
            run_git(["reset", "--quiet"], cwd=working_dir, check=False)

    def discard_changes(self, working_dir: Path) -> None:
        """Drop uncommitted edits left behind by a failed task."""

        run_git(["reset", "--hard", "--quiet"], cwd=working_dir, check=False)
        run_git(["clean", "-fd", "--quiet"], cwd=working_dir, check=False)

    def base_ref(self, working_dir: Path) -> str:
        main_branch = self.get_main_branch()
        remote_ref = f"origin/{main_branch}"
        if ref_exists(f"refs/remotes/{remote_ref}", cwd=working_dir):
            return remote_ref
        return main_branch

    # -- publishing --------------------------------------------------------

    def commit_changes(self, working_dir: Path, message: str) -> str | None:
        """Commit everything in ``working_dir``; None when there is nothing to commit.

        Raises ``ValidationFailed`` carrying the hook output when git rejects the commit.
        """

        status = run_git(["status", "--porcelain"], cwd=working_dir).stdout
        if not status.strip():
            logger.info("Nothing to commit in %s", working_dir)
            return None
        run_git(["add", "--all"], cwd=working_dir)
        try:
            run_git(["commit", "-m", f"{message}{CO_AUTHOR_TRAILER}"], cwd=working_dir)
        except GitCommandError as error:
            raise ValidationFailed(
                "Commit rejected by pre-commit checks",
                output=error.output,
            ) from error
        sha = git_output(["rev-parse", "HEAD"], cwd=working_dir)
        logger.info("Committed %s in %s", sha[:7], working_dir)
        return sha

    def push_branch(self, working_dir: Path, branch: str) -> None:
        try:
            run_git(["push", "-u", "origin", branch], cwd=working_dir)
        except GitCommandError as error:
            raise PublishFailed(f"Failed to push {branch}: {error.output}") from error
        logger.info("Pushed %s", branch)

    def create_pull_request(
        self,
        *,
        title: str,
        body: str,
        branch: str,
        base: str | None = None,
    ) -> str:
        """Open a draft PR for ``branch`` and return its URL."""

        if self.host is None:
            raise PublishFailed("No code host configured; cannot open a pull request.")
        url = self.host.create_pr(
            title=title,
            body=prepare_pr_body(body),
            head=branch,
            base=base or self.get_main_branch(),
            draft=True,
        )
        logger.info("Opened pull request %s", url)
        return url

    # -- original checkout -------------------------------------------------

    def cleanup_and_sync_main(self) -> str:
        """Reset the original clone onto a freshly pulled default branch."""

        status = run_git(["status", "--porcelain"], cwd=self.repo_dir).stdout
        if status.strip():
            stamp = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
            logger.warning("Stashing uncommitted changes in %s", self.repo_dir)
            run_git(["stash", "push", "-u", "-m", f"ivan auto-stash {stamp}"], cwd=self.repo_dir)
        run_git(["clean", "-fd"], cwd=self.repo_dir)
        main_branch = self.get_main_branch()
        run_git(["checkout", main_branch], cwd=self.repo_dir)
        run_git(["pull", "origin", main_branch], cwd=self.repo_dir)
        return main_branch

    def get_main_branch(self) -> str:
        if self._main_branch is None:
            self._main_branch = self._resolve_main_branch()
        return self._main_branch

    def _resolve_main_branch(self) -> str:
        if self.host is not None:
            default_branch = self.host.get_default_branch()
            if default_branch:
                return default_branch
        for candidate in ("main", "master"):
            if ref_exists(f"refs/heads/{candidate}", cwd=self.repo_dir) or ref_exists(
                f"refs/remotes/origin/{candidate}",
                cwd=self.repo_dir,
            ):
                return candidate
        return "main"

    def generate_branch_name(self, description: str) -> str:
        return generate_branch_name(description)

    # -- internals ---------------------------------------------------------

    def _drop_registration(self, path: Path) -> None:
        run_git(["worktree", "remove", "--force", str(path)], cwd=self.repo_dir, check=False)
        run_git(["worktree", "prune"], cwd=self.repo_dir, check=False)

    def _sync_local_branch(self, branch: str) -> None:
        forced = run_git(
            ["branch", "-f", branch, f"origin/{branch}"],
            cwd=self.repo_dir,
            check=False,
        )
        if forced.returncode != 0:
            # git refuses to move a branch checked out elsewhere; move the ref directly.
            run_git(
                ["update-ref", f"refs/heads/{branch}", f"refs/remotes/origin/{branch}"],
                cwd=self.repo_dir,
            )

    def _add_worktree(self, path: Path, branch: str, *, exists_locally: bool, force: bool) -> None:
        args = ["worktree", "add"]
        if force:
            args.append("--force")
        if exists_locally:
            args.extend([str(path), branch])
        else:
            args.extend(["-b", branch, str(path)])
        result = run_git(args, cwd=self.repo_dir, check=False)
        if result.returncode == 0:
            return
        stderr = result.stderr
        if any(marker in stderr for marker in _ALREADY_CHECKED_OUT) or _ALREADY_EXISTS in stderr:
            raise WorktreeConflict(stderr.strip())
        raise GitCommandError(args, result.returncode, result.stdout, stderr)

    def _resolve_conflict(
        self,
        path: Path,
        branch: str,
        *,
        exists_locally: bool,
        reason: WorktreeConflict,
    ) -> None:
        message = str(reason)
        if any(marker in message for marker in _ALREADY_CHECKED_OUT):
            self._add_worktree(path, branch, exists_locally=True, force=True)
            return
        self._drop_registration(path)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        if not exists_locally and ref_exists(f"refs/heads/{branch}", cwd=self.repo_dir):
            exists_locally = True
        try:
            self._add_worktree(path, branch, exists_locally=exists_locally, force=False)
        except WorktreeConflict as second:
            self._add_worktree(path, branch, exists_locally=True, force=True)
            logger.info("Forced worktree for %s after repeated conflict: %s", branch, second)

    def _match_permissions(self, path: Path) -> None:
        if os.name == "nt":
            return
        mode = self.repo_dir.stat().st_mode & 0o7777
        try:
            path.chmod(mode)
        except OSError as error:
            logger.warning("Could not match permissions on %s: %s", path, error)

    def _copy_identity(self, path: Path) -> None:
        for key in ("user.name", "user.email"):
            value = config_value(key, cwd=self.repo_dir)
            if value:
                run_git(["config", key, value], cwd=path)

    def _install_dependencies(self, path: Path) -> None:
        command = _install_command(path)
        if command is None:
            return
        logger.info("Installing dependencies in %s: %s", path, " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                cwd=path,
                capture_output=True,
                text=True,
                timeout=_INSTALL_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("Dependency install skipped in %s: %s", path, error)
            return
        if result.returncode != 0:
            logger.warning(
                "Dependency install failed in %s (exit %d): %s",
                path,
                result.returncode,
                result.stderr.strip()[-500:],
            )

    def _prune_empty_parents(self, path: Path) -> None:
        current = path.parent
        root = self.worktrees_root
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent
        try:
            root.rmdir()
        except OSError:
            return


def generate_branch_name(description: str) -> str:
    """``ivan/<slug>-<6 digits>`` where the slug keeps only ``[a-z0-9]`` words."""

    slug = _SLUG_STRIP_RE.sub("", description.lower())
    slug = _WHITESPACE_RE.sub("-", slug.strip())[:BRANCH_SLUG_MAX_CHARS].strip("-")
    return f"{BRANCH_PREFIX}{slug or 'task'}-{_unique_suffix()}"


def prepare_pr_body(body: str) -> str:
    """Append attribution and keep the body within the host's size limit."""

    full = f"{body}{PR_ATTRIBUTION}"
    if len(full) <= PR_BODY_LIMIT:
        return full
    return full[: PR_BODY_LIMIT - len(PR_TRUNCATION_NOTICE)] + PR_TRUNCATION_NOTICE


def _install_command(path: Path) -> list[str] | None:
    if (path / "package.json").exists():
        if (path / "pnpm-lock.yaml").exists():
            return ["pnpm", "install", "--frozen-lockfile"]
        if (path / "yarn.lock").exists():
            return ["yarn", "install", "--frozen-lockfile"]
        return ["npm", "install"]
    if (path / "pyproject.toml").exists() and (path / "uv.lock").exists():
        return ["uv", "sync"]
    return None
