"""Thin wrapper over the git CLI using argument arrays."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ivan.orchestrator.errors import GitCommandError, NotInstalled

logger = logging.getLogger(__name__)


def run_git(
    args: list[str],
    *,
    cwd: Path,
    check: bool = True,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``git <args>`` in ``cwd``; raise ``GitCommandError`` on failure when ``check``."""

    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(  # noqa: S603
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise NotInstalled("git is not installed or not on PATH.") from error
    if check and result.returncode != 0:
        raise GitCommandError(args, result.returncode, result.stdout, result.stderr)
    return result


def git_output(args: list[str], *, cwd: Path) -> str:
    """Stripped stdout of a successful git command."""

    return run_git(args, cwd=cwd).stdout.strip()


def ref_exists(ref: str, *, cwd: Path) -> bool:
    return run_git(["rev-parse", "--verify", "--quiet", ref], cwd=cwd, check=False).returncode == 0


def config_value(key: str, *, cwd: Path) -> str | None:
    result = run_git(["config", "--get", key], cwd=cwd, check=False)
    value = result.stdout.strip()
    return value if result.returncode == 0 and value else None


def remote_url(*, cwd: Path, remote: str = "origin") -> str | None:
    result = run_git(["remote", "get-url", remote], cwd=cwd, check=False)
    value = result.stdout.strip()
    return value if result.returncode == 0 and value else None
