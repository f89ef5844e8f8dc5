"""Select the code-host implementation from configuration."""

from __future__ import annotations

from pathlib import Path

from ivan.config import Settings
from ivan.hosting.base import CodeHost, parse_remote
from ivan.hosting.gh_cli import GhCliHost
from ivan.hosting.github_api import GitHubApiHost
from ivan.vcs.git import remote_url


def build_code_host(settings: Settings, repo_dir: Path) -> CodeHost:
    """``gh`` uses the CLI session, ``pat`` the token-authenticated HTTP client."""

    url = remote_url(cwd=repo_dir)
    if url is None:
        raise ValueError(f"Repository {repo_dir} has no 'origin' remote.")
    owner, repo = parse_remote(url)
    if settings.github.auth_type == "pat":
        return GitHubApiHost(
            token=settings.github.token,
            owner=owner,
            repo=repo,
            api_url=settings.github.api_url,
            timeout_seconds=settings.github.request_timeout_seconds,
            max_retries=settings.github.max_retries,
        )
    if settings.github.auth_type == "gh":
        return GhCliHost(repo_dir=repo_dir, owner=owner, repo=repo)
    raise ValueError(f"Unsupported GitHub auth type: {settings.github.auth_type!r}")
