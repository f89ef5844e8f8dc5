"""Code host backed by the interactive ``gh`` CLI session."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from ivan.hosting.base import (
    REPLY_TO_THREAD_MUTATION,
    REVIEW_THREADS_QUERY,
    CheckRun,
    HostRequestError,
    PullRequest,
    ReviewThread,
    parse_review_threads_page,
    tail,
)
from ivan.orchestrator.errors import AuthenticationRequired, NotInstalled

logger = logging.getLogger(__name__)

_PR_FIELDS = "number,url,title,state,headRefName,baseRefName,author,isDraft"


class GhCliHost:
    """Run every host operation through ``gh`` inside the repository checkout."""

    def __init__(self, *, repo_dir: Path, owner: str, repo: str, binary: str = "gh") -> None:
        self.repo_dir = repo_dir
        self.owner = owner
        self.repo = repo
        self.binary = binary

    def ensure_authenticated(self) -> None:
        result = self._run(["auth", "status"], check=False)
        if result.returncode != 0:
            raise AuthenticationRequired(
                "GitHub CLI is not authenticated. Run `gh auth login` first.",
            )

    def get_default_branch(self) -> str | None:
        result = self._run(
            ["repo", "view", f"{self.owner}/{self.repo}", "--json", "defaultBranchRef"],
            check=False,
        )
        if result.returncode != 0:
            return None
        payload = _loads(result.stdout)
        name = (payload.get("defaultBranchRef") or {}).get("name")
        return str(name) if name else None

    def create_pr(self, *, title: str, body: str, head: str, base: str, draft: bool) -> str:
        args = ["pr", "create", "--title", title, "--body", body, "--head", head, "--base", base]
        if draft:
            args.append("--draft")
        result = self._run(args)
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        url = next((line for line in reversed(lines) if "/pull/" in line), "")
        if not url:
            raise HostRequestError(f"gh pr create returned no URL: {result.stdout.strip()}")
        return url

    def list_prs(self, *, state: str = "open", author: str | None = None) -> list[PullRequest]:
        result = self._run(
            ["pr", "list", "--state", state, "--limit", "100", "--json", _PR_FIELDS],
        )
        pulls = [_to_pull_request(item) for item in json.loads(result.stdout or "[]")]
        if author:
            pulls = [pull for pull in pulls if pull.author.lower() == author.lower()]
        return pulls

    def get_pr(self, number: int) -> PullRequest:
        result = self._run(["pr", "view", str(number), "--json", _PR_FIELDS])
        return _to_pull_request(_loads(result.stdout))

    def get_review_threads(self, number: int) -> list[ReviewThread]:
        threads: list[ReviewThread] = []
        cursor: str | None = None
        while True:
            args = [
                "api",
                "graphql",
                "-f",
                f"query={REVIEW_THREADS_QUERY}",
                "-f",
                f"owner={self.owner}",
                "-f",
                f"repo={self.repo}",
                "-F",
                f"number={number}",
            ]
            if cursor:
                args.extend(["-f", f"cursor={cursor}"])
            page, has_next, cursor = parse_review_threads_page(_loads(self._run(args).stdout))
            threads.extend(page)
            if not has_next or not cursor:
                return threads

    def reply_to_thread(self, thread_id: str, body: str) -> None:
        self._run(
            [
                "api",
                "graphql",
                "-f",
                f"query={REPLY_TO_THREAD_MUTATION}",
                "-f",
                f"threadId={thread_id}",
                "-f",
                f"body={body}",
            ],
        )

    def add_pr_comment(self, number: int, body: str) -> None:
        self._run(["pr", "comment", str(number), "--body", body])

    def get_check_runs(self, number: int) -> list[CheckRun]:
        # gh exits 8 while checks are pending; the JSON is still valid.
        result = self._run(
            ["pr", "checks", str(number), "--json", "name,state,link"],
            check=False,
        )
        if not result.stdout.strip():
            if result.returncode != 0:
                raise HostRequestError(f"gh pr checks failed: {result.stderr.strip()}")
            return []
        return [
            CheckRun(
                name=str(item.get("name") or ""),
                state=str(item.get("state") or "PENDING").upper(),
                link=str(item.get("link") or ""),
            )
            for item in json.loads(result.stdout)
        ]

    def get_failed_check_logs(self, number: int, check: CheckRun) -> str:
        run_id = check.run_id
        if run_id is None:
            return ""
        result = self._run(["run", "view", run_id, "--log-failed"], check=False)
        if result.returncode != 0:
            logger.warning(
                "Could not fetch logs for %s (PR #%d): %s",
                check.name,
                number,
                result.stderr.strip(),
            )
            return ""
        return tail(result.stdout)

    def _run(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                [self.binary, *args],
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError as error:
            raise NotInstalled(
                "GitHub CLI (gh) is not installed. Install it from https://cli.github.com/",
            ) from error
        if check and result.returncode != 0:
            raise HostRequestError(
                f"gh {args[0]} {args[1] if len(args) > 1 else ''} failed: "
                f"{(result.stderr or result.stdout).strip()}",
            )
        return result


def _loads(raw: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw or "{}")
    except json.JSONDecodeError as error:
        raise HostRequestError(f"Unexpected gh output: {raw[:200]!r}") from error
    if not isinstance(payload, dict):
        raise HostRequestError(f"Unexpected gh output: {raw[:200]!r}")
    return payload


def _to_pull_request(item: dict[str, Any]) -> PullRequest:
    return PullRequest(
        number=int(item["number"]),
        url=str(item.get("url") or ""),
        title=str(item.get("title") or ""),
        state=str(item.get("state") or "").lower(),
        head_branch=str(item.get("headRefName") or ""),
        base_branch=str(item.get("baseRefName") or ""),
        author=str((item.get("author") or {}).get("login") or ""),
        is_draft=bool(item.get("isDraft")),
    )
