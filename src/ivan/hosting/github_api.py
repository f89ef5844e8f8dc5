"""Code host backed by a personal access token over REST and GraphQL."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ivan.hosting.base import (
    REPLY_TO_THREAD_MUTATION,
    REVIEW_THREADS_QUERY,
    CheckRun,
    HostRequestError,
    PullRequest,
    ReviewThread,
    check_state,
    job_id_from_link,
    parse_review_threads_page,
    tail,
)
from ivan.orchestrator.errors import AuthenticationRequired

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
API_VERSION = "2022-11-28"


class GitHubApiHost:
    """httpx client for the GitHub REST and GraphQL APIs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token: str,
        owner: str,
        repo: str,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 60.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self._client = httpx.Client(
            base_url=api_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": "ivan-agent",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubApiHost:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def ensure_authenticated(self) -> None:
        try:
            response = self._client.get("/user")
        except httpx.HTTPError as error:
            raise HostRequestError(f"GitHub API unreachable: {error}") from error
        if response.status_code in (401, 403):
            raise AuthenticationRequired(
                "GitHub token was rejected. Check IVAN_GITHUB_TOKEN permissions.",
            )
        _raise_for_status(response, "GET /user")

    def get_default_branch(self) -> str | None:
        try:
            response = self._client.get(self._repo_path(""))
        except httpx.HTTPError as error:
            logger.warning("Could not read default branch of %s: %s", self.repo, error)
            return None
        if not response.is_success:
            return None
        return response.json().get("default_branch") or None

    def create_pr(self, *, title: str, body: str, head: str, base: str, draft: bool) -> str:
        payload = {"title": title, "body": body, "head": head, "base": base, "draft": draft}
        data = self._request("POST", self._repo_path("/pulls"), json=payload)
        return str(data["html_url"])

    def list_prs(self, *, state: str = "open", author: str | None = None) -> list[PullRequest]:
        data = self._request(
            "GET",
            self._repo_path("/pulls"),
            params={"state": state, "per_page": 100},
        )
        pulls = [_to_pull_request(item) for item in data]
        if author:
            pulls = [pull for pull in pulls if pull.author.lower() == author.lower()]
        return pulls

    def get_pr(self, number: int) -> PullRequest:
        return _to_pull_request(self._request("GET", self._repo_path(f"/pulls/{number}")))

    def get_review_threads(self, number: int) -> list[ReviewThread]:
        threads: list[ReviewThread] = []
        cursor: str | None = None
        while True:
            payload = self._graphql(
                REVIEW_THREADS_QUERY,
                {"owner": self.owner, "repo": self.repo, "number": number, "cursor": cursor},
            )
            page, has_next, cursor = parse_review_threads_page(payload)
            threads.extend(page)
            if not has_next or not cursor:
                return threads

    def reply_to_thread(self, thread_id: str, body: str) -> None:
        self._graphql(REPLY_TO_THREAD_MUTATION, {"threadId": thread_id, "body": body})

    def add_pr_comment(self, number: int, body: str) -> None:
        self._request("POST", self._repo_path(f"/issues/{number}/comments"), json={"body": body})

    def get_check_runs(self, number: int) -> list[CheckRun]:
        pull = self._request("GET", self._repo_path(f"/pulls/{number}"))
        sha = pull["head"]["sha"]
        data = self._request(
            "GET",
            self._repo_path(f"/commits/{sha}/check-runs"),
            params={"per_page": 100},
        )
        return [
            CheckRun(
                name=str(item.get("name") or ""),
                state=check_state(item.get("conclusion"), item.get("status")),
                link=str(item.get("details_url") or item.get("html_url") or ""),
                job_id=str(item["id"]) if item.get("id") is not None else None,
            )
            for item in data.get("check_runs", [])
        ]

    def get_failed_check_logs(self, number: int, check: CheckRun) -> str:
        job_id = job_id_from_link(check.link) or check.job_id
        if job_id is None:
            return ""
        try:
            response = self._client.get(self._repo_path(f"/actions/jobs/{job_id}/logs"))
        except httpx.HTTPError as error:
            logger.warning("Could not fetch logs for %s (PR #%d): %s", check.name, number, error)
            return ""
        if not response.is_success:
            logger.warning(
                "Could not fetch logs for %s (PR #%d): HTTP %s",
                check.name,
                number,
                response.status_code,
            )
            return ""
        return tail(response.text)

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.repo}{suffix}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as error:
            raise HostRequestError(f"{method} {path} failed: {error}") from error
        _raise_for_status(response, f"{method} {path}")
        return response.json() if response.content else {}

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        data = self._request("POST", "/graphql", json={"query": query, "variables": variables})
        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            messages = "; ".join(str(error.get("message", error)) for error in errors)
            raise HostRequestError(f"GraphQL error: {messages}")
        return data


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.status_code == 401:
        raise AuthenticationRequired(f"{action}: GitHub token is missing or invalid.")
    if not response.is_success:
        detail = response.text[:500]
        raise HostRequestError(f"{action} returned HTTP {response.status_code}: {detail}")


def _to_pull_request(item: dict[str, Any]) -> PullRequest:
    return PullRequest(
        number=int(item["number"]),
        url=str(item.get("html_url") or ""),
        title=str(item.get("title") or ""),
        state=str(item.get("state") or ""),
        head_branch=str((item.get("head") or {}).get("ref") or ""),
        base_branch=str((item.get("base") or {}).get("ref") or ""),
        author=str((item.get("user") or {}).get("login") or ""),
        is_draft=bool(item.get("draft")),
    )
