"""Code-host contract shared by the gh CLI and token-based implementations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from ivan.orchestrator.errors import PublishFailed

REVIEW_THREADS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      reviewThreads(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          isResolved
          comments(first: 100) {
            totalCount
            nodes {
              id
              databaseId
              body
              path
              line
              originalLine
              url
              author { login }
            }
          }
        }
      }
    }
  }
}
"""

REPLY_TO_THREAD_MUTATION = """
mutation($threadId: ID!, $body: String!) {
  addPullRequestReviewThreadReply(input: {pullRequestReviewThreadId: $threadId, body: $body}) {
    comment { id url }
  }
}
"""

FAILED_LOG_TAIL_CHARS = 5_000

_REMOTE_RE = re.compile(r"github\.com[:/]+(?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$")
_RUN_ID_RE = re.compile(r"/runs/(\d+)")
_JOB_ID_RE = re.compile(r"/job/(\d+)")


class HostRequestError(PublishFailed):
    """A code-host call failed."""


@dataclass(slots=True)
class PullRequest:
    """Pull request summary."""

    number: int
    url: str
    title: str
    state: str
    head_branch: str
    base_branch: str
    author: str
    is_draft: bool = False


@dataclass(slots=True)
class ReviewComment:
    """One inline review comment."""

    comment_id: str
    node_id: str
    author: str
    body: str
    path: str | None
    line: int | None
    url: str = ""


@dataclass(slots=True)
class ReviewThread:
    """Inline comment thread anchored to a changed line."""

    thread_id: str
    is_resolved: bool
    comments: list[ReviewComment] = field(default_factory=list)
    total_comments: int = 0


@dataclass(slots=True)
class CheckRun:
    """CI check status attached to a pull request head."""

    name: str
    state: str
    link: str = ""
    job_id: str | None = None

    @property
    def run_id(self) -> str | None:
        match = _RUN_ID_RE.search(self.link)
        return match.group(1) if match else None


class CodeHost(Protocol):
    """Pull-request operations used by the orchestrator and resolver."""

    owner: str
    repo: str

    def ensure_authenticated(self) -> None:
        """Raise ``AuthenticationRequired`` when no usable credentials exist."""

    def get_default_branch(self) -> str | None:
        """Repository default branch, or None when unknown."""

    def create_pr(self, *, title: str, body: str, head: str, base: str, draft: bool) -> str:
        """Open a pull request and return its URL."""

    def list_prs(self, *, state: str = "open", author: str | None = None) -> list[PullRequest]:
        """List pull requests, optionally restricted to one author."""

    def get_pr(self, number: int) -> PullRequest:
        """Fetch one pull request."""

    def get_review_threads(self, number: int) -> list[ReviewThread]:
        """All review threads of a pull request, across every page."""

    def reply_to_thread(self, thread_id: str, body: str) -> None:
        """Post ``body`` as a reply inside an existing review thread."""

    def add_pr_comment(self, number: int, body: str) -> None:
        """Post a top-level pull request comment."""

    def get_check_runs(self, number: int) -> list[CheckRun]:
        """Checks reported for the pull request head commit."""

    def get_failed_check_logs(self, number: int, check: CheckRun) -> str:
        """Tail of the failed-job logs behind ``check``."""


def parse_remote(url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from an https or ssh GitHub remote URL."""

    match = _REMOTE_RE.search(url.strip())
    if match is None:
        raise ValueError(f"Not a GitHub remote URL: {url!r}")
    return match.group("owner"), match.group("repo")


def pr_number_from_url(url: str) -> int:
    match = re.search(r"/pull/(\d+)", url)
    if match is None:
        raise ValueError(f"Not a pull request URL: {url!r}")
    return int(match.group(1))


def job_id_from_link(link: str) -> str | None:
    match = _JOB_ID_RE.search(link)
    return match.group(1) if match else None


def check_state(conclusion: str | None, status: str | None) -> str:
    """Normalized upper-case state: conclusion first, then status, else PENDING."""

    if conclusion:
        return conclusion.upper()
    if status:
        return status.upper()
    return "PENDING"


def tail(text: str, limit: int = FAILED_LOG_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


def parse_review_threads_page(
    payload: dict[str, Any],
) -> tuple[list[ReviewThread], bool, str | None]:
    """Decode one ``reviewThreads`` GraphQL page into threads and paging info."""

    pull_request = (
        (payload.get("data") or {}).get("repository", {}) or {}
    ).get("pullRequest") or {}
    connection = pull_request.get("reviewThreads") or {}
    page_info = connection.get("pageInfo") or {}
    threads: list[ReviewThread] = []
    for node in connection.get("nodes") or []:
        comments_connection = node.get("comments") or {}
        comments = [
            ReviewComment(
                comment_id=str(comment.get("databaseId") or comment.get("id") or ""),
                node_id=str(comment.get("id") or ""),
                author=str((comment.get("author") or {}).get("login") or "unknown"),
                body=str(comment.get("body") or ""),
                path=comment.get("path") or None,
                line=comment.get("line") or comment.get("originalLine"),
                url=str(comment.get("url") or ""),
            )
            for comment in comments_connection.get("nodes") or []
        ]
        threads.append(
            ReviewThread(
                thread_id=str(node.get("id") or ""),
                is_resolved=bool(node.get("isResolved")),
                comments=comments,
                total_comments=int(comments_connection.get("totalCount") or len(comments)),
            ),
        )
    return threads, bool(page_info.get("hasNextPage")), page_info.get("endCursor")
