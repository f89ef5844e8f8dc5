"""Code-hosting platform clients."""

from ivan.hosting.base import (
    CheckRun,
    CodeHost,
    HostRequestError,
    PullRequest,
    ReviewComment,
    ReviewThread,
    parse_remote,
)

__all__ = [
    "CheckRun",
    "CodeHost",
    "HostRequestError",
    "PullRequest",
    "ReviewComment",
    "ReviewThread",
    "parse_remote",
]
