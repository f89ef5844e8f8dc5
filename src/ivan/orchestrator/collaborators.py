"""Text-generation collaborators: commit messages, PR text, review requests.

Generation failures never reach the orchestrator; ``ResilientTextGenerator``
swaps in deterministic fallbacks.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

FALLBACK_COMMIT_MESSAGE = "chore: update code via Ivan"
FALLBACK_REVIEW_INSTRUCTIONS = (
    "please review the changes and verify the implementation meets requirements"
)
FALLBACK_ADDRESS_REVIEW_INSTRUCTIONS = (
    "please review the latest changes and verify all review comments have been properly addressed"
)
DIFF_PROMPT_LIMIT = 8_000


@dataclass(slots=True)
class PullRequestText:
    """Generated pull request title and body."""

    title: str
    body: str


class TextGenerator(Protocol):
    """Produces human-facing text from a diff."""

    def commit_message(self, diff: str, changed_files: list[str]) -> str:
        """One conventional-commit style message."""

    def pull_request(self, task: str, diff: str, changed_files: list[str]) -> PullRequestText:
        """Title and description for the pull request."""

    def review_instructions(self, diff: str, changed_files: list[str], *, addressing: bool) -> str:
        """Short review request appended after the review agent mention."""


class PriorResolutionSource(Protocol):
    """Supplies lessons from earlier, similar tasks."""

    def relevant_learnings(self, description: str) -> list[str]:
        """Return learnings relevant to ``description``; empty when none."""


class NullPriorResolutionSource:
    def relevant_learnings(self, description: str) -> list[str]:  # noqa: ARG002
        return []


def render_learnings(learnings: list[str]) -> str:
    if not learnings:
        return ""
    lines = "\n".join(f"- {learning}" for learning in learnings)
    return f"\n\n=== Relevant Past Learnings ===\n{lines}\n=== End of Learnings ==="


class FallbackTextGenerator:
    """Deterministic text used when no generator is configured or it fails."""

    def commit_message(self, diff: str, changed_files: list[str]) -> str:  # noqa: ARG002
        return FALLBACK_COMMIT_MESSAGE

    def pull_request(  # noqa: ARG002
        self,
        task: str,
        diff: str,
        changed_files: list[str],
    ) -> PullRequestText:
        files = "\n".join(f"- {name}" for name in changed_files)
        return PullRequestText(
            title=task,
            body=f"Implemented: {task}\n\nChanged files:\n{files}\n\n🤖 Generated with Ivan",
        )

    def review_instructions(  # noqa: ARG002
        self,
        diff: str,
        changed_files: list[str],
        *,
        addressing: bool,
    ) -> str:
        if addressing:
            return FALLBACK_ADDRESS_REVIEW_INSTRUCTIONS
        return FALLBACK_REVIEW_INSTRUCTIONS


class OpenAiTextGenerator:
    """Chat-completions client for an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        api_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=api_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport or httpx.HTTPTransport(retries=2),
        )

    def close(self) -> None:
        self._client.close()

    def commit_message(self, diff: str, changed_files: list[str]) -> str:
        prompt = (
            "Generate a concise git commit message for the following changes.\n\n"
            f"Changed files:\n{_file_list(changed_files)}\n\n"
            f"Git diff:\n```\n{_clip(diff)}\n```\n\n"
            "Rules:\n"
            "- Use conventional commit format (feat:, fix:, refactor:, etc.)\n"
            "- Keep it under 50 characters for the subject line\n"
            "- Focus on what was changed and why\n"
            "- Be specific and clear\n\n"
            "Return only the commit message, nothing else."
        )
        return self._complete(prompt, max_tokens=100)

    def pull_request(self, task: str, diff: str, changed_files: list[str]) -> PullRequestText:
        prompt = (
            "Generate a pull request title and description for the following task and changes.\n\n"
            f"Task: {task}\n\n"
            f"Changed files:\n{_file_list(changed_files)}\n\n"
            f"Git diff:\n```\n{_clip(diff)}\n```\n\n"
            "Generate:\n"
            "1. A concise PR title (under 60 characters)\n"
            "2. A detailed PR description with a summary of changes, what was implemented "
            "and any notable details\n\n"
            'Format your response as JSON: {"title": "...", "body": "..."}'
        )
        content = self._complete(prompt, max_tokens=500, json_mode=True)
        parsed = json.loads(content)
        return PullRequestText(
            title=str(parsed.get("title") or task),
            body=str(parsed.get("body") or f"Implemented: {task}\n\n🤖 Generated with Ivan"),
        )

    def review_instructions(self, diff: str, changed_files: list[str], *, addressing: bool) -> str:
        context = (
            "code changes that were made to address PR review comments"
            if addressing
            else "code changes for a new pull request"
        )
        prompt = (
            f"You are reviewing {context}. Based on the following diff and changed files, "
            "generate a concise, specific review request that tells the reviewer what to "
            "focus on.\n\n"
            f"Changed files:\n{_file_list(changed_files)}\n\n"
            f"Diff:\n{_clip(diff)}\n\n"
            "Generate a brief (1-2 sentences) review request that mentions the key changes "
            "and asks the reviewer to verify specific aspects. Return ONLY the review request "
            'text, without any prefix like "Please review" since the review agent will '
            "already be prepended."
        )
        return self._complete(prompt, max_tokens=200)

    def _complete(self, prompt: str, *, max_tokens: int, json_mode: bool = False) -> str:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": 0.3,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        response = self._client.post("/chat/completions", json=payload)
        response.raise_for_status()
        content = response.json()["choices"][0]["message"]["content"]
        text = str(content or "").strip()
        if not text:
            raise ValueError("Empty completion")
        return text


class ResilientTextGenerator:
    """Delegate to ``primary``; on any failure log it and use the fallback."""

    def __init__(
        self,
        primary: TextGenerator | None,
        fallback: TextGenerator | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback or FallbackTextGenerator()

    def commit_message(self, diff: str, changed_files: list[str]) -> str:
        if self.primary is not None:
            try:
                return self.primary.commit_message(diff, changed_files)
            except Exception as error:  # noqa: BLE001
                logger.warning("Commit message generation failed: %s", error)
        return self.fallback.commit_message(diff, changed_files)

    def pull_request(self, task: str, diff: str, changed_files: list[str]) -> PullRequestText:
        if self.primary is not None:
            try:
                return self.primary.pull_request(task, diff, changed_files)
            except Exception as error:  # noqa: BLE001
                logger.warning("PR description generation failed: %s", error)
        return self.fallback.pull_request(task, diff, changed_files)

    def review_instructions(self, diff: str, changed_files: list[str], *, addressing: bool) -> str:
        if self.primary is not None:
            try:
                return self.primary.review_instructions(diff, changed_files, addressing=addressing)
            except Exception as error:  # noqa: BLE001
                logger.warning("Review instruction generation failed: %s", error)
        return self.fallback.review_instructions(diff, changed_files, addressing=addressing)


def _file_list(changed_files: list[str]) -> str:
    return "\n".join(f"- {name}" for name in changed_files)


def _clip(diff: str) -> str:
    if len(diff) <= DIFF_PROMPT_LIMIT:
        return diff
    return f"{diff[:DIFF_PROMPT_LIMIT]}\n... (diff truncated)"
