"""Session backend: typed JSON event stream with resumable session ids."""

from __future__ import annotations

import json
import logging
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from ivan.orchestrator.backend.base import (
    BREAKDOWN_PROMPT,
    CancellationToken,
    ExecutionResult,
    allowed_tools_args,
    cancel_on_interrupt,
    parse_breakdown,
    resolve_origin_repo,
)
from ivan.orchestrator.backend.streaming import run_streaming
from ivan.orchestrator.errors import ExecutionFailed, NotInstalled

logger = logging.getLogger(__name__)

TOOL_RESULT_SEPARATOR = "\n---\n"
_TOOL_INPUT_PREVIEW_CHARS = 500
_TOOL_RESULT_PREVIEW_CHARS = 2_000


@dataclass(slots=True)
class StreamTranscript:
    """Accumulates stream events into a human-readable transcript."""

    session_id: str = ""
    last_message: str = ""
    error: str | None = None
    parts: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def feed_line(self, line: str) -> str:
        """Consume one stdout line; return the text rendered for it."""

        stripped = line.strip()
        if not stripped:
            return ""
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return self._append(line if line.endswith("\n") else f"{line}\n")
        if not isinstance(event, dict):
            return ""
        return self.feed_event(event)

    def feed_event(self, event: dict[str, Any]) -> str:
        event_type = event.get("type")
        if isinstance(event.get("session_id"), str) and event["session_id"]:
            self.session_id = event["session_id"]

        if event_type == "system":
            return ""
        if event_type == "assistant":
            return self._on_assistant(event)
        if event_type == "user":
            return self._on_user(event)
        if event_type == "result":
            return self._on_result(event)
        return ""

    def _on_assistant(self, event: dict[str, Any]) -> str:
        rendered: list[str] = []
        for block in _content_blocks(event):
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text", ""))
                if text.strip():
                    self.last_message = text.strip()
                    rendered.append(self._append(f"{text}\n"))
            elif block_type == "tool_use":
                tool_input = json.dumps(block.get("input", {}), ensure_ascii=False)
                if len(tool_input) > _TOOL_INPUT_PREVIEW_CHARS:
                    tool_input = f"{tool_input[:_TOOL_INPUT_PREVIEW_CHARS]}..."
                rendered.append(self._append(f"[tool] {block.get('name', '?')} {tool_input}\n"))
        return "".join(rendered)

    def _on_user(self, event: dict[str, Any]) -> str:
        rendered: list[str] = []
        for block in _content_blocks(event):
            if block.get("type") != "tool_result":
                continue
            text = _tool_result_text(block.get("content"))
            if len(text) > _TOOL_RESULT_PREVIEW_CHARS:
                text = f"{text[:_TOOL_RESULT_PREVIEW_CHARS]}..."
            label = "[tool error]" if block.get("is_error") else "[tool result]"
            rendered.append(self._append(f"{label} {text}\n"))
            rendered.append(self._append(TOOL_RESULT_SEPARATOR))
        return "".join(rendered)

    def _on_result(self, event: dict[str, Any]) -> str:
        result = event.get("result")
        if event.get("is_error") or str(event.get("subtype", "success")).startswith("error"):
            self.error = str(result or event.get("subtype") or "agent reported an error")
        if isinstance(result, str) and result.strip():
            self.last_message = result.strip()
            if not self.parts or self.parts[-1].strip() != result.strip():
                return self._append(f"{result}\n")
        return ""

    def _append(self, text: str) -> str:
        self.parts.append(text)
        return text


class SessionAgentExecutor:
    """Drive the agent through its streaming JSON protocol."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        command: tuple[str, ...],
        model: str,
        allowed_tools: dict[str, list[str]] | None = None,
        cancel_token: CancellationToken | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.command = command
        self.model = model
        self.allowed_tools = allowed_tools or {}
        self.cancel_token = cancel_token or CancellationToken()
        self._stdout = stdout
        self._stderr = stderr

    def validate_installation(self) -> None:
        if shutil.which(self.command[0]) is None:
            raise NotInstalled(f"Agent CLI {self.command[0]!r} is not installed.")

    def execute_task(
        self,
        prompt: str,
        working_dir: Path,
        session_id: str | None = None,
    ) -> ExecutionResult:
        self.validate_installation()
        origin = resolve_origin_repo(working_dir)
        argv = self._base_argv()
        argv.extend(allowed_tools_args(self.allowed_tools.get(str(origin.resolve()))))
        if session_id:
            argv.extend(["--resume", session_id])
        argv.extend(["--", prompt])

        logger.info(
            "Running agent session in %s (model=%s, resume=%s)",
            working_dir,
            self.model,
            session_id or "-",
        )
        transcript = self._run(argv, working_dir)
        return ExecutionResult(
            transcript=transcript.text,
            last_message=transcript.last_message,
            session_id=transcript.session_id or session_id or "",
        )

    def generate_breakdown(self, description: str, working_dir: Path) -> list[str]:
        self.validate_installation()
        argv = self._base_argv()
        argv.extend(["--max-turns", "1", "--", BREAKDOWN_PROMPT.format(description=description)])
        transcript = self._run(argv, working_dir)
        tasks = parse_breakdown(transcript.last_message)
        if not tasks:
            raise ExecutionFailed("No task list returned from the agent")
        logger.info("Generated %d tasks", len(tasks))
        return tasks

    def _base_argv(self) -> list[str]:
        return [
            *self.command,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            self.model,
            "--permission-mode",
            "bypassPermissions",
        ]

    def _run(self, argv: list[str], working_dir: Path) -> StreamTranscript:
        transcript = StreamTranscript()
        out = self._stdout or sys.stdout
        err = self._stderr or sys.stderr

        def _on_stdout(line: str) -> None:
            rendered = transcript.feed_line(line)
            if rendered:
                out.write(rendered)
                out.flush()

        with cancel_on_interrupt(self.cancel_token):
            outcome = run_streaming(
                argv=argv,
                cwd=working_dir,
                cancel_token=self.cancel_token,
                on_stdout=_on_stdout,
                on_stderr=err.write,
            )
        if outcome.returncode != 0 or transcript.error is not None:
            detail = transcript.error or outcome.stderr.strip()
            raise ExecutionFailed(
                f"Agent session failed (exit code {outcome.returncode}): {detail}",
                exit_code=outcome.returncode,
                stderr=outcome.stderr or transcript.error,
            )
        return transcript


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list):
        return []
    return [block for block in content if isinstance(block, dict)]


def _tool_result_text(content: object) -> str:
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = [
            str(item.get("text", ""))
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(text for text in texts if text).strip()
    return ""
