"""Process backend: the agent runs as a plain ``--print`` subprocess."""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path
from typing import TextIO

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

INSTALL_HINT = "https://docs.claude.com/en/docs/claude-code/installation"


class ProcessAgentExecutor:
    """Spawn the agent CLI per call and stream its output to the operator."""

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
            raise NotInstalled(
                f"Agent CLI {self.command[0]!r} is not installed. Install it from: {INSTALL_HINT}",
            )

    def execute_task(
        self,
        prompt: str,
        working_dir: Path,
        session_id: str | None = None,
    ) -> ExecutionResult:
        """Run one task; the transcript is the agent's full stdout."""

        self.validate_installation()
        origin = resolve_origin_repo(working_dir)
        argv = [
            *self.command,
            "--print",
            "--model",
            self.model,
            "--permission-mode",
            "bypassPermissions",
            *allowed_tools_args(self.allowed_tools.get(str(origin.resolve()))),
        ]
        if session_id:
            argv.extend(["--resume", session_id])
        argv.append(prompt)

        logger.info("Running agent in %s (model=%s)", working_dir, self.model)
        last_message = ""

        def _on_stdout(line: str) -> None:
            nonlocal last_message
            self._out.write(line)
            self._out.flush()
            if line.strip():
                last_message = line.strip()

        with cancel_on_interrupt(self.cancel_token):
            outcome = run_streaming(
                argv=argv,
                cwd=working_dir,
                cancel_token=self.cancel_token,
                on_stdout=_on_stdout,
                on_stderr=self._err.write,
            )
        if outcome.returncode != 0:
            raise ExecutionFailed(
                f"Agent exited with code {outcome.returncode}: {outcome.stderr.strip()}",
                exit_code=outcome.returncode,
                stderr=outcome.stderr,
            )
        return ExecutionResult(
            transcript=outcome.stdout,
            last_message=last_message,
            session_id=session_id or "",
        )

    def generate_breakdown(self, description: str, working_dir: Path) -> list[str]:
        self.validate_installation()
        argv = [
            *self.command,
            "--print",
            "--model",
            self.model,
            "--max-turns",
            "1",
            BREAKDOWN_PROMPT.format(description=description),
        ]
        with cancel_on_interrupt(self.cancel_token):
            outcome = run_streaming(
                argv=argv,
                cwd=working_dir,
                cancel_token=self.cancel_token,
                on_stdout=self._out.write,
                on_stderr=self._err.write,
            )
        if outcome.returncode != 0:
            raise ExecutionFailed(
                f"Agent exited with code {outcome.returncode}: {outcome.stderr.strip()}",
                exit_code=outcome.returncode,
                stderr=outcome.stderr,
            )
        tasks = parse_breakdown(outcome.stdout)
        if not tasks:
            raise ExecutionFailed("No task list returned from the agent")
        logger.info("Generated %d tasks", len(tasks))
        return tasks

    @property
    def _out(self) -> TextIO:
        return self._stdout or sys.stdout

    @property
    def _err(self) -> TextIO:
        return self._stderr or sys.stderr
