"""Run an agent subprocess while streaming its output line by line."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from ivan.orchestrator.backend.base import CancellationToken
from ivan.orchestrator.errors import ExecutionCancelled, ExecutionFailed, NotInstalled

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]


@dataclass(slots=True)
class ProcessOutcome:
    """Exit status and buffered output of a finished process."""

    returncode: int
    stdout: str
    stderr: str


def run_streaming(  # noqa: PLR0913
    *,
    argv: list[str],
    cwd: Path,
    cancel_token: CancellationToken | None,
    on_stdout: LineHandler,
    on_stderr: LineHandler,
    env: dict[str, str] | None = None,
    poll_interval_seconds: float = 0.1,
) -> ProcessOutcome:
    """Spawn ``argv`` in ``cwd`` and feed each output line to the handlers.

    Output is also buffered and returned. Raises ``ExecutionCancelled`` after
    killing the process when ``cancel_token`` fires.
    """

    try:
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=cwd,
            env={**os.environ, **(env or {})},
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except FileNotFoundError as error:
        raise NotInstalled(f"Agent command not found: {argv[0]}") from error
    except OSError as error:
        raise ExecutionFailed(f"Agent failed to start: {error}") from error

    stdout_lines: list[str] = []
    stderr_lines: list[str] = []
    readers = [
        _start_reader(process.stdout, stdout_lines, on_stdout, name="agent-stdout"),
        _start_reader(process.stderr, stderr_lines, on_stderr, name="agent-stderr"),
    ]

    while process.poll() is None:
        if cancel_token is not None and cancel_token.cancelled:
            logger.warning("Cancellation requested; stopping agent process %s", process.pid)
            _terminate_process(process)
            _join_readers(readers)
            raise ExecutionCancelled()
        time.sleep(poll_interval_seconds)

    _join_readers(readers)
    return ProcessOutcome(
        returncode=process.returncode,
        stdout="".join(stdout_lines),
        stderr="".join(stderr_lines),
    )


def _start_reader(
    stream: IO[str] | None,
    buffer: list[str],
    handler: LineHandler,
    *,
    name: str,
) -> threading.Thread:
    def _pump() -> None:
        if stream is None:
            return
        for line in stream:
            buffer.append(line)
            try:
                handler(line)
            except Exception:
                logger.exception("Output handler failed")
        stream.close()

    thread = threading.Thread(target=_pump, daemon=True, name=name)
    thread.start()
    return thread


def _join_readers(readers: list[threading.Thread]) -> None:
    for reader in readers:
        reader.join(timeout=5)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
