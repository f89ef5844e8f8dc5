"""Local stand-in for the agent CLI used by backend integration tests.

Behaviour is steered through environment variables:

- ``IVAN_ECHO_WRITE_FILE``: relative path written in the working directory.
- ``IVAN_ECHO_EXIT_CODE``: exit status to return.
- ``IVAN_ECHO_SLEEP_SECONDS``: delay before answering.
- ``IVAN_ECHO_ARGS_LOG``: file that receives one JSON argv line per call.
- ``IVAN_ECHO_BREAKDOWN``: reply for breakdown prompts (``|``-separated lines).
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    parser = argparse.ArgumentParser()
    parser.add_argument("--print", action="store_true")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--model", default="")
    parser.add_argument("--permission-mode", default="")
    parser.add_argument("--allowed-tools", default="")
    parser.add_argument("--max-turns", default="")
    parser.add_argument("--resume", default="")
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(raw_argv)

    args_log = os.getenv("IVAN_ECHO_ARGS_LOG")
    if args_log:
        with Path(args_log).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(raw_argv) + "\n")

    delay = float(os.getenv("IVAN_ECHO_SLEEP_SECONDS", "0"))
    if delay > 0:
        time.sleep(delay)

    exit_code = int(os.getenv("IVAN_ECHO_EXIT_CODE", "0"))
    if exit_code != 0:
        sys.stderr.write("echo agent failure\n")
        return exit_code

    target = os.getenv("IVAN_ECHO_WRITE_FILE", "")
    breakdown = "new-line separated list" in args.prompt
    if breakdown:
        reply = os.getenv("IVAN_ECHO_BREAKDOWN", "1. Add feature|- Write tests").replace("|", "\n")
    else:
        reply = f"Done: {args.prompt.splitlines()[0] if args.prompt else ''}"
        if target:
            path = Path.cwd() / target
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{args.prompt}\n", "utf-8")

    if args.output_format == "stream-json":
        _emit_stream(session_id=args.resume or "echo-session-1", reply=reply, target=target)
    elif breakdown:
        sys.stdout.write(f"{reply}\n")
    else:
        sys.stdout.write(f"Working on it\n{reply}\n")
    return 0


def _emit_stream(*, session_id: str, reply: str, target: str) -> None:
    events = [
        {"type": "system", "subtype": "init", "session_id": session_id},
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {
                "content": [
                    {"type": "text", "text": "Looking at the repository."},
                    {"type": "tool_use", "id": "t1", "name": "Write", "input": {"path": target}},
                ],
            },
        },
        {
            "type": "user",
            "session_id": session_id,
            "message": {
                "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}],
            },
        },
        {
            "type": "assistant",
            "session_id": session_id,
            "message": {"content": [{"type": "text", "text": reply}]},
        },
        {"type": "result", "subtype": "success", "result": reply, "session_id": session_id},
    ]
    for event in events:
        sys.stdout.write(json.dumps(event) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
