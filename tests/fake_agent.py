"""Scripted stand-in for the agent CLI, speaking stream-json on stdin/stdout.

Behaviour is picked from markers in the prompt text:

- ``[fail]``  writes to stderr and exits 2 without any output
- ``[sleep]`` hangs until killed
- ``[bash]``  asks permission for a Bash tool and reports the verdict
- ``[noise]`` interleaves non-JSON lines with the frames
- ``[env]``   reports whether CLAUDECODE is set
- otherwise echoes the prompt

``--resume stale-*`` exits 1 the way the real CLI does for an unknown
conversation. ``--log PATH`` appends the argv of every run to PATH.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
import uuid


def emit(frame: dict) -> None:
    sys.stdout.write(json.dumps(frame) + "\n")
    sys.stdout.flush()


def assistant(text: str) -> dict:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--resume", default=None)
    parser.add_argument("--log", default=None)
    args, _ = parser.parse_known_args()

    if args.log:
        with open(args.log, "a", encoding="utf-8") as f:
            f.write(json.dumps(sys.argv[1:]) + "\n")

    first = sys.stdin.readline()
    prompt = json.loads(first)["message"]["content"] if first.strip() else ""

    if args.resume and args.resume.startswith("stale"):
        sys.stderr.write(f"No conversation found with session ID: {args.resume}\n")
        return 1
    if "[fail]" in prompt:
        sys.stderr.write("boom\n")
        return 2
    if "[sleep]" in prompt:
        time.sleep(60)
        return 0

    conversation_id = args.resume or f"conv-{uuid.uuid4().hex[:12]}"
    emit({"type": "system", "subtype": "init", "session_id": conversation_id})

    if "[noise]" in prompt:
        sys.stdout.write("warming up...\n")
        sys.stdout.flush()

    if "[bash]" in prompt:
        emit(
            {
                "type": "control_request",
                "request_id": "req-1",
                "request": {
                    "subtype": "can_use_tool",
                    "tool_name": "Bash",
                    "input": {"command": "ls -la"},
                },
            }
        )
        reply = json.loads(sys.stdin.readline())
        behavior = reply["response"]["response"]["behavior"]
        emit(assistant(f"permission: {behavior}"))
    elif "[env]" in prompt:
        emit(assistant(f"CLAUDECODE={'set' if 'CLAUDECODE' in os.environ else 'unset'}"))
    else:
        emit(assistant("echo: "))
        if "[noise]" in prompt:
            sys.stdout.write("not json either\n")
            sys.stdout.flush()
        emit(assistant(prompt))

    emit({"type": "result", "subtype": "success", "session_id": conversation_id})

    # The bridge closes stdin once it has seen the result.
    while sys.stdin.readline():
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
