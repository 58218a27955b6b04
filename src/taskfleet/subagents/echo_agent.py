"""Local deterministic agent for executor integration tests and demos."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the task section of the prompt file to stdout."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    prompt = Path(args.prompt_file).read_text("utf-8")
    task = prompt.split("## Task\n", 1)[-1].strip()
    if args.exit_code != 0:
        print(f"echo_agent failed: {task}", file=sys.stderr)
        return args.exit_code

    profile = os.getenv("TASKFLEET_PROFILE", "unknown")
    print(f"[{profile}] {task}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
