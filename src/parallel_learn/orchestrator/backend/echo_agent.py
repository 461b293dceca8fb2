"""Local demo agent for subprocess launcher integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Read the instruction payload from stdin and answer with Markdown."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--sleep", type=float, default=0.0, help="Seconds to wait before exit.")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="", help="Line written to stderr before exit.")
    parser.add_argument("--empty", action="store_true", help="Write nothing to stdout.")
    parser.add_argument(
        "--fail-times",
        type=int,
        default=0,
        help="Fail this many invocations before succeeding; needs --state-dir.",
    )
    parser.add_argument("--state-dir", default=None)
    args = parser.parse_args(argv)

    payload = sys.stdin.read()
    grouping = os.getenv("PARALLEL_LEARN_GROUPING", "")

    if args.fail_times and args.state_dir:
        counter = Path(args.state_dir) / f"{grouping or 'default'}.attempts"
        seen = int(counter.read_text("utf-8")) if counter.exists() else 0
        counter.write_text(str(seen + 1), "utf-8")
        if seen < args.fail_times:
            sys.stderr.write(f"simulated failure {seen + 1}/{args.fail_times}\n")
            return 1

    if args.sleep > 0:
        time.sleep(args.sleep)

    if not args.empty:
        first_line = next((line for line in payload.splitlines() if line.strip()), "")
        sys.stdout.write(f"## Analysis of {grouping or 'input'}\n\n")
        sys.stdout.write(f"- payload_chars: {len(payload)}\n")
        sys.stdout.write(f"- first_line: {first_line.strip()}\n")
        sys.stdout.flush()
    if args.stderr:
        sys.stderr.write(args.stderr + "\n")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
