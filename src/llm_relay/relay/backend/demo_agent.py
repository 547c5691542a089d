"""Local demo solver for command backend integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

STUCK_EXIT_CODE = 3


def main(argv: list[str] | None = None) -> int:
    """Answer, fail or get stuck deterministically depending on flags."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--mode", choices=("success", "failure", "stuck"), default="success")
    parser.add_argument("--error", default="demo agent could not converge")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument(
        "--succeed-on-handover",
        action="store_true",
        help="Answer successfully when the prompt carries a handover section.",
    )
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if args.sleep > 0:
        time.sleep(args.sleep)

    has_handover = "Handover from previous backends:" in prompt
    mode = "success" if args.succeed_on_handover and has_handover else args.mode
    if mode == "success":
        first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
        sys.stdout.write(f"solved: {first_line}\n")
        if has_handover:
            sys.stdout.write("used handover\n")
        return 0

    sys.stderr.write(f"{args.error}\n")
    return STUCK_EXIT_CODE if mode == "stuck" else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
