"""Local deterministic agent for CLI text generator integration tests."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Print a fixed reply, or echo the last line of the prompt file."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--reply", default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.exit_code:
        print("echo agent asked to fail", file=sys.stderr)
        return args.exit_code

    if args.reply is not None:
        print(args.reply)
        return 0

    lines = [line for line in Path(args.prompt_file).read_text("utf-8").splitlines() if line]
    print(f"echo: {lines[-1] if lines else ''}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
