"""Local demo agent for CLI backend integration tests.

Reads the prompt, acknowledges the task and routes it to the first
destination the prompt offers (or DONE when none is offered).
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from queueboard.board.directives import DONE, STUCK
from queueboard.board.prompt import DESTINATIONS_HEADER


def choose_destination(prompt: str) -> str:
    lines = prompt.splitlines()
    try:
        start = lines.index(DESTINATIONS_HEADER) + 1
    except ValueError:
        return DONE if f"MOVE TO: {DONE}" in prompt else STUCK

    for line in lines[start:]:
        if not line.startswith("- "):
            break
        return line[2:].split(":", 1)[0].strip()
    return STUCK


def main(argv: list[str] | None = None) -> int:
    """Print a deterministic reply ending in a routing directive."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--route-to", default=None, help="Force a destination name.")
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    title = next(
        (line.removeprefix("# Task:").strip() for line in prompt.splitlines() if line.startswith("# Task:")),
        "task",
    )
    destination = args.route_to or choose_destination(prompt)
    sys.stdout.write(f"Handled: {title}\nMOVE TO: {destination}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
