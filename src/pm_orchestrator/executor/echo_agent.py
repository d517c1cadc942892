"""Local demo agent for command executor integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as a JSON executor result."""

    parser = argparse.ArgumentParser()
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt")
    source.add_argument("--prompt-file")
    parser.add_argument("--status", default="COMPLETE")
    parser.add_argument("--question", default=None)
    parser.add_argument("--fail", default=None, help="Write this message to stderr and exit 1.")
    args = parser.parse_args(argv)

    if args.fail:
        sys.stderr.write(f"{args.fail}\n")
        return 1

    prompt = args.prompt if args.prompt is not None else Path(args.prompt_file).read_text("utf-8")
    output = prompt.strip() or "empty prompt"
    payload = {
        "status": args.status,
        "output": output,
        "clarification_question": args.question,
        "tokens_in": len(prompt.split()),
        "tokens_out": len(output.split()),
        "metadata": {"model": os.getenv("PM_ORCHESTRATOR_MODEL", "")},
    }
    sys.stdout.write(json.dumps(payload, ensure_ascii=False))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
