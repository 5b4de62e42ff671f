# src/moebench/__main__.py
from __future__ import annotations

import argparse
import sys

from moebench.cli import commands
from moebench.cli.argparse_model import add_model_to_parser
from moebench.exceptions import MoebenchError


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="moebench")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, (model, _handler, help_text) in commands.COMMANDS.items():
        p = sub.add_parser(name, help=help_text)
        add_model_to_parser(p, model)

    ns = parser.parse_args(argv)
    data = vars(ns)
    name = data.pop("command")

    try:
        commands.handle_command(name, data)
    except MoebenchError as exc:
        print(f"moebench: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
