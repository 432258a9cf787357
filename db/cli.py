from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from db.errors import DbCommandError
from db.lifecycle import COMMANDS, CommandContext
from db.logging import configure_logging, logger
from db.settings import get_env, load_config, parse_env


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="db", description="Database lifecycle commands.")
    parser.add_argument("command", choices=sorted(COMMANDS), help="Lifecycle command to run.")
    parser.add_argument(
        "-e",
        "--env",
        type=parse_env,
        default=None,
        help="development (dev), test or production (prod). Defaults to $APP_ENVIRONMENT, else development.",
    )
    parser.add_argument("--root", type=Path, default=Path.cwd(), help="Project root holding .env files and config/.")
    parser.add_argument(
        "--lenient",
        action="store_true",
        help="Report create/drop conflicts (database exists / does not exist) as warnings instead of failing.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "info"),
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument("--log-format", default="console", choices=["console", "json"])
    return parser


def run(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_format)
    if environ is None:
        environ = dict(os.environ)

    try:
        environment = args.env if args.env is not None else get_env(environ)
        root = args.root.resolve()
        ctx = CommandContext(
            environment=environment,
            config=load_config(environment, environ, root),
            root=root,
            strict=not args.lenient,
        )
        COMMANDS[args.command](ctx)
    except DbCommandError as exc:
        logger.error("command_failed", command=args.command, error_type=type(exc).__name__, error=str(exc))
        return exc.exit_code
    return 0


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
