"""Command-line entry point for Kanthink."""

from __future__ import annotations

import argparse
import os
from typing import Callable, List, Optional

from packages.env import load_env

from ..logging_config import configure_logging
from ..workspace.service import WorkspaceSettings
from . import commands

CommandHandler = Callable[[argparse.Namespace, WorkspaceSettings], None]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kanthink",
        description="Run and administer the Kanthink workspace service.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (CRITICAL, ERROR, WARNING, INFO, DEBUG). Default: INFO",
    )
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="Override the database URL (env: KANTHINK_DB_URL)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    commands.register(subparsers)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    level_name = str(getattr(args, "log_level", "INFO")).upper()
    configure_logging(level_name)

    handler: CommandHandler = getattr(args, "handler", None)
    if not callable(handler):
        parser.error("Command handler missing")

    settings = WorkspaceSettings.from_env()
    settings.log_level = level_name
    if getattr(args, "database_url", None):
        settings.database_url = args.database_url

    handler(args, settings)


if __name__ == "__main__":  # pragma: no cover
    main()
