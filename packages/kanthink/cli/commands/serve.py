"""CLI command for the workspace API server."""

from __future__ import annotations

from argparse import _SubParsersAction, Namespace

import structlog

from ...workspace.service import WorkspaceSettings

__all__ = ["register", "run"]

logger = structlog.get_logger(__name__)


def run(args: Namespace, settings: WorkspaceSettings) -> None:
    """Start the workspace API server."""
    import uvicorn

    from ...workspace.api import create_app

    app = create_app(settings)
    logger.info("server_starting", host=args.host, port=args.port)
    print(f"Starting Kanthink API on http://{args.host}:{args.port}")
    print(f"API docs at http://{args.host}:{args.port}/docs")

    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


def register(subparsers: _SubParsersAction) -> None:
    parser = subparsers.add_parser("serve", help="Start the workspace API server")
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8082,
        help="Port to bind (default: 8082)",
    )
    parser.set_defaults(handler=run)
