"""Schema and account administration commands."""

from __future__ import annotations

from argparse import _SubParsersAction, Namespace

from sqlalchemy import inspect

from ...errors import WorkspaceError
from ...workspace.schema.enums import UserTier
from ...workspace.service import (
    WorkspaceDatabase,
    WorkspaceService,
    WorkspaceSettings,
    init_engine,
)

__all__ = ["register"]


def register(subparsers: _SubParsersAction) -> None:
    init_db = subparsers.add_parser("init-db", help="Create the workspace schema")
    init_db.set_defaults(handler=_cmd_init_db)

    set_tier = subparsers.add_parser("set-tier", help="Change a user's subscription tier")
    set_tier.add_argument("email", help="Registered user email")
    set_tier.add_argument("tier", choices=UserTier.values())
    set_tier.set_defaults(handler=_cmd_set_tier)


def _cmd_init_db(_: Namespace, settings: WorkspaceSettings) -> None:
    engine = init_engine(settings)
    try:
        tables = inspect(engine).get_table_names()
    finally:
        engine.dispose()
    print(f"Schema ready ({len(tables)} tables)")


def _cmd_set_tier(args: Namespace, settings: WorkspaceSettings) -> None:
    engine = init_engine(settings)
    database = WorkspaceDatabase(engine)
    session = database.session()
    try:
        service = WorkspaceService(session=session, settings=settings)
        try:
            user = service.set_user_tier(args.email, UserTier(args.tier))
        except WorkspaceError as exc:
            raise SystemExit(f"Error: {exc.message}") from exc
        print(f"{user.email}: {user.tier.value}")
    finally:
        session.close()
        engine.dispose()
