from __future__ import annotations

import pytest

from packages.kanthink.cli import build_parser, main
from packages.kanthink.workspace import schemas
from packages.kanthink.workspace.schema.enums import UserTier
from packages.kanthink.workspace.service import (
    WorkspaceDatabase,
    WorkspaceService,
    WorkspaceSettings,
    init_engine,
)


def test_serve_defaults() -> None:
    args = build_parser().parse_args(["serve"])

    assert (args.host, args.port) == ("127.0.0.1", 8082)
    assert callable(args.handler)


def test_set_tier_rejects_unknown_tier() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["set-tier", "alice@example.com", "gold"])


def test_init_db_and_set_tier(tmp_path, capsys) -> None:
    url = f"sqlite:///{tmp_path / 'cli.db'}"

    main(["--database-url", url, "init-db"])
    assert "Schema ready" in capsys.readouterr().out

    settings = WorkspaceSettings(database_url=url)
    engine = init_engine(settings)
    session = WorkspaceDatabase(engine).session()
    try:
        WorkspaceService(session=session, settings=settings).register_user(
            schemas.UserCreateRequest(email="alice@example.com")
        )
    finally:
        session.close()
        engine.dispose()

    main(["--database-url", url, "set-tier", "Alice@Example.com", "premium"])
    assert capsys.readouterr().out.strip() == "alice@example.com: premium"

    with pytest.raises(SystemExit, match="User not found"):
        main(["--database-url", url, "set-tier", "nobody@example.com", UserTier.FREE.value])
