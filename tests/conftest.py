"""Shared fixtures: a file-backed workspace service and an API client."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

from packages.kanthink.workspace import schemas
from packages.kanthink.workspace.api import create_app
from packages.kanthink.workspace.models import User
from packages.kanthink.workspace.service import (
    WorkspaceDatabase,
    WorkspaceService,
    WorkspaceSettings,
    init_engine,
)

_LLM_ENV = (
    "OWNER_OPENAI_API_KEY",
    "OWNER_ANTHROPIC_API_KEY",
    "OWNER_GOOGLE_API_KEY",
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GOOGLE_API_KEY",
    "LLM_MODEL",
)


@pytest.fixture(autouse=True)
def _no_llm_keys(monkeypatch):
    for name in _LLM_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def service(tmp_path: Path):
    settings = WorkspaceSettings(database_url=f"sqlite:///{tmp_path / 'kanthink.db'}")
    engine = init_engine(settings)
    session = WorkspaceDatabase(engine).session()
    try:
        yield WorkspaceService(session=session, settings=settings)
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def make_user(service: WorkspaceService) -> Callable[..., User]:
    def _make(email: str, name: str | None = None) -> User:
        return service.register_user(schemas.UserCreateRequest(email=email, name=name))

    return _make


@pytest.fixture()
def client_factory() -> Callable[..., TestClient]:
    """Build a TestClient over a fresh in-memory database."""

    def _create(**settings_overrides) -> TestClient:
        settings = WorkspaceSettings(
            database_url="sqlite+pysqlite:///:memory:",
            **settings_overrides,
        )
        return TestClient(create_app(settings))

    return _create


@pytest.fixture()
def client(client_factory) -> TestClient:
    return client_factory()


@pytest.fixture()
def signup() -> Callable[[TestClient, str], dict[str, str]]:
    """Register an email and return the headers identifying that user."""

    def _signup(client: TestClient, email: str) -> dict[str, str]:
        response = client.post("/api/users", json={"email": email})
        assert response.status_code == 201
        return {"X-User-ID": response.json()["id"]}

    return _signup