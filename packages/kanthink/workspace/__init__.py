"""Workspace data models, services and HTTP API."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    # Models
    "Base",
    "User",
    "UsageRecord",
    "Channel",
    "Column",
    "Card",
    "Task",
    "InstructionCard",
    "Folder",
    "UserChannelOrg",
    "ChannelShare",
    "FolderShare",
    # API
    "create_app",
    "WorkspaceSettings",
    # Service
    "WorkspaceService",
    "WorkspaceDatabase",
    "init_engine",
]

_MODELS = {
    "Base",
    "User",
    "UsageRecord",
    "Channel",
    "Column",
    "Card",
    "Task",
    "InstructionCard",
    "Folder",
    "UserChannelOrg",
    "ChannelShare",
    "FolderShare",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - thin import shim
    if name in _MODELS:
        module = import_module(".models", __name__)
    elif name in ("create_app", "WorkspaceSettings"):
        module = import_module(".api", __name__)
    elif name in ("WorkspaceService", "WorkspaceDatabase", "init_engine"):
        module = import_module(".service", __name__)
    else:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    value = getattr(module, name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:  # pragma: no cover - introspection helper
    return sorted(__all__ + ["schema"])
