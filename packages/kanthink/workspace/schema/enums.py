"""Canonical workspace enum definitions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from sqlalchemy import Enum as SAEnum

__all__ = [
    "EnumDefinition",
    "ChannelRole",
    "ShareRole",
    "PermissionLevel",
    "ChannelStatus",
    "CardSource",
    "TaskStatus",
    "InstructionAction",
    "InstructionRunMode",
    "UserTier",
    "LLMProviderName",
    "ENUM_DEFINITIONS",
    "ENUM_DEFINITION_BY_NAME",
    "db_enum",
]


class WorkspaceEnum(str, Enum):
    """Base class for workspace enums persisted as their string values."""

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(item.value for item in cls)


class ChannelRole(WorkspaceEnum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


class ShareRole(WorkspaceEnum):
    """Roles a share grant may carry; ownership is never granted."""

    EDITOR = "editor"
    VIEWER = "viewer"


class PermissionLevel(WorkspaceEnum):
    VIEW = "view"
    EDIT = "edit"
    DELETE = "delete"
    MANAGE_SHARES = "manage_shares"


class ChannelStatus(WorkspaceEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class CardSource(WorkspaceEnum):
    MANUAL = "manual"
    AI = "ai"


class TaskStatus(WorkspaceEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class InstructionAction(WorkspaceEnum):
    GENERATE = "generate"
    MODIFY = "modify"
    MOVE = "move"


class InstructionRunMode(WorkspaceEnum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class UserTier(WorkspaceEnum):
    FREE = "free"
    PREMIUM = "premium"


class LLMProviderName(WorkspaceEnum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"


@dataclass(frozen=True)
class EnumDefinition:
    """Metadata describing a persisted enum type."""

    name: str
    values: tuple[str, ...]
    enum_cls: type[WorkspaceEnum]


ENUM_DEFINITIONS: tuple[EnumDefinition, ...] = (
    EnumDefinition("share_role", ShareRole.values(), ShareRole),
    EnumDefinition("channel_status", ChannelStatus.values(), ChannelStatus),
    EnumDefinition("card_source", CardSource.values(), CardSource),
    EnumDefinition("task_status", TaskStatus.values(), TaskStatus),
    EnumDefinition("instruction_action", InstructionAction.values(), InstructionAction),
    EnumDefinition("instruction_run_mode", InstructionRunMode.values(), InstructionRunMode),
    EnumDefinition("user_tier", UserTier.values(), UserTier),
    EnumDefinition("llm_provider", LLMProviderName.values(), LLMProviderName),
)

ENUM_DEFINITION_BY_NAME: Mapping[str, EnumDefinition] = {
    definition.name: definition for definition in ENUM_DEFINITIONS
}

ENUM_DEFINITION_BY_CLASS: Mapping[type[WorkspaceEnum], EnumDefinition] = {
    definition.enum_cls: definition for definition in ENUM_DEFINITIONS
}


def db_enum(enum_cls: type[WorkspaceEnum]) -> SAEnum:
    """Return a SQLAlchemy ``Enum`` storing member values as portable strings.

    The schema targets SQLite first, so no native database enum type is
    created; values are checked by a constraint instead.
    """

    definition = ENUM_DEFINITION_BY_CLASS[enum_cls]
    return SAEnum(
        enum_cls,
        name=definition.name,
        native_enum=False,
        create_constraint=True,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )
