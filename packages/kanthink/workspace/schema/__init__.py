"""Workspace enum exports."""

from .enums import (
    ENUM_DEFINITIONS,
    ENUM_DEFINITION_BY_NAME,
    CardSource,
    ChannelRole,
    ChannelStatus,
    EnumDefinition,
    InstructionAction,
    InstructionRunMode,
    LLMProviderName,
    PermissionLevel,
    ShareRole,
    TaskStatus,
    UserTier,
    db_enum,
)

__all__ = [
    "ENUM_DEFINITIONS",
    "ENUM_DEFINITION_BY_NAME",
    "CardSource",
    "ChannelRole",
    "ChannelStatus",
    "EnumDefinition",
    "InstructionAction",
    "InstructionRunMode",
    "LLMProviderName",
    "PermissionLevel",
    "ShareRole",
    "TaskStatus",
    "UserTier",
    "db_enum",
]
