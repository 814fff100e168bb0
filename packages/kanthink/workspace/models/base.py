"""Shared SQLAlchemy base and column helpers for workspace models."""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase

from ..schema.enums import (
    CardSource,
    ChannelStatus,
    InstructionAction,
    InstructionRunMode,
    LLMProviderName,
    ShareRole,
    TaskStatus,
    UserTier,
    db_enum,
)

__all__ = [
    "Base",
    "new_id",
    "utcnow",
    "share_role_enum",
    "channel_status_enum",
    "card_source_enum",
    "task_status_enum",
    "instruction_action_enum",
    "instruction_run_mode_enum",
    "user_tier_enum",
    "llm_provider_enum",
]


class Base(DeclarativeBase):
    """Declarative base class shared by all workspace models."""


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# Enum helper factories -----------------------------------------------------

def share_role_enum() -> SAEnum:
    return db_enum(ShareRole)


def channel_status_enum() -> SAEnum:
    return db_enum(ChannelStatus)


def card_source_enum() -> SAEnum:
    return db_enum(CardSource)


def task_status_enum() -> SAEnum:
    return db_enum(TaskStatus)


def instruction_action_enum() -> SAEnum:
    return db_enum(InstructionAction)


def instruction_run_mode_enum() -> SAEnum:
    return db_enum(InstructionRunMode)


def user_tier_enum() -> SAEnum:
    return db_enum(UserTier)


def llm_provider_enum() -> SAEnum:
    return db_enum(LLMProviderName)
