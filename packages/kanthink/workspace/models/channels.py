"""Channel board content: columns, cards, tasks, and instruction cards."""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..schema.enums import (
    CardSource,
    ChannelStatus,
    InstructionAction,
    InstructionRunMode,
    TaskStatus,
)
from .base import (
    Base,
    card_source_enum,
    channel_status_enum,
    instruction_action_enum,
    instruction_run_mode_enum,
    new_id,
    task_status_enum,
    utcnow,
)

__all__ = ["Channel", "Column", "Card", "Task", "InstructionCard"]


class Channel(Base):
    """A Kanban board owned by one user."""

    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[ChannelStatus] = mapped_column(
        channel_status_enum(), nullable=False, default=ChannelStatus.ACTIVE
    )
    ai_instructions: Mapped[str] = mapped_column(Text, nullable=False, default="")
    include_backside_in_ai: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_global_help: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("channels_owner_idx", "owner_id"),)


class Column(Base):
    """An ordered stage within a channel."""

    __tablename__ = "columns"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    instructions: Mapped[str | None] = mapped_column(Text)
    processing_prompt: Mapped[str | None] = mapped_column(Text)
    auto_process: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_ai_target: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("columns_position_idx", "channel_id", "position"),)


class Card(Base):
    """A card, ordered within ``(column_id, is_archived)``."""

    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    column_id: Mapped[str] = mapped_column(
        ForeignKey("columns.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    messages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    summary: Mapped[str | None] = mapped_column(Text)
    summary_updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    source: Mapped[CardSource] = mapped_column(
        card_source_enum(), nullable=False, default=CardSource.MANUAL
    )
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    hide_completed_tasks: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by_instruction_id: Mapped[str | None] = mapped_column(Text)
    # instruction id -> ISO timestamp of the last run that touched this card
    processed_by_instructions: Mapped[dict[str, str]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("cards_channel_idx", "channel_id"),
        Index("cards_position_idx", "column_id", "is_archived", "position"),
    )


class Task(Base):
    """A checklist item attached to a card, or unlinked at channel level."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    card_id: Mapped[str | None] = mapped_column(ForeignKey("cards.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[TaskStatus] = mapped_column(
        task_status_enum(), nullable=False, default=TaskStatus.NOT_STARTED
    )
    assigned_to: Mapped[str | None] = mapped_column(Text)
    due_date: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("tasks_channel_idx", "channel_id"),
        Index("tasks_card_position_idx", "card_id", "position"),
    )


class InstructionCard(Base):
    """A saved AI instruction that acts on a channel's cards."""

    __tablename__ = "instruction_cards"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    instructions: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[InstructionAction] = mapped_column(instruction_action_enum(), nullable=False)
    target: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    context_columns: Mapped[list[str] | None] = mapped_column(JSON)
    run_mode: Mapped[InstructionRunMode] = mapped_column(
        instruction_run_mode_enum(), nullable=False, default=InstructionRunMode.MANUAL
    )
    card_count: Mapped[int | None] = mapped_column(Integer)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_executed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("instruction_cards_position_idx", "channel_id", "position"),)
