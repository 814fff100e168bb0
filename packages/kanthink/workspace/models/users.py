"""User accounts and AI usage records."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..schema.enums import LLMProviderName, UserTier
from .base import Base, llm_provider_enum, new_id, user_tier_enum, utcnow

__all__ = ["User", "UsageRecord"]


class User(Base):
    """Account with subscription tier and optional bring-your-own-key config."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    name: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    image: Mapped[str | None] = mapped_column(Text)
    tier: Mapped[UserTier] = mapped_column(
        user_tier_enum(), nullable=False, default=UserTier.FREE
    )
    byok_provider: Mapped[LLMProviderName | None] = mapped_column(llm_provider_enum())
    byok_api_key: Mapped[str | None] = mapped_column(Text)
    byok_model: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class UsageRecord(Base):
    """One metered AI request."""

    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    request_type: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (Index("usage_records_user_created_idx", "user_id", "created_at"),)
