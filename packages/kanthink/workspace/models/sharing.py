"""Channel and folder share grants."""

from __future__ import annotations

import datetime as dt

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..schema.enums import ShareRole
from .base import Base, new_id, share_role_enum, utcnow

__all__ = ["ChannelShare", "ChannelInviteLink", "FolderShare"]


class FolderShare(Base):
    """Grant on a folder; origin of derived channel grants."""

    __tablename__ = "folder_shares"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    folder_id: Mapped[str] = mapped_column(
        ForeignKey("folders.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    email: Mapped[str | None] = mapped_column(Text)
    role: Mapped[ShareRole] = mapped_column(share_role_enum(), nullable=False)
    invited_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    invited_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    accepted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("folder_shares_folder_idx", "folder_id"),
        Index("folder_shares_user_idx", "user_id"),
        Index("folder_shares_email_idx", "email"),
    )

    @property
    def is_pending(self) -> bool:
        return self.accepted_at is None


class ChannelShare(Base):
    """Grant on a channel, either direct or derived from a folder grant."""

    __tablename__ = "channel_shares"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"))
    email: Mapped[str | None] = mapped_column(Text)
    role: Mapped[ShareRole] = mapped_column(share_role_enum(), nullable=False)
    folder_share_id: Mapped[str | None] = mapped_column(
        ForeignKey("folder_shares.id", ondelete="SET NULL")
    )
    invited_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    invited_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    accepted_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("channel_id", "user_id", name="channel_shares_channel_user"),
        Index("channel_shares_email_idx", "email"),
        Index("channel_shares_folder_share_idx", "folder_share_id"),
    )

    @property
    def is_pending(self) -> bool:
        return self.accepted_at is None

    @property
    def is_derived(self) -> bool:
        return self.folder_share_id is not None


class ChannelInviteLink(Base):
    """Shareable token that grants a channel role to whoever accepts it."""

    __tablename__ = "channel_invite_links"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=new_id)
    channel_id: Mapped[str] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    default_role: Mapped[ShareRole] = mapped_column(share_role_enum(), nullable=False)
    expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))
    max_uses: Mapped[int | None] = mapped_column(Integer)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (Index("channel_invite_links_channel_idx", "channel_id"),)

    @property
    def is_expired(self) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        # SQLite hands timestamps back without tzinfo.
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=dt.timezone.utc)
        return expires_at < utcnow()

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.use_count >= self.max_uses
