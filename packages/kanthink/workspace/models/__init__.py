"""Workspace SQLAlchemy models organized by domain."""

from .base import Base, new_id, utcnow
from .channels import Card, Channel, Column, InstructionCard, Task
from .organization import Folder, UserChannelOrg
from .sharing import ChannelInviteLink, ChannelShare, FolderShare
from .users import UsageRecord, User

__all__ = [
    "Base",
    "new_id",
    "utcnow",
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
    "ChannelInviteLink",
    "FolderShare",
]
