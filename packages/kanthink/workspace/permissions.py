"""Channel and folder access resolution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from ..errors import PermissionDenied
from .models import Channel, ChannelShare, Folder, FolderShare, UserChannelOrg, utcnow
from .ordering import Root, insert_at
from .schema.enums import ChannelRole, PermissionLevel

__all__ = [
    "ChannelPermission",
    "FolderPermission",
    "AccessibleChannel",
    "resolve_channel_role",
    "require_channel_permission",
    "resolve_folder_role",
    "require_folder_permission",
    "list_accessible_channels",
    "convert_pending_invites",
    "ensure_org_entry",
]

logger = structlog.get_logger(__name__)

_ALLOWED = {
    ChannelRole.OWNER: frozenset(PermissionLevel),
    ChannelRole.EDITOR: frozenset({PermissionLevel.VIEW, PermissionLevel.EDIT}),
    ChannelRole.VIEWER: frozenset({PermissionLevel.VIEW}),
}

_DENIED_MESSAGES = {
    PermissionLevel.EDIT: "You do not have edit access to this {kind}",
    PermissionLevel.DELETE: "Only the {kind} owner can delete this {kind}",
    PermissionLevel.MANAGE_SHARES: "Only the {kind} owner can manage sharing",
}


@dataclass(frozen=True, slots=True)
class ChannelPermission:
    channel_id: str
    user_id: str
    role: ChannelRole

    @property
    def is_owner(self) -> bool:
        return self.role is ChannelRole.OWNER

    @property
    def can_edit(self) -> bool:
        return self.allows(PermissionLevel.EDIT)

    @property
    def can_delete(self) -> bool:
        return self.allows(PermissionLevel.DELETE)

    @property
    def can_manage_shares(self) -> bool:
        return self.allows(PermissionLevel.MANAGE_SHARES)

    def allows(self, level: PermissionLevel) -> bool:
        return level in _ALLOWED[self.role]


@dataclass(frozen=True, slots=True)
class FolderPermission:
    folder_id: str
    user_id: str
    role: ChannelRole

    @property
    def is_owner(self) -> bool:
        return self.role is ChannelRole.OWNER

    def allows(self, level: PermissionLevel) -> bool:
        return level in _ALLOWED[self.role]


@dataclass(frozen=True, slots=True)
class AccessibleChannel:
    channel_id: str
    role: ChannelRole
    shared_by: Optional[str] = None


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower()


def ensure_org_entry(session: Session, user_id: str, channel_id: str) -> bool:
    """Append ``channel_id`` to the end of the user's root scope if absent."""
    existing = session.execute(
        select(UserChannelOrg.id).where(
            UserChannelOrg.user_id == user_id,
            UserChannelOrg.channel_id == channel_id,
        )
    ).first()
    if existing is not None:
        return False
    insert_at(session, Root(user_id), UserChannelOrg(channel_id=channel_id))
    return True


def resolve_channel_role(
    session: Session,
    channel_id: str,
    user_id: str,
    email: Optional[str] = None,
) -> Optional[ChannelPermission]:
    """Resolve the caller's role on a channel, or ``None`` without access.

    Order: owner, share bound to the user, pending invite matching ``email``
    (accepted on the spot), global help channel as viewer.
    """
    channel = session.get(Channel, channel_id)
    if channel is None:
        return None

    if channel.owner_id == user_id:
        return ChannelPermission(channel_id, user_id, ChannelRole.OWNER)

    share = session.execute(
        select(ChannelShare).where(
            and_(ChannelShare.channel_id == channel_id, ChannelShare.user_id == user_id)
        )
    ).scalars().first()
    if share is not None:
        return ChannelPermission(channel_id, user_id, ChannelRole(share.role.value))

    normalized = _normalize_email(email)
    if normalized:
        pending = session.execute(
            select(ChannelShare).where(
                ChannelShare.channel_id == channel_id,
                ChannelShare.email == normalized,
                ChannelShare.user_id.is_(None),
            )
        ).scalars().first()
        if pending is not None:
            pending.user_id = user_id
            pending.accepted_at = utcnow()
            ensure_org_entry(session, user_id, channel_id)
            session.flush()
            logger.info(
                "channel_invite_accepted",
                channel_id=channel_id,
                user_id=user_id,
                share_id=pending.id,
            )
            return ChannelPermission(channel_id, user_id, ChannelRole(pending.role.value))

    if channel.is_global_help:
        return ChannelPermission(channel_id, user_id, ChannelRole.VIEWER)

    return None


def _raise_for(level: PermissionLevel, kind: str) -> None:
    raise PermissionDenied(_DENIED_MESSAGES[level].format(kind=kind), status_code=403)


def require_channel_permission(
    session: Session,
    channel_id: str,
    user_id: str,
    level: PermissionLevel,
    email: Optional[str] = None,
) -> ChannelPermission:
    permission = resolve_channel_role(session, channel_id, user_id, email)
    if permission is None:
        raise PermissionDenied("Channel not found or access denied", status_code=404)
    if not permission.allows(level):
        _raise_for(level, "channel")
    return permission


def resolve_folder_role(
    session: Session,
    folder_id: str,
    user_id: str,
    email: Optional[str] = None,
) -> Optional[FolderPermission]:
    """Folder counterpart of :func:`resolve_channel_role` (no global tier)."""
    folder = session.get(Folder, folder_id)
    if folder is None:
        return None

    if folder.user_id == user_id:
        return FolderPermission(folder_id, user_id, ChannelRole.OWNER)

    share = session.execute(
        select(FolderShare).where(
            FolderShare.folder_id == folder_id, FolderShare.user_id == user_id
        )
    ).scalars().first()
    if share is not None:
        return FolderPermission(folder_id, user_id, ChannelRole(share.role.value))

    normalized = _normalize_email(email)
    if normalized:
        pending = session.execute(
            select(FolderShare).where(
                FolderShare.folder_id == folder_id,
                FolderShare.email == normalized,
                FolderShare.user_id.is_(None),
            )
        ).scalars().first()
        if pending is not None:
            pending.user_id = user_id
            pending.accepted_at = utcnow()
            session.flush()
            return FolderPermission(folder_id, user_id, ChannelRole(pending.role.value))

    return None


def require_folder_permission(
    session: Session,
    folder_id: str,
    user_id: str,
    level: PermissionLevel,
    email: Optional[str] = None,
) -> FolderPermission:
    permission = resolve_folder_role(session, folder_id, user_id, email)
    if permission is None:
        raise PermissionDenied("Folder not found or access denied", status_code=404)
    if not permission.allows(level):
        _raise_for(level, "folder")
    return permission


def list_accessible_channels(session: Session, user_id: str) -> list[AccessibleChannel]:
    """Owned channels first, then shared, then global help; no duplicates."""
    result: list[AccessibleChannel] = []
    seen: set[str] = set()

    owned = session.execute(
        select(Channel.id).where(Channel.owner_id == user_id).order_by(Channel.created_at)
    ).scalars()
    for channel_id in owned:
        result.append(AccessibleChannel(channel_id, ChannelRole.OWNER))
        seen.add(channel_id)

    shared = session.execute(
        select(ChannelShare.channel_id, ChannelShare.role, ChannelShare.invited_by, Channel.owner_id)
        .join(Channel, Channel.id == ChannelShare.channel_id)
        .where(ChannelShare.user_id == user_id)
        .order_by(ChannelShare.invited_at)
    ).all()
    for channel_id, role, invited_by, owner_id in shared:
        if channel_id in seen:
            continue
        result.append(
            AccessibleChannel(channel_id, ChannelRole(role.value), invited_by or owner_id)
        )
        seen.add(channel_id)

    global_help = session.execute(
        select(Channel.id).where(Channel.is_global_help.is_(True)).order_by(Channel.created_at)
    ).scalars()
    for channel_id in global_help:
        if channel_id in seen:
            continue
        result.append(AccessibleChannel(channel_id, ChannelRole.VIEWER))
        seen.add(channel_id)

    return result


def convert_pending_invites(session: Session, user_id: str, email: str) -> int:
    """Bind every pending channel and folder invite for ``email`` to the user.

    Channels gained this way are appended to the user's root scope. Returns
    the number of converted invites.
    """
    normalized = _normalize_email(email)
    if not normalized:
        return 0

    now = utcnow()
    converted = 0

    channel_invites = session.execute(
        select(ChannelShare).where(
            ChannelShare.email == normalized, ChannelShare.user_id.is_(None)
        ).order_by(ChannelShare.invited_at)
    ).scalars().all()
    for invite in channel_invites:
        already = session.execute(
            select(ChannelShare.id).where(
                ChannelShare.channel_id == invite.channel_id,
                ChannelShare.user_id == user_id,
            )
        ).first()
        if already is not None:
            # A bound grant already exists; the pending duplicate is redundant.
            session.delete(invite)
            session.flush()
            continue
        invite.user_id = user_id
        invite.accepted_at = now
        session.flush()
        ensure_org_entry(session, user_id, invite.channel_id)
        converted += 1

    folder_invites = session.execute(
        select(FolderShare).where(
            FolderShare.email == normalized, FolderShare.user_id.is_(None)
        )
    ).scalars().all()
    for invite in folder_invites:
        invite.user_id = user_id
        invite.accepted_at = now
        converted += 1
    session.flush()

    if converted:
        logger.info("pending_invites_converted", user_id=user_id, count=converted)
    return converted
