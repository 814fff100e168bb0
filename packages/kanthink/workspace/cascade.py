"""Folder share cascade.

A folder grant fans out into one derived channel grant per channel in the
folder. Derived grants carry ``folder_share_id`` so they can be found again
when the channel leaves the folder or the folder grant goes away.

Each per-grant step runs in its own SAVEPOINT: a failing grant is rolled
back alone, recorded on the :class:`CascadeResult`, and the primary
operation continues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import Conflict, NotFound, ValidationFailed
from .models import Channel, ChannelShare, Folder, FolderShare, User, UserChannelOrg, utcnow
from .ordering import InFolder, channel_scope, delete_at, ordered_ids
from .permissions import ensure_org_entry
from .schema.enums import ShareRole

__all__ = [
    "CascadeFailure",
    "CascadeResult",
    "attach_channel",
    "detach_channel",
    "share_folder",
    "update_folder_share_role",
    "revoke_folder_share",
]

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class CascadeFailure:
    """A grant that could not be derived or removed.

    ``folder_share_id`` is None when the step failed before any single
    folder grant was involved, e.g. a whole attach or detach.
    """

    folder_share_id: Optional[str]
    channel_id: str
    error: str
    folder_id: Optional[str] = None


@dataclass(slots=True)
class CascadeResult:
    """Outcome of a cascade step; ``status`` is ``ok`` or ``partial``."""

    created: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[CascadeFailure] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial" if self.failures else "ok"

    @property
    def touched(self) -> bool:
        return bool(self.created or self.removed or self.skipped or self.failures)

    def merge(self, other: "CascadeResult") -> "CascadeResult":
        self.created.extend(other.created)
        self.removed.extend(other.removed)
        self.skipped.extend(other.skipped)
        self.failures.extend(other.failures)
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "created": list(self.created),
            "removed": list(self.removed),
            "skipped": list(self.skipped),
            "failures": [
                {
                    "folder_share_id": failure.folder_share_id,
                    "folder_id": failure.folder_id,
                    "channel_id": failure.channel_id,
                    "error": failure.error,
                }
                for failure in self.failures
            ],
        }


def _folder_shares(session: Session, folder_id: str) -> list[FolderShare]:
    return list(
        session.execute(
            select(FolderShare)
            .where(FolderShare.folder_id == folder_id)
            .order_by(FolderShare.invited_at)
        ).scalars()
    )


def _has_grant(session: Session, channel_id: str, grant: FolderShare) -> bool:
    if grant.user_id is not None:
        hit = session.execute(
            select(ChannelShare.id).where(
                ChannelShare.channel_id == channel_id,
                ChannelShare.user_id == grant.user_id,
            )
        ).first()
        if hit is not None:
            return True
    if grant.email:
        hit = session.execute(
            select(ChannelShare.id).where(
                ChannelShare.channel_id == channel_id,
                ChannelShare.email == grant.email,
            )
        ).first()
        if hit is not None:
            return True
    return False


def _add_org_entry(session: Session, user_id: str, channel_id: str) -> None:
    try:
        with session.begin_nested():
            ensure_org_entry(session, user_id, channel_id)
    except IntegrityError:
        logger.info("org_entry_exists", user_id=user_id, channel_id=channel_id)


def _derive(
    session: Session,
    channel: Channel,
    grant: FolderShare,
    actor_id: Optional[str],
) -> Optional[ChannelShare]:
    if grant.user_id is not None and grant.user_id == channel.owner_id:
        return None
    if _has_grant(session, channel.id, grant):
        return None

    derived = ChannelShare(
        channel_id=channel.id,
        user_id=grant.user_id,
        email=grant.email,
        role=grant.role,
        folder_share_id=grant.id,
        invited_by=actor_id,
        invited_at=utcnow(),
        accepted_at=utcnow() if grant.user_id is not None else None,
    )
    session.add(derived)
    session.flush()
    if grant.user_id is not None:
        _add_org_entry(session, grant.user_id, channel.id)
    return derived


def _apply_grant(
    session: Session,
    result: CascadeResult,
    channel: Channel,
    grant: FolderShare,
    actor_id: Optional[str],
) -> None:
    grant_id = grant.id
    folder_id = grant.folder_id
    channel_id = channel.id
    try:
        with session.begin_nested():
            derived = _derive(session, channel, grant, actor_id)
    except SQLAlchemyError as exc:
        result.failures.append(CascadeFailure(grant_id, channel_id, str(exc), folder_id))
        logger.warning(
            "share_cascade_failed",
            folder_share_id=grant_id,
            channel_id=channel_id,
            error=str(exc),
        )
        return
    if derived is None:
        result.skipped.append(grant_id)
    else:
        result.created.append(derived.id)


def attach_channel(
    session: Session,
    channel_id: str,
    folder_id: str,
    actor_id: Optional[str] = None,
) -> CascadeResult:
    """Create derived grants on ``channel_id`` for every grant on the folder.

    Only channels owned by the folder owner are shared this way; anything
    else is reported as skipped.
    """
    result = CascadeResult()
    folder = session.get(Folder, folder_id)
    channel = session.get(Channel, channel_id)
    if folder is None or channel is None:
        return result

    grants = _folder_shares(session, folder_id)
    if not grants:
        return result
    if channel.owner_id != folder.user_id:
        result.skipped.extend(grant.id for grant in grants)
        logger.info(
            "share_cascade_skipped_foreign_channel",
            channel_id=channel_id,
            folder_id=folder_id,
        )
        return result

    for grant in grants:
        _apply_grant(session, result, channel, grant, actor_id)

    logger.info(
        "share_cascade_attached",
        channel_id=channel_id,
        folder_id=folder_id,
        created=len(result.created),
        status=result.status,
    )
    return result


def _remove_org_entry(session: Session, user_id: str, channel_id: str) -> None:
    entry = session.execute(
        select(UserChannelOrg).where(
            UserChannelOrg.user_id == user_id,
            UserChannelOrg.channel_id == channel_id,
        )
    ).scalars().first()
    if entry is None:
        return
    delete_at(session, channel_scope(user_id, entry.folder_id), entry)


def _remove_derived(session: Session, result: CascadeResult, share: ChannelShare) -> None:
    share_id = share.id
    channel_id = share.channel_id
    user_id = share.user_id
    folder_share_id = share.folder_share_id
    try:
        with session.begin_nested():
            session.delete(share)
            session.flush()
            if user_id is not None:
                _remove_org_entry(session, user_id, channel_id)
    except SQLAlchemyError as exc:
        result.failures.append(CascadeFailure(folder_share_id, channel_id, str(exc)))
        logger.warning(
            "share_cascade_failed",
            channel_share_id=share_id,
            channel_id=channel_id,
            error=str(exc),
        )
        return
    result.removed.append(share_id)


def detach_channel(session: Session, channel_id: str, folder_id: str) -> CascadeResult:
    """Remove grants on ``channel_id`` that came from grants on ``folder_id``.

    Direct grants and grants derived from other folders are left alone.
    """
    result = CascadeResult()
    derived = session.execute(
        select(ChannelShare)
        .join(FolderShare, FolderShare.id == ChannelShare.folder_share_id)
        .where(ChannelShare.channel_id == channel_id, FolderShare.folder_id == folder_id)
    ).scalars().all()
    for share in derived:
        _remove_derived(session, result, share)

    if derived:
        logger.info(
            "share_cascade_detached",
            channel_id=channel_id,
            folder_id=folder_id,
            removed=len(result.removed),
            status=result.status,
        )
    return result


def share_folder(
    session: Session,
    folder: Folder,
    email: str,
    role: ShareRole,
    actor_id: str,
) -> tuple[FolderShare, CascadeResult]:
    """Grant ``role`` on ``folder`` to ``email`` and cascade to its channels."""
    normalized = (email or "").strip().lower()
    if not normalized:
        raise ValidationFailed("Email is required")

    duplicate = session.execute(
        select(FolderShare.id).where(
            FolderShare.folder_id == folder.id, FolderShare.email == normalized
        )
    ).first()
    if duplicate is not None:
        raise Conflict("Folder already shared with this email")

    owner = session.get(User, folder.user_id)
    if owner is not None and owner.email.lower() == normalized:
        raise ValidationFailed("Cannot share with yourself")

    grantee = session.execute(select(User).where(User.email == normalized)).scalars().first()
    now = utcnow()
    grant = FolderShare(
        folder_id=folder.id,
        user_id=grantee.id if grantee else None,
        email=normalized,
        role=role,
        invited_by=actor_id,
        invited_at=now,
        accepted_at=now if grantee else None,
    )
    session.add(grant)
    session.flush()

    result = CascadeResult()
    for channel_id in ordered_ids(session, InFolder(folder.user_id, folder.id)):
        channel = session.get(Channel, channel_id)
        if channel is None or channel.owner_id != folder.user_id:
            result.skipped.append(grant.id)
            continue
        _apply_grant(session, result, channel, grant, actor_id)

    logger.info(
        "folder_shared",
        folder_id=folder.id,
        folder_share_id=grant.id,
        pending=grantee is None,
        created=len(result.created),
        status=result.status,
    )
    return grant, result


def _get_grant(session: Session, folder_id: str, share_id: str) -> FolderShare:
    grant = session.get(FolderShare, share_id)
    if grant is None or grant.folder_id != folder_id:
        raise NotFound("Share not found")
    return grant


def update_folder_share_role(
    session: Session, folder_id: str, share_id: str, role: ShareRole
) -> FolderShare:
    """Change a folder grant's role; derived channel grants follow."""
    grant = _get_grant(session, folder_id, share_id)
    grant.role = role
    derived = session.execute(
        select(ChannelShare).where(ChannelShare.folder_share_id == grant.id)
    ).scalars()
    for share in derived:
        share.role = role
    session.flush()
    logger.info("folder_share_role_updated", folder_share_id=grant.id, role=role.value)
    return grant


def revoke_folder_share(session: Session, folder_id: str, share_id: str) -> CascadeResult:
    """Delete a folder grant together with every grant derived from it."""
    grant = _get_grant(session, folder_id, share_id)
    result = CascadeResult()
    derived = session.execute(
        select(ChannelShare).where(ChannelShare.folder_share_id == grant.id)
    ).scalars().all()
    for share in derived:
        _remove_derived(session, result, share)
    session.delete(grant)
    session.flush()
    logger.info(
        "folder_share_revoked",
        folder_share_id=share_id,
        removed=len(result.removed),
        status=result.status,
    )
    return result
