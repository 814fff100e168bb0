"""Dense positional ordering for workspace rows.

Every ordered row carries an integer ``position``. Within one scope the
positions are always exactly ``0..count-1``. Scopes are explicit value
objects; each knows the model it orders, the SQL criteria selecting its
members, and how to bind a row into it.

Functions here only flush. The caller owns the transaction, so a logical
move (shift neighbours, then place the row) commits or rolls back as a unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Sequence, Union

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..errors import ValidationFailed
from .models import Card, Column, Folder, InstructionCard, Task, UserChannelOrg

__all__ = [
    "Root",
    "InFolder",
    "ChannelScope",
    "ColumnCards",
    "ChannelColumns",
    "UserFolders",
    "CardTasks",
    "ChannelTasks",
    "ChannelInstructions",
    "Scope",
    "channel_scope",
    "count",
    "append_position",
    "insert_at",
    "delete_at",
    "move_within",
    "move_across",
    "bulk_replace",
    "ordered_ids",
    "ordered_rows",
]

logger = structlog.get_logger(__name__)


class _BaseScope:
    model: ClassVar[type]
    # Attribute naming a member in ``ordered_ids``/``bulk_replace``.
    key: ClassVar[str] = "id"

    def criteria(self) -> tuple[Any, ...]:  # pragma: no cover - abstract
        raise NotImplementedError

    def bind(self, row: Any) -> None:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Root(_BaseScope):
    """Channels placed at the top level of a user's workspace."""

    user_id: str

    model: ClassVar[type] = UserChannelOrg
    key: ClassVar[str] = "channel_id"

    def criteria(self):
        return (UserChannelOrg.user_id == self.user_id, UserChannelOrg.folder_id.is_(None))

    def bind(self, row: UserChannelOrg) -> None:
        row.user_id = self.user_id
        row.folder_id = None


@dataclass(frozen=True, slots=True)
class InFolder(_BaseScope):
    """Channels placed inside one of a user's folders."""

    user_id: str
    folder_id: str

    model: ClassVar[type] = UserChannelOrg
    key: ClassVar[str] = "channel_id"

    def criteria(self):
        return (
            UserChannelOrg.user_id == self.user_id,
            UserChannelOrg.folder_id == self.folder_id,
        )

    def bind(self, row: UserChannelOrg) -> None:
        row.user_id = self.user_id
        row.folder_id = self.folder_id


ChannelScope = Union[Root, InFolder]


def channel_scope(user_id: str, folder_id: Optional[str]) -> ChannelScope:
    """Map a nullable folder id onto the matching channel scope."""
    if folder_id is None:
        return Root(user_id)
    return InFolder(user_id, folder_id)


@dataclass(frozen=True, slots=True)
class ColumnCards(_BaseScope):
    column_id: str
    archived: bool = False

    model: ClassVar[type] = Card

    def criteria(self):
        return (Card.column_id == self.column_id, Card.is_archived == self.archived)

    def bind(self, row: Card) -> None:
        row.column_id = self.column_id
        row.is_archived = self.archived


@dataclass(frozen=True, slots=True)
class ChannelColumns(_BaseScope):
    channel_id: str

    model: ClassVar[type] = Column

    def criteria(self):
        return (Column.channel_id == self.channel_id,)

    def bind(self, row: Column) -> None:
        row.channel_id = self.channel_id


@dataclass(frozen=True, slots=True)
class UserFolders(_BaseScope):
    user_id: str

    model: ClassVar[type] = Folder

    def criteria(self):
        return (Folder.user_id == self.user_id,)

    def bind(self, row: Folder) -> None:
        row.user_id = self.user_id


@dataclass(frozen=True, slots=True)
class CardTasks(_BaseScope):
    card_id: str

    model: ClassVar[type] = Task

    def criteria(self):
        return (Task.card_id == self.card_id,)

    def bind(self, row: Task) -> None:
        row.card_id = self.card_id


@dataclass(frozen=True, slots=True)
class ChannelTasks(_BaseScope):
    """Tasks not linked to any card."""

    channel_id: str

    model: ClassVar[type] = Task

    def criteria(self):
        return (Task.channel_id == self.channel_id, Task.card_id.is_(None))

    def bind(self, row: Task) -> None:
        row.channel_id = self.channel_id
        row.card_id = None


@dataclass(frozen=True, slots=True)
class ChannelInstructions(_BaseScope):
    channel_id: str

    model: ClassVar[type] = InstructionCard

    def criteria(self):
        return (InstructionCard.channel_id == self.channel_id,)

    def bind(self, row: InstructionCard) -> None:
        row.channel_id = self.channel_id


Scope = Union[
    Root,
    InFolder,
    ColumnCards,
    ChannelColumns,
    UserFolders,
    CardTasks,
    ChannelTasks,
    ChannelInstructions,
]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def count(session: Session, scope: Scope) -> int:
    stmt = select(func.count()).select_from(scope.model).where(*scope.criteria())
    return int(session.execute(stmt).scalar_one())


def append_position(session: Session, scope: Scope) -> int:
    """Position one past the current maximum (``0`` for an empty scope)."""
    stmt = select(func.max(scope.model.position)).where(*scope.criteria())
    current = session.execute(stmt).scalar_one_or_none()
    return 0 if current is None else int(current) + 1


def _shift(session: Session, scope: Scope, delta: int, *conditions: Any) -> None:
    position = scope.model.position
    stmt = (
        update(scope.model)
        .where(*scope.criteria(), *conditions)
        .values(position=position + delta)
        .execution_options(synchronize_session="fetch")
    )
    session.execute(stmt)


def _clamp(index: int, upper: int) -> int:
    return max(0, min(index, upper))


def insert_at(session: Session, scope: Scope, row: Any, index: Optional[int] = None) -> int:
    """Place ``row`` into ``scope`` at ``index`` (append when omitted).

    Out-of-range indexes are clamped to ``[0, count]``. Members at or after
    the slot move up by one.
    """
    if index is None:
        target = append_position(session, scope)
    else:
        target = _clamp(index, count(session, scope))
        _shift(session, scope, 1, scope.model.position >= target)
    scope.bind(row)
    row.position = target
    session.add(row)
    session.flush()
    return target


def _close_gap(session: Session, scope: Scope, position: int) -> None:
    _shift(session, scope, -1, scope.model.position > position)


def delete_at(session: Session, scope: Scope, row: Any) -> None:
    """Delete ``row`` and shift every later member of ``scope`` down by one."""
    position = row.position
    session.delete(row)
    session.flush()
    _close_gap(session, scope, position)


def move_within(session: Session, scope: Scope, row: Any, to_index: int) -> bool:
    """Move ``row`` to ``to_index`` inside its own scope.

    The stored position is the source index. Returns ``False`` when nothing
    moved.
    """
    total = count(session, scope)
    if total == 0:
        return False
    target = _clamp(to_index, total - 1)
    source = row.position
    if source == target:
        return False

    position = scope.model.position
    if source < target:
        _shift(session, scope, -1, position > source, position <= target)
    else:
        _shift(session, scope, 1, position >= target, position < source)
    row.position = target
    session.flush()
    logger.debug(
        "row_moved",
        model=scope.model.__tablename__,
        row_id=row.id,
        from_index=source,
        to_index=target,
    )
    return True


def move_across(
    session: Session,
    source: Scope,
    target: Scope,
    row: Any,
    to_index: Optional[int] = None,
) -> int:
    """Remove ``row`` from ``source`` and insert it into ``target``.

    Equal scopes degrade to :func:`move_within` (appending means the last slot).
    """
    if source == target:
        if to_index is None:
            to_index = count(session, source) - 1
        move_within(session, source, row, to_index)
        return row.position

    _close_gap(session, source, row.position)
    return insert_at(session, target, row, to_index)


def ordered_rows(session: Session, scope: Scope) -> list[Any]:
    stmt = select(scope.model).where(*scope.criteria()).order_by(scope.model.position)
    return list(session.execute(stmt).scalars())


def ordered_ids(session: Session, scope: Scope) -> list[str]:
    return [getattr(row, scope.key) for row in ordered_rows(session, scope)]


def bulk_replace(session: Session, scope: Scope, ids: Sequence[str]) -> list[str]:
    """Set positions from ``ids``; returns the resulting order.

    Ids not in the scope are rejected. Members left out keep their relative
    order after the supplied ones, so the scope stays dense.
    """
    rows = ordered_rows(session, scope)
    by_key = {getattr(row, scope.key): row for row in rows}

    seen: list[str] = []
    for item in ids:
        if item not in by_key:
            raise ValidationFailed(f"Unknown id in ordering: {item}")
        if item in seen:
            raise ValidationFailed(f"Duplicate id in ordering: {item}")
        seen.append(item)

    final = seen + [key for key in by_key if key not in seen]
    for index, key in enumerate(final):
        by_key[key].position = index
    session.flush()
    return final
