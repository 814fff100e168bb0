"""Service layer for the Kanthink workspace.

Business logic:
- permission checks per channel/folder
- channel board lifecycle (columns, cards, tasks, instruction cards)
- per-user organization (folders and channel placement)
- direct and folder-derived sharing
- AI usage metering, card generation, instruction runs and card summaries

Every public operation is one transaction: the whole logical change
commits, or nothing does. AI operations read in one transaction, call the
model outside any, and apply the reply in a second one.
"""

from __future__ import annotations

import datetime as dt
import os
import secrets
import string
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

import structlog
from sqlalchemy import create_engine, delete, event, or_, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import (
    Conflict,
    Gone,
    NotFound,
    UpstreamFailed,
    UsageLimitExceeded,
    ValidationFailed,
)
from ..llm import (
    DEFAULT_INSTRUCTION_CARD_COUNT,
    BoardColumn,
    LLMClientResult,
    LLMMessage,
    build_card_prompt,
    build_generate_prompt,
    build_modify_prompt,
    build_move_prompt,
    build_summary_prompt,
    clean_summary,
    get_llm_client_for_user,
    instruction_capabilities,
    parse_card_reply,
    parse_modify_reply,
    parse_move_reply,
)
from . import cascade, ordering, permissions, schemas, usage
from .cascade import CascadeFailure, CascadeResult
from .models import (
    Base,
    Card,
    Channel,
    ChannelInviteLink,
    ChannelShare,
    Column,
    Folder,
    FolderShare,
    InstructionCard,
    Task,
    User,
    UserChannelOrg,
    new_id,
    utcnow,
)
from .ordering import (
    CardTasks,
    ChannelColumns,
    ChannelInstructions,
    ChannelTasks,
    ColumnCards,
    InFolder,
    Root,
    UserFolders,
    channel_scope,
)
from .permissions import AccessibleChannel, ChannelPermission
from .schema.enums import (
    CardSource,
    InstructionAction,
    PermissionLevel,
    TaskStatus,
    UserTier,
)

__all__ = [
    "WorkspaceSettings",
    "WorkspaceDatabase",
    "WorkspaceService",
    "ChannelBoard",
    "InstructionRun",
    "MovedCard",
    "init_engine",
    "DEFAULT_DATABASE_URL",
    "DEFAULT_COLUMN_NAMES",
]

logger = structlog.get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./kanthink.db"
DEFAULT_COLUMN_NAMES = ("Inbox", "Interesting", "Maybe", "Done")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("settings_int_invalid", name=name, raw_value=raw)
        return default


@dataclass(slots=True)
class WorkspaceSettings:
    """Workspace service settings."""

    database_url: str = DEFAULT_DATABASE_URL
    free_monthly_limit: int = 10
    premium_monthly_limit: int = 200
    default_column_names: tuple[str, ...] = DEFAULT_COLUMN_NAMES
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)
    llm_attempts: int = 2
    sqlite_busy_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> WorkspaceSettings:
        database_url = (
            os.getenv("KANTHINK_DB_URL") or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
        )
        origins = os.getenv("KANTHINK_CORS_ORIGINS", "*")
        return cls(
            database_url=database_url,
            free_monthly_limit=_int_env("FREE_MONTHLY_LIMIT", 10),
            premium_monthly_limit=_int_env("PREMIUM_MONTHLY_LIMIT", 200),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=tuple(item.strip() for item in origins.split(",") if item.strip()),
            llm_attempts=max(1, _int_env("KANTHINK_LLM_ATTEMPTS", 2)),
            sqlite_busy_timeout=float(_int_env("KANTHINK_SQLITE_TIMEOUT", 30)),
        )


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite manages BEGIN itself and breaks SAVEPOINT; take over.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # IMMEDIATE takes the write lock up front, so position reads and the
    # shifts that follow them cannot interleave with another writer.
    @event.listens_for(engine, "begin")
    def _on_begin(connection):  # noqa: ANN001
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def _is_sqlite_memory(database_url: str) -> bool:
    url = make_url(database_url)
    return url.database in (None, "", ":memory:") or url.query.get("mode") == "memory"


def init_engine(settings: WorkspaceSettings) -> Engine:
    """Create the SQLAlchemy engine and the schema.

    In-memory SQLite shares one connection through ``StaticPool``; file
    databases get a regular pool and wait up to ``sqlite_busy_timeout``
    seconds for the write lock.
    """
    database_url = settings.database_url
    if database_url.startswith("postgres://"):
        database_url = "postgresql+psycopg://" + database_url[len("postgres://") :]
    elif database_url.startswith("postgresql://") and "+psycopg" not in database_url:
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    if database_url.startswith("sqlite"):
        if _is_sqlite_memory(database_url):
            engine = create_engine(
                database_url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(
                database_url,
                echo=False,
                connect_args={
                    "check_same_thread": False,
                    "timeout": settings.sqlite_busy_timeout,
                },
            )
        _enable_sqlite_savepoints(engine)
    else:
        engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            pool_size=10,
            max_overflow=20,
        )
    Base.metadata.create_all(engine)
    return engine


class WorkspaceDatabase:
    """Database session management."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def session(self) -> Session:
        return self._session_factory()

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)


@dataclass(slots=True)
class ChannelBoard:
    """A channel with everything needed to render its board."""

    channel: Channel
    permission: ChannelPermission
    columns: list[Column] = field(default_factory=list)
    cards: dict[str, list[Card]] = field(default_factory=dict)
    archived_cards: dict[str, list[Card]] = field(default_factory=dict)
    tasks: list[Task] = field(default_factory=list)
    instruction_cards: list[InstructionCard] = field(default_factory=list)


@dataclass(slots=True)
class MovedCard:
    card: Card
    from_column_id: str
    to_column_id: str
    reason: str = ""


@dataclass(slots=True)
class InstructionRun:
    """What one run of an instruction card changed on the board."""

    action: InstructionAction
    target_column_ids: list[str]
    created: list[Card] = field(default_factory=list)
    modified: list[Card] = field(default_factory=list)
    moved: list[MovedCard] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    skipped_card_ids: list[str] = field(default_factory=list)
    message: Optional[str] = None
    source: Optional[str] = None


def _note_message(content: str, author_id: Optional[str] = None) -> dict[str, Any]:
    message: dict[str, Any] = {
        "id": new_id(),
        "type": "note",
        "content": content,
        "createdAt": utcnow().isoformat(),
    }
    if author_id:
        message["authorId"] = author_id
    return message


def _task_scope(task: Task) -> ordering.Scope:
    if task.card_id is None:
        return ChannelTasks(task.channel_id)
    return CardTasks(task.card_id)


_TOKEN_ALPHABET = string.ascii_letters + string.digits


def _invite_token(length: int = 24) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


class WorkspaceService:
    """Workspace business logic."""

    def __init__(self, session: Session, settings: WorkspaceSettings):
        self.session = session
        self.settings = settings

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # ========================================================================
    # Permission checks
    # ========================================================================

    def _email_of(self, user_id: str) -> Optional[str]:
        user = self.session.get(User, user_id)
        return user.email if user else None

    def _require_channel(
        self, channel_id: str, user_id: str, level: PermissionLevel
    ) -> ChannelPermission:
        return permissions.require_channel_permission(
            self.session, channel_id, user_id, level, self._email_of(user_id)
        )

    def _owned_folder(self, folder_id: str, user_id: str, message: str = "Folder not found") -> Folder:
        folder = self.session.get(Folder, folder_id)
        if folder is None or folder.user_id != user_id:
            raise NotFound(message)
        return folder

    def _column(self, channel_id: str, column_id: str) -> Column:
        column = self.session.get(Column, column_id)
        if column is None or column.channel_id != channel_id:
            raise NotFound("Column not found")
        return column

    def _card(self, channel_id: str, card_id: str) -> Card:
        card = self.session.get(Card, card_id)
        if card is None or card.channel_id != channel_id:
            raise NotFound("Card not found")
        return card

    def _task(self, channel_id: str, task_id: str) -> Task:
        task = self.session.get(Task, task_id)
        if task is None or task.channel_id != channel_id:
            raise NotFound("Task not found")
        return task

    def _instruction(self, channel_id: str, instruction_id: str) -> InstructionCard:
        instruction = self.session.get(InstructionCard, instruction_id)
        if instruction is None or instruction.channel_id != channel_id:
            raise NotFound("Instruction card not found")
        return instruction

    def _remove_org_entry(self, user_id: str, channel_id: str) -> None:
        entry = self.session.execute(
            select(UserChannelOrg).where(
                UserChannelOrg.user_id == user_id,
                UserChannelOrg.channel_id == channel_id,
            )
        ).scalars().first()
        if entry is not None:
            ordering.delete_at(self.session, channel_scope(user_id, entry.folder_id), entry)

    # ========================================================================
    # Users
    # ========================================================================

    def register_user(self, request: schemas.UserCreateRequest) -> User:
        """Create or refresh a user by email and bind pending invites."""
        email = request.email.strip().lower()
        with self._transaction():
            user = self.session.execute(
                select(User).where(User.email == email)
            ).scalars().first()
            if user is None:
                user = User(
                    id=request.id or new_id(),
                    email=email,
                    name=request.name,
                    image=request.image,
                )
                self.session.add(user)
                self.session.flush()
                logger.info("user_registered", user_id=user.id)
            else:
                if request.name is not None:
                    user.name = request.name
                if request.image is not None:
                    user.image = request.image
            permissions.convert_pending_invites(self.session, user.id, email)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def set_user_tier(self, email: str, tier: UserTier) -> User:
        with self._transaction():
            user = self.session.execute(
                select(User).where(User.email == email.strip().lower())
            ).scalars().first()
            if user is None:
                raise NotFound("User not found")
            user.tier = tier
        logger.info("user_tier_changed", user_id=user.id, tier=tier.value)
        return user

    # ========================================================================
    # Channels
    # ========================================================================

    def create_channel(self, request: schemas.ChannelCreateRequest, user_id: str) -> Channel:
        names = request.columns or list(self.settings.default_column_names)
        with self._transaction():
            if request.id and self.session.get(Channel, request.id) is not None:
                raise Conflict("Channel already exists")
            channel = Channel(
                id=request.id or new_id(),
                owner_id=user_id,
                name=request.name,
                description=request.description,
                ai_instructions=request.ai_instructions,
                include_backside_in_ai=request.include_backside_in_ai,
            )
            self.session.add(channel)
            self.session.flush()

            scope = ChannelColumns(channel.id)
            for index, name in enumerate(names):
                ordering.insert_at(
                    self.session, scope, Column(name=name, is_ai_target=index == 0)
                )
            ordering.insert_at(
                self.session, Root(user_id), UserChannelOrg(channel_id=channel.id)
            )
        logger.info("channel_created", channel_id=channel.id, owner_id=user_id, columns=len(names))
        return channel

    def list_channels(self, user_id: str) -> list[tuple[Channel, AccessibleChannel]]:
        with self._transaction():
            accessible = permissions.list_accessible_channels(self.session, user_id)
            return [
                (self.session.get(Channel, item.channel_id), item) for item in accessible
            ]

    def get_channel(self, channel_id: str, user_id: str) -> tuple[Channel, ChannelPermission]:
        with self._transaction():
            permission = self._require_channel(channel_id, user_id, PermissionLevel.VIEW)
            return self.session.get(Channel, channel_id), permission

    def get_channel_board(self, channel_id: str, user_id: str) -> ChannelBoard:
        with self._transaction():
            permission = self._require_channel(channel_id, user_id, PermissionLevel.VIEW)
            channel = self.session.get(Channel, channel_id)
            board = ChannelBoard(channel=channel, permission=permission)
            board.columns = ordering.ordered_rows(self.session, ChannelColumns(channel_id))
            for column in board.columns:
                board.cards[column.id] = ordering.ordered_rows(
                    self.session, ColumnCards(column.id, False)
                )
                board.archived_cards[column.id] = ordering.ordered_rows(
                    self.session, ColumnCards(column.id, True)
                )
            board.tasks = list(
                self.session.execute(
                    select(Task)
                    .where(Task.channel_id == channel_id)
                    .order_by(Task.card_id, Task.position)
                ).scalars()
            )
            board.instruction_cards = ordering.ordered_rows(
                self.session, ChannelInstructions(channel_id)
            )
        return board

    def update_channel(
        self, channel_id: str, request: schemas.ChannelUpdateRequest, user_id: str
    ) -> Channel:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            channel = self.session.get(Channel, channel_id)
            if request.name is not None:
                channel.name = request.name
            if request.description is not None:
                channel.description = request.description
            if request.status is not None:
                channel.status = request.status
            if request.ai_instructions is not None:
                channel.ai_instructions = request.ai_instructions
            if request.include_backside_in_ai is not None:
                channel.include_backside_in_ai = request.include_backside_in_ai
            channel.updated_at = utcnow()
        return channel

    def delete_channel(self, channel_id: str, user_id: str) -> None:
        """Delete a channel, its content, its grants, and every placement of it."""
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.DELETE)
            entries = self.session.execute(
                select(UserChannelOrg).where(UserChannelOrg.channel_id == channel_id)
            ).scalars().all()
            for entry in entries:
                ordering.delete_at(
                    self.session, channel_scope(entry.user_id, entry.folder_id), entry
                )

            for model in (Task, Card, Column, InstructionCard, ChannelShare):
                self.session.execute(
                    delete(model)
                    .where(model.channel_id == channel_id)
                    .execution_options(synchronize_session="fetch")
                )
            self.session.delete(self.session.get(Channel, channel_id))
        logger.info("channel_deleted", channel_id=channel_id, placements=len(entries))

    # ========================================================================
    # Columns
    # ========================================================================

    def create_column(
        self, channel_id: str, request: schemas.ColumnCreateRequest, user_id: str
    ) -> Column:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            column = Column(
                id=request.id or new_id(),
                channel_id=channel_id,
                name=request.name,
                instructions=request.instructions,
            )
            ordering.insert_at(
                self.session, ChannelColumns(channel_id), column, request.position
            )
        return column

    def update_column(
        self,
        channel_id: str,
        column_id: str,
        request: schemas.ColumnUpdateRequest,
        user_id: str,
    ) -> Column:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            column = self._column(channel_id, column_id)
            if request.name is not None:
                column.name = request.name
            if request.instructions is not None:
                column.instructions = request.instructions
            if request.processing_prompt is not None:
                column.processing_prompt = request.processing_prompt
            if request.auto_process is not None:
                column.auto_process = request.auto_process
            if request.is_ai_target is not None:
                if request.is_ai_target:
                    for other in ordering.ordered_rows(self.session, ChannelColumns(channel_id)):
                        other.is_ai_target = other.id == column.id
                else:
                    column.is_ai_target = False
            column.updated_at = utcnow()
        return column

    def reorder_column(
        self, channel_id: str, request: schemas.ColumnReorderRequest, user_id: str
    ) -> list[str]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            column = self._column(channel_id, request.column_id)
            scope = ChannelColumns(channel_id)
            ordering.move_within(self.session, scope, column, request.to_index)
            return ordering.ordered_ids(self.session, scope)

    def delete_column(self, channel_id: str, column_id: str, user_id: str) -> str:
        """Delete a column, moving its cards to the first remaining column.

        Returns the id of the column that received the cards.
        """
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            column = self._column(channel_id, column_id)
            columns = ordering.ordered_rows(self.session, ChannelColumns(channel_id))
            if len(columns) <= 1:
                raise ValidationFailed("Cannot delete the last column")
            destination = next(item for item in columns if item.id != column.id)

            moved = 0
            for archived in (False, True):
                source = ColumnCards(column.id, archived)
                target = ColumnCards(destination.id, archived)
                for card in ordering.ordered_rows(self.session, source):
                    ordering.move_across(self.session, source, target, card)
                    moved += 1
            if column.is_ai_target:
                destination.is_ai_target = True

            ordering.delete_at(self.session, ChannelColumns(channel_id), column)
        logger.info(
            "column_deleted",
            channel_id=channel_id,
            column_id=column_id,
            destination_id=destination.id,
            moved_cards=moved,
        )
        return destination.id

    # ========================================================================
    # Cards
    # ========================================================================

    def create_card(
        self, channel_id: str, request: schemas.CardCreateRequest, user_id: str
    ) -> Card:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            self._column(channel_id, request.column_id)
            if request.messages is not None:
                messages = list(request.messages)
            elif request.content:
                messages = [_note_message(request.content, user_id)]
            else:
                messages = []
            card = Card(
                id=request.id or new_id(),
                channel_id=channel_id,
                title=request.title,
                messages=messages,
                summary=request.summary,
                source=request.source,
                tags=list(request.tags),
                created_by_instruction_id=request.created_by_instruction_id,
            )
            ordering.insert_at(
                self.session,
                ColumnCards(request.column_id, request.is_archived),
                card,
                request.position,
            )
        return card

    def get_card(self, channel_id: str, card_id: str, user_id: str) -> Card:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.VIEW)
            return self._card(channel_id, card_id)

    def update_card(
        self,
        channel_id: str,
        card_id: str,
        request: schemas.CardUpdateRequest,
        user_id: str,
    ) -> Card:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            card = self._card(channel_id, card_id)
            if request.title is not None:
                card.title = request.title
            if request.messages is not None:
                card.messages = list(request.messages)
            if request.summary is not None:
                card.summary = request.summary
                card.summary_updated_at = utcnow()
            if request.tags is not None:
                card.tags = list(request.tags)
            if request.hide_completed_tasks is not None:
                card.hide_completed_tasks = request.hide_completed_tasks
            card.updated_at = utcnow()
        return card

    def move_card(
        self, channel_id: str, request: schemas.CardMoveRequest, user_id: str
    ) -> Card:
        """Move a card within its column, to another column, or across the archive."""
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            card = self._card(channel_id, request.card_id)
            column_id = request.to_column_id or card.column_id
            self._column(channel_id, column_id)
            archived = card.is_archived if request.archived is None else request.archived

            source = ColumnCards(card.column_id, card.is_archived)
            target = ColumnCards(column_id, archived)
            if source == target and request.to_index is not None:
                ordering.move_within(self.session, source, card, request.to_index)
            elif source != target:
                ordering.move_across(self.session, source, target, card, request.to_index)
            card.updated_at = utcnow()
        logger.debug(
            "card_moved",
            card_id=card.id,
            column_id=card.column_id,
            archived=card.is_archived,
            position=card.position,
        )
        return card

    def reorder_cards(
        self, channel_id: str, request: schemas.CardBulkReorderRequest, user_id: str
    ) -> list[str]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            self._column(channel_id, request.column_id)
            return ordering.bulk_replace(
                self.session,
                ColumnCards(request.column_id, request.archived),
                request.card_ids,
            )

    def delete_card(self, channel_id: str, card_id: str, user_id: str) -> None:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            card = self._card(channel_id, card_id)
            self.session.execute(
                delete(Task)
                .where(Task.card_id == card.id)
                .execution_options(synchronize_session="fetch")
            )
            ordering.delete_at(
                self.session, ColumnCards(card.column_id, card.is_archived), card
            )

    # ========================================================================
    # Tasks
    # ========================================================================

    def create_task(
        self, channel_id: str, request: schemas.TaskCreateRequest, user_id: str
    ) -> Task:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            if request.card_id is not None:
                self._card(channel_id, request.card_id)
                scope: ordering.Scope = CardTasks(request.card_id)
            else:
                scope = ChannelTasks(channel_id)
            task = Task(
                id=request.id or new_id(),
                channel_id=channel_id,
                title=request.title,
                description=request.description,
                status=request.status,
                assigned_to=request.assigned_to,
                due_date=request.due_date,
                completed_at=utcnow() if request.status is TaskStatus.DONE else None,
                created_by=user_id,
            )
            ordering.insert_at(self.session, scope, task, request.position)
        return task

    def update_task(
        self,
        channel_id: str,
        task_id: str,
        request: schemas.TaskUpdateRequest,
        user_id: str,
    ) -> Task:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            task = self._task(channel_id, task_id)
            if request.title is not None:
                task.title = request.title
            if request.description is not None:
                task.description = request.description
            if request.status is not None and request.status is not task.status:
                task.status = request.status
                task.completed_at = utcnow() if request.status is TaskStatus.DONE else None
            if request.assigned_to is not None:
                task.assigned_to = request.assigned_to
            if request.due_date is not None:
                task.due_date = request.due_date
            if "card_id" in request.model_fields_set and request.card_id != task.card_id:
                if request.card_id is not None:
                    self._card(channel_id, request.card_id)
                    target: ordering.Scope = CardTasks(request.card_id)
                else:
                    target = ChannelTasks(channel_id)
                ordering.move_across(self.session, _task_scope(task), target, task)
            task.updated_at = utcnow()
        return task

    def reorder_task(
        self, channel_id: str, request: schemas.TaskReorderRequest, user_id: str
    ) -> list[str]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            task = self._task(channel_id, request.task_id)
            scope = _task_scope(task)
            ordering.move_within(self.session, scope, task, request.to_index)
            return ordering.ordered_ids(self.session, scope)

    def delete_task(self, channel_id: str, task_id: str, user_id: str) -> None:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            task = self._task(channel_id, task_id)
            ordering.delete_at(self.session, _task_scope(task), task)

    # ========================================================================
    # Instruction cards
    # ========================================================================

    def list_instruction_cards(self, channel_id: str, user_id: str) -> list[InstructionCard]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.VIEW)
            return ordering.ordered_rows(self.session, ChannelInstructions(channel_id))

    def create_instruction_card(
        self,
        channel_id: str,
        request: schemas.InstructionCardCreateRequest,
        user_id: str,
    ) -> InstructionCard:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            instruction = InstructionCard(
                id=request.id or new_id(),
                channel_id=channel_id,
                title=request.title,
                instructions=request.instructions,
                action=request.action,
                target=dict(request.target),
                context_columns=request.context_columns,
                run_mode=request.run_mode,
                card_count=request.card_count,
                is_enabled=request.is_enabled,
            )
            ordering.insert_at(
                self.session, ChannelInstructions(channel_id), instruction, request.position
            )
        return instruction

    def update_instruction_card(
        self,
        channel_id: str,
        instruction_id: str,
        request: schemas.InstructionCardUpdateRequest,
        user_id: str,
    ) -> InstructionCard:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            instruction = self._instruction(channel_id, instruction_id)
            for name in (
                "title",
                "instructions",
                "action",
                "target",
                "context_columns",
                "run_mode",
                "card_count",
                "is_enabled",
            ):
                value = getattr(request, name)
                if value is not None:
                    setattr(instruction, name, value)
            instruction.updated_at = utcnow()
        return instruction

    def reorder_instruction_card(
        self,
        channel_id: str,
        request: schemas.InstructionCardReorderRequest,
        user_id: str,
    ) -> list[str]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            instruction = self._instruction(channel_id, request.instruction_id)
            scope = ChannelInstructions(channel_id)
            ordering.move_within(self.session, scope, instruction, request.to_index)
            return ordering.ordered_ids(self.session, scope)

    def delete_instruction_card(self, channel_id: str, instruction_id: str, user_id: str) -> None:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            instruction = self._instruction(channel_id, instruction_id)
            ordering.delete_at(self.session, ChannelInstructions(channel_id), instruction)

    # ========================================================================
    # Folders
    # ========================================================================

    def get_layout(self, user_id: str) -> tuple[list[tuple[Folder, list[str]]], list[str]]:
        """Folders (with their ordered channel ids) and root channel ids."""
        with self._transaction():
            folders = ordering.ordered_rows(self.session, UserFolders(user_id))
            layout = [
                (folder, ordering.ordered_ids(self.session, InFolder(user_id, folder.id)))
                for folder in folders
            ]
            return layout, ordering.ordered_ids(self.session, Root(user_id))

    def create_folder(self, request: schemas.FolderCreateRequest, user_id: str) -> Folder:
        with self._transaction():
            folder = Folder(id=request.id or new_id(), name=request.name)
            ordering.insert_at(self.session, UserFolders(user_id), folder, request.position)
        logger.info("folder_created", folder_id=folder.id, user_id=user_id)
        return folder

    def update_folder(
        self, folder_id: str, request: schemas.FolderUpdateRequest, user_id: str
    ) -> Folder:
        with self._transaction():
            folder = self._owned_folder(folder_id, user_id)
            if request.name is not None:
                folder.name = request.name
            if request.is_collapsed is not None:
                folder.is_collapsed = request.is_collapsed
            folder.updated_at = utcnow()
        return folder

    def delete_folder(self, folder_id: str, user_id: str) -> CascadeResult:
        """Delete a folder; its channels go back to the end of the root level."""
        result = CascadeResult()
        with self._transaction():
            folder = self._owned_folder(folder_id, user_id)
            source = InFolder(user_id, folder_id)
            for entry in ordering.ordered_rows(self.session, source):
                result.merge(self._cascade_detach(entry.channel_id, folder_id))
                ordering.move_across(self.session, source, Root(user_id), entry)

            grants = self.session.execute(
                select(FolderShare.id).where(FolderShare.folder_id == folder_id)
            ).scalars().all()
            for share_id in grants:
                result.merge(cascade.revoke_folder_share(self.session, folder_id, share_id))

            ordering.delete_at(self.session, UserFolders(user_id), folder)
        logger.info("folder_deleted", folder_id=folder_id, status=result.status)
        return result

    # ========================================================================
    # Organization
    # ========================================================================

    def _cascade_guarded(self, action: str, channel_id: str, folder_id: str, run) -> CascadeResult:  # noqa: ANN001
        try:
            with self.session.begin_nested():
                return run()
        except SQLAlchemyError as exc:
            logger.warning(
                "share_cascade_failed",
                action=action,
                channel_id=channel_id,
                folder_id=folder_id,
                error=str(exc),
            )
            result = CascadeResult()
            result.failures.append(CascadeFailure(None, channel_id, str(exc), folder_id))
            return result

    def _cascade_detach(self, channel_id: str, folder_id: str) -> CascadeResult:
        return self._cascade_guarded(
            "detach",
            channel_id,
            folder_id,
            lambda: cascade.detach_channel(self.session, channel_id, folder_id),
        )

    def _cascade_attach(self, channel_id: str, folder_id: str, user_id: str) -> CascadeResult:
        return self._cascade_guarded(
            "attach",
            channel_id,
            folder_id,
            lambda: cascade.attach_channel(self.session, channel_id, folder_id, user_id),
        )

    def organize(self, request: schemas.OrganizationRequest, user_id: str) -> dict[str, Any]:
        """Dispatch one of the workspace ordering operations."""
        handlers = {
            "moveChannelToFolder": self._move_channel_to_folder,
            "reorderChannelInFolder": self._reorder_channel_in_folder,
            "reorderChannels": self._reorder_channels,
            "reorderFolders": self._reorder_folders,
        }
        handler = handlers.get(request.operation or "")
        if handler is None:
            raise ValidationFailed("Invalid operation")
        with self._transaction():
            payload = handler(request, user_id)
        logger.info("organization_updated", operation=request.operation, user_id=user_id)
        return payload

    def _move_channel_to_folder(
        self, request: schemas.OrganizationRequest, user_id: str
    ) -> dict[str, Any]:
        if not request.channel_id:
            raise ValidationFailed("channelId is required")
        entry = self.session.execute(
            select(UserChannelOrg).where(
                UserChannelOrg.user_id == user_id,
                UserChannelOrg.channel_id == request.channel_id,
            )
        ).scalars().first()
        if entry is None:
            raise NotFound("Channel not found in organization")
        if request.target_folder_id:
            self._owned_folder(request.target_folder_id, user_id, "Target folder not found")

        previous_folder = entry.folder_id
        source = channel_scope(user_id, previous_folder)
        target = channel_scope(user_id, request.target_folder_id)
        if source == target and request.to_index is None:
            return {"success": True}
        ordering.move_across(self.session, source, target, entry, request.to_index)

        payload: dict[str, Any] = {"success": True}
        if previous_folder != request.target_folder_id:
            result = CascadeResult()
            if previous_folder:
                result.merge(self._cascade_detach(request.channel_id, previous_folder))
            if request.target_folder_id:
                result.merge(
                    self._cascade_attach(request.channel_id, request.target_folder_id, user_id)
                )
            if result.touched:
                payload["cascade"] = result.as_dict()
        logger.info(
            "channel_moved",
            channel_id=request.channel_id,
            from_folder=previous_folder,
            to_folder=request.target_folder_id,
            position=entry.position,
        )
        return payload

    def _reorder_channel_in_folder(
        self, request: schemas.OrganizationRequest, user_id: str
    ) -> dict[str, Any]:
        if not request.channel_id or request.from_index is None or request.to_index is None:
            raise ValidationFailed("channelId, fromIndex, and toIndex are required")
        if request.folder_id:
            self._owned_folder(request.folder_id, user_id)
        scope = channel_scope(user_id, request.folder_id)
        entry = self.session.execute(
            select(UserChannelOrg).where(
                *scope.criteria(), UserChannelOrg.channel_id == request.channel_id
            )
        ).scalars().first()
        if entry is None:
            raise NotFound("Channel not found")
        if entry.position != request.from_index:
            logger.debug(
                "stale_from_index",
                channel_id=request.channel_id,
                stored=entry.position,
                supplied=request.from_index,
            )
        ordering.move_within(self.session, scope, entry, request.to_index)
        return {"success": True}

    def _reorder_channels(
        self, request: schemas.OrganizationRequest, user_id: str
    ) -> dict[str, Any]:
        if request.channel_order is None:
            raise ValidationFailed("channelOrder array is required")
        # Ids that are no longer at the root (moved, unshared) are ignored.
        at_root = set(ordering.ordered_ids(self.session, Root(user_id)))
        order: list[str] = []
        skipped: list[str] = []
        for channel_id in request.channel_order:
            if channel_id in at_root and channel_id not in order:
                order.append(channel_id)
            else:
                skipped.append(channel_id)
        if skipped:
            logger.debug("reorder_ids_skipped", user_id=user_id, channel_ids=skipped)
        ordering.bulk_replace(self.session, Root(user_id), order)
        return {"success": True}

    def _reorder_folders(
        self, request: schemas.OrganizationRequest, user_id: str
    ) -> dict[str, Any]:
        if not request.folder_id or request.from_index is None or request.to_index is None:
            raise ValidationFailed("folderId, fromIndex, and toIndex are required")
        folder = self._owned_folder(request.folder_id, user_id)
        ordering.move_within(self.session, UserFolders(user_id), folder, request.to_index)
        return {"success": True}

    # ========================================================================
    # Channel shares
    # ========================================================================

    def list_channel_shares(self, channel_id: str, user_id: str) -> list[ChannelShare]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.VIEW)
            return list(
                self.session.execute(
                    select(ChannelShare)
                    .where(ChannelShare.channel_id == channel_id)
                    .order_by(ChannelShare.invited_at)
                ).scalars()
            )

    def share_channel(
        self, channel_id: str, request: schemas.ShareCreateRequest, user_id: str
    ) -> ChannelShare:
        email = request.email.strip().lower()
        if not email:
            raise ValidationFailed("Email is required")
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.MANAGE_SHARES)
            channel = self.session.get(Channel, channel_id)
            owner = self.session.get(User, channel.owner_id)
            if owner is not None and owner.email.lower() == email:
                raise ValidationFailed("Cannot share with the channel owner")

            grantee = self.session.execute(
                select(User).where(User.email == email)
            ).scalars().first()
            clauses = [ChannelShare.email == email]
            if grantee is not None:
                clauses.append(ChannelShare.user_id == grantee.id)
            for clause in clauses:
                duplicate = self.session.execute(
                    select(ChannelShare.id).where(ChannelShare.channel_id == channel_id, clause)
                ).first()
                if duplicate is not None:
                    raise Conflict("Channel already shared with this user")

            now = utcnow()
            share = ChannelShare(
                channel_id=channel_id,
                user_id=grantee.id if grantee else None,
                email=email,
                role=request.role,
                invited_by=user_id,
                invited_at=now,
                accepted_at=now if grantee else None,
            )
            self.session.add(share)
            self.session.flush()
            if grantee is not None:
                permissions.ensure_org_entry(self.session, grantee.id, channel_id)
        logger.info(
            "channel_shared",
            channel_id=channel_id,
            share_id=share.id,
            pending=grantee is None,
        )
        return share

    def _channel_share(self, channel_id: str, share_id: str) -> ChannelShare:
        share = self.session.get(ChannelShare, share_id)
        if share is None or share.channel_id != channel_id:
            raise NotFound("Share not found")
        return share

    def update_channel_share(
        self,
        channel_id: str,
        share_id: str,
        request: schemas.ShareUpdateRequest,
        user_id: str,
    ) -> ChannelShare:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.MANAGE_SHARES)
            share = self._channel_share(channel_id, share_id)
            share.role = request.role
        return share

    def revoke_channel_share(self, channel_id: str, share_id: str, user_id: str) -> None:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.MANAGE_SHARES)
            share = self._channel_share(channel_id, share_id)
            if share.user_id is not None:
                self._remove_org_entry(share.user_id, channel_id)
            self.session.delete(share)
        logger.info("channel_share_revoked", channel_id=channel_id, share_id=share_id)

    # ========================================================================
    # Invite links
    # ========================================================================

    def list_invite_links(self, channel_id: str, user_id: str) -> list[ChannelInviteLink]:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.MANAGE_SHARES)
            return list(
                self.session.execute(
                    select(ChannelInviteLink)
                    .where(ChannelInviteLink.channel_id == channel_id)
                    .order_by(ChannelInviteLink.created_at.desc())
                ).scalars()
            )

    def create_invite_link(
        self, channel_id: str, request: schemas.InviteLinkCreateRequest, user_id: str
    ) -> ChannelInviteLink:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.MANAGE_SHARES)
            expires_at = None
            if request.expires_in_days:
                expires_at = utcnow() + dt.timedelta(days=request.expires_in_days)
            link = ChannelInviteLink(
                channel_id=channel_id,
                token=_invite_token(),
                default_role=request.default_role,
                expires_at=expires_at,
                max_uses=request.max_uses,
                use_count=0,
                created_by=user_id,
            )
            self.session.add(link)
            self.session.flush()
        logger.info(
            "invite_link_created",
            channel_id=channel_id,
            link_id=link.id,
            role=link.default_role.value,
        )
        return link

    def revoke_invite_link(self, channel_id: str, link_id: str, user_id: str) -> None:
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.MANAGE_SHARES)
            link = self.session.get(ChannelInviteLink, link_id)
            if link is None or link.channel_id != channel_id:
                raise NotFound("Invite link not found")
            self.session.delete(link)
        logger.info("invite_link_revoked", channel_id=channel_id, link_id=link_id)

    def _usable_invite(self, token: str) -> ChannelInviteLink:
        link = self.session.execute(
            select(ChannelInviteLink).where(ChannelInviteLink.token == token)
        ).scalars().first()
        if link is None:
            raise NotFound("Invalid or expired invite link")
        if link.is_expired:
            raise Gone("This invite link has expired")
        if link.is_exhausted:
            raise Gone("This invite link has reached its maximum uses")
        return link

    def preview_invite(
        self, token: str, user_id: Optional[str] = None
    ) -> schemas.InvitePreviewResponse:
        """Describe the channel behind ``token`` and the caller's current access."""
        with self._transaction():
            link = self._usable_invite(token)
            channel = self.session.get(Channel, link.channel_id)
            owner = self.session.get(User, channel.owner_id)
            status = schemas.InviteUserStatus(authenticated=user_id is not None)
            if user_id is not None:
                permission = permissions.resolve_channel_role(
                    self.session, channel.id, user_id, self._email_of(user_id)
                )
                if permission is not None:
                    status.has_access = True
                    status.role = permission.role
            return schemas.InvitePreviewResponse(
                channel_id=channel.id,
                channel_name=channel.name,
                channel_description=channel.description,
                owner_name=owner.name if owner else None,
                default_role=link.default_role,
                user_status=status,
            )

    def accept_invite(self, token: str, user_id: str) -> schemas.InviteAcceptResponse:
        """Grant the link's role to the caller and place the channel at their root."""
        with self._transaction():
            link = self._usable_invite(token)
            channel = self.session.get(Channel, link.channel_id)
            if channel.owner_id == user_id:
                raise ValidationFailed("You are already the owner of this channel")

            email = self._email_of(user_id)
            clauses = [ChannelShare.user_id == user_id]
            if email:
                clauses.append(ChannelShare.email == email)
            existing = self.session.execute(
                select(ChannelShare.id).where(
                    ChannelShare.channel_id == channel.id, or_(*clauses)
                )
            ).first()
            if existing is not None:
                raise ValidationFailed("You already have access to this channel")

            claimed = self.session.execute(
                update(ChannelInviteLink)
                .where(
                    ChannelInviteLink.id == link.id,
                    or_(
                        ChannelInviteLink.max_uses.is_(None),
                        ChannelInviteLink.use_count < ChannelInviteLink.max_uses,
                    ),
                )
                .values(use_count=ChannelInviteLink.use_count + 1)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                raise Gone("This invite link has reached its maximum uses")
            self.session.refresh(link)

            now = utcnow()
            share = ChannelShare(
                channel_id=channel.id,
                user_id=user_id,
                email=email,
                role=link.default_role,
                invited_by=link.created_by,
                invited_at=now,
                accepted_at=now,
            )
            self.session.add(share)
            self.session.flush()
            permissions.ensure_org_entry(self.session, user_id, channel.id)
        logger.info(
            "invite_link_accepted",
            channel_id=channel.id,
            link_id=link.id,
            share_id=share.id,
            use_count=link.use_count,
        )
        return schemas.InviteAcceptResponse(
            status="accepted",
            channel_id=channel.id,
            channel_name=channel.name,
            role=share.role,
        )

    # ========================================================================
    # Folder shares
    # ========================================================================

    def _manage_folder(self, folder_id: str, user_id: str) -> Folder:
        permissions.require_folder_permission(
            self.session,
            folder_id,
            user_id,
            PermissionLevel.MANAGE_SHARES,
            self._email_of(user_id),
        )
        return self.session.get(Folder, folder_id)

    def list_folder_shares(self, folder_id: str, user_id: str) -> list[FolderShare]:
        with self._transaction():
            self._manage_folder(folder_id, user_id)
            return list(
                self.session.execute(
                    select(FolderShare)
                    .where(FolderShare.folder_id == folder_id)
                    .order_by(FolderShare.invited_at)
                ).scalars()
            )

    def share_folder(
        self, folder_id: str, request: schemas.ShareCreateRequest, user_id: str
    ) -> tuple[FolderShare, CascadeResult]:
        with self._transaction():
            folder = self._manage_folder(folder_id, user_id)
            return cascade.share_folder(
                self.session, folder, request.email, request.role, user_id
            )

    def update_folder_share(
        self,
        folder_id: str,
        share_id: str,
        request: schemas.ShareUpdateRequest,
        user_id: str,
    ) -> FolderShare:
        with self._transaction():
            self._manage_folder(folder_id, user_id)
            return cascade.update_folder_share_role(
                self.session, folder_id, share_id, request.role
            )

    def revoke_folder_share(self, folder_id: str, share_id: str, user_id: str) -> CascadeResult:
        with self._transaction():
            self._manage_folder(folder_id, user_id)
            return cascade.revoke_folder_share(self.session, folder_id, share_id)

    # ========================================================================
    # Usage & BYOK
    # ========================================================================

    def get_usage(self, user_id: str) -> usage.UsageStatus:
        return usage.get_usage_status(self.session, user_id, self.settings)

    def get_byok_status(self, user_id: str) -> Optional[usage.ByokConfig]:
        return usage.get_byok_config(self.session, user_id)

    def save_byok(self, request: schemas.ByokSaveRequest, user_id: str) -> usage.ByokConfig:
        with self._transaction():
            return usage.save_byok_config(
                self.session, user_id, request.provider, request.api_key, request.model
            )

    def update_byok_model(
        self, request: schemas.ByokModelRequest, user_id: str
    ) -> usage.ByokConfig:
        with self._transaction():
            return usage.update_byok_model(self.session, user_id, request.model)

    def clear_byok(self, user_id: str) -> None:
        with self._transaction():
            usage.clear_byok_config(self.session, user_id)

    # ========================================================================
    # AI card generation
    # ========================================================================

    def _resolve_llm(self, user_id: str) -> LLMClientResult:
        resolved = get_llm_client_for_user(self.session, user_id, self.settings)
        if resolved.client is None:
            raise UsageLimitExceeded(resolved.error or "No AI access available")
        return resolved

    def _ask_llm(
        self,
        resolved: LLMClientResult,
        messages: list[LLMMessage],
        parse: Callable[[str], Any],
        failure: str,
        empty: str,
    ) -> Any:
        """Call the model with retries; ``parse`` returns None for an unusable reply.

        Must run outside a transaction so a slow provider never holds the
        database write lock.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.settings.llm_attempts + 1):
            try:
                reply = resolved.client.complete(messages)
            except Exception as exc:  # noqa: BLE001 - provider SDK errors vary
                last_error = exc
                logger.warning(
                    "llm_call_failed",
                    attempt=attempt,
                    provider=resolved.client.name,
                    error=str(exc),
                )
                continue
            parsed = parse(reply.content)
            if parsed is not None:
                return parsed
            logger.warning("llm_reply_unusable", attempt=attempt, provider=resolved.client.name)
        if last_error is not None:
            raise UpstreamFailed(f"{failure}: {last_error}")
        raise UpstreamFailed(empty)

    def _board_columns(self, columns: list[Column]) -> list[BoardColumn]:
        return [
            BoardColumn(
                id=column.id,
                name=column.name,
                instructions=column.instructions,
                cards=ordering.ordered_rows(self.session, ColumnCards(column.id, False)),
                archived_cards=ordering.ordered_rows(self.session, ColumnCards(column.id, True)),
            )
            for column in columns
        ]

    def generate_cards(
        self, request: schemas.GenerateCardsRequest, user_id: str
    ) -> tuple[list[Card], str]:
        """Ask the user's LLM for new cards and append them to the target column."""
        with self._transaction():
            self._require_channel(request.channel_id, user_id, PermissionLevel.EDIT)
            channel = self.session.get(Channel, request.channel_id)
            columns = ordering.ordered_rows(self.session, ChannelColumns(channel.id))
            if not columns:
                raise ValidationFailed("Channel has no columns")
            if request.column_id:
                target = self._column(channel.id, request.column_id)
            else:
                target = next((item for item in columns if item.is_ai_target), columns[0])
            target_id = target.id

            board = self._board_columns(columns)
            target_view = next(item for item in board if item.id == target_id)
            resolved = self._resolve_llm(user_id)
            messages = build_card_prompt(
                channel, board, target_view, request.count, request.system_instructions
            )

        drafts = self._ask_llm(
            resolved,
            messages,
            lambda content: parse_card_reply(content) or None,
            "AI generation failed",
            "AI generation returned no cards",
        )

        with self._transaction():
            self._require_channel(request.channel_id, user_id, PermissionLevel.EDIT)
            scope = ColumnCards(self._column(request.channel_id, target_id).id, False)
            created: list[Card] = []
            for draft in drafts[: request.count]:
                card = Card(
                    channel_id=request.channel_id,
                    title=draft.title,
                    messages=[_note_message(draft.content)] if draft.content else [],
                    source=CardSource.AI,
                )
                ordering.insert_at(self.session, scope, card)
                created.append(card)

            if resolved.metered:
                usage.record_usage(self.session, user_id, "generate-cards")
        logger.info(
            "cards_generated",
            channel_id=request.channel_id,
            column_id=target_id,
            count=len(created),
            source=resolved.source,
        )
        return created, resolved.source

    # ========================================================================
    # Instruction runs and card summaries
    # ========================================================================

    def _instruction_targets(
        self, instruction: InstructionCard, columns: list[Column]
    ) -> list[Column]:
        """Resolve the stored target; ids that are not columns of the channel are dropped."""
        target = instruction.target or {}
        kind = target.get("type", "board")
        if kind == "board":
            return list(columns)
        if kind == "column":
            wanted = [target.get("columnId")]
        elif kind == "columns":
            wanted = list(target.get("columnIds") or [])
        else:
            raise ValidationFailed(f"Unknown instruction target: {kind}")
        by_id = {column.id: column for column in columns}
        return [by_id[column_id] for column_id in dict.fromkeys(wanted) if column_id in by_id]

    def _context_columns(
        self, instruction: InstructionCard, columns: list[Column]
    ) -> list[Column]:
        if instruction.context_columns is None:
            return list(columns)
        wanted = set(instruction.context_columns)
        return [column for column in columns if column.id in wanted]

    def _cards_to_process(
        self, channel_id: str, targets: list[Column], triggering_card_id: Optional[str]
    ) -> list[Card]:
        if triggering_card_id is not None:
            return [self._card(channel_id, triggering_card_id)]
        cards: list[Card] = []
        for column in targets:
            cards.extend(ordering.ordered_rows(self.session, ColumnCards(column.id, False)))
        return cards

    def run_instruction(
        self, request: schemas.RunInstructionRequest, user_id: str
    ) -> InstructionRun:
        """Run an instruction card against its target columns.

        Generate appends new cards to the first target column. Modify rewrites
        the cards in the target columns, move sorts them into other columns.
        Manual runs ignore ``is_enabled``; that flag only gates automatic runs.
        """
        channel_id = request.channel_id
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            instruction = self._instruction(channel_id, request.instruction_id)
            channel = self.session.get(Channel, channel_id)
            columns = ordering.ordered_rows(self.session, ChannelColumns(channel_id))
            targets = self._instruction_targets(instruction, columns)
            action = instruction.action
            run = InstructionRun(action, [column.id for column in targets])

            card_ids: list[str] = []
            if action is InstructionAction.GENERATE:
                if not targets:
                    raise ValidationFailed("Instruction has no target columns")
                count = instruction.card_count or DEFAULT_INSTRUCTION_CARD_COUNT
                board = self._board_columns(self._context_columns(instruction, columns))
                target_view = self._board_columns(targets[:1])[0] if len(targets) == 1 else None
                messages = build_generate_prompt(
                    instruction, channel, board, target_view, request.system_instructions
                )
                parse: Callable[[str], Any] = lambda content: parse_card_reply(content) or None
                empty = "AI generation returned no cards"
            else:
                cards = self._cards_to_process(channel_id, targets, request.triggering_card_id)
                if request.skip_already_processed:
                    run.skipped_card_ids = [
                        card.id
                        for card in cards
                        if instruction.id in (card.processed_by_instructions or {})
                    ]
                    cards = [card for card in cards if card.id not in run.skipped_card_ids]
                if not cards:
                    if run.skipped_card_ids:
                        run.message = (
                            f"All {len(run.skipped_card_ids)} card(s) already processed "
                            "by this instruction."
                        )
                    else:
                        run.message = "No cards found in source columns."
                    return run
                card_ids = [card.id for card in cards]

                if action is InstructionAction.MODIFY:
                    tasks_by_card: dict[str, list[Task]] = {}
                    rows = self.session.execute(
                        select(Task)
                        .where(Task.card_id.in_(card_ids))
                        .order_by(Task.card_id, Task.position)
                    ).scalars()
                    for task in rows:
                        tasks_by_card.setdefault(task.card_id, []).append(task)
                    messages = build_modify_prompt(
                        instruction, channel, cards, tasks_by_card, request.system_instructions
                    )
                    parse = parse_modify_reply
                else:
                    names = {column.id: column.name for column in columns}
                    messages = build_move_prompt(
                        instruction,
                        channel,
                        columns,
                        [(card, names.get(card.column_id, "")) for card in cards],
                        request.system_instructions,
                    )
                    parse = parse_move_reply
                empty = "AI returned an unreadable reply"
            resolved = self._resolve_llm(user_id)

        reply = self._ask_llm(resolved, messages, parse, "AI instruction failed", empty)

        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            instruction = self._instruction(channel_id, request.instruction_id)
            if action is InstructionAction.GENERATE:
                self._apply_generated(run, instruction, reply, count)
            elif action is InstructionAction.MODIFY:
                self._apply_edits(run, instruction, reply, card_ids, user_id)
            else:
                self._apply_moves(run, reply, card_ids)

            stamp = utcnow().isoformat()
            for card_id in card_ids:
                card = self.session.get(Card, card_id)
                if card is None or card.channel_id != channel_id:
                    continue
                # JSON columns only register a change on reassignment
                card.processed_by_instructions = {
                    **(card.processed_by_instructions or {}),
                    instruction.id: stamp,
                }
            instruction.last_executed_at = utcnow()

            if resolved.metered:
                usage.record_usage(self.session, user_id, "run-instruction")
        run.source = resolved.source
        logger.info(
            "instruction_run",
            channel_id=channel_id,
            instruction_id=request.instruction_id,
            action=action.value,
            created=len(run.created),
            modified=len(run.modified),
            moved=len(run.moved),
            source=resolved.source,
        )
        return run

    def _apply_generated(
        self, run: InstructionRun, instruction: InstructionCard, drafts: list, count: int
    ) -> None:
        target = self._column(instruction.channel_id, run.target_column_ids[0])
        scope = ColumnCards(target.id, False)
        for draft in drafts[:count]:
            card = Card(
                channel_id=instruction.channel_id,
                title=draft.title,
                messages=[_note_message(draft.content)] if draft.content else [],
                source=CardSource.AI,
                created_by_instruction_id=instruction.id,
            )
            ordering.insert_at(self.session, scope, card)
            run.created.append(card)

    def _apply_edits(
        self,
        run: InstructionRun,
        instruction: InstructionCard,
        edits: list,
        card_ids: list[str],
        user_id: str,
    ) -> None:
        capabilities = instruction_capabilities(instruction.instructions)
        allowed = set(card_ids)
        for edit in edits:
            card = self.session.get(Card, edit.id) if edit.id in allowed else None
            if card is None or card.channel_id != instruction.channel_id:
                logger.debug("instruction_edit_skipped", card_id=edit.id)
                continue
            if edit.title:
                card.title = edit.title
            if edit.content:
                card.messages = [*(card.messages or []), _note_message(edit.content)]
            if capabilities.allow_tags and edit.tags:
                known = {tag.lower() for tag in card.tags or []}
                added = [tag for tag in dict.fromkeys(edit.tags) if tag.lower() not in known]
                card.tags = [*(card.tags or []), *added]
            if capabilities.allow_tasks:
                for draft in edit.tasks:
                    task = Task(
                        channel_id=instruction.channel_id,
                        title=draft.title,
                        description=draft.description,
                        status=TaskStatus.NOT_STARTED,
                        created_by=user_id,
                    )
                    ordering.insert_at(self.session, CardTasks(card.id), task)
                    run.tasks.append(task)
            if card not in run.modified:
                run.modified.append(card)

    def _apply_moves(self, run: InstructionRun, moves: list, card_ids: list[str]) -> None:
        allowed = set(card_ids)
        for move in moves:
            card = self.session.get(Card, move.card_id) if move.card_id in allowed else None
            destination = self.session.get(Column, move.destination_column_id)
            if (
                card is None
                or card.is_archived
                or destination is None
                or destination.channel_id != card.channel_id
                or destination.id == card.column_id
            ):
                logger.debug(
                    "instruction_move_skipped",
                    card_id=move.card_id,
                    column_id=move.destination_column_id,
                )
                continue
            origin = card.column_id
            ordering.move_across(
                self.session,
                ColumnCards(origin, False),
                ColumnCards(destination.id, False),
                card,
            )
            run.moved.append(MovedCard(card, origin, destination.id, move.reason))

    def summarize_card(self, channel_id: str, card_id: str, user_id: str) -> tuple[Card, str]:
        """Store a short AI summary of the card; returns the card and the key source."""
        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            card = self._card(channel_id, card_id)
            tasks = ordering.ordered_rows(self.session, CardTasks(card.id))
            messages = build_summary_prompt(card, tasks)
            resolved = self._resolve_llm(user_id)

        summary = self._ask_llm(
            resolved,
            messages,
            lambda content: clean_summary(content) or None,
            "LLM error",
            "AI returned an empty summary",
        )

        with self._transaction():
            self._require_channel(channel_id, user_id, PermissionLevel.EDIT)
            card = self._card(channel_id, card_id)
            card.summary = summary
            card.summary_updated_at = utcnow()
            if resolved.metered:
                usage.record_usage(self.session, user_id, "card-summary")
        logger.info("card_summarized", channel_id=channel_id, card_id=card_id)
        return card, resolved.source
