"""Pydantic schemas for workspace API requests/responses."""

from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .schema.enums import (
    CardSource,
    ChannelRole,
    ChannelStatus,
    InstructionAction,
    InstructionRunMode,
    LLMProviderName,
    ShareRole,
    TaskStatus,
    UserTier,
)

__all__ = [
    "UserCreateRequest",
    "UserResponse",
    "ChannelCreateRequest",
    "ChannelUpdateRequest",
    "ChannelResponse",
    "ChannelListResponse",
    "ChannelDetailResponse",
    "ColumnCreateRequest",
    "ColumnUpdateRequest",
    "ColumnReorderRequest",
    "ColumnResponse",
    "CardCreateRequest",
    "CardUpdateRequest",
    "CardMoveRequest",
    "CardBulkReorderRequest",
    "CardResponse",
    "TaskCreateRequest",
    "TaskUpdateRequest",
    "TaskReorderRequest",
    "TaskResponse",
    "InstructionCardCreateRequest",
    "InstructionCardUpdateRequest",
    "InstructionCardReorderRequest",
    "InstructionCardResponse",
    "FolderCreateRequest",
    "FolderUpdateRequest",
    "FolderResponse",
    "WorkspaceLayoutResponse",
    "ShareCreateRequest",
    "ShareUpdateRequest",
    "ChannelShareResponse",
    "FolderShareResponse",
    "InviteLinkCreateRequest",
    "InviteLinkResponse",
    "InviteUserStatus",
    "InvitePreviewResponse",
    "InviteAcceptResponse",
    "OrganizationRequest",
    "UsageResponse",
    "ByokSaveRequest",
    "ByokModelRequest",
    "ByokStatusResponse",
    "GenerateCardsRequest",
    "GenerateCardsResponse",
    "RunInstructionRequest",
    "MovedCardResponse",
    "InstructionRunResponse",
    "CardSummaryResponse",
]


# ========================================================================
# Users
# ========================================================================


class UserCreateRequest(BaseModel):
    id: Optional[str] = None
    email: str = Field(..., min_length=3, max_length=320)
    name: Optional[str] = None
    image: Optional[str] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: Optional[str]
    image: Optional[str]
    tier: UserTier


# ========================================================================
# Channels
# ========================================================================


class ChannelCreateRequest(BaseModel):
    """Channel creation; ``columns`` overrides the default column names."""

    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    ai_instructions: str = ""
    include_backside_in_ai: bool = False
    columns: Optional[list[str]] = None


class ChannelUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[ChannelStatus] = None
    ai_instructions: Optional[str] = None
    include_backside_in_ai: Optional[bool] = None


class ChannelResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    name: str
    description: str
    status: ChannelStatus
    ai_instructions: str
    include_backside_in_ai: bool
    is_global_help: bool
    created_at: dt.datetime
    updated_at: dt.datetime
    role: Optional[ChannelRole] = None
    shared_by: Optional[str] = None


class ChannelListResponse(BaseModel):
    channels: list[ChannelResponse]
    total: int


# ========================================================================
# Columns
# ========================================================================


class ColumnCreateRequest(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    instructions: Optional[str] = None
    position: Optional[int] = None


class ColumnUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    instructions: Optional[str] = None
    processing_prompt: Optional[str] = None
    auto_process: Optional[bool] = None
    is_ai_target: Optional[bool] = None


class ColumnReorderRequest(BaseModel):
    column_id: str
    to_index: int


class ColumnResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    name: str
    instructions: Optional[str]
    processing_prompt: Optional[str]
    auto_process: bool
    is_ai_target: bool
    position: int
    card_ids: list[str] = Field(default_factory=list)
    archived_card_ids: list[str] = Field(default_factory=list)


# ========================================================================
# Cards
# ========================================================================


class CardCreateRequest(BaseModel):
    """Card creation; ``content`` becomes the first note message."""

    id: Optional[str] = None
    column_id: str
    title: str = Field(..., min_length=1)
    content: Optional[str] = None
    messages: Optional[list[dict[str, Any]]] = None
    summary: Optional[str] = None
    source: CardSource = CardSource.MANUAL
    tags: list[str] = Field(default_factory=list)
    position: Optional[int] = None
    is_archived: bool = False
    created_by_instruction_id: Optional[str] = None


class CardUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    messages: Optional[list[dict[str, Any]]] = None
    summary: Optional[str] = None
    tags: Optional[list[str]] = None
    hide_completed_tasks: Optional[bool] = None


class CardMoveRequest(BaseModel):
    """Move a card; omitted target fields keep the card's current values."""

    card_id: str
    to_column_id: Optional[str] = None
    to_index: Optional[int] = None
    archived: Optional[bool] = None


class CardBulkReorderRequest(BaseModel):
    column_id: str
    card_ids: list[str]
    archived: bool = False


class CardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    column_id: str
    title: str
    messages: list[dict[str, Any]]
    summary: Optional[str]
    summary_updated_at: Optional[dt.datetime] = None
    source: CardSource
    tags: list[str]
    position: int
    is_archived: bool
    hide_completed_tasks: bool
    created_by_instruction_id: Optional[str]
    created_at: dt.datetime
    updated_at: dt.datetime


# ========================================================================
# Tasks
# ========================================================================


class TaskCreateRequest(BaseModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    card_id: Optional[str] = None
    description: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    assigned_to: Optional[str] = None
    due_date: Optional[dt.datetime] = None
    position: Optional[int] = None


class TaskUpdateRequest(BaseModel):
    """Task edits. Sending ``card_id`` (even ``null``) relinks the task."""

    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    assigned_to: Optional[str] = None
    due_date: Optional[dt.datetime] = None
    card_id: Optional[str] = None


class TaskReorderRequest(BaseModel):
    task_id: str
    to_index: int


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    card_id: Optional[str]
    title: str
    description: str
    status: TaskStatus
    assigned_to: Optional[str]
    due_date: Optional[dt.datetime]
    completed_at: Optional[dt.datetime]
    position: int
    created_by: Optional[str]
    created_at: dt.datetime


# ========================================================================
# Instruction cards
# ========================================================================


class InstructionCardCreateRequest(BaseModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    instructions: str
    action: InstructionAction
    target: dict[str, Any] = Field(default_factory=dict)
    context_columns: Optional[list[str]] = None
    run_mode: InstructionRunMode = InstructionRunMode.MANUAL
    card_count: Optional[int] = Field(None, ge=1)
    is_enabled: bool = False
    position: Optional[int] = None


class InstructionCardUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    instructions: Optional[str] = None
    action: Optional[InstructionAction] = None
    target: Optional[dict[str, Any]] = None
    context_columns: Optional[list[str]] = None
    run_mode: Optional[InstructionRunMode] = None
    card_count: Optional[int] = Field(None, ge=1)
    is_enabled: Optional[bool] = None


class InstructionCardReorderRequest(BaseModel):
    instruction_id: str
    to_index: int


class InstructionCardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    title: str
    instructions: str
    action: InstructionAction
    target: dict[str, Any]
    context_columns: Optional[list[str]]
    run_mode: InstructionRunMode
    card_count: Optional[int]
    is_enabled: bool
    last_executed_at: Optional[dt.datetime]
    position: int


class ChannelDetailResponse(ChannelResponse):
    columns: list[ColumnResponse] = Field(default_factory=list)
    cards: list[CardResponse] = Field(default_factory=list)
    tasks: list[TaskResponse] = Field(default_factory=list)
    instruction_cards: list[InstructionCardResponse] = Field(default_factory=list)


# ========================================================================
# Folders & organization
# ========================================================================


class FolderCreateRequest(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=255)
    position: Optional[int] = None


class FolderUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_collapsed: Optional[bool] = None


class FolderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    is_collapsed: bool
    position: int
    channel_ids: list[str] = Field(default_factory=list)


class WorkspaceLayoutResponse(BaseModel):
    folders: list[FolderResponse]
    root_channel_ids: list[str]


class OrganizationRequest(BaseModel):
    """Multiplexed ordering request; field names follow the client wire format.

    Required fields depend on ``operation`` and are checked by the service.
    """

    model_config = ConfigDict(populate_by_name=True)

    operation: Optional[str] = None
    channel_id: Optional[str] = Field(None, alias="channelId")
    target_folder_id: Optional[str] = Field(None, alias="targetFolderId")
    folder_id: Optional[str] = Field(None, alias="folderId")
    from_index: Optional[int] = Field(None, alias="fromIndex")
    to_index: Optional[int] = Field(None, alias="toIndex")
    channel_order: Optional[list[str]] = Field(None, alias="channelOrder")


# ========================================================================
# Shares
# ========================================================================


class ShareCreateRequest(BaseModel):
    email: str = Field(..., min_length=1)
    role: ShareRole = ShareRole.VIEWER


class ShareUpdateRequest(BaseModel):
    role: ShareRole


class ChannelShareResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    user_id: Optional[str]
    email: Optional[str]
    role: ShareRole
    folder_share_id: Optional[str]
    invited_by: Optional[str]
    invited_at: dt.datetime
    accepted_at: Optional[dt.datetime]
    is_pending: bool


class FolderShareResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    folder_id: str
    user_id: Optional[str]
    email: Optional[str]
    role: ShareRole
    invited_by: Optional[str]
    invited_at: dt.datetime
    accepted_at: Optional[dt.datetime]
    is_pending: bool


class InviteLinkCreateRequest(BaseModel):
    default_role: ShareRole = ShareRole.VIEWER
    expires_in_days: Optional[int] = Field(None, ge=1, le=365)
    max_uses: Optional[int] = Field(None, ge=1)


class InviteLinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    token: str
    default_role: ShareRole
    expires_at: Optional[dt.datetime]
    max_uses: Optional[int]
    use_count: int
    created_by: Optional[str]
    created_at: dt.datetime
    is_expired: bool
    is_exhausted: bool


class InviteUserStatus(BaseModel):
    authenticated: bool
    has_access: bool = False
    role: Optional[ChannelRole] = None


class InvitePreviewResponse(BaseModel):
    channel_id: str
    channel_name: str
    channel_description: Optional[str]
    owner_name: Optional[str]
    default_role: ShareRole
    user_status: InviteUserStatus


class InviteAcceptResponse(BaseModel):
    status: str
    channel_id: str
    channel_name: str
    role: ShareRole


# ========================================================================
# Usage, BYOK, generation
# ========================================================================


class UsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    used: int
    limit: Optional[int]
    remaining: Optional[int]
    allowed: bool
    tier: UserTier
    has_byok: bool
    reset_at: dt.datetime


class ByokSaveRequest(BaseModel):
    provider: str
    api_key: str
    model: Optional[str] = None


class ByokModelRequest(BaseModel):
    model: Optional[str] = None


class ByokStatusResponse(BaseModel):
    configured: bool
    provider: Optional[LLMProviderName] = None
    model: Optional[str] = None
    masked_key: Optional[str] = None


class GenerateCardsRequest(BaseModel):
    channel_id: str
    column_id: Optional[str] = None
    count: int = Field(5, ge=1, le=20)
    system_instructions: Optional[str] = None


class GenerateCardsResponse(BaseModel):
    cards: list[CardResponse]
    source: str


class RunInstructionRequest(BaseModel):
    """Run an instruction card now; ``triggering_card_id`` narrows it to one card."""

    channel_id: str
    instruction_id: str
    triggering_card_id: Optional[str] = None
    skip_already_processed: bool = False
    system_instructions: Optional[str] = None


class MovedCardResponse(BaseModel):
    card_id: str
    from_column_id: str
    to_column_id: str
    reason: str = ""


class InstructionRunResponse(BaseModel):
    action: InstructionAction
    target_column_ids: list[str]
    created_cards: list[CardResponse] = Field(default_factory=list)
    modified_cards: list[CardResponse] = Field(default_factory=list)
    moved_cards: list[MovedCardResponse] = Field(default_factory=list)
    created_tasks: list[TaskResponse] = Field(default_factory=list)
    skipped_card_ids: list[str] = Field(default_factory=list)
    message: Optional[str] = None
    source: Optional[str] = None


class CardSummaryResponse(BaseModel):
    summary: str
    card: CardResponse
    source: str
