"""FastAPI application for the Kanthink workspace.

Channel boards, per-user organization, sharing, usage/BYOK and AI card
generation. The caller is identified by the ``X-User-ID`` header; the user
must already be registered through ``POST /api/users``.
"""

from __future__ import annotations

from typing import Any, Generator, Optional

import structlog
from fastapi import Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import __version__
from ..errors import AuthenticationRequired, WorkspaceError
from . import schemas
from .models import Card, Channel, Column, User
from .permissions import AccessibleChannel
from .service import (
    ChannelBoard,
    WorkspaceDatabase,
    WorkspaceService,
    WorkspaceSettings,
    init_engine,
)
from .usage import mask_key

__all__ = ["create_app", "WorkspaceSettings"]

logger = structlog.get_logger(__name__)


def _channel_response(
    channel: Channel, access: Optional[AccessibleChannel] = None
) -> schemas.ChannelResponse:
    response = schemas.ChannelResponse.model_validate(channel, from_attributes=True)
    if access is not None:
        response.role = access.role
        response.shared_by = access.shared_by
    return response


def _column_response(
    column: Column, cards: list[Card] = (), archived: list[Card] = ()
) -> schemas.ColumnResponse:
    response = schemas.ColumnResponse.model_validate(column, from_attributes=True)
    response.card_ids = [card.id for card in cards]
    response.archived_card_ids = [card.id for card in archived]
    return response


def _board_response(board: ChannelBoard) -> schemas.ChannelDetailResponse:
    base = schemas.ChannelResponse.model_validate(board.channel, from_attributes=True)
    cards = [
        card
        for column in board.columns
        for card in board.cards[column.id] + board.archived_cards[column.id]
    ]
    return schemas.ChannelDetailResponse(
        **base.model_dump(exclude={"role", "shared_by"}),
        role=board.permission.role,
        columns=[
            _column_response(column, board.cards[column.id], board.archived_cards[column.id])
            for column in board.columns
        ],
        cards=[schemas.CardResponse.model_validate(card) for card in cards],
        tasks=[schemas.TaskResponse.model_validate(task) for task in board.tasks],
        instruction_cards=[
            schemas.InstructionCardResponse.model_validate(item)
            for item in board.instruction_cards
        ],
    )


def create_app(settings: WorkspaceSettings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or WorkspaceSettings.from_env()
    engine = init_engine(settings)
    database = WorkspaceDatabase(engine=engine)

    app = FastAPI(
        title="Kanthink API",
        version=__version__,
        description="AI-assisted Kanban workspace",
    )
    app.state.database = database
    app.state.settings = settings

    origins = list(settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_session() -> Generator[Session, None, None]:
        session = database.session()
        try:
            yield session
        finally:
            session.close()

    def get_service(session: Session = Depends(get_session)) -> WorkspaceService:
        return WorkspaceService(session=session, settings=settings)

    def get_current_user(request: Request, session: Session = Depends(get_session)) -> str:
        """Resolve the caller from ``X-User-ID``; the user must exist."""
        user_id = request.headers.get("X-User-ID")
        if not user_id:
            raise AuthenticationRequired("Not authenticated")
        if session.get(User, user_id) is None:
            raise AuthenticationRequired("Unknown user")
        return user_id

    def get_optional_user(
        request: Request, session: Session = Depends(get_session)
    ) -> Optional[str]:
        user_id = request.headers.get("X-User-ID")
        if user_id and session.get(User, user_id) is not None:
            return user_id
        return None

    @app.exception_handler(WorkspaceError)
    async def _handle_workspace_error(request: Request, exc: WorkspaceError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def _handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def _handle_errors(request: Request, exc: Exception):
        logger.error(
            "request_failed",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # ========================================================================
    # Users
    # ========================================================================

    @app.post("/api/users", response_model=schemas.UserResponse, status_code=201)
    def register_user(
        request: schemas.UserCreateRequest,
        service: WorkspaceService = Depends(get_service),
    ) -> schemas.UserResponse:
        user = service.register_user(request)
        return schemas.UserResponse.model_validate(user)

    @app.get("/api/users/me", response_model=schemas.UserResponse)
    def get_me(
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.UserResponse:
        return schemas.UserResponse.model_validate(service.get_user(user_id))

    # ========================================================================
    # Channels
    # ========================================================================

    @app.get("/api/channels", response_model=schemas.ChannelListResponse)
    def list_channels(
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ChannelListResponse:
        items = service.list_channels(user_id)
        channels = [_channel_response(channel, access) for channel, access in items]
        return schemas.ChannelListResponse(channels=channels, total=len(channels))

    @app.post("/api/channels", response_model=schemas.ChannelDetailResponse, status_code=201)
    def create_channel(
        request: schemas.ChannelCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ChannelDetailResponse:
        channel = service.create_channel(request, user_id)
        return _board_response(service.get_channel_board(channel.id, user_id))

    @app.get("/api/channels/{channel_id}", response_model=schemas.ChannelDetailResponse)
    def get_channel(
        channel_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ChannelDetailResponse:
        return _board_response(service.get_channel_board(channel_id, user_id))

    @app.patch("/api/channels/{channel_id}", response_model=schemas.ChannelResponse)
    def update_channel(
        channel_id: str,
        request: schemas.ChannelUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ChannelResponse:
        return _channel_response(service.update_channel(channel_id, request, user_id))

    @app.delete("/api/channels/{channel_id}")
    def delete_channel(
        channel_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.delete_channel(channel_id, user_id)
        return {"success": True}

    # ========================================================================
    # Columns
    # ========================================================================

    @app.post(
        "/api/channels/{channel_id}/columns",
        response_model=schemas.ColumnResponse,
        status_code=201,
    )
    def create_column(
        channel_id: str,
        request: schemas.ColumnCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ColumnResponse:
        return _column_response(service.create_column(channel_id, request, user_id))

    @app.post("/api/channels/{channel_id}/columns/reorder")
    def reorder_columns(
        channel_id: str,
        request: schemas.ColumnReorderRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        return {"success": True, "column_ids": service.reorder_column(channel_id, request, user_id)}

    @app.patch(
        "/api/channels/{channel_id}/columns/{column_id}",
        response_model=schemas.ColumnResponse,
    )
    def update_column(
        channel_id: str,
        column_id: str,
        request: schemas.ColumnUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ColumnResponse:
        return _column_response(service.update_column(channel_id, column_id, request, user_id))

    @app.delete("/api/channels/{channel_id}/columns/{column_id}")
    def delete_column(
        channel_id: str,
        column_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        destination = service.delete_column(channel_id, column_id, user_id)
        return {"success": True, "moved_to": destination}

    # ========================================================================
    # Cards
    # ========================================================================

    @app.post(
        "/api/channels/{channel_id}/cards",
        response_model=schemas.CardResponse,
        status_code=201,
    )
    def create_card(
        channel_id: str,
        request: schemas.CardCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.CardResponse:
        return schemas.CardResponse.model_validate(service.create_card(channel_id, request, user_id))

    @app.post("/api/channels/{channel_id}/cards/move", response_model=schemas.CardResponse)
    def move_card(
        channel_id: str,
        request: schemas.CardMoveRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.CardResponse:
        return schemas.CardResponse.model_validate(service.move_card(channel_id, request, user_id))

    @app.post("/api/channels/{channel_id}/cards/reorder")
    def reorder_cards(
        channel_id: str,
        request: schemas.CardBulkReorderRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        return {"success": True, "card_ids": service.reorder_cards(channel_id, request, user_id)}

    @app.get("/api/channels/{channel_id}/cards/{card_id}", response_model=schemas.CardResponse)
    def get_card(
        channel_id: str,
        card_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.CardResponse:
        return schemas.CardResponse.model_validate(service.get_card(channel_id, card_id, user_id))

    @app.patch("/api/channels/{channel_id}/cards/{card_id}", response_model=schemas.CardResponse)
    def update_card(
        channel_id: str,
        card_id: str,
        request: schemas.CardUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.CardResponse:
        card = service.update_card(channel_id, card_id, request, user_id)
        return schemas.CardResponse.model_validate(card)

    @app.delete("/api/channels/{channel_id}/cards/{card_id}")
    def delete_card(
        channel_id: str,
        card_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.delete_card(channel_id, card_id, user_id)
        return {"success": True}

    # ========================================================================
    # Tasks
    # ========================================================================

    @app.post(
        "/api/channels/{channel_id}/tasks",
        response_model=schemas.TaskResponse,
        status_code=201,
    )
    def create_task(
        channel_id: str,
        request: schemas.TaskCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.TaskResponse:
        return schemas.TaskResponse.model_validate(service.create_task(channel_id, request, user_id))

    @app.post("/api/channels/{channel_id}/tasks/reorder")
    def reorder_tasks(
        channel_id: str,
        request: schemas.TaskReorderRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        return {"success": True, "task_ids": service.reorder_task(channel_id, request, user_id)}

    @app.patch("/api/channels/{channel_id}/tasks/{task_id}", response_model=schemas.TaskResponse)
    def update_task(
        channel_id: str,
        task_id: str,
        request: schemas.TaskUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.TaskResponse:
        task = service.update_task(channel_id, task_id, request, user_id)
        return schemas.TaskResponse.model_validate(task)

    @app.delete("/api/channels/{channel_id}/tasks/{task_id}")
    def delete_task(
        channel_id: str,
        task_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.delete_task(channel_id, task_id, user_id)
        return {"success": True}

    # ========================================================================
    # Instruction cards
    # ========================================================================

    @app.get(
        "/api/channels/{channel_id}/instructions",
        response_model=list[schemas.InstructionCardResponse],
    )
    def list_instruction_cards(
        channel_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> list[schemas.InstructionCardResponse]:
        items = service.list_instruction_cards(channel_id, user_id)
        return [schemas.InstructionCardResponse.model_validate(item) for item in items]

    @app.post(
        "/api/channels/{channel_id}/instructions",
        response_model=schemas.InstructionCardResponse,
        status_code=201,
    )
    def create_instruction_card(
        channel_id: str,
        request: schemas.InstructionCardCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.InstructionCardResponse:
        item = service.create_instruction_card(channel_id, request, user_id)
        return schemas.InstructionCardResponse.model_validate(item)

    @app.post("/api/channels/{channel_id}/instructions/reorder")
    def reorder_instruction_cards(
        channel_id: str,
        request: schemas.InstructionCardReorderRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        ids = service.reorder_instruction_card(channel_id, request, user_id)
        return {"success": True, "instruction_ids": ids}

    @app.patch(
        "/api/channels/{channel_id}/instructions/{instruction_id}",
        response_model=schemas.InstructionCardResponse,
    )
    def update_instruction_card(
        channel_id: str,
        instruction_id: str,
        request: schemas.InstructionCardUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.InstructionCardResponse:
        item = service.update_instruction_card(channel_id, instruction_id, request, user_id)
        return schemas.InstructionCardResponse.model_validate(item)

    @app.delete("/api/channels/{channel_id}/instructions/{instruction_id}")
    def delete_instruction_card(
        channel_id: str,
        instruction_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.delete_instruction_card(channel_id, instruction_id, user_id)
        return {"success": True}

    # ========================================================================
    # Channel shares
    # ========================================================================

    @app.get(
        "/api/channels/{channel_id}/shares",
        response_model=list[schemas.ChannelShareResponse],
    )
    def list_channel_shares(
        channel_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> list[schemas.ChannelShareResponse]:
        shares = service.list_channel_shares(channel_id, user_id)
        return [schemas.ChannelShareResponse.model_validate(share) for share in shares]

    @app.post(
        "/api/channels/{channel_id}/shares",
        response_model=schemas.ChannelShareResponse,
        status_code=201,
    )
    def share_channel(
        channel_id: str,
        request: schemas.ShareCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ChannelShareResponse:
        share = service.share_channel(channel_id, request, user_id)
        return schemas.ChannelShareResponse.model_validate(share)

    @app.patch(
        "/api/channels/{channel_id}/shares/{share_id}",
        response_model=schemas.ChannelShareResponse,
    )
    def update_channel_share(
        channel_id: str,
        share_id: str,
        request: schemas.ShareUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ChannelShareResponse:
        share = service.update_channel_share(channel_id, share_id, request, user_id)
        return schemas.ChannelShareResponse.model_validate(share)

    @app.delete("/api/channels/{channel_id}/shares/{share_id}")
    def revoke_channel_share(
        channel_id: str,
        share_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.revoke_channel_share(channel_id, share_id, user_id)
        return {"success": True}

    # ========================================================================
    # Invite links
    # ========================================================================

    @app.get(
        "/api/channels/{channel_id}/invite-links",
        response_model=list[schemas.InviteLinkResponse],
    )
    def list_invite_links(
        channel_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> list[schemas.InviteLinkResponse]:
        links = service.list_invite_links(channel_id, user_id)
        return [schemas.InviteLinkResponse.model_validate(link) for link in links]

    @app.post(
        "/api/channels/{channel_id}/invite-links",
        response_model=schemas.InviteLinkResponse,
        status_code=201,
    )
    def create_invite_link(
        channel_id: str,
        request: schemas.InviteLinkCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.InviteLinkResponse:
        link = service.create_invite_link(channel_id, request, user_id)
        return schemas.InviteLinkResponse.model_validate(link)

    @app.delete("/api/channels/{channel_id}/invite-links/{link_id}")
    def revoke_invite_link(
        channel_id: str,
        link_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.revoke_invite_link(channel_id, link_id, user_id)
        return {"success": True}

    @app.get("/api/invite/{token}", response_model=schemas.InvitePreviewResponse)
    def preview_invite(
        token: str,
        service: WorkspaceService = Depends(get_service),
        user_id: Optional[str] = Depends(get_optional_user),
    ) -> schemas.InvitePreviewResponse:
        return service.preview_invite(token, user_id)

    @app.post("/api/invite/{token}", response_model=schemas.InviteAcceptResponse)
    def accept_invite(
        token: str,
        service: WorkspaceService = Depends(get_service),
        user_id: Optional[str] = Depends(get_optional_user),
    ) -> schemas.InviteAcceptResponse:
        if user_id is None:
            raise AuthenticationRequired("You must be signed in to accept this invite")
        return service.accept_invite(token, user_id)

    # ========================================================================
    # Folders & organization
    # ========================================================================

    @app.get("/api/folders", response_model=schemas.WorkspaceLayoutResponse)
    def get_layout(
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.WorkspaceLayoutResponse:
        folders, root = service.get_layout(user_id)
        items = []
        for folder, channel_ids in folders:
            response = schemas.FolderResponse.model_validate(folder)
            response.channel_ids = channel_ids
            items.append(response)
        return schemas.WorkspaceLayoutResponse(folders=items, root_channel_ids=root)

    @app.post("/api/folders", response_model=schemas.FolderResponse, status_code=201)
    def create_folder(
        request: schemas.FolderCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.FolderResponse:
        return schemas.FolderResponse.model_validate(service.create_folder(request, user_id))

    @app.patch("/api/folders/{folder_id}", response_model=schemas.FolderResponse)
    def update_folder(
        folder_id: str,
        request: schemas.FolderUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.FolderResponse:
        folder = service.update_folder(folder_id, request, user_id)
        return schemas.FolderResponse.model_validate(folder)

    @app.delete("/api/folders/{folder_id}")
    def delete_folder(
        folder_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        result = service.delete_folder(folder_id, user_id)
        return {"success": True, "cascade": result.as_dict()}

    @app.get(
        "/api/folders/{folder_id}/shares",
        response_model=list[schemas.FolderShareResponse],
    )
    def list_folder_shares(
        folder_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> list[schemas.FolderShareResponse]:
        shares = service.list_folder_shares(folder_id, user_id)
        return [schemas.FolderShareResponse.model_validate(share) for share in shares]

    @app.post("/api/folders/{folder_id}/shares", status_code=201)
    def share_folder(
        folder_id: str,
        request: schemas.ShareCreateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        share, result = service.share_folder(folder_id, request, user_id)
        return {
            "share": jsonable_encoder(schemas.FolderShareResponse.model_validate(share)),
            "cascade": result.as_dict(),
        }

    @app.patch(
        "/api/folders/{folder_id}/shares/{share_id}",
        response_model=schemas.FolderShareResponse,
    )
    def update_folder_share(
        folder_id: str,
        share_id: str,
        request: schemas.ShareUpdateRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.FolderShareResponse:
        share = service.update_folder_share(folder_id, share_id, request, user_id)
        return schemas.FolderShareResponse.model_validate(share)

    @app.delete("/api/folders/{folder_id}/shares/{share_id}")
    def revoke_folder_share(
        folder_id: str,
        share_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        result = service.revoke_folder_share(folder_id, share_id, user_id)
        return {"success": True, "cascade": result.as_dict()}

    @app.post("/api/organization")
    def organization(
        request: schemas.OrganizationRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        return service.organize(request, user_id)

    # ========================================================================
    # Usage, BYOK, generation
    # ========================================================================

    @app.get("/api/usage", response_model=schemas.UsageResponse)
    def get_usage(
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.UsageResponse:
        return schemas.UsageResponse.model_validate(service.get_usage(user_id))

    @app.get("/api/byok/status", response_model=schemas.ByokStatusResponse)
    def byok_status(
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ByokStatusResponse:
        config = service.get_byok_status(user_id)
        if config is None:
            return schemas.ByokStatusResponse(configured=False)
        return schemas.ByokStatusResponse(
            configured=True,
            provider=config.provider,
            model=config.model,
            masked_key=mask_key(config.api_key),
        )

    @app.post("/api/byok/save", response_model=schemas.ByokStatusResponse)
    def byok_save(
        request: schemas.ByokSaveRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ByokStatusResponse:
        config = service.save_byok(request, user_id)
        return schemas.ByokStatusResponse(
            configured=True,
            provider=config.provider,
            model=config.model,
            masked_key=mask_key(config.api_key),
        )

    @app.post("/api/byok/update-model", response_model=schemas.ByokStatusResponse)
    def byok_update_model(
        request: schemas.ByokModelRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.ByokStatusResponse:
        config = service.update_byok_model(request, user_id)
        return schemas.ByokStatusResponse(
            configured=True,
            provider=config.provider,
            model=config.model,
            masked_key=mask_key(config.api_key),
        )

    @app.post("/api/byok/clear")
    def byok_clear(
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> dict[str, Any]:
        service.clear_byok(user_id)
        return {"success": True}

    @app.post("/api/generate-cards", response_model=schemas.GenerateCardsResponse)
    def generate_cards(
        request: schemas.GenerateCardsRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.GenerateCardsResponse:
        cards, source = service.generate_cards(request, user_id)
        return schemas.GenerateCardsResponse(
            cards=[schemas.CardResponse.model_validate(card) for card in cards],
            source=source,
        )

    @app.post("/api/run-instruction", response_model=schemas.InstructionRunResponse)
    def run_instruction(
        request: schemas.RunInstructionRequest,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.InstructionRunResponse:
        run = service.run_instruction(request, user_id)
        return schemas.InstructionRunResponse(
            action=run.action,
            target_column_ids=run.target_column_ids,
            created_cards=[schemas.CardResponse.model_validate(card) for card in run.created],
            modified_cards=[schemas.CardResponse.model_validate(card) for card in run.modified],
            moved_cards=[
                schemas.MovedCardResponse(
                    card_id=moved.card.id,
                    from_column_id=moved.from_column_id,
                    to_column_id=moved.to_column_id,
                    reason=moved.reason,
                )
                for moved in run.moved
            ],
            created_tasks=[schemas.TaskResponse.model_validate(task) for task in run.tasks],
            skipped_card_ids=run.skipped_card_ids,
            message=run.message,
            source=run.source,
        )

    @app.post(
        "/api/channels/{channel_id}/cards/{card_id}/summary",
        response_model=schemas.CardSummaryResponse,
    )
    def summarize_card(
        channel_id: str,
        card_id: str,
        service: WorkspaceService = Depends(get_service),
        user_id: str = Depends(get_current_user),
    ) -> schemas.CardSummaryResponse:
        card, source = service.summarize_card(channel_id, card_id, user_id)
        return schemas.CardSummaryResponse(
            summary=card.summary,
            card=schemas.CardResponse.model_validate(card),
            source=source,
        )

    return app
