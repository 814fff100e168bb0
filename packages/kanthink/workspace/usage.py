"""Monthly AI usage metering and bring-your-own-key configuration."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..errors import NotFound, ValidationFailed
from .models import UsageRecord, User, utcnow
from .schema.enums import LLMProviderName, UserTier

if TYPE_CHECKING:  # pragma: no cover
    from .service import WorkspaceSettings

__all__ = [
    "UsageStatus",
    "UsageCheck",
    "ByokConfig",
    "month_bounds",
    "get_usage_status",
    "check_usage_limit",
    "record_usage",
    "get_byok_config",
    "save_byok_config",
    "update_byok_model",
    "clear_byok_config",
    "mask_key",
]

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class UsageStatus:
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    allowed: bool
    tier: UserTier
    has_byok: bool
    reset_at: dt.datetime


@dataclass(slots=True)
class UsageCheck:
    allowed: bool
    remaining: Optional[int]
    message: Optional[str] = None


@dataclass(slots=True)
class ByokConfig:
    provider: LLMProviderName
    api_key: str
    model: Optional[str] = None


def month_bounds(now: Optional[dt.datetime] = None) -> tuple[dt.datetime, dt.datetime]:
    """Start of the current UTC month and start of the next one."""
    now = now or utcnow()
    start = dt.datetime(now.year, now.month, 1, tzinfo=dt.timezone.utc)
    if now.month == 12:
        end = dt.datetime(now.year + 1, 1, 1, tzinfo=dt.timezone.utc)
    else:
        end = dt.datetime(now.year, now.month + 1, 1, tzinfo=dt.timezone.utc)
    return start, end


def _get_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def get_usage_status(
    session: Session,
    user_id: str,
    settings: "WorkspaceSettings",
    now: Optional[dt.datetime] = None,
) -> UsageStatus:
    user = _get_user(session, user_id)
    start, reset_at = month_bounds(now)

    if user.byok_api_key:
        return UsageStatus(
            used=0,
            limit=None,
            remaining=None,
            allowed=True,
            tier=user.tier,
            has_byok=True,
            reset_at=reset_at,
        )

    used = int(
        session.execute(
            select(func.count())
            .select_from(UsageRecord)
            .where(UsageRecord.user_id == user_id, UsageRecord.created_at >= start)
        ).scalar_one()
    )
    if user.tier is UserTier.PREMIUM:
        limit = settings.premium_monthly_limit
    else:
        limit = settings.free_monthly_limit
    remaining = max(0, limit - used)
    return UsageStatus(
        used=used,
        limit=limit,
        remaining=remaining,
        allowed=remaining > 0,
        tier=user.tier,
        has_byok=False,
        reset_at=reset_at,
    )


def check_usage_limit(
    session: Session, user_id: str, settings: "WorkspaceSettings"
) -> UsageCheck:
    status = get_usage_status(session, user_id, settings)
    if status.allowed:
        return UsageCheck(allowed=True, remaining=status.remaining)

    if status.tier is UserTier.FREE:
        message = (
            f"You've used all {status.limit} free AI requests this month. "
            f"Upgrade to Premium for {settings.premium_monthly_limit} requests, "
            "or add your own API key for unlimited usage."
        )
    else:
        message = (
            "You've reached your monthly limit. Add your own API key for "
            "unlimited usage, or wait until next month."
        )
    return UsageCheck(allowed=False, remaining=0, message=message)


def record_usage(session: Session, user_id: str, request_type: str) -> bool:
    """Record one metered request; BYOK users are never metered."""
    user = _get_user(session, user_id)
    if user.byok_api_key:
        return False
    session.add(UsageRecord(user_id=user_id, request_type=request_type))
    session.flush()
    logger.info("usage_recorded", user_id=user_id, request_type=request_type)
    return True


def get_byok_config(session: Session, user_id: str) -> Optional[ByokConfig]:
    user = _get_user(session, user_id)
    if not user.byok_api_key or user.byok_provider is None:
        return None
    return ByokConfig(user.byok_provider, user.byok_api_key, user.byok_model)


def save_byok_config(
    session: Session,
    user_id: str,
    provider: str,
    api_key: str,
    model: Optional[str] = None,
) -> ByokConfig:
    try:
        provider_name = LLMProviderName(provider)
    except ValueError as exc:
        raise ValidationFailed(
            f"Invalid provider. Must be one of: {', '.join(LLMProviderName.values())}"
        ) from exc
    api_key = (api_key or "").strip()
    if not api_key:
        raise ValidationFailed("API key is required")

    user = _get_user(session, user_id)
    user.byok_provider = provider_name
    user.byok_api_key = api_key
    user.byok_model = model or None
    session.flush()
    logger.info("byok_saved", user_id=user_id, provider=provider_name.value)
    return ByokConfig(provider_name, api_key, user.byok_model)


def update_byok_model(session: Session, user_id: str, model: Optional[str]) -> ByokConfig:
    user = _get_user(session, user_id)
    if not user.byok_api_key or user.byok_provider is None:
        raise ValidationFailed("No API key configured")
    user.byok_model = model or None
    session.flush()
    return ByokConfig(user.byok_provider, user.byok_api_key, user.byok_model)


def clear_byok_config(session: Session, user_id: str) -> None:
    user = _get_user(session, user_id)
    user.byok_provider = None
    user.byok_api_key = None
    user.byok_model = None
    session.flush()
    logger.info("byok_cleared", user_id=user_id)


def mask_key(api_key: Optional[str]) -> Optional[str]:
    if not api_key:
        return None
    tail = api_key[-4:] if len(api_key) > 8 else ""
    return f"****{tail}"
