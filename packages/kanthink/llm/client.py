"""Provider-neutral chat client and per-user key resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from ..workspace.schema.enums import LLMProviderName
from ..workspace.usage import check_usage_limit, get_byok_config
from .providers import build_chat_model, env_key

if TYPE_CHECKING:  # pragma: no cover
    from ..workspace.service import WorkspaceSettings

__all__ = [
    "LLMMessage",
    "LLMUsage",
    "LLMResponse",
    "LLMConfig",
    "LLMClient",
    "LLMClientResult",
    "create_llm_client",
    "get_llm_client_for_user",
]

logger = structlog.get_logger(__name__)

# Order in which server-held keys are tried.
_KEY_ORDER = (LLMProviderName.OPENAI, LLMProviderName.ANTHROPIC, LLMProviderName.GOOGLE)


@dataclass(frozen=True, slots=True)
class LLMMessage:
    role: str  # system | user | assistant
    content: str


@dataclass(frozen=True, slots=True)
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True, slots=True)
class LLMResponse:
    content: str
    usage: Optional[LLMUsage] = None


@dataclass(frozen=True, slots=True)
class LLMConfig:
    provider: LLMProviderName
    api_key: str = field(repr=False)
    model: Optional[str] = None


def _to_langchain(messages: Sequence[LLMMessage]) -> list[Any]:
    from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

    converted: list[Any] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


class LLMClient:
    """Thin wrapper over a LangChain chat model."""

    def __init__(self, config: LLMConfig, chat_model: Any):
        self.config = config
        self.name = config.provider.value
        self._chat = chat_model

    def complete(self, messages: Sequence[LLMMessage]) -> LLMResponse:
        reply = self._chat.invoke(_to_langchain(messages))
        usage = None
        metadata = getattr(reply, "usage_metadata", None)
        if metadata:
            usage = LLMUsage(
                input_tokens=int(metadata.get("input_tokens", 0)),
                output_tokens=int(metadata.get("output_tokens", 0)),
            )
        return LLMResponse(content=_text_of(reply.content), usage=usage)


def create_llm_client(config: LLMConfig) -> LLMClient:
    chat_model = build_chat_model(config.provider, config.api_key, config.model)
    return LLMClient(config, chat_model)


@dataclass(slots=True)
class LLMClientResult:
    client: Optional[LLMClient]
    source: str  # byok | owner | env | none
    error: Optional[str] = None

    @property
    def metered(self) -> bool:
        return self.source in ("owner", "env")


def _server_key(*, owner: bool) -> Optional[LLMConfig]:
    for provider in _KEY_ORDER:
        api_key = env_key(provider, owner=owner)
        if api_key:
            return LLMConfig(provider, api_key)
    return None


def get_llm_client_for_user(
    session: Session, user_id: str, settings: "WorkspaceSettings"
) -> LLMClientResult:
    """Pick a client for ``user_id``.

    The user's own key wins. Otherwise the monthly quota must allow the
    request, and the owner key is used, then any development key.
    """
    byok = get_byok_config(session, user_id)
    if byok is not None:
        config = LLMConfig(byok.provider, byok.api_key, byok.model)
        return LLMClientResult(create_llm_client(config), "byok")

    check = check_usage_limit(session, user_id, settings)
    if not check.allowed:
        logger.info("llm_quota_exhausted", user_id=user_id)
        return LLMClientResult(None, "none", check.message)

    for owner, source in ((True, "owner"), (False, "env")):
        config = _server_key(owner=owner)
        if config is not None:
            return LLMClientResult(create_llm_client(config), source)

    return LLMClientResult(
        None,
        "none",
        "No API key configured. Please sign in and configure your settings.",
    )
