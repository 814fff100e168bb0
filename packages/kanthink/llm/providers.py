"""LangChain chat model construction per provider."""

from __future__ import annotations

import os
from typing import Any, Optional

import structlog

from ..workspace.schema.enums import LLMProviderName

__all__ = ["DEFAULT_MODELS", "build_chat_model", "env_key"]

logger = structlog.get_logger(__name__)

DEFAULT_MODELS = {
    LLMProviderName.ANTHROPIC: "claude-sonnet-4-20250514",
    LLMProviderName.OPENAI: "gpt-4o",
    LLMProviderName.GOOGLE: "gemini-2.5-flash",
}

_MAX_TOKENS = 4096


def env_key(provider: LLMProviderName, *, owner: bool) -> Optional[str]:
    """API key for ``provider`` from the environment (owner or dev variable)."""
    name = f"{provider.value.upper()}_API_KEY"
    if owner:
        name = f"OWNER_{name}"
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


def build_chat_model(
    provider: LLMProviderName,
    api_key: str,
    model: Optional[str] = None,
    *,
    temperature: float = 0.7,
    timeout: float = 60.0,
) -> Any:  # noqa: ANN401 - LangChain types
    model_name = model or os.getenv("LLM_MODEL") or DEFAULT_MODELS[provider]

    if provider is LLMProviderName.ANTHROPIC:
        try:
            from langchain_anthropic import ChatAnthropic  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "Anthropic backend requires `langchain-anthropic`. Install it with `pip install langchain-anthropic`."
            ) from exc
        logger.info("llm_backend_anthropic", model=model_name)
        return ChatAnthropic(
            model=model_name,
            api_key=api_key,
            temperature=temperature,
            max_tokens=_MAX_TOKENS,
            timeout=timeout,
            max_retries=1,
        )

    if provider is LLMProviderName.GOOGLE:
        try:
            from langchain_google_genai import ChatGoogleGenerativeAI  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "Gemini backend requires `langchain-google-genai`. Install it with `pip install langchain-google-genai`."
            ) from exc
        logger.info("llm_backend_gemini", model=model_name)
        return ChatGoogleGenerativeAI(
            model=model_name,
            google_api_key=api_key,
            temperature=temperature,
            max_output_tokens=_MAX_TOKENS,
        )

    try:
        from langchain_openai import ChatOpenAI  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "OpenAI backend requires `langchain-openai`. Install it with `pip install langchain-openai`."
        ) from exc
    logger.info("llm_backend_openai", model=model_name)
    return ChatOpenAI(
        model=model_name,
        api_key=api_key,
        temperature=temperature,
        max_tokens=_MAX_TOKENS,
        timeout=timeout,
        max_retries=1,
        base_url=os.getenv("OPENAI_BASE_URL"),
    )
