"""LLM provider access, card-generation and instruction prompts."""

from .client import (
    LLMClient,
    LLMClientResult,
    LLMConfig,
    LLMMessage,
    LLMResponse,
    LLMUsage,
    create_llm_client,
    get_llm_client_for_user,
)
from .instructions import (
    DEFAULT_INSTRUCTION_CARD_COUNT,
    CardEdit,
    CardMove,
    TaskDraft,
    build_generate_prompt,
    build_modify_prompt,
    build_move_prompt,
    instruction_capabilities,
    parse_modify_reply,
    parse_move_reply,
)
from .prompts import (
    BoardColumn,
    CardDraft,
    build_card_prompt,
    build_summary_prompt,
    clean_summary,
    parse_card_reply,
)

__all__ = [
    "LLMClient",
    "LLMClientResult",
    "LLMConfig",
    "LLMMessage",
    "LLMResponse",
    "LLMUsage",
    "create_llm_client",
    "get_llm_client_for_user",
    "BoardColumn",
    "CardDraft",
    "build_card_prompt",
    "build_summary_prompt",
    "clean_summary",
    "parse_card_reply",
    "DEFAULT_INSTRUCTION_CARD_COUNT",
    "CardEdit",
    "CardMove",
    "TaskDraft",
    "build_generate_prompt",
    "build_modify_prompt",
    "build_move_prompt",
    "instruction_capabilities",
    "parse_modify_reply",
    "parse_move_reply",
]
