"""Prompt construction and reply parsing for card generation."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import structlog

from .client import LLMMessage

__all__ = [
    "CardDraft",
    "BoardColumn",
    "build_card_prompt",
    "build_summary_prompt",
    "clean_summary",
    "extract_json_array",
    "parse_card_reply",
]

logger = structlog.get_logger(__name__)

_SNIPPET = 150
_ARRAY = re.compile(r"\[[\s\S]*\]")

_SYSTEM_TEMPLATE = """Generate {count} cards as a JSON array.

Each card has:
- "title": concise (1-8 words)
- "content": detailed markdown-formatted content (2-4 paragraphs minimum)

Content Guidelines:
- Write substantively - explain each idea thoroughly
- Use markdown: **bold**, *italics*, bullet lists, numbered lists, headers (##)
- Include context, rationale, implications, or examples as appropriate
- Aim for 150-400 words per card - depth matters for planning/brainstorming
- Each card should stand alone as a complete thought

Respond with ONLY the JSON array:
[{{"title": "Card Title", "content": "## Overview\\n\\nDetailed explanation of the idea..."}}]"""


@dataclass(frozen=True, slots=True)
class CardDraft:
    title: str
    content: str = ""


@dataclass(slots=True)
class BoardColumn:
    """A column as the prompt sees it: name, instructions, and card rows."""

    id: str
    name: str
    instructions: Optional[str]
    cards: Sequence[Any]
    archived_cards: Sequence[Any] = ()


def card_line(card: Any) -> str:
    line = f"\n- {card.title}"
    summary = getattr(card, "summary", None)
    messages = getattr(card, "messages", None) or []
    if summary:
        line += f": {summary[:_SNIPPET]}"
    elif messages:
        first = messages[0]
        content = first.get("content", "") if isinstance(first, Mapping) else str(first)
        if content:
            line += f": {content[:_SNIPPET]}"
    return line


def _board_context(columns: Sequence[BoardColumn], target_id: str, include_backside: bool) -> str:
    context = ""
    for column in columns:
        is_target = column.id == target_id
        archived = list(column.archived_cards) if include_backside else []
        if not column.cards and not archived and not is_target:
            continue

        context += f"\n\n### {column.name}{' (generating here)' if is_target else ''}"
        if column.cards:
            for card in column.cards:
                context += card_line(card)
        elif is_target:
            context += "\n(empty - new column)"

        if archived:
            context += "\n\nCompleted:"
            for card in archived:
                context += f"\n- {card.title}"
    return context


def build_card_prompt(
    channel: Any,
    columns: Sequence[BoardColumn],
    target: BoardColumn,
    count: int,
    system_instructions: Optional[str] = None,
) -> list[LLMMessage]:
    """System prompt fixes the output format; the user prompt ends with the task."""
    context = f"## Context\nChannel: {channel.name}"
    if channel.description:
        context += f"\n{channel.description}"
    if system_instructions and system_instructions.strip():
        context += f"\n\nGeneral guidance:\n{system_instructions.strip()}"
    if channel.ai_instructions and channel.ai_instructions.strip():
        context += f"\n\nChannel focus:\n{channel.ai_instructions.strip()}"
    parts = [context]

    board = _board_context(columns, target.id, bool(channel.include_backside_in_ai))
    if board:
        parts.append(f"## Current Board{board}")

    task = f'## Your Task\nGenerate {count} cards for the "{target.name}" column.'
    if target.instructions and target.instructions.strip():
        task += f"\n\n**Column Instructions:**\n{target.instructions.strip()}"
    parts.append(task)

    return [
        LLMMessage("system", _SYSTEM_TEMPLATE.format(count=count)),
        LLMMessage("user", "\n\n".join(parts)),
    ]


def extract_json_array(content: str, kind: str = "card") -> Optional[list[Any]]:
    """Return the first JSON array in ``content``, or None when there is none."""
    match = _ARRAY.search(content or "")
    if match is None:
        logger.warning(f"{kind}_reply_no_array")
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning(f"{kind}_reply_invalid_json", error=str(exc))
        return None
    if not isinstance(parsed, list):
        return None
    return parsed


def parse_card_reply(content: str) -> list[CardDraft]:
    """Pull card drafts from the first JSON array in ``content``.

    Fenced or chatty replies are fine. Items without a string title are
    dropped; anything unparseable yields an empty list.
    """
    parsed = extract_json_array(content)
    if parsed is None:
        return []

    drafts: list[CardDraft] = []
    for item in parsed:
        if not isinstance(item, dict) or not isinstance(item.get("title"), str):
            continue
        title = item["title"].strip()
        if not title:
            continue
        body = item.get("content")
        drafts.append(CardDraft(title, body.strip() if isinstance(body, str) else ""))
    return drafts


_SUMMARY_SYSTEM = """You are a concise summarizer. Generate a brief summary (1-2 sentences, max 100 characters) that captures the essence of this Kanban card for preview display.

Guidelines:
- Be extremely concise - aim for under 100 characters
- Focus on the most important information
- Don't mention "this card" or similar phrases
- Write in a neutral, informative tone
- If there's an AI conversation, focus on the key insight or conclusion
- If it's mostly notes, summarize the main point

Respond with ONLY the summary text, nothing else."""

_MESSAGE_PREFIX = {"ai_response": "[AI]", "question": "[Question]"}
SUMMARY_MAX_LENGTH = 150


def build_summary_prompt(card: Any, tasks: Sequence[Any] = ()) -> list[LLMMessage]:
    """Summarize a card from its title, its last five messages and task progress."""
    content = f'Card: "{card.title}"\n\n'
    messages = list(card.messages or [])
    if messages:
        content += "Messages:\n"
        for message in messages[-5:]:
            text = str(message.get("content", ""))
            prefix = _MESSAGE_PREFIX.get(message.get("type"), "[Note]")
            content += f"{prefix} {text[:200]}{'...' if len(text) > 200 else ''}\n"
    if tasks:
        done = sum(1 for task in tasks if task.status == "done")
        content += f"\nTasks: {done}/{len(tasks)} complete"
    return [LLMMessage("system", _SUMMARY_SYSTEM), LLMMessage("user", content)]


def clean_summary(content: str) -> str:
    summary = (content or "").strip()
    if len(summary) >= 2 and summary.startswith('"') and summary.endswith('"'):
        summary = summary[1:-1].strip()
    if len(summary) > SUMMARY_MAX_LENGTH:
        summary = summary[: SUMMARY_MAX_LENGTH - 3] + "..."
    return summary
