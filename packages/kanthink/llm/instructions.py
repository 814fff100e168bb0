"""Prompts and reply parsers for running instruction cards.

An instruction card either generates new cards, rewrites existing ones
or sorts them into other columns. Each action has its own prompt; the
user prompt always ends with the instruction text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .client import LLMMessage
from .prompts import BoardColumn, card_line, extract_json_array

__all__ = [
    "CardEdit",
    "CardMove",
    "InstructionCapabilities",
    "TaskDraft",
    "DEFAULT_INSTRUCTION_CARD_COUNT",
    "instruction_capabilities",
    "build_generate_prompt",
    "build_modify_prompt",
    "build_move_prompt",
    "parse_modify_reply",
    "parse_move_reply",
]

DEFAULT_INSTRUCTION_CARD_COUNT = 5
_MOVE_SNIPPET = 300

_TASK_KEYWORDS = ("task", "action item", "todo", "to-do", "checklist")
_TAG_KEYWORDS = ("tag", "label")

_STATUS_ICON = {"done": "[x]", "in_progress": "[-]"}


@dataclass(frozen=True, slots=True)
class InstructionCapabilities:
    """What a modify run may add besides title and content."""

    allow_tasks: bool = False
    allow_tags: bool = False


@dataclass(frozen=True, slots=True)
class TaskDraft:
    title: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class CardEdit:
    id: str
    title: str
    content: str = ""
    tags: tuple[str, ...] = ()
    tasks: tuple[TaskDraft, ...] = ()


@dataclass(frozen=True, slots=True)
class CardMove:
    card_id: str
    destination_column_id: str
    reason: str = ""


def instruction_capabilities(text: Optional[str]) -> InstructionCapabilities:
    """Tasks and tags are only offered when the instruction asks for them."""
    lowered = (text or "").lower()
    return InstructionCapabilities(
        allow_tasks=any(keyword in lowered for keyword in _TASK_KEYWORDS),
        allow_tags=any(keyword in lowered for keyword in _TAG_KEYWORDS),
    )


def _context(channel: Any, system_instructions: Optional[str], with_description: bool) -> str:
    section = f"## Context\nChannel: {channel.name}"
    if with_description and channel.description:
        section += f"\n{channel.description}"
    if system_instructions and system_instructions.strip():
        section += f"\n\nGeneral guidance:\n{system_instructions.strip()}"
    return section


def _message_text(card: Any) -> str:
    return "\n".join(str(message.get("content", "")) for message in card.messages or [])


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------

_GENERATE_SYSTEM = """Generate {count} cards as a JSON array.

Each card has:
- "title": concise (1-8 words)
- "content": detailed markdown-formatted content (2-4 paragraphs minimum)

Content Guidelines:
- Write substantively - explain each idea thoroughly
- Use markdown: **bold**, *italics*, bullet lists, numbered lists, headers (##)
- Include context, rationale, implications, or examples as appropriate
- Aim for 150-400 words per card - depth matters for planning/brainstorming
- Each card should stand alone as a complete thought
{rules}
Respond with ONLY the JSON array:
[{{"title": "Card Title", "content": "## Overview\\n\\nDetailed explanation..."}}]"""


def build_generate_prompt(
    instruction: Any,
    channel: Any,
    context_columns: Sequence[BoardColumn],
    target: Optional[BoardColumn],
    system_instructions: Optional[str] = None,
) -> list[LLMMessage]:
    count = instruction.card_count or DEFAULT_INSTRUCTION_CARD_COUNT

    target_info = ""
    if target is not None:
        target_info = f'\n\nTarget Column: "{target.name}"'
        if target.instructions:
            target_info += (
                "\nColumn Rules (cards generated MUST fit these criteria):\n"
                f"{target.instructions}"
            )
    rules = "\n- IMPORTANT: All generated cards must fit the target column rules\n" if target_info else ""

    parts = [_context(channel, system_instructions, True) + target_info]

    board = "## Current Board"
    for column in context_columns:
        board += f"\n\n### {column.name}"
        if column.cards:
            for card in column.cards:
                board += card_line(card)
        else:
            board += "\n(empty)"
    parts.append(board)

    task = f"## Your Task\nGenerate {count} new cards."
    if instruction.instructions and instruction.instructions.strip():
        task += f"\n\n**Instructions:**\n{instruction.instructions.strip()}"
    parts.append(task)

    return [
        LLMMessage("system", _GENERATE_SYSTEM.format(count=count, rules=rules)),
        LLMMessage("user", "\n\n".join(parts)),
    ]


# ---------------------------------------------------------------------------
# modify
# ---------------------------------------------------------------------------


def _modify_system(capabilities: InstructionCapabilities) -> str:
    fields = [
        '"id": "original-card-id"',
        '"title": "Updated Title"',
        '"content": "Optional updated content in markdown"',
    ]
    notes: list[str] = []
    restrictions: list[str] = []
    if capabilities.allow_tags:
        fields.append('"tags": ["TagName1", "TagName2"]')
        notes.append(
            "Tags: Use them to categorize or label cards.\n"
            "- Provide an array of tag names to add to the card"
        )
    else:
        restrictions.append("Do NOT add tags - this was not requested.")
    if capabilities.allow_tasks:
        fields.append(
            '"tasks": [\n    { "title": "Action item extracted from content", '
            '"description": "Optional details" }\n  ]'
        )
        notes.append(
            "Tasks: Use them to extract action items from the card content.\n"
            "- Only create NEW tasks - don't duplicate existing tasks shown in the card context\n"
            "- Tasks should be concrete, actionable items"
        )
    else:
        restrictions.append("Do NOT create tasks or action items - this was not requested.")

    example = "[{\n  " + ",\n  ".join(fields) + "\n}]"
    system = (
        "You are modifying existing cards based on instructions.\n\n"
        "For each card, analyze its content and apply the requested modifications.\n\n"
        "Respond with a JSON array of modified cards, maintaining the original card ID:\n"
        f"{example}\n\n"
    )
    if notes:
        system += "\n\n".join(notes) + "\n\n"
    if restrictions:
        system += "IMPORTANT: " + " ".join(restrictions) + "\n\n"
    return system + "Only include cards that have actual changes. If a card doesn't need modification, omit it."


def build_modify_prompt(
    instruction: Any,
    channel: Any,
    cards: Sequence[Any],
    tasks_by_card: Optional[dict[str, Sequence[Any]]] = None,
    system_instructions: Optional[str] = None,
) -> list[LLMMessage]:
    capabilities = instruction_capabilities(instruction.instructions)
    tasks_by_card = tasks_by_card or {}

    section = "## Cards to Modify"
    for card in cards:
        section += f"\n\n### Card ID: {card.id}"
        section += f"\n**Title:** {card.title}"
        section += f"\n**Content:**\n{_message_text(card) or '(no content)'}"
        existing = tasks_by_card.get(card.id) or []
        if capabilities.allow_tasks and existing:
            section += "\n**Existing Tasks:**"
            for task in existing:
                status = getattr(task.status, "value", task.status)
                section += f"\n  {_STATUS_ICON.get(status, '[ ]')} {task.title}"

    task = "## Your Task\nModify the cards according to these instructions:"
    if instruction.instructions and instruction.instructions.strip():
        task += f"\n\n{instruction.instructions.strip()}"

    parts = [_context(channel, system_instructions, False), section, task]
    return [
        LLMMessage("system", _modify_system(capabilities)),
        LLMMessage("user", "\n\n".join(parts)),
    ]


def _strings(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_modify_reply(content: str) -> Optional[list[CardEdit]]:
    """Card edits from the reply; None when it holds no JSON array.

    Items need a string ``id`` and ``title``. An empty array is a valid
    "nothing to change" answer.
    """
    parsed = extract_json_array(content, "modify")
    if parsed is None:
        return None
    edits: list[CardEdit] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        if not isinstance(item.get("id"), str) or not isinstance(item.get("title"), str):
            continue
        tasks = tuple(
            TaskDraft(
                task["title"].strip(),
                task["description"].strip() if isinstance(task.get("description"), str) else "",
            )
            for task in item.get("tasks") or []
            if isinstance(task, dict) and isinstance(task.get("title"), str) and task["title"].strip()
        )
        body = item.get("content")
        edits.append(
            CardEdit(
                id=item["id"],
                title=item["title"].strip(),
                content=body.strip() if isinstance(body, str) else "",
                tags=tuple(_strings(item.get("tags"))),
                tasks=tasks,
            )
        )
    return edits


# ---------------------------------------------------------------------------
# move
# ---------------------------------------------------------------------------


def build_move_prompt(
    instruction: Any,
    channel: Any,
    columns: Sequence[Any],
    cards: Sequence[tuple[Any, str]],
    system_instructions: Optional[str] = None,
) -> list[LLMMessage]:
    """``cards`` pairs each card with the name of the column it sits in."""
    listing = []
    for column in columns:
        line = f'- "{column.name}" (ID: {column.id})'
        if column.instructions:
            line += f"\n  Rules: {column.instructions}"
        listing.append(line)

    system = (
        "You are analyzing cards to determine which column they should be moved to.\n\n"
        f"Available columns and their rules:\n{chr(10).join(listing)}\n\n"
        "For each card, decide if it should be moved to a different column based on "
        "the user's criteria AND the column rules.\n\n"
        "Respond with a JSON array of move decisions:\n"
        '[{"cardId": "card-id-here", "destinationColumnId": "column-id-here", '
        '"reason": "brief explanation"}]\n\n'
        "Only include cards that SHOULD be moved. If a card should stay in its current "
        "column, omit it from the response.\n"
        "If no cards should be moved, return an empty array: []"
    )

    section = "## Cards to Analyze"
    for card, column_name in cards:
        section += f"\n\n### Card ID: {card.id}"
        section += f"\n**Current Column:** {column_name}"
        section += f"\n**Title:** {card.title}"
        if card.summary:
            section += f"\n**Summary:** {card.summary}"
        elif card.messages:
            text = " ".join(str(message.get("content", "")) for message in card.messages)
            snippet = text[:_MOVE_SNIPPET]
            section += f"\n**Content:** {snippet}{'...' if len(text) > _MOVE_SNIPPET else ''}"

    task = (
        "## Move Criteria\n"
        "Analyze each card and determine if it should be moved based on these criteria:"
    )
    if instruction.instructions and instruction.instructions.strip():
        task += f"\n\n{instruction.instructions.strip()}"

    parts = [_context(channel, system_instructions, False), section, task]
    return [LLMMessage("system", system), LLMMessage("user", "\n\n".join(parts))]


def parse_move_reply(content: str) -> Optional[list[CardMove]]:
    """Move decisions from the reply; None when it holds no JSON array."""
    parsed = extract_json_array(content, "move")
    if parsed is None:
        return None
    moves: list[CardMove] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        card_id = item.get("cardId")
        destination = item.get("destinationColumnId")
        if not isinstance(card_id, str) or not isinstance(destination, str):
            continue
        reason = item.get("reason")
        moves.append(CardMove(card_id, destination, reason if isinstance(reason, str) else ""))
    return moves
