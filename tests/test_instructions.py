"""Running instruction cards and summarizing cards through the LLM."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from packages.kanthink.llm import client as llm_client
from packages.kanthink.llm import (
    LLMConfig,
    LLMMessage,
    LLMResponse,
    clean_summary,
    instruction_capabilities,
    parse_modify_reply,
    parse_move_reply,
)


class FakeClient:
    """Records prompts and returns a canned reply."""

    def __init__(self, config: LLMConfig, reply: str = "", error: Exception | None = None):
        self.config = config
        self.name = config.provider.value
        self.reply = reply
        self.error = error
        self.calls: list[list[LLMMessage]] = []

    def complete(self, messages):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.reply)


@pytest.fixture()
def fake_llm(monkeypatch):
    monkeypatch.setenv("OWNER_OPENAI_API_KEY", "owner-openai")
    created: list[FakeClient] = []
    behaviour = {"reply": "[]", "error": None}

    def _create(config):
        fake = FakeClient(config, behaviour["reply"], behaviour["error"])
        created.append(fake)
        return fake

    monkeypatch.setattr(llm_client, "create_llm_client", _create)
    return SimpleNamespace(created=created, behaviour=behaviour)


def _board(client, headers):
    response = client.post("/api/channels", json={"name": "Roadmap"}, headers=headers)
    assert response.status_code == 201
    board = response.json()
    return board["id"], {column["name"]: column["id"] for column in board["columns"]}


def _card(client, headers, channel_id, column_id, title, **extra):
    response = client.post(
        f"/api/channels/{channel_id}/cards",
        json={"column_id": column_id, "title": title, **extra},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


def _instruction(client, headers, channel_id, **payload):
    response = client.post(
        f"/api/channels/{channel_id}/instructions",
        json={"title": "Run", "instructions": "Do it", **payload},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


def _run(client, headers, channel_id, instruction_id, **extra):
    return client.post(
        "/api/run-instruction",
        json={"channel_id": channel_id, "instruction_id": instruction_id, **extra},
        headers=headers,
    )


def _detail(client, headers, channel_id):
    return client.get(f"/api/channels/{channel_id}", headers=headers).json()


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


def test_modify_reply_distinguishes_garbage_from_no_changes() -> None:
    assert parse_modify_reply("I could not decide.") is None
    assert parse_modify_reply("Nothing to change: []") == []

    (edit,) = parse_modify_reply(
        json.dumps(
            [
                {
                    "id": "c1",
                    "title": " New ",
                    "content": "Body",
                    "tags": ["Urgent", 3, " "],
                    "tasks": [{"title": "Call"}, {"description": "untitled"}],
                },
                {"id": "c2"},
                "stray",
            ]
        )
    )
    assert (edit.id, edit.title, edit.content, edit.tags) == ("c1", "New", "Body", ("Urgent",))
    assert [task.title for task in edit.tasks] == ["Call"]


def test_move_reply_keeps_complete_decisions() -> None:
    assert parse_move_reply("```\nnope\n```") is None

    moves = parse_move_reply(
        '[{"cardId": "a", "destinationColumnId": "done", "reason": "shipped"},'
        ' {"cardId": "b"}, {"cardId": "c", "destinationColumnId": "x", "reason": 4}]'
    )
    assert [(move.card_id, move.destination_column_id, move.reason) for move in moves] == [
        ("a", "done", "shipped"),
        ("c", "x", ""),
    ]


def test_capabilities_follow_instruction_wording() -> None:
    assert instruction_capabilities("Add a to-do checklist") == (
        instruction_capabilities("extract action items")
    )
    caps = instruction_capabilities("Label each card by theme")
    assert (caps.allow_tags, caps.allow_tasks) == (True, False)
    caps = instruction_capabilities(None)
    assert (caps.allow_tags, caps.allow_tasks) == (False, False)


def test_clean_summary_strips_quotes_and_truncates() -> None:
    assert clean_summary('  "Ship the beta."  ') == "Ship the beta."
    long = clean_summary("x" * 200)
    assert len(long) == 150
    assert long.endswith("...")


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


def test_generate_instruction_fills_target_column(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    _card(client, headers, channel_id, columns["Inbox"], "Existing")
    instruction = _instruction(
        client,
        headers,
        channel_id,
        action="generate",
        target={"type": "column", "columnId": columns["Maybe"]},
        card_count=2,
        instructions="Brainstorm launch ideas",
    )
    fake_llm.behaviour["reply"] = json.dumps(
        [
            {"title": "Teaser video", "content": "Short clip."},
            {"title": "Press kit"},
            {"title": "Beyond the count"},
        ]
    )

    response = _run(client, headers, channel_id, instruction["id"])

    assert response.status_code == 200
    body = response.json()
    assert body["action"] == "generate"
    assert body["target_column_ids"] == [columns["Maybe"]]
    assert body["source"] == "owner"
    created = body["created_cards"]
    assert [card["title"] for card in created] == ["Teaser video", "Press kit"]
    assert {card["created_by_instruction_id"] for card in created} == {instruction["id"]}
    assert [card["position"] for card in created] == [0, 1]
    assert all(card["source"] == "ai" for card in created)
    assert all(card["column_id"] == columns["Maybe"] for card in created)

    (call,) = fake_llm.created[0].calls
    assert 'Target Column: "Maybe"' in call[1].content
    assert "- Existing" in call[1].content
    assert call[1].content.endswith("**Instructions:**\nBrainstorm launch ideas")

    detail = _detail(client, headers, channel_id)
    assert detail["instruction_cards"][0]["last_executed_at"] is not None
    assert client.get("/api/usage", headers=headers).json()["used"] == 1


def test_unknown_target_type_is_rejected(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, _ = _board(client, headers)
    instruction = _instruction(
        client, headers, channel_id, action="generate", target={"type": "galaxy"}
    )

    response = _run(client, headers, channel_id, instruction["id"])

    assert response.status_code == 400
    assert response.json() == {"error": "Unknown instruction target: galaxy"}
    assert fake_llm.created == []


# ---------------------------------------------------------------------------
# modify
# ---------------------------------------------------------------------------


def test_modify_instruction_rewrites_cards(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    first = _card(
        client,
        headers,
        channel_id,
        columns["Inbox"],
        "rough idea",
        content="We could",
        tags=["urgent"],
    )
    second = _card(client, headers, channel_id, columns["Inbox"], "other")
    _card(client, headers, channel_id, columns["Done"], "untouched")
    instruction = _instruction(
        client,
        headers,
        channel_id,
        action="modify",
        target={"type": "column", "columnId": columns["Inbox"]},
        instructions="Sharpen titles, label each card and pull out action items as tasks",
    )
    fake_llm.behaviour["reply"] = json.dumps(
        [
            {
                "id": first["id"],
                "title": "Sharp idea",
                "content": "Rewritten body",
                "tags": ["Urgent", "growth"],
                "tasks": [{"title": "Call vendor", "description": "Before Friday"}],
            },
            {"id": "not-sent", "title": "Ghost"},
        ]
    )

    response = _run(client, headers, channel_id, instruction["id"])

    assert response.status_code == 200
    body = response.json()
    (modified,) = body["modified_cards"]
    assert modified["id"] == first["id"]
    assert modified["title"] == "Sharp idea"
    assert modified["tags"] == ["urgent", "growth"]
    assert [message["content"] for message in modified["messages"]] == [
        "We could",
        "Rewritten body",
    ]
    (task,) = body["created_tasks"]
    assert (task["card_id"], task["title"], task["description"]) == (
        first["id"],
        "Call vendor",
        "Before Friday",
    )
    assert task["status"] == "not_started"

    (call,) = fake_llm.created[0].calls
    assert f"### Card ID: {first['id']}" in call[1].content
    assert f"### Card ID: {second['id']}" in call[1].content
    assert "untouched" not in call[1].content
    assert "(no content)" in call[1].content

    titles = {card["title"] for card in _detail(client, headers, channel_id)["cards"]}
    assert titles == {"Sharp idea", "other", "untouched"}


def test_modify_without_tag_or_task_wording_only_edits_text(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    card = _card(client, headers, channel_id, columns["Inbox"], "draft", tags=["keep"])
    instruction = _instruction(
        client,
        headers,
        channel_id,
        action="modify",
        target={"type": "board"},
        instructions="Shorten every title",
    )
    fake_llm.behaviour["reply"] = json.dumps(
        [{"id": card["id"], "title": "Short", "tags": ["extra"], "tasks": [{"title": "No"}]}]
    )

    body = _run(client, headers, channel_id, instruction["id"]).json()

    (modified,) = body["modified_cards"]
    assert modified["title"] == "Short"
    assert modified["tags"] == ["keep"]
    assert modified["messages"] == []
    assert body["created_tasks"] == []
    assert "Do NOT add tags" in fake_llm.created[0].calls[0][0].content


def test_skip_already_processed_cards(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    first = _card(client, headers, channel_id, columns["Inbox"], "one")
    second = _card(client, headers, channel_id, columns["Inbox"], "two")
    instruction = _instruction(
        client,
        headers,
        channel_id,
        action="modify",
        target={"type": "column", "columnId": columns["Inbox"]},
    )

    first_run = _run(client, headers, channel_id, instruction["id"], skip_already_processed=True)
    assert first_run.status_code == 200
    assert first_run.json()["modified_cards"] == []

    again = _run(client, headers, channel_id, instruction["id"], skip_already_processed=True)

    assert again.status_code == 200
    body = again.json()
    assert body["skipped_card_ids"] == [first["id"], second["id"]]
    assert body["message"] == "All 2 card(s) already processed by this instruction."
    assert len(fake_llm.created) == 1
    assert client.get("/api/usage", headers=headers).json()["used"] == 1

    rerun = _run(client, headers, channel_id, instruction["id"])
    assert rerun.json()["skipped_card_ids"] == []
    assert len(fake_llm.created) == 2


def test_empty_source_columns_skip_the_model(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    instruction = _instruction(
        client,
        headers,
        channel_id,
        action="modify",
        target={"type": "columns", "columnIds": [columns["Maybe"], "elsewhere"]},
    )

    response = _run(client, headers, channel_id, instruction["id"])

    assert response.status_code == 200
    body = response.json()
    assert body["target_column_ids"] == [columns["Maybe"]]
    assert body["message"] == "No cards found in source columns."
    assert body["source"] is None
    assert fake_llm.created == []
    assert client.get("/api/usage", headers=headers).json()["used"] == 0


def test_unreadable_reply_leaves_cards_alone(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    card = _card(client, headers, channel_id, columns["Inbox"], "steady")
    instruction = _instruction(client, headers, channel_id, action="modify")
    fake_llm.behaviour["reply"] = "Sorry, I cannot help with that."

    response = _run(client, headers, channel_id, instruction["id"])

    assert response.status_code == 502
    assert response.json() == {"error": "AI returned an unreadable reply"}
    assert len(fake_llm.created[0].calls) == 2
    detail = _detail(client, headers, channel_id)
    assert [item["title"] for item in detail["cards"]] == [card["title"]]
    assert detail["instruction_cards"][0]["last_executed_at"] is None
    assert client.get("/api/usage", headers=headers).json()["used"] == 0


# ---------------------------------------------------------------------------
# move
# ---------------------------------------------------------------------------


def test_move_instruction_sorts_cards(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    shipped = _card(client, headers, channel_id, columns["Inbox"], "shipped feature")
    pending = _card(client, headers, channel_id, columns["Inbox"], "pending feature")
    _card(client, headers, channel_id, columns["Done"], "old win")
    instruction = _instruction(
        client,
        headers,
        channel_id,
        action="move",
        target={"type": "column", "columnId": columns["Inbox"]},
        instructions="Move finished work to Done",
    )
    fake_llm.behaviour["reply"] = json.dumps(
        [
            {"cardId": shipped["id"], "destinationColumnId": columns["Done"], "reason": "released"},
            {"cardId": pending["id"], "destinationColumnId": columns["Inbox"]},
            {"cardId": pending["id"], "destinationColumnId": "nowhere"},
        ]
    )

    response = _run(client, headers, channel_id, instruction["id"])

    assert response.status_code == 200
    assert response.json()["moved_cards"] == [
        {
            "card_id": shipped["id"],
            "from_column_id": columns["Inbox"],
            "to_column_id": columns["Done"],
            "reason": "released",
        }
    ]
    (call,) = fake_llm.created[0].calls
    assert f'"Done" (ID: {columns["Done"]})' in call[0].content
    assert "**Current Column:** Inbox" in call[1].content

    columns_after = _detail(client, headers, channel_id)["columns"]
    layout = {column["name"]: column["card_ids"] for column in columns_after}
    assert layout["Inbox"] == [pending["id"]]
    assert layout["Done"][-1] == shipped["id"]
    assert len(layout["Done"]) == 2


def test_triggering_card_narrows_the_run(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    _card(client, headers, channel_id, columns["Inbox"], "bystander")
    trigger = _card(client, headers, channel_id, columns["Inbox"], "trigger")
    instruction = _instruction(client, headers, channel_id, action="move")

    response = _run(
        client, headers, channel_id, instruction["id"], triggering_card_id=trigger["id"]
    )

    assert response.status_code == 200
    content = fake_llm.created[0].calls[0][1].content
    assert "trigger" in content
    assert "bystander" not in content


def test_viewer_cannot_run_instructions(client, signup, fake_llm) -> None:
    owner = signup(client, "alice@example.com")
    viewer = signup(client, "bob@example.com")
    channel_id, _ = _board(client, owner)
    client.post(
        f"/api/channels/{channel_id}/shares",
        json={"email": "bob@example.com", "role": "viewer"},
        headers=owner,
    )
    instruction = _instruction(client, owner, channel_id, action="generate")

    response = _run(client, viewer, channel_id, instruction["id"])

    assert response.status_code == 403
    assert response.json() == {"error": "You do not have edit access to this channel"}
    assert fake_llm.created == []


# ---------------------------------------------------------------------------
# card summary
# ---------------------------------------------------------------------------


def test_summarize_card_stores_clean_summary(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    card = _card(client, headers, channel_id, columns["Inbox"], "Launch", content="Plan the launch")
    for title, status in (("Write post", "done"), ("Record demo", "not_started")):
        client.post(
            f"/api/channels/{channel_id}/tasks",
            json={"card_id": card["id"], "title": title, "status": status},
            headers=headers,
        )
    fake_llm.behaviour["reply"] = '"' + "word " * 40 + '"'

    summary_url = f"/api/channels/{channel_id}/cards/{card['id']}/summary"
    response = client.post(summary_url, headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["source"] == "owner"
    assert len(body["summary"]) == 150
    assert body["summary"].endswith("...")
    assert not body["summary"].startswith('"')
    assert body["card"]["summary"] == body["summary"]
    assert body["card"]["summary_updated_at"] is not None

    (call,) = fake_llm.created[0].calls
    assert call[1].content.startswith('Card: "Launch"')
    assert "[Note] Plan the launch" in call[1].content
    assert call[1].content.endswith("Tasks: 1/2 complete")

    stored = client.get(f"/api/channels/{channel_id}/cards/{card['id']}", headers=headers).json()
    assert stored["summary"] == body["summary"]
    assert client.get("/api/usage", headers=headers).json()["used"] == 1


def test_summarize_card_upstream_failure(client, signup, fake_llm) -> None:
    headers = signup(client, "alice@example.com")
    channel_id, columns = _board(client, headers)
    card = _card(client, headers, channel_id, columns["Inbox"], "Launch")
    fake_llm.behaviour["error"] = RuntimeError("boom")

    summary_url = f"/api/channels/{channel_id}/cards/{card['id']}/summary"
    response = client.post(summary_url, headers=headers)

    assert response.status_code == 502
    assert response.json() == {"error": "LLM error: boom"}
    stored = client.get(f"/api/channels/{channel_id}/cards/{card['id']}", headers=headers).json()
    assert stored["summary"] is None
    assert stored["summary_updated_at"] is None
