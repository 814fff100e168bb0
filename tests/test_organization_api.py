"""Integration tests for the organization and folder endpoints."""

from __future__ import annotations

import pytest


def _channel(client, headers, name):
    response = client.post("/api/channels", json={"name": name}, headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


def _folder(client, headers, name):
    response = client.post("/api/folders", json={"name": name}, headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


def _organize(client, headers, **payload):
    return client.post("/api/organization", json=payload, headers=headers)


def test_requests_without_identity_are_rejected(client) -> None:
    response = client.get("/api/folders")
    assert response.status_code == 401
    assert response.json() == {"error": "Not authenticated"}

    response = client.get("/api/folders", headers={"X-User-ID": "ghost"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unknown user"}


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"operation": "shuffle"}, "Invalid operation"),
        ({}, "Invalid operation"),
        ({"operation": "moveChannelToFolder"}, "channelId is required"),
        (
            {"operation": "reorderChannelInFolder", "channelId": "c1", "toIndex": 0},
            "channelId, fromIndex, and toIndex are required",
        ),
        ({"operation": "reorderChannels"}, "channelOrder array is required"),
        (
            {"operation": "reorderFolders", "fromIndex": 0, "toIndex": 1},
            "folderId, fromIndex, and toIndex are required",
        ),
    ],
)
def test_invalid_organization_requests(client, signup, payload, message) -> None:
    headers = signup(client, "alice@example.com")

    response = _organize(client, headers, **payload)

    assert response.status_code == 400
    assert response.json() == {"error": message}


def test_reorder_root_channels(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    first, second, third = (_channel(client, headers, name) for name in ("A", "B", "C"))

    response = _organize(
        client, headers, operation="reorderChannels", channelOrder=[third, first, second]
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}

    layout = client.get("/api/folders", headers=headers).json()
    assert layout["root_channel_ids"] == [third, first, second]

    response = _organize(
        client,
        headers,
        operation="reorderChannelInFolder",
        channelId=first,
        fromIndex=1,
        toIndex=0,
    )
    assert response.status_code == 200
    layout = client.get("/api/folders", headers=headers).json()
    assert layout["root_channel_ids"] == [first, third, second]


def test_reorder_skips_ids_not_at_root(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    first, second, third = (_channel(client, headers, name) for name in ("A", "B", "C"))
    work = _folder(client, headers, "Work")
    _organize(
        client, headers, operation="moveChannelToFolder", channelId=second, targetFolderId=work
    )

    response = _organize(
        client,
        headers,
        operation="reorderChannels",
        channelOrder=["nope", third, second, third, first],
    )

    assert response.status_code == 200
    assert response.json() == {"success": True}
    layout = client.get("/api/folders", headers=headers).json()
    assert layout["root_channel_ids"] == [third, first]
    assert layout["folders"][0]["channel_ids"] == [second]


def test_move_channels_between_folders(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    first, second, third = (_channel(client, headers, name) for name in ("A", "B", "C"))
    work = _folder(client, headers, "Work")
    home = _folder(client, headers, "Home")

    for channel_id in (first, second):
        response = _organize(
            client,
            headers,
            operation="moveChannelToFolder",
            channelId=channel_id,
            targetFolderId=work,
        )
        assert response.json() == {"success": True}
    response = _organize(
        client,
        headers,
        operation="moveChannelToFolder",
        channelId=third,
        targetFolderId=work,
        toIndex=0,
    )
    assert response.status_code == 200

    layout = client.get("/api/folders", headers=headers).json()
    assert [folder["id"] for folder in layout["folders"]] == [work, home]
    assert layout["folders"][0]["channel_ids"] == [third, first, second]
    assert layout["root_channel_ids"] == []

    response = _organize(
        client, headers, operation="reorderFolders", folderId=home, fromIndex=1, toIndex=0
    )
    assert response.status_code == 200
    response = _organize(
        client,
        headers,
        operation="moveChannelToFolder",
        channelId=first,
        targetFolderId=None,
    )
    assert response.status_code == 200

    layout = client.get("/api/folders", headers=headers).json()
    assert [folder["id"] for folder in layout["folders"]] == [home, work]
    assert layout["folders"][1]["channel_ids"] == [third, second]
    assert [folder["position"] for folder in layout["folders"]] == [0, 1]
    assert layout["root_channel_ids"] == [first]


def test_move_to_unknown_folder(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    bob = signup(client, "bob@example.com")
    channel_id = _channel(client, headers, "A")
    bobs_folder = _folder(client, bob, "Bob only")

    response = _organize(
        client,
        headers,
        operation="moveChannelToFolder",
        channelId=channel_id,
        targetFolderId=bobs_folder,
    )
    assert response.status_code == 404
    assert response.json() == {"error": "Target folder not found"}

    response = _organize(
        client, headers, operation="moveChannelToFolder", channelId="missing", targetFolderId=None
    )
    assert response.status_code == 404
    assert response.json() == {"error": "Channel not found in organization"}


def test_move_into_shared_folder_reports_cascade(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    bob = signup(client, "bob@example.com")
    channel_id = _channel(client, headers, "Roadmap")
    folder_id = _folder(client, headers, "Team")

    shared = client.post(
        f"/api/folders/{folder_id}/shares",
        json={"email": "bob@example.com", "role": "editor"},
        headers=headers,
    )
    assert shared.status_code == 201
    assert shared.json()["share"]["is_pending"] is False
    assert shared.json()["cascade"]["status"] == "ok"

    response = _organize(
        client,
        headers,
        operation="moveChannelToFolder",
        channelId=channel_id,
        targetFolderId=folder_id,
    )
    body = response.json()
    assert body["success"] is True
    assert body["cascade"]["status"] == "ok"
    assert len(body["cascade"]["created"]) == 1

    channels = client.get("/api/channels", headers=bob).json()
    assert [(item["id"], item["role"]) for item in channels["channels"]] == [
        (channel_id, "editor")
    ]
    assert client.get("/api/folders", headers=bob).json()["root_channel_ids"] == [channel_id]

    edited = client.patch(
        f"/api/channels/{channel_id}", json={"description": "Q3 plan"}, headers=bob
    )
    assert edited.status_code == 200
    assert edited.json()["description"] == "Q3 plan"


def test_delete_folder_returns_channels_to_root(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    loose = _channel(client, headers, "Loose")
    boxed = _channel(client, headers, "Boxed")
    folder_id = _folder(client, headers, "Box")
    _organize(
        client, headers, operation="moveChannelToFolder", channelId=boxed, targetFolderId=folder_id
    )

    response = client.delete(f"/api/folders/{folder_id}", headers=headers)

    assert response.status_code == 200
    assert response.json()["success"] is True
    layout = client.get("/api/folders", headers=headers).json()
    assert layout == {"folders": [], "root_channel_ids": [loose, boxed]}


def test_board_endpoints(client, signup) -> None:
    headers = signup(client, "alice@example.com")
    channel_id = _channel(client, headers, "Board")

    board = client.get(f"/api/channels/{channel_id}", headers=headers).json()
    assert [column["name"] for column in board["columns"]] == [
        "Inbox",
        "Interesting",
        "Maybe",
        "Done",
    ]
    assert board["role"] == "owner"
    inbox = board["columns"][0]["id"]

    created = client.post(
        f"/api/channels/{channel_id}/cards",
        json={"column_id": inbox, "title": "Idea", "content": "Write it down"},
        headers=headers,
    )
    assert created.status_code == 201
    card_id = created.json()["id"]
    assert created.json()["messages"][0]["content"] == "Write it down"

    moved = client.post(
        f"/api/channels/{channel_id}/cards/move",
        json={"card_id": card_id, "to_column_id": board["columns"][3]["id"]},
        headers=headers,
    )
    assert moved.status_code == 200
    assert moved.json()["column_id"] == board["columns"][3]["id"]

    invalid = client.post(
        f"/api/channels/{channel_id}/cards", json={"title": "No column"}, headers=headers
    )
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Invalid request"

    deleted = client.delete(f"/api/channels/{channel_id}/columns/{inbox}", headers=headers)
    assert deleted.json() == {"success": True, "moved_to": board["columns"][1]["id"]}
