# mypy: ignore-errors
# tests/v1/test_messages.py
"""Tests for the conversation history endpoint."""

from fastapi import status

from sealed_chat.models import MessageStatus


def test_history_requires_auth(client, alice, bob) -> None:
    response = client.get("/api/v1/messages", params={"recipientId": bob.id})
    assert response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN)


def test_history_rejects_invalid_token(client, alice, bob) -> None:
    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_history_returns_both_directions_oldest_first(
    client, alice, bob, carol, alice_headers, make_message
) -> None:
    first = make_message(alice, bob)
    second = make_message(bob, alice)
    make_message(alice, carol)
    third = make_message(alice, bob)

    response = client.get("/api/v1/messages", params={"recipientId": bob.id}, headers=alice_headers)
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert [m["id"] for m in body["messages"]] == [first.id, second.id, third.id]
    assert body["hasMore"] is False

    record = body["messages"][0]
    assert record["senderId"] == alice.id
    assert record["recipientId"] == bob.id
    assert record["clientMessageId"] == first.client_message_id
    assert record["contentType"] == "text"
    assert record["status"] == MessageStatus.SENT.value
    assert record["createdAt"].endswith("+00:00")


def test_history_pages_back_from_newest(client, alice, bob, alice_headers, make_message) -> None:
    messages = [make_message(alice, bob) for _ in range(5)]

    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id, "limit": 2},
        headers=alice_headers,
    )
    body = response.json()
    assert [m["id"] for m in body["messages"]] == [messages[3].id, messages[4].id]
    assert body["hasMore"] is True

    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id, "limit": 2, "skip": 4},
        headers=alice_headers,
    )
    body = response.json()
    assert [m["id"] for m in body["messages"]] == [messages[0].id]
    assert body["hasMore"] is False


def test_history_exact_page_has_no_more(client, alice, bob, alice_headers, make_message) -> None:
    for _ in range(3):
        make_message(bob, alice)

    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id, "limit": 3},
        headers=alice_headers,
    )
    body = response.json()
    assert len(body["messages"]) == 3
    assert body["hasMore"] is False


def test_history_for_other_user_is_forbidden(client, alice, bob, alice_headers) -> None:
    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id, "userId": bob.id},
        headers=alice_headers,
    )
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_history_with_self_is_rejected(client, alice, alice_headers) -> None:
    response = client.get("/api/v1/messages", params={"recipientId": alice.id}, headers=alice_headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_history_rejects_bad_paging(client, alice, bob, alice_headers) -> None:
    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id, "limit": 0},
        headers=alice_headers,
    )
    assert response.status_code == 422

    response = client.get(
        "/api/v1/messages",
        params={"recipientId": bob.id, "skip": -1},
        headers=alice_headers,
    )
    assert response.status_code == 422
