# mypy: ignore-errors
# tests/v1/test_users.py
"""Tests for public key lookup, contacts and the chat list."""

from fastapi import status
from sqlalchemy import select

from sealed_chat.models import Contact, MessageStatus, User


def test_public_key_lookup(client, alice, bob, alice_headers, key_pairs) -> None:
    response = client.get(f"/api/v1/public_key/{bob.id}", headers=alice_headers)
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["userId"] == bob.id
    assert body["publicKeyPem"] == key_pairs["bob"][1]


def test_public_key_missing_user(client, alice, alice_headers) -> None:
    response = client.get("/api/v1/public_key/nobody", headers=alice_headers)
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_public_key_not_registered(client, alice, alice_headers, db_session) -> None:
    db_session.add(User(id="dave", username="Dave", public_key_pem=None))
    db_session.flush()

    response = client.get("/api/v1/public_key/dave", headers=alice_headers)
    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert "dave" in response.json()["detail"]


def test_add_contact(client, alice, bob, alice_headers, db_session) -> None:
    response = client.post("/api/v1/contacts", json={"contactId": bob.id}, headers=alice_headers)
    assert response.status_code == status.HTTP_201_CREATED
    assert response.json() == {"ownerId": alice.id, "contactId": bob.id}

    # Adding the same contact twice is a no-op.
    response = client.post("/api/v1/contacts", json={"contactId": bob.id}, headers=alice_headers)
    assert response.status_code == status.HTTP_201_CREATED

    edges = db_session.scalars(select(Contact).where(Contact.owner_id == alice.id)).all()
    assert [edge.contact_id for edge in edges] == [bob.id]


def test_add_contact_rejects_self_and_unknown(client, alice, alice_headers) -> None:
    response = client.post("/api/v1/contacts", json={"contactId": alice.id}, headers=alice_headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST

    response = client.post("/api/v1/contacts", json={"contactId": "ghost"}, headers=alice_headers)
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_chat_list_orders_by_latest_message(
    client, alice, bob, carol, alice_headers, make_message, make_contact
) -> None:
    make_contact(alice, carol)
    make_message(alice, bob)
    make_message(bob, alice)
    make_message(bob, alice)
    newest = make_message(bob, alice, status=MessageStatus.READ)

    response = client.get("/api/v1/chat-list", headers=alice_headers)
    assert response.status_code == status.HTTP_200_OK
    entries = response.json()
    assert [entry["peerId"] for entry in entries] == [bob.id, carol.id]

    bob_entry, carol_entry = entries
    assert bob_entry["latestMessage"]["id"] == newest.id
    assert bob_entry["unreadCount"] == 2
    assert bob_entry["isContact"] is False
    assert bob_entry["username"] == "Bob"

    assert carol_entry["latestMessage"] is None
    assert carol_entry["unreadCount"] == 0
    assert carol_entry["isContact"] is True


def test_chat_list_for_other_user_is_forbidden(client, alice, bob, alice_headers) -> None:
    response = client.get("/api/v1/chat-list", params={"userId": bob.id}, headers=alice_headers)
    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_chat_list_empty(client, alice, alice_headers) -> None:
    response = client.get("/api/v1/chat-list", headers=alice_headers)
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == []
