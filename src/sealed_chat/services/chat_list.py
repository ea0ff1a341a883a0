# src/sealed_chat/services/chat_list.py
"""Per-user chat list aggregation."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from sealed_chat.db.time import as_utc
from sealed_chat.models import Contact, Message, MessageStatus, User
from sealed_chat.schemas.message import MessageOut
from sealed_chat.schemas.users import ChatListEntry

logger = logging.getLogger(__name__)


def _peer_column(user_id: str):  # type: ignore[no-untyped-def]
    return case(
        (Message.sender_id == user_id, Message.recipient_id),
        else_=Message.sender_id,
    )


def _involves(user_id: str):  # type: ignore[no-untyped-def]
    return or_(Message.sender_id == user_id, Message.recipient_id == user_id)


def latest_messages(db: Session, user_id: str) -> dict[str, Message]:
    """Return the newest message exchanged with each peer of `user_id`.

    Newest means maximum `created_at`, ties broken by the larger id.
    """
    peer = _peer_column(user_id)
    ranked = (
        select(
            Message.id.label("message_id"),
            func.row_number()
            .over(partition_by=peer, order_by=(Message.created_at.desc(), Message.id.desc()))
            .label("position"),
        )
        .where(_involves(user_id))
        .subquery()
    )
    rows = db.scalars(
        select(Message).join(ranked, Message.id == ranked.c.message_id).where(ranked.c.position == 1)
    ).all()

    latest: dict[str, Message] = {}
    for message in rows:
        peer_id = message.recipient_id if message.sender_id == user_id else message.sender_id
        latest[peer_id] = message
    return latest


def unread_counts(db: Session, user_id: str) -> dict[str, int]:
    """Count messages addressed to `user_id` that are not read, per sender."""
    rows = db.execute(
        select(Message.sender_id, func.count(Message.id))
        .where(
            Message.recipient_id == user_id,
            Message.status != MessageStatus.READ.value,
        )
        .group_by(Message.sender_id)
    ).all()
    return {sender_id: int(count) for sender_id, count in rows}


def compute_chat_list(db: Session, user_id: str) -> list[ChatListEntry]:
    """Build the chat list for `user_id`.

    Peers are the union of explicit contacts and everyone the user has
    exchanged at least one message with. Entries are ordered by the latest
    message, newest first; peers without history come last, by username.
    """
    contact_ids = set(db.scalars(select(Contact.contact_id).where(Contact.owner_id == user_id)).all())
    latest = latest_messages(db, user_id)
    unread = unread_counts(db, user_id)

    peer_ids = (contact_ids | set(latest)) - {user_id}
    if not peer_ids:
        return []

    users = {user.id: user for user in db.scalars(select(User).where(User.id.in_(peer_ids))).all()}

    entries: list[ChatListEntry] = []
    for peer_id in peer_ids:
        user = users.get(peer_id)
        message = latest.get(peer_id)
        entries.append(
            ChatListEntry(
                peer_id=peer_id,
                username=user.username if user else None,
                photo=user.photo if user else None,
                status=user.status if user else None,
                last_seen=user.last_seen if user else None,
                latest_message=MessageOut.model_validate(message) if message else None,
                unread_count=unread.get(peer_id, 0),
                is_contact=peer_id in contact_ids,
            )
        )

    def sort_key(entry: ChatListEntry) -> tuple[float, int]:
        message = entry.latest_message
        created: datetime = as_utc(message.created_at)  # type: ignore[union-attr]
        return (created.timestamp(), message.id)  # type: ignore[union-attr]

    with_history = sorted(
        (entry for entry in entries if entry.latest_message is not None),
        key=sort_key,
        reverse=True,
    )
    without_history = sorted(
        (entry for entry in entries if entry.latest_message is None),
        key=lambda entry: ((entry.username or "").lower(), entry.peer_id),
    )
    logger.debug(
        "Chat list for %s: %d peers with history, %d without",
        user_id,
        len(with_history),
        len(without_history),
    )
    return with_history + without_history
