# src/sealed_chat/services/messages.py
"""Persistence operations for direct messages."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from sqlalchemy import and_, delete, desc, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sealed_chat.core.errors import AuthorizationError, ValidationError
from sealed_chat.db.time import utcnow
from sealed_chat.models import ContentType, Message, MessageStatus, User
from sealed_chat.schemas.message import MediaEnvelope, TextEnvelope
from sealed_chat.services.delivery import DeliveryStateMachine

logger = logging.getLogger(__name__)

CLEANUP_BATCH_SIZE = 1000


def conversation_filter(user_id: str, peer_id: str):  # type: ignore[no-untyped-def]
    """SQL filter matching messages in either direction between two users."""
    return or_(
        and_(Message.sender_id == user_id, Message.recipient_id == peer_id),
        and_(Message.sender_id == peer_id, Message.recipient_id == user_id),
    )


class MessageService:
    """Synchronous message persistence; async callers run it in a worker thread."""

    @staticmethod
    def find_by_client_id(db: Session, sender_id: str, client_message_id: str) -> Message | None:
        return db.scalars(
            select(Message).where(
                Message.sender_id == sender_id,
                Message.client_message_id == client_message_id,
            )
        ).first()

    @staticmethod
    def create_message(
        db: Session,
        envelope: TextEnvelope | MediaEnvelope,
    ) -> tuple[Message, bool]:
        """Persist a validated envelope.

        Replays of an already stored `(sender_id, client_message_id)` return
        the existing record instead of inserting a duplicate.

        Returns:
            Tuple of (message, created)

        Raises:
            ValidationError: If a participant or the replied-to message does not exist
        """
        existing = MessageService.find_by_client_id(db, envelope.sender_id, envelope.client_message_id)
        if existing is not None:
            logger.info(
                "Duplicate message %s from %s; returning stored record %s",
                envelope.client_message_id,
                envelope.sender_id,
                existing.id,
            )
            return existing, False

        found = set(
            db.scalars(
                select(User.id).where(User.id.in_((envelope.sender_id, envelope.recipient_id)))
            ).all()
        )
        if envelope.sender_id not in found:
            raise ValidationError("Sender does not exist")
        if envelope.recipient_id not in found:
            raise ValidationError("Recipient does not exist")

        if envelope.reply_to is not None:
            replied = db.get(Message, envelope.reply_to)
            if replied is None or {replied.sender_id, replied.recipient_id} != {
                envelope.sender_id,
                envelope.recipient_id,
            }:
                raise ValidationError("ReplyTo message does not exist")

        message = Message(
            client_message_id=envelope.client_message_id,
            sender_id=envelope.sender_id,
            recipient_id=envelope.recipient_id,
            content_type=envelope.content_type,
            content=envelope.content,
            caption=envelope.caption,
            original_filename=getattr(envelope, "original_filename", None),
            reply_to_id=envelope.reply_to,
            status=MessageStatus.SENT.value,
            created_at=utcnow(),
        )
        db.add(message)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent replay of the same client id won the insert.
            db.rollback()
            existing = MessageService.find_by_client_id(
                db, envelope.sender_id, envelope.client_message_id
            )
            if existing is None:
                raise
            return existing, False

        db.refresh(message)
        return message, True

    @staticmethod
    def apply_status(
        db: Session,
        user_id: str,
        message_ids: Iterable[int],
        status: str | MessageStatus,
    ) -> list[Message]:
        """Apply a recipient-reported status to messages addressed to `user_id`.

        Messages addressed to someone else are skipped; regressions and
        repeats are ignored by the state machine.

        Returns:
            The messages whose status actually changed
        """
        target = MessageStatus(status)
        if target not in (MessageStatus.DELIVERED, MessageStatus.READ):
            raise ValidationError(f"Recipients cannot set status {target.value}")

        ids = sorted(set(message_ids))
        if not ids:
            return []

        messages = db.scalars(select(Message).where(Message.id.in_(ids))).all()
        changed: list[Message] = []
        now = utcnow()
        for message in messages:
            if message.recipient_id != user_id:
                logger.warning(
                    "User %s attempted to update status of message %s addressed to %s",
                    user_id,
                    message.id,
                    message.recipient_id,
                )
                continue
            if DeliveryStateMachine.apply(message, target):
                if target == MessageStatus.READ:
                    message.read_at = now
                    message.delivered_at = message.delivered_at or now
                else:
                    message.delivered_at = now
                changed.append(message)

        if changed:
            db.commit()
        return changed

    @staticmethod
    def mark_delivered(db: Session, message_ids: Sequence[int]) -> list[Message]:
        """Mark messages as delivered after they were pushed to the recipient."""
        if not message_ids:
            return []
        messages = db.scalars(select(Message).where(Message.id.in_(list(message_ids)))).all()
        changed = [m for m in messages if DeliveryStateMachine.apply(m, MessageStatus.DELIVERED)]
        now = utcnow()
        for message in changed:
            message.delivered_at = now
        if changed:
            db.commit()
        return changed

    @staticmethod
    def list_conversation(
        db: Session,
        user_id: str,
        peer_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
    ) -> tuple[list[Message], bool]:
        """Return a page of the conversation, oldest first, and whether more exist.

        `skip` counts back from the newest message, so page 0 is the latest
        `limit` messages.
        """
        rows = db.scalars(
            select(Message)
            .where(conversation_filter(user_id, peer_id))
            .order_by(desc(Message.created_at), desc(Message.id))
            .offset(skip)
            .limit(limit + 1)
        ).all()
        has_more = len(rows) > limit
        page = list(rows[:limit])
        page.reverse()
        return page, has_more

    @staticmethod
    def _owned_message(db: Session, message_id: int, sender_id: str) -> Message:
        message = db.get(Message, message_id)
        if message is None:
            raise ValidationError("Message not found")
        if message.sender_id != sender_id:
            raise AuthorizationError("Only the sender may change this message")
        return message

    @staticmethod
    def edit_message(db: Session, message_id: int, sender_id: str, content: str) -> Message:
        """Replace the encrypted content of a text message."""
        message = MessageService._owned_message(db, message_id, sender_id)
        if message.content_type != ContentType.TEXT.value:
            raise ValidationError("Only text messages can be edited")
        message.content = content
        message.updated_at = utcnow()
        db.commit()
        db.refresh(message)
        return message

    @staticmethod
    def delete_message(db: Session, message_id: int, sender_id: str) -> Message:
        """Hard-delete a message; returns the detached record for notification."""
        message = MessageService._owned_message(db, message_id, sender_id)
        db.delete(message)
        db.commit()
        return message

    @staticmethod
    def cleanup_orphaned_messages(db: Session) -> int:
        """Delete messages whose sender or recipient no longer exists.

        Returns:
            Number of deleted messages
        """
        participants = set(db.scalars(select(Message.sender_id).distinct()).all())
        participants.update(db.scalars(select(Message.recipient_id).distinct()).all())
        if not participants:
            return 0

        ordered = sorted(participants)
        existing: set[str] = set()
        for start in range(0, len(ordered), CLEANUP_BATCH_SIZE):
            batch = ordered[start:start + CLEANUP_BATCH_SIZE]
            existing.update(db.scalars(select(User.id).where(User.id.in_(batch))).all())

        orphaned = [user_id for user_id in ordered if user_id not in existing]
        if not orphaned:
            return 0

        total = 0
        for start in range(0, len(orphaned), CLEANUP_BATCH_SIZE):
            batch = orphaned[start:start + CLEANUP_BATCH_SIZE]
            result = db.execute(
                delete(Message).where(
                    or_(Message.sender_id.in_(batch), Message.recipient_id.in_(batch))
                )
            )
            total += result.rowcount or 0
        db.commit()
        logger.info("Removed %d orphaned messages for %d missing users", total, len(orphaned))
        return total
