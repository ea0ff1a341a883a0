# src/sealed_chat/services/delivery.py
"""Monotonic delivery state machine for message status."""

from __future__ import annotations

import logging
from typing import Protocol

from sealed_chat.models.message import MessageStatus

logger = logging.getLogger(__name__)

_RANK: dict[MessageStatus, int] = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


class HasStatus(Protocol):
    status: str


def coerce_status(value: str | MessageStatus) -> MessageStatus:
    """Return `value` as a MessageStatus, raising ValueError for unknown names."""
    if isinstance(value, MessageStatus):
        return value
    return MessageStatus(value)


class DeliveryStateMachine:
    """Decide whether a status update may be applied.

    `pending -> sent -> delivered -> read` only ever moves forward; `failed`
    is reachable from `pending` alone and is left only through `retry`.
    Re-applying the current status is a no-op, so status events commute.
    """

    @staticmethod
    def can_transition(current: str | MessageStatus, target: str | MessageStatus) -> bool:
        """Return True if moving from `current` to `target` changes state legally."""
        current_status = coerce_status(current)
        target_status = coerce_status(target)

        if current_status == target_status:
            return False
        if current_status == MessageStatus.FAILED:
            return False
        if target_status == MessageStatus.FAILED:
            return current_status == MessageStatus.PENDING
        return _RANK[target_status] > _RANK[current_status]

    @classmethod
    def apply(cls, obj: HasStatus, target: str | MessageStatus) -> bool:
        """Set `obj.status` to `target` when allowed; return whether it changed."""
        target_status = coerce_status(target)
        if not cls.can_transition(obj.status, target_status):
            logger.debug("Ignoring status update %s -> %s", obj.status, target_status.value)
            return False
        obj.status = target_status.value
        return True

    @staticmethod
    def retry(obj: HasStatus) -> bool:
        """Move a failed message back to pending for a new send attempt."""
        if coerce_status(obj.status) != MessageStatus.FAILED:
            return False
        obj.status = MessageStatus.PENDING.value
        return True

    @staticmethod
    def is_terminal(status: str | MessageStatus) -> bool:
        return coerce_status(status) in (MessageStatus.READ, MessageStatus.FAILED)
