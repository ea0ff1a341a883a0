"""Helpers for user snapshots, contacts and presence."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from sealed_chat.core.errors import KeyNotFoundError, ValidationError
from sealed_chat.db.time import utcnow
from sealed_chat.models.user import USER_STATUS_OFFLINE, USER_STATUS_ONLINE, Contact, User

__all__ = [
    "get_user",
    "get_public_key",
    "add_contact",
    "set_presence",
    "presence_watchers",
]


def get_user(db: Session, user_id: str) -> User | None:
    """Return a single user by primary key."""
    return db.get(User, user_id)


def get_public_key(db: Session, user_id: str) -> str:
    """Return the registered public key of `user_id`.

    Raises:
        KeyNotFoundError: If the user is unknown or has not registered a key
    """
    user = db.get(User, user_id)
    if user is None or not user.public_key_pem:
        raise KeyNotFoundError(user_id)
    return user.public_key_pem


def add_contact(db: Session, owner_id: str, contact_id: str) -> Contact:
    """Add an explicit contact edge; adding an existing contact is a no-op."""
    if owner_id == contact_id:
        raise ValidationError("Cannot add yourself as a contact")
    if db.get(User, contact_id) is None:
        raise ValidationError("Contact does not exist")

    existing = db.get(Contact, (owner_id, contact_id))
    if existing is not None:
        return existing

    contact = Contact(owner_id=owner_id, contact_id=contact_id)
    db.add(contact)
    db.commit()
    return contact


def set_presence(db: Session, user_id: str, online: bool) -> datetime | None:
    """Record a presence change and return the user's last-seen time."""
    user = db.get(User, user_id)
    if user is None:
        return None
    user.status = USER_STATUS_ONLINE if online else USER_STATUS_OFFLINE
    user.last_seen = utcnow()
    db.commit()
    return user.last_seen


def presence_watchers(db: Session, user_id: str) -> set[str]:
    """Users who should see presence changes of `user_id`.

    Both directions of the contact edge count.
    """
    watchers = set(db.scalars(select(Contact.owner_id).where(Contact.contact_id == user_id)).all())
    watchers.update(db.scalars(select(Contact.contact_id).where(Contact.owner_id == user_id)).all())
    watchers.discard(user_id)
    return watchers
