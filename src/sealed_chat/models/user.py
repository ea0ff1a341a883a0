# src/sealed_chat/models/user.py
"""SQLAlchemy models for user identities and contacts."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from sealed_chat.db.session import Base

USER_STATUS_ONLINE = "online"
USER_STATUS_OFFLINE = "offline"


class User(Base):
    """Snapshot of an identity owned by the identity service.

    Only the fields needed for routing, chat-list rendering and public key
    lookup are kept here.
    """

    __tablename__ = "user_account"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str | None] = mapped_column(Text, nullable=True)
    photo: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=USER_STATUS_OFFLINE)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # PEM-encoded RSA public key; None until the client registers one.
    public_key_pem: Mapped[str | None] = mapped_column(Text, nullable=True)

    contacts: Mapped[list[Contact]] = relationship(
        "Contact",
        foreign_keys="Contact.owner_id",
        cascade="all, delete-orphan",
        back_populates="owner",
    )


class Contact(Base):
    """Explicit contact edge from `owner_id` to `contact_id`."""

    __tablename__ = "contact"
    __table_args__ = (Index("ix_contact_contact_id", "contact_id"),)

    owner_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("user_account.id", ondelete="CASCADE"),
        primary_key=True,
    )
    contact_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("user_account.id", ondelete="CASCADE"),
        primary_key=True,
    )

    owner: Mapped[User] = relationship("User", foreign_keys=[owner_id], back_populates="contacts")
