# tests/conftest.py
from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator, Iterator
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-sealed-chat")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("UNDELIVERED_BACKEND", "memory")
os.environ.setdefault("CLEANUP_ENABLED", "false")

from sealed_chat.api.v1.dependencies import get_gateway
from sealed_chat.core.security import create_access_token
from sealed_chat.db.session import Base
from sealed_chat.db.session import get_db as app_get_session
from sealed_chat.db.time import utcnow
from sealed_chat.main import app as fastapi_app
from sealed_chat.models import Contact, Message, MessageStatus, User
from sealed_chat.services.crypto import CryptoService
from sealed_chat.services.gateway import ChatGateway
from sealed_chat.services.undelivered import MemoryUndeliveredBuffer

TEST_DB_URL = "sqlite://"

# A blob with the ciphertext|iv|wrappedKey shape; the server never decrypts it.
FAKE_BLOB = "Y2lwaGVy|aXZpdml2|a2V5a2V5"


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    session.begin_nested()

    @event.listens_for(session, "after_transaction_end")
    def restart_savepoint(sess: Session, trans) -> None:  # pragma: no cover - SQLAlchemy internals
        if trans.nested and not getattr(trans._parent, "nested", False):
            session.begin_nested()

    try:
        yield session
    finally:
        event.remove(session, "after_transaction_end", restart_savepoint)
        session.close()

        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def buffer() -> MemoryUndeliveredBuffer:
    return MemoryUndeliveredBuffer(max_size=1000)


@pytest.fixture()
def gateway(app: FastAPI, db_session: Session, buffer: MemoryUndeliveredBuffer) -> Iterator[ChatGateway]:
    """Gateway bound to the test session, installed for the socket endpoint."""
    chat_gateway = ChatGateway(lambda: nullcontext(db_session), buffer, serialize_db=True)
    app.dependency_overrides[get_gateway] = lambda: chat_gateway
    try:
        yield chat_gateway
    finally:
        app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture()
def client(app: FastAPI, gateway: ChatGateway) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture(scope="session")
def key_pairs() -> dict[str, tuple[str, str]]:
    """RSA key pairs (private, public) generated once per run."""
    return {name: CryptoService.generate_key_pair() for name in ("alice", "bob", "carol")}


def _make_user(db_session: Session, user_id: str, public_key_pem: str | None) -> User:
    user = User(id=user_id, username=user_id.capitalize(), public_key_pem=public_key_pem)
    db_session.add(user)
    db_session.flush()
    db_session.refresh(user)
    return user


@pytest.fixture()
def alice(db_session: Session, key_pairs: dict[str, tuple[str, str]]) -> User:
    return _make_user(db_session, "alice", key_pairs["alice"][1])


@pytest.fixture()
def bob(db_session: Session, key_pairs: dict[str, tuple[str, str]]) -> User:
    return _make_user(db_session, "bob", key_pairs["bob"][1])


@pytest.fixture()
def carol(db_session: Session, key_pairs: dict[str, tuple[str, str]]) -> User:
    return _make_user(db_session, "carol", key_pairs["carol"][1])


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture()
def alice_headers(alice: User) -> dict[str, str]:
    return auth_headers(alice)


@pytest.fixture()
def bob_headers(bob: User) -> dict[str, str]:
    return auth_headers(bob)


def socket_url(user_id: str) -> str:
    return f"/api/v1/ws?token={create_access_token(user_id)}"


def new_client_id() -> str:
    return str(uuid.uuid4())


def text_envelope(sender: str, recipient: str, **extra: Any) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "senderId": sender,
        "recipientId": recipient,
        "contentType": "text",
        "content": FAKE_BLOB,
        "clientMessageId": new_client_id(),
    }
    envelope.update(extra)
    return envelope


@pytest.fixture()
def make_message(db_session: Session) -> Callable[..., Message]:
    """Insert a stored message directly, with increasing timestamps by default."""
    base = utcnow() - timedelta(hours=1)
    counter = {"n": 0}

    def _make(
        sender: User,
        recipient: User,
        *,
        status: MessageStatus = MessageStatus.SENT,
        created_at: datetime | None = None,
        content_type: str = "text",
        content: str = FAKE_BLOB,
    ) -> Message:
        counter["n"] += 1
        message = Message(
            client_message_id=new_client_id(),
            sender_id=sender.id,
            recipient_id=recipient.id,
            content_type=content_type,
            content=content,
            status=status.value,
            created_at=created_at or base + timedelta(seconds=counter["n"]),
        )
        db_session.add(message)
        db_session.flush()
        db_session.refresh(message)
        return message

    return _make


@pytest.fixture()
def make_contact(db_session: Session) -> Callable[[User, User], Contact]:
    def _make(owner: User, contact: User) -> Contact:
        edge = Contact(owner_id=owner.id, contact_id=contact.id)
        db_session.add(edge)
        db_session.flush()
        return edge

    return _make
