"""Public key lookup, contacts and chat-list endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from sealed_chat.core.errors import KeyNotFoundError, ValidationError
from sealed_chat.schemas.users import ChatListEntry, ContactCreate, PublicKeyResponse
from sealed_chat.services import users as user_service
from sealed_chat.services.chat_list import compute_chat_list

from ..dependencies import CurrentUserDep, SessionDep, require_self

router = APIRouter(tags=["users"])


@router.get("/public_key/{user_id}", response_model=PublicKeyResponse)
def get_public_key(user_id: str, current_user: CurrentUserDep, db: SessionDep) -> PublicKeyResponse:
    """Return the registered RSA public key of `user_id`."""
    try:
        public_key_pem = user_service.get_public_key(db, user_id)
    except KeyNotFoundError as err:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(err)) from err
    return PublicKeyResponse(user_id=user_id, public_key_pem=public_key_pem)


@router.get("/chat-list", response_model=list[ChatListEntry])
def get_chat_list(
    current_user: CurrentUserDep,
    db: SessionDep,
    user_id: Annotated[str | None, Query(alias="userId")] = None,
) -> list[ChatListEntry]:
    """Return the caller's chat list, most recent conversation first."""
    require_self(current_user, user_id)
    return compute_chat_list(db, current_user.id)


@router.post("/contacts", status_code=status.HTTP_201_CREATED)
def add_contact(
    payload: ContactCreate,
    current_user: CurrentUserDep,
    db: SessionDep,
) -> dict[str, str]:
    """Add an explicit contact for the caller."""
    try:
        user_service.add_contact(db, current_user.id, payload.contact_id)
    except ValidationError as err:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(err)) from err
    return {"ownerId": current_user.id, "contactId": payload.contact_id}
