# src/sealed_chat/api/v1/endpoints/messages.py
"""Conversation history endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status

from sealed_chat.core.settings import settings
from sealed_chat.schemas.message import USER_ID_PATTERN, MessageOut, MessagePage
from sealed_chat.services.messages import MessageService

from ..dependencies import CurrentUserDep, SessionDep, require_self

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("", response_model=MessagePage, response_model_by_alias=True)
def get_conversation(
    current_user: CurrentUserDep,
    db: SessionDep,
    recipient_id: Annotated[str, Query(alias="recipientId", pattern=USER_ID_PATTERN)],
    user_id: Annotated[str | None, Query(alias="userId")] = None,
    limit: Annotated[int, Query(ge=1)] = 50,
    skip: Annotated[int, Query(ge=0)] = 0,
) -> MessagePage:
    """Return one page of the conversation with `recipientId`, oldest first.

    `skip` counts back from the newest message; `hasMore` tells whether older
    messages exist beyond this page.
    """
    require_self(current_user, user_id)
    if recipient_id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot load a conversation with yourself",
        )

    page, has_more = MessageService.list_conversation(
        db,
        current_user.id,
        recipient_id,
        limit=min(limit, settings.history_page_max),
        skip=skip,
    )
    return MessagePage(
        messages=[MessageOut.model_validate(message) for message in page],
        has_more=has_more,
    )
