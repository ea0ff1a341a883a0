"""HTTP client for the SealedChat REST endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from sealed_chat.client.config import ClientSettings
from sealed_chat.core.errors import (
    AuthorizationError,
    KeyNotFoundError,
    TransientNetworkError,
    ValidationError,
)

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_CREATED = 201
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_INTERNAL_SERVER_ERROR = 500


class ChatApiClient:
    """Thin async wrapper over the history, key and chat-list endpoints."""

    def __init__(
        self,
        token: str,
        settings: ClientSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self._token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.settings.server_url,
                    timeout=httpx.Timeout(self.settings.http_timeout_seconds),
                    headers={"Authorization": f"Bearer {self._token}"},
                    transport=self._transport,
                )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_data: Any | None = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(method, path, params=params, json=json_data)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TransientNetworkError(f"{method} {path} responded with {response.status_code}")
        if response.status_code in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            raise AuthorizationError(_detail(response))
        return response

    async def fetch_public_key(self, user_id: str) -> str:
        """Return the PEM public key registered for `user_id`.

        Raises:
            KeyNotFoundError: If the user has no registered key
            TransientNetworkError: If the server cannot be reached
        """
        response = await self._request("GET", f"/api/v1/public_key/{user_id}")
        if response.status_code == HTTP_NOT_FOUND:
            raise KeyNotFoundError(user_id)
        if response.status_code != HTTP_OK:
            raise ValidationError(_detail(response))
        return str(response.json()["publicKeyPem"])

    async def fetch_messages(
        self, peer_id: str, *, limit: int = 50, skip: int = 0
    ) -> tuple[list[dict[str, Any]], bool]:
        """Return one history page with `peer_id`, oldest first, and `hasMore`."""
        response = await self._request(
            "GET",
            "/api/v1/messages",
            params={"recipientId": peer_id, "limit": limit, "skip": skip},
        )
        if response.status_code != HTTP_OK:
            raise ValidationError(_detail(response))
        body = response.json()
        return list(body.get("messages", [])), bool(body.get("hasMore", False))

    async def fetch_chat_list(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "/api/v1/chat-list")
        if response.status_code != HTTP_OK:
            raise ValidationError(_detail(response))
        return list(response.json())

    async def add_contact(self, contact_id: str) -> None:
        response = await self._request(
            "POST", "/api/v1/contacts", json_data={"contactId": contact_id}
        )
        if response.status_code not in (HTTP_OK, HTTP_CREATED):
            raise ValidationError(_detail(response))


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {response.status_code}"
