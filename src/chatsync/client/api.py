"""HTTP client for the chat server REST API.

This module provides:
- ChatClient: async HTTP client for the chat and notification endpoints
- BearerAuth: attaches the stored access token to every request
- APIError and subclasses raised for non-success responses
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from chatsync.client.errors import APIError, AuthenticationError, NotFoundError
from chatsync.client.sync.types import Channel, Message, Notification, UserSummary
from chatsync.core.config import ServerConfig

logger = logging.getLogger(__name__)


class BearerAuth(httpx.Auth):
    """Attach ``Authorization: Bearer <token>`` using a token provider.

    The provider is called per request so a logout or token change is
    picked up without rebuilding the client.
    """

    def __init__(self, token_provider: Callable[[], str | None]) -> None:
        self._token_provider = token_provider

    def auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        token = self._token_provider()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        yield request


@dataclass
class NotificationsPage:
    """Result of list_notifications API call."""

    notifications: list[Notification]
    unread_count: int
    has_more: bool
    notification_endpoint: str | None


class ChatClient:
    """Async HTTP client for the chat server API."""

    def __init__(
        self,
        config: ServerConfig,
        token_provider: Callable[[], str | None],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the chat client.

        Args:
            config: Server connection settings.
            token_provider: Returns the current access token (or None).
            transport: Optional transport override.
        """
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            auth=BearerAuth(token_provider),
            transport=transport,
        )

    @property
    def config(self) -> ServerConfig:
        """Get the server configuration."""
        return self._config

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> ChatClient:
        """Context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Context manager exit."""
        await self.close()

    @staticmethod
    def _error_detail(response: httpx.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return default
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or default)
        return default

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (401, 403):
            raise AuthenticationError(
                self._error_detail(response, "Invalid or expired token"),
                response.status_code,
            )
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if response.status_code >= 400:
            raise APIError(
                self._error_detail(response, "Unknown error"),
                response.status_code,
            )
        return response

    # === Health check ===

    async def health_check(self) -> bool:
        """Check if the server is healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Channels ===

    async def list_channels(self) -> list[Channel]:
        """List the channels the current user has joined."""
        response = self._handle_response(
            await self._client.get("/api/v2/chat/channels")
        )
        return [Channel.from_dict(c) for c in response.json()]

    async def get_channel_messages(
        self,
        channel_id: int,
        limit: int = 50,
        since: int | None = None,
        until: int | None = None,
    ) -> list[Message]:
        """Get message history of a channel.

        Args:
            channel_id: Channel to read.
            limit: Maximum number of messages.
            since: Only messages with an ID greater than this.
            until: Only messages with an ID lower than this.

        Returns:
            Messages as returned by the server.
        """
        params: dict[str, Any] = {"limit": limit}
        if since is not None:
            params["since"] = since
        if until is not None:
            params["until"] = until
        response = self._handle_response(
            await self._client.get(
                f"/api/v2/chat/channels/{channel_id}/messages", params=params
            )
        )
        return [Message.from_dict(m) for m in response.json()]

    async def send_message(
        self,
        channel_id: int,
        content: str,
        is_action: bool = False,
        uuid: str | None = None,
    ) -> Message:
        """Post a message to a channel.

        Returns:
            The message as stored by the server.
        """
        data = {"message": content, "is_action": str(is_action).lower()}
        if uuid:
            data["uuid"] = uuid
        response = self._handle_response(
            await self._client.post(
                f"/api/v2/chat/channels/{channel_id}/messages", data=data
            )
        )
        return Message.from_dict(response.json())

    async def create_private_message(
        self,
        target_id: int,
        content: str,
        is_action: bool = False,
        uuid: str | None = None,
    ) -> tuple[Channel, Message]:
        """Start a private conversation with a user.

        Returns:
            The (possibly new) direct-message channel and the sent message.
        """
        data = {
            "target_id": str(target_id),
            "message": content,
            "is_action": str(is_action).lower(),
        }
        if uuid:
            data["uuid"] = uuid
        response = self._handle_response(
            await self._client.post("/api/v2/chat/new", data=data)
        )
        body = response.json()
        return Channel.from_dict(body["channel"]), Message.from_dict(body["message"])

    async def get_private_channel(self, target_id: int) -> Channel | None:
        """Get the direct-message channel with a user, if one exists."""
        try:
            response = self._handle_response(
                await self._client.get(f"/api/v2/chat/private/{target_id}")
            )
        except NotFoundError:
            return None
        return Channel.from_dict(response.json())

    async def mark_channel_read(self, channel_id: int, message_id: int) -> None:
        """Mark a channel as read up to a message."""
        self._handle_response(
            await self._client.put(
                f"/api/v2/chat/channels/{channel_id}/mark-as-read/{message_id}"
            )
        )

    # === Notifications ===

    async def list_notifications(self) -> NotificationsPage:
        """List notifications of the current user.

        The response also carries the push connection endpoint.
        """
        response = self._handle_response(
            await self._client.get("/api/v2/notifications")
        )
        body = response.json()
        return NotificationsPage(
            notifications=[
                Notification.from_dict(n) for n in body.get("notifications", [])
            ],
            unread_count=int(body.get("unread_count") or 0),
            has_more=bool(body.get("has_more", False)),
            notification_endpoint=body.get("notification_endpoint"),
        )

    async def get_notification_endpoint(self) -> str:
        """Get the push connection endpoint.

        Raises:
            APIError: If the server did not advertise an endpoint.
        """
        page = await self.list_notifications()
        if not page.notification_endpoint:
            raise APIError("Server did not return a notification endpoint")
        return page.notification_endpoint

    async def mark_notifications_read(
        self, identities: Sequence[dict[str, Any]]
    ) -> None:
        """Mark notifications as read.

        Args:
            identities: ``{"id": ...}`` or ``{"object_id": ..., "category": ...}``
                entries identifying the notifications.
        """
        self._handle_response(
            await self._client.post(
                "/api/v2/notifications/mark-read",
                json={"identities": list(identities), "notifications": []},
            )
        )

    # === Users ===

    async def get_user(self, user_id: int) -> UserSummary:
        """Get a user summary by ID."""
        response = self._handle_response(
            await self._client.get(f"/api/v2/users/{user_id}")
        )
        return UserSummary.from_dict(response.json())
