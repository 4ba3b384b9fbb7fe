"""Push connection lifecycle.

This module provides:
- ConnectionManager: Owns the push WebSocket (connect, start/end framing,
  backoff reconnect, visibility resume, teardown)
- EndpointProvider: Protocol for the collaborator that advertises the
  push endpoint

Lifecycle:
    DISCONNECTED ─connect()─► CONNECTING ─open─► OPEN ─unexpected close─┐
         ▲                        │                                      │
         │                        └─failure─► reconnect after            │
         │                                    base * 2^(attempt-1) ◄─────┘
         └─disconnect() / auth failure / retries exhausted (terminal)

Decoded frames are handed to the ``on_frame`` callback; frames that are
not valid JSON are logged and dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import ssl
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from chatsync.client.errors import APIError, AuthenticationError
from chatsync.client.sync.retry import backoff_delay
from chatsync.client.sync.types import (
    AuthError,
    ChatSyncError,
    ConnectionState,
    TransportError,
)
from chatsync.core.config import SyncSettings
from chatsync.core.types import ConnectionStatus

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from chatsync.core.config import ServerConfig

logger = logging.getLogger(__name__)

START_FRAME = {"event": "chat.start"}
END_FRAME = {"event": "chat.end"}

ConnectFactory = Callable[..., Awaitable["ClientConnection"]]


class EndpointProvider(Protocol):
    """Collaborator that advertises the push endpoint."""

    async def get_notification_endpoint(self) -> str:
        """Get the push endpoint (absolute ws(s) URL or server-relative path)."""
        ...


class ConnectionManager:
    """Manages the push WebSocket for one authenticated session.

    All methods must be called from the event loop the manager runs on.
    The manager is the only writer of its ConnectionState; observers get
    every transition through ``on_state_change``.

    Usage:
        manager = ConnectionManager(
            endpoints=chat_client,
            token_provider=token_store.access_token,
            server_config=server_config,
            on_frame=orchestrator.handle_frame,
        )
        await manager.connect()
        # ...
        await manager.disconnect()
    """

    def __init__(
        self,
        endpoints: EndpointProvider,
        token_provider: Callable[[], str | None],
        server_config: ServerConfig,
        settings: SyncSettings | None = None,
        on_frame: Callable[[Any], None] | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        connect_factory: ConnectFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the connection manager.

        Args:
            endpoints: Provides the push endpoint (cached per session).
            token_provider: Returns the access token, or None when signed out.
            server_config: Server URL and TLS settings.
            settings: Throttle/backoff tunables.
            on_frame: Called with every decoded inbound frame.
            on_state_change: Called after every ConnectionState transition.
            connect_factory: Opens the socket (websockets connect by default).
            clock: Monotonic clock used for the connect throttle.
        """
        self._endpoints = endpoints
        self._token_provider = token_provider
        self._server_config = server_config
        self._settings = settings or SyncSettings()
        self._on_frame = on_frame
        self._on_state_change = on_state_change
        self._connect_factory: ConnectFactory = connect_factory or websocket_connect
        self._clock = clock

        self._state = ConnectionState()
        self._ws: ClientConnection | None = None
        self._endpoint: str | None = None
        self._last_attempt_at: float | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        # Bumped by disconnect(); attempts started under an older value are void
        self._generation = 0

    @property
    def state(self) -> ConnectionState:
        """Get the current connection state."""
        return self._state

    @property
    def connected(self) -> bool:
        """Check if the socket is open."""
        return self._state.is_open

    def set_frame_handler(self, on_frame: Callable[[Any], None] | None) -> None:
        """Set the inbound frame callback."""
        self._on_frame = on_frame

    def set_state_listener(
        self, on_state_change: Callable[[ConnectionState], None] | None
    ) -> None:
        """Set the state transition callback."""
        self._on_state_change = on_state_change

    # === Public lifecycle ===

    async def connect(self) -> None:
        """Open the push connection.

        No-op if the connection is open, an attempt is in flight, or the
        last attempt started within the throttle window. Resumes a
        terminal state (retries exhausted or auth failure).
        """
        if self._state.status in (ConnectionStatus.OPEN, ConnectionStatus.CONNECTING):
            logger.debug("connect() ignored: connection is %s", self._state.status.value)
            return

        now = self._clock()
        if (
            self._last_attempt_at is not None
            and now - self._last_attempt_at < self._settings.connect_throttle
        ):
            logger.debug("connect() throttled")
            return

        self._cancel_reconnect()
        if self._state.terminal:
            self._set_state(attempts=0, terminal=False, last_error=None)
        await self._open()

    async def disconnect(self) -> None:
        """Close the push connection and forget the session.

        Sends the end frame if the socket is open. Cancels any scheduled
        reconnect, voids any attempt still in flight and clears the cached
        endpoint. Safe to call at any time.
        """
        self._generation += 1
        self._cancel_reconnect()

        ws, self._ws = self._ws, None
        if ws is not None:
            if self._state.is_open:
                self._set_state(status=ConnectionStatus.CLOSING)
                with contextlib.suppress(WebSocketException, OSError):
                    await ws.send(json.dumps(END_FRAME))
            await self._discard(ws)

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        self._endpoint = None
        self._last_attempt_at = None
        self._set_state(
            status=ConnectionStatus.DISCONNECTED,
            attempts=0,
            last_error=None,
            terminal=False,
            retry_delay=None,
        )
        logger.info("Push connection closed")

    async def on_visible(self) -> None:
        """Host became active again: reconnect if needed."""
        if self._state.is_open or not self._token_provider():
            return
        await self.connect()

    # === Internals ===

    def _set_state(self, **changes: Any) -> None:
        self._state = dataclasses.replace(self._state, **changes)
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(self._state)
        except Exception as e:
            logger.warning("Connection state listener failed: %s", e)
            logger.debug("Full traceback:", exc_info=True)

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _resolve_endpoint(self) -> str:
        if self._endpoint is None:
            self._endpoint = await self._endpoints.get_notification_endpoint()
        return self._endpoint

    def _build_url(self, endpoint: str, token: str) -> str:
        url = self._server_config.ws_url_for(endpoint)
        parts = urlsplit(url)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query = [(k, v) for k, v in query if k != "access_token"]
        query.append(("access_token", token))
        return urlunsplit(parts._replace(query=urlencode(query)))

    def _ssl_context(self, url: str) -> ssl.SSLContext | None:
        if not url.startswith("wss://"):
            return None
        context = ssl.create_default_context()
        if not self._server_config.verify_ssl:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _open(self) -> None:
        """Run one connection attempt and handle its outcome.

        A disconnect() while the attempt is awaiting voids it: a socket
        that opens afterwards is closed and the outcome is not recorded.
        """
        token = self._token_provider()
        if not token:
            self._fail_terminal(AuthError("No access token available"))
            return

        generation = self._generation
        self._last_attempt_at = self._clock()
        self._set_state(status=ConnectionStatus.CONNECTING, retry_delay=None)

        try:
            endpoint = await self._resolve_endpoint()
            if generation != self._generation:
                logger.debug("Connect attempt abandoned after disconnect")
                return
            url = self._build_url(endpoint, token)
            ws = await self._connect_factory(
                url,
                ssl=self._ssl_context(url),
                open_timeout=self._settings.open_timeout,
            )
            if generation != self._generation:
                logger.debug("Closing socket opened after disconnect")
                await self._discard(ws)
                return
            await ws.send(json.dumps(START_FRAME))
        except AuthenticationError as e:
            if generation == self._generation:
                self._fail_terminal(AuthError(f"Endpoint request rejected: {e}"))
            return
        except InvalidStatus as e:
            if generation != self._generation:
                return
            status_code = e.response.status_code
            if status_code in (401, 403):
                self._fail_terminal(AuthError(f"Push connection rejected ({status_code})"))
            else:
                self._on_lost(TransportError(f"Push connection rejected ({status_code})"))
            return
        except (APIError, httpx.HTTPError) as e:
            if generation == self._generation:
                self._on_lost(TransportError(f"Could not get push endpoint: {e}"))
            return
        except (WebSocketException, OSError, TimeoutError) as e:
            if generation == self._generation:
                self._on_lost(TransportError(f"Could not open push connection: {e}"))
            return

        if generation != self._generation:
            logger.debug("Closing socket opened after disconnect")
            await self._discard(ws)
            return

        self._ws = ws
        self._set_state(
            status=ConnectionStatus.OPEN,
            attempts=0,
            last_error=None,
            terminal=False,
            retry_delay=None,
        )
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        logger.info("Push connection open")

    @staticmethod
    async def _discard(ws: ClientConnection) -> None:
        with contextlib.suppress(WebSocketException, OSError):
            await ws.close()

    async def _read_loop(self, ws: ClientConnection) -> None:
        error: ChatSyncError | None = None
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            error = TransportError(f"Push connection lost: {e}")

        if self._ws is not ws:
            # Deliberate close
            return
        self._ws = None
        self._reader_task = None
        self._on_lost(error or TransportError("Push connection closed by server"))

    def _dispatch(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Invalid frame received: %s", raw[:100])
            return

        if self._on_frame is None:
            return
        try:
            self._on_frame(frame)
        except Exception as e:
            logger.warning("Frame handler failed: %s", e)
            logger.debug("Full traceback:", exc_info=True)

    def _fail_terminal(self, error: ChatSyncError) -> None:
        logger.error("Push connection stopped: %s", error)
        self._endpoint = None
        self._set_state(
            status=ConnectionStatus.DISCONNECTED,
            last_error=error,
            terminal=True,
            retry_delay=None,
        )

    def _on_lost(self, error: TransportError) -> None:
        """Schedule a reconnect, or give up once the budget is spent."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            logger.debug("Reconnect already scheduled")
            return

        if not self._token_provider():
            self._fail_terminal(AuthError("Signed out"))
            return

        max_attempts = self._settings.max_reconnect_attempts
        if self._state.attempts >= max_attempts:
            self._fail_terminal(
                TransportError(f"Gave up after {max_attempts} reconnect attempts: {error}")
            )
            return

        # Counter moves before the timer exists
        attempt = self._state.attempts + 1
        delay = backoff_delay(attempt, self._settings.reconnect_base_delay)
        self._set_state(
            status=ConnectionStatus.DISCONNECTED,
            attempts=attempt,
            last_error=error,
            retry_delay=delay,
        )
        logger.warning(
            "Push connection lost (%s), reconnecting in %.1fs (attempt %d/%d)",
            error,
            delay,
            attempt,
            max_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self._open()
