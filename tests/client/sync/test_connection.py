"""Tests for the push connection manager."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from chatsync.client.errors import AuthenticationError
from chatsync.client.sync.connection import END_FRAME, START_FRAME, ConnectionManager
from chatsync.client.sync.types import AuthError, ConnectionState, TransportError
from chatsync.core.config import ServerConfig, SyncSettings
from chatsync.core.types import ConnectionStatus


class FakeWebSocket:
    """In-memory stand-in for a client connection."""

    def __init__(self) -> None:
        self.sent: list[Any] = []
        self.closed = False
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, raw: str) -> None:
        """Deliver a raw frame to the reader."""
        self._incoming.put_nowait(raw)

    def drop(self) -> None:
        """Simulate the server closing the socket."""
        self._incoming.put_nowait(None)

    async def __aiter__(self):  # type: ignore[no-untyped-def]
        while True:
            raw = await self._incoming.get()
            if raw is None:
                return
            yield raw


class FakeConnector:
    """Connect factory returning scripted outcomes; refuses once exhausted."""

    def __init__(self, *outcomes: FakeWebSocket | BaseException) -> None:
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("Connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class GatedConnector(FakeConnector):
    """FakeConnector that holds attempts from a given call on until released."""

    def __init__(self, *outcomes: FakeWebSocket | BaseException, hold_from: int = 1) -> None:
        super().__init__(*outcomes)
        self.release = asyncio.Event()
        self._hold_from = hold_from

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        if len(self.urls) >= self._hold_from:
            await self.release.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("Connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_endpoints(endpoint: str = "/notifications") -> AsyncMock:
    """Create an endpoint provider mock."""
    endpoints = AsyncMock()
    endpoints.get_notification_endpoint.return_value = endpoint
    return endpoints


def make_manager(
    connector: FakeConnector,
    endpoints: AsyncMock | None = None,
    token: str | None = "tok",
    settings: SyncSettings | None = None,
    clock: Callable[[], float] | None = None,
) -> tuple[ConnectionManager, list[Any], list[ConnectionState]]:
    """Create a ConnectionManager recording frames and state changes."""
    frames: list[Any] = []
    states: list[ConnectionState] = []
    manager = ConnectionManager(
        endpoints=endpoints or make_endpoints(),
        token_provider=lambda: token,
        server_config=ServerConfig(server_url="https://example.com"),
        settings=settings or SyncSettings(connect_throttle=0, reconnect_base_delay=0.001),
        on_frame=frames.append,
        on_state_change=states.append,
        connect_factory=connector,
        clock=clock or (lambda: 0.0),
    )
    return manager, frames, states


def rejected(status_code: int) -> InvalidStatus:
    """Create the error raised when the handshake gets an HTTP error."""
    return InvalidStatus(Response(status_code, "Rejected", Headers()))


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until the predicate holds."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


class TestConnect:
    """Tests for opening the connection."""

    @pytest.mark.asyncio
    async def test_open_sends_start_frame(self) -> None:
        """Should open the socket with the token and send the start frame."""
        ws = FakeWebSocket()
        connector = FakeConnector(ws)
        manager, _, states = make_manager(connector)

        await manager.connect()

        assert manager.connected
        assert manager.state.status is ConnectionStatus.OPEN
        assert ws.sent == [START_FRAME]
        assert connector.urls == ["wss://example.com/notifications?access_token=tok"]
        assert [s.status for s in states] == [ConnectionStatus.CONNECTING, ConnectionStatus.OPEN]

        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_absolute_endpoint_keeps_query(self) -> None:
        """An absolute endpoint should keep its own query parameters."""
        connector = FakeConnector(FakeWebSocket())
        endpoints = make_endpoints("wss://push.example.com/ws?v=2")
        manager, _, _ = make_manager(connector, endpoints=endpoints)

        await manager.connect()

        assert connector.urls == ["wss://push.example.com/ws?v=2&access_token=tok"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_when_open_is_noop(self) -> None:
        """A second connect() while open should do nothing."""
        connector = FakeConnector(FakeWebSocket())
        manager, _, _ = make_manager(connector)

        await manager.connect()
        await manager.connect()

        assert len(connector.urls) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_throttled(self) -> None:
        """connect() within the throttle window of the last attempt should do nothing."""
        now = [0.0]
        ws = FakeWebSocket()
        connector = FakeConnector(ws, FakeWebSocket())
        manager, _, _ = make_manager(
            connector,
            settings=SyncSettings(connect_throttle=2, reconnect_base_delay=10),
            clock=lambda: now[0],
        )
        await manager.connect()
        ws.drop()
        await wait_until(lambda: manager.state.attempts == 1)

        now[0] = 1.0
        await manager.connect()
        assert len(connector.urls) == 1

        now[0] = 3.0
        await manager.connect()
        assert len(connector.urls) == 2
        assert manager.connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_no_token_is_terminal(self) -> None:
        """Without a token the manager should stop without opening a socket."""
        connector = FakeConnector()
        manager, _, _ = make_manager(connector, token=None)

        await manager.connect()

        assert manager.state.terminal
        assert isinstance(manager.state.last_error, AuthError)
        assert connector.urls == []


class TestFailures:
    """Tests for failed attempts and reconnects."""

    @pytest.mark.asyncio
    async def test_handshake_rejected_is_terminal(self) -> None:
        """A 401 handshake should stop without retrying."""
        connector = FakeConnector(rejected(401))
        manager, _, _ = make_manager(connector)

        await manager.connect()
        await asyncio.sleep(0.01)

        assert manager.state.terminal
        assert manager.state.status is ConnectionStatus.DISCONNECTED
        assert isinstance(manager.state.last_error, AuthError)
        assert len(connector.urls) == 1

    @pytest.mark.asyncio
    async def test_endpoint_auth_failure_is_terminal(self) -> None:
        """A rejected endpoint request should stop without retrying."""
        endpoints = AsyncMock()
        endpoints.get_notification_endpoint.side_effect = AuthenticationError("nope", 401)
        manager, _, _ = make_manager(FakeConnector(), endpoints=endpoints)

        await manager.connect()

        assert manager.state.terminal
        assert isinstance(manager.state.last_error, AuthError)

    @pytest.mark.asyncio
    async def test_server_error_schedules_reconnect(self) -> None:
        """A non-auth handshake error should schedule a reconnect."""
        connector = FakeConnector(rejected(503), FakeWebSocket())
        manager, _, _ = make_manager(connector)

        await manager.connect()
        assert manager.state.attempts == 1
        assert manager.state.is_reconnecting
        assert isinstance(manager.state.last_error, TransportError)

        await wait_until(lambda: manager.connected)
        assert manager.state.attempts == 0
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        """Five failed reconnects with doubling delays should end terminal."""
        connector = FakeConnector()
        manager, _, states = make_manager(connector)

        await manager.connect()
        await wait_until(lambda: manager.state.terminal)

        delays = [s.retry_delay for s in states if s.retry_delay is not None]
        assert delays == pytest.approx([0.001, 0.002, 0.004, 0.008, 0.016])
        assert len(connector.urls) == 6
        assert manager.state.attempts == 5
        assert isinstance(manager.state.last_error, TransportError)

    @pytest.mark.asyncio
    async def test_connect_after_terminal_resets(self) -> None:
        """An explicit connect() should resume after giving up."""
        connector = FakeConnector()
        manager, _, _ = make_manager(
            connector,
            settings=SyncSettings(
                connect_throttle=0, reconnect_base_delay=0.001, max_reconnect_attempts=1
            ),
        )
        await manager.connect()
        await wait_until(lambda: manager.state.terminal)

        connector.outcomes.append(FakeWebSocket())
        await manager.connect()

        assert manager.connected
        assert manager.state.attempts == 0
        assert not manager.state.terminal
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_server_close_reconnects_with_cached_endpoint(self) -> None:
        """A dropped socket should reconnect without asking for the endpoint again."""
        first = FakeWebSocket()
        second = FakeWebSocket()
        endpoints = make_endpoints()
        manager, _, _ = make_manager(FakeConnector(first, second), endpoints=endpoints)

        await manager.connect()
        first.drop()
        await wait_until(lambda: manager.connected and second.sent == [START_FRAME])

        endpoints.get_notification_endpoint.assert_awaited_once()
        await manager.disconnect()


class TestFrames:
    """Tests for inbound frame dispatch."""

    @pytest.mark.asyncio
    async def test_frames_decoded_and_invalid_dropped(self) -> None:
        """Valid JSON frames should reach the handler; invalid ones are dropped."""
        ws = FakeWebSocket()
        manager, frames, _ = make_manager(FakeConnector(ws))
        await manager.connect()

        ws.feed("not json {")
        ws.feed('{"event": "new", "data": {"object_id": 1}}')
        await wait_until(lambda: len(frames) == 1)

        assert frames == [{"event": "new", "data": {"object_id": 1}}]
        assert manager.connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_break_reader(self) -> None:
        """A failing frame handler should not stop later frames."""
        ws = FakeWebSocket()
        manager, _, _ = make_manager(FakeConnector(ws))
        received: list[Any] = []

        def handler(frame: Any) -> None:
            received.append(frame)
            if len(received) == 1:
                raise RuntimeError("boom")

        manager.set_frame_handler(handler)
        await manager.connect()

        ws.feed("1")
        ws.feed("2")
        await wait_until(lambda: len(received) == 2)

        assert received == [1, 2]
        await manager.disconnect()


class TestDisconnect:
    """Tests for teardown."""

    @pytest.mark.asyncio
    async def test_disconnect_sends_end_frame(self) -> None:
        """Should send the end frame, close the socket and reset state."""
        ws = FakeWebSocket()
        endpoints = make_endpoints()
        manager, _, states = make_manager(FakeConnector(ws, FakeWebSocket()), endpoints=endpoints)
        await manager.connect()

        await manager.disconnect()

        assert ws.sent == [START_FRAME, END_FRAME]
        assert ws.closed
        assert ConnectionStatus.CLOSING in [s.status for s in states]
        assert manager.state == ConnectionState()

        # The endpoint is requested again for the next session
        await manager.connect()
        assert endpoints.get_notification_endpoint.await_count == 2
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_reconnect(self) -> None:
        """A scheduled reconnect should not fire after disconnect()."""
        connector = FakeConnector()
        manager, _, _ = make_manager(
            connector, settings=SyncSettings(connect_throttle=0, reconnect_base_delay=0.02)
        )
        await manager.connect()
        assert manager.state.is_reconnecting

        await manager.disconnect()
        await asyncio.sleep(0.05)

        assert len(connector.urls) == 1
        assert manager.state.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake_closes_late_socket(self) -> None:
        """A socket that opens after disconnect() should be closed, not adopted."""
        ws = FakeWebSocket()
        connector = GatedConnector(ws)
        manager, _, states = make_manager(connector)
        attempt = asyncio.create_task(manager.connect())
        await wait_until(lambda: len(connector.urls) == 1)

        await manager.disconnect()
        connector.release.set()
        await attempt

        assert ws.closed
        assert ws.sent == []
        assert not manager.connected
        assert manager.state == ConnectionState()
        assert ConnectionStatus.OPEN not in [s.status for s in states]

    @pytest.mark.asyncio
    async def test_disconnect_during_failing_handshake_no_reconnect(self) -> None:
        """A handshake failing after disconnect() should not schedule reconnects."""
        connector = GatedConnector(OSError("Connection refused"))
        manager, _, _ = make_manager(connector)
        attempt = asyncio.create_task(manager.connect())
        await wait_until(lambda: len(connector.urls) == 1)

        await manager.disconnect()
        connector.release.set()
        await attempt
        await asyncio.sleep(0.05)

        assert len(connector.urls) == 1
        assert manager.state == ConnectionState()

    @pytest.mark.asyncio
    async def test_disconnect_during_reconnect_attempt(self) -> None:
        """A reconnect attempt already in flight should be voided by disconnect()."""
        connector = GatedConnector(OSError("Connection refused"), FakeWebSocket(), hold_from=2)
        manager, _, _ = make_manager(connector)
        await manager.connect()
        await wait_until(lambda: len(connector.urls) == 2)

        await manager.disconnect()
        connector.release.set()
        await asyncio.sleep(0.05)

        assert len(connector.urls) == 2
        assert not manager.connected
        assert manager.state == ConnectionState()

    @pytest.mark.asyncio
    async def test_disconnect_when_idle(self) -> None:
        """disconnect() on an idle manager should be harmless."""
        manager, _, _ = make_manager(FakeConnector())

        await manager.disconnect()

        assert manager.state == ConnectionState()


class TestOnVisible:
    """Tests for visibility resume."""

    @pytest.mark.asyncio
    async def test_reconnects_when_closed(self) -> None:
        """Becoming visible should reconnect a closed connection."""
        connector = FakeConnector(FakeWebSocket())
        manager, _, _ = make_manager(connector)

        await manager.on_visible()

        assert manager.connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_signed_out_does_nothing(self) -> None:
        """Becoming visible while signed out should not connect."""
        connector = FakeConnector()
        manager, _, _ = make_manager(connector, token=None)

        await manager.on_visible()

        assert connector.urls == []
        assert manager.state == ConnectionState()
