"""Tests for core configuration classes."""

from __future__ import annotations

from chatsync.core.config import ServerConfig, SyncSettings


class TestServerConfig:
    """Tests for ServerConfig class."""

    def test_init_basic(self) -> None:
        """Should initialize with required fields."""
        config = ServerConfig(server_url="https://example.com")
        assert config.server_url == "https://example.com"
        assert config.timeout == 30.0
        assert config.verify_ssl is True

    def test_init_verify_ssl_false(self) -> None:
        """Should accept verify_ssl=False."""
        config = ServerConfig(server_url="https://example.com", verify_ssl=False)
        assert config.verify_ssl is False

    def test_url_trailing_slash_removed(self) -> None:
        """Should strip trailing slash from server URL."""
        config = ServerConfig(server_url="https://example.com/")
        assert config.server_url == "https://example.com"

    def test_is_secure(self) -> None:
        """Should detect HTTPS servers."""
        assert ServerConfig(server_url="https://example.com").is_secure is True
        assert ServerConfig(server_url="http://localhost:8000").is_secure is False


class TestWsUrlFor:
    """Tests for ServerConfig.ws_url_for."""

    def test_relative_endpoint_https(self) -> None:
        """Relative endpoints should resolve to wss:// on HTTPS servers."""
        config = ServerConfig(server_url="https://example.com")
        assert config.ws_url_for("/notifications") == "wss://example.com/notifications"

    def test_relative_endpoint_http(self) -> None:
        """Relative endpoints should resolve to ws:// on HTTP servers."""
        config = ServerConfig(server_url="http://localhost:8000")
        assert config.ws_url_for("notifications") == "ws://localhost:8000/notifications"

    def test_absolute_endpoint_unchanged(self) -> None:
        """Absolute ws(s) endpoints should be used as-is."""
        config = ServerConfig(server_url="https://example.com")
        endpoint = "wss://push.example.com/notifications"
        assert config.ws_url_for(endpoint) == endpoint


class TestSyncSettings:
    """Tests for SyncSettings."""

    def test_defaults(self) -> None:
        """Defaults should match the documented timings and thresholds."""
        settings = SyncSettings()
        assert settings.connect_throttle == 2.0
        assert settings.max_reconnect_attempts == 5
        assert settings.reconnect_base_delay == 1.0
        assert settings.read_debounce == 0.5
        assert settings.dwell_time == 1.0
        assert settings.preview_match_threshold == 0.8
        assert settings.retry_match_threshold == 0.9
        assert settings.preview_length == 36
        assert settings.notification_poll_interval == 60.0

    def test_from_dict_partial(self) -> None:
        """Should override only the given keys."""
        settings = SyncSettings.from_dict({"read_debounce": 0.1, "history_limit": 20})
        assert settings.read_debounce == 0.1
        assert settings.history_limit == 20
        assert settings.dwell_time == 1.0

    def test_from_dict_ignores_unknown_keys(self) -> None:
        """Unknown keys should be ignored."""
        settings = SyncSettings.from_dict({"bogus": 1, "dwell_time": 2.0})
        assert settings.dwell_time == 2.0

    def test_from_dict_empty(self) -> None:
        """None or empty mapping should give defaults."""
        assert SyncSettings.from_dict(None) == SyncSettings()
        assert SyncSettings.from_dict({}) == SyncSettings()
