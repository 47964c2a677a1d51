"""Unit tests for client settings and call options."""

import base64

import pytest

from eventstore_client.settings import (
    DEFAULT_DEADLINE,
    CallOptions,
    ClientSettings,
    Endpoint,
    NodePreference,
    UserCredentials,
)
from eventstore_client.transport import TransportConfig


class TestEndpoint:
    def test_parse_host_only(self) -> None:
        assert Endpoint.parse("db.local") == Endpoint("db.local", 2113)

    def test_parse_host_and_port(self) -> None:
        endpoint = Endpoint.parse(" db.local:1113 ")
        assert endpoint.port == 1113
        assert str(endpoint) == "db.local:1113"

    def test_parse_invalid_port(self) -> None:
        with pytest.raises(ValueError):
            Endpoint.parse("db.local:abc")


class TestUserCredentials:
    def test_basic_authorization(self) -> None:
        header = UserCredentials("admin", "changeit").authorization()
        assert header.startswith("Basic ")
        assert base64.b64decode(header[6:]) == b"admin:changeit"

    def test_password_hidden_from_repr(self) -> None:
        assert "changeit" not in repr(UserCredentials("admin", "changeit"))


class TestCallOptions:
    """Tests for merging per-call options with client settings."""

    def test_merged_fills_defaults(self) -> None:
        credentials = UserCredentials("admin", "changeit")
        settings = ClientSettings(credentials=credentials)

        merged = CallOptions().merged(settings)

        assert merged.timeout == DEFAULT_DEADLINE
        assert merged.credentials == credentials
        assert merged.requires_leader is True

    def test_explicit_values_win(self) -> None:
        settings = ClientSettings(credentials=UserCredentials("admin", "changeit"))
        override = UserCredentials("ops", "secret")

        merged = CallOptions(timeout=2.0, credentials=override, requires_leader=False).merged(
            settings
        )

        assert merged.timeout == 2.0
        assert merged.credentials == override
        assert merged.requires_leader is False

    def test_without_default_deadline(self) -> None:
        settings = ClientSettings()

        assert CallOptions().merged(settings, default_deadline=False).timeout is None
        assert CallOptions(timeout=0.5).merged(settings, default_deadline=False).timeout == 0.5

    def test_follower_preference_does_not_require_leader(self) -> None:
        settings = ClientSettings(node_preference=NodePreference.FOLLOWER)
        assert CallOptions().merged(settings).requires_leader is False

    def test_metadata(self) -> None:
        options = CallOptions(
            credentials=UserCredentials("admin", "changeit"),
            requires_leader=True,
            headers={"x-trace": "abc"},
        )

        metadata = dict(options.metadata())

        assert metadata["x-trace"] == "abc"
        assert metadata["authorization"].startswith("Basic ")
        assert metadata["requires-leader"] == "true"

    def test_metadata_empty(self) -> None:
        assert CallOptions().metadata() == ()


class TestClientSettingsFromEnv:
    """Tests for reading settings from EVENTSTORE_* variables."""

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EVENTSTORE_ENDPOINTS", "node1:2113, node2:2114")
        monkeypatch.setenv("EVENTSTORE_NODE_PREFERENCE", "FOLLOWER")
        monkeypatch.setenv("EVENTSTORE_TLS", "false")
        monkeypatch.setenv("EVENTSTORE_USERNAME", "admin")
        monkeypatch.setenv("EVENTSTORE_PASSWORD", "changeit")
        monkeypatch.setenv("EVENTSTORE_DEADLINE", "5")

        settings = ClientSettings.from_env()

        assert settings.endpoints == [Endpoint("node1", 2113), Endpoint("node2", 2114)]
        assert settings.node_preference == NodePreference.FOLLOWER
        assert settings.tls is False
        assert settings.credentials == UserCredentials("admin", "changeit")
        assert settings.default_deadline == 5.0

    def test_overrides_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EVENTSTORE_TLS", "true")

        settings = ClientSettings.from_env(tls=False)

        assert settings.tls is False

    def test_defaults_without_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in (
            "EVENTSTORE_ENDPOINTS",
            "EVENTSTORE_NODE_PREFERENCE",
            "EVENTSTORE_TLS",
            "EVENTSTORE_USERNAME",
            "EVENTSTORE_DEADLINE",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = ClientSettings.from_env()

        assert settings.endpoints == [Endpoint("localhost")]
        assert settings.tls is True
        assert settings.credentials is None


class TestTransportConfig:
    def test_from_settings(self) -> None:
        settings = ClientSettings(tls=False, keep_alive_interval=None, connection_name="worker-1")

        config = TransportConfig.from_settings(settings, Endpoint("node2"), ["/a", "/b"])

        assert config.endpoint == Endpoint("node2")
        assert config.tls is False
        assert config.keep_alive_interval is None
        assert config.connection_name == "worker-1"
        assert config.supported_methods == frozenset({"/a", "/b"})
