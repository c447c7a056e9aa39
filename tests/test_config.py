"""Tests for configuration loading, saving and validation."""

import json

import pytest

from stream_notifier.config import NotifierConfig, WebSocketConfig, create_default_config
from stream_notifier.exceptions import ConfigurationError
from stream_notifier.utils.backoff import compute_backoff_delay
from stream_notifier.utils.validation import ConfigValidator, SubscriptionValidator
from stream_notifier.events.stream_events import EventKind


class TestNotifierConfig:
    def test_defaults(self):
        config = NotifierConfig()
        assert config.max_subscriptions == 3
        assert config.ack_timeout == 5.0
        assert config.join_throttle == 0.5
        ws = config.websocket_config
        assert ws.handshake_timeout == 10.0
        assert ws.heartbeat_interval == 30.0
        assert ws.reconnect_delay_base == 5.0
        assert ws.reconnect_delay_max == 30.0
        assert ws.max_reconnect_attempts == 5
        assert ws.rotation_interval == 300.0

    def test_missing_file_creates_default(self, tmp_path):
        path = tmp_path / "config.json"
        config = NotifierConfig.load_from_file(path)
        assert path.exists()
        assert config.max_subscriptions == 3
        assert "api_key" not in json.loads(path.read_text())

    def test_round_trip_keeps_nested_websocket_config(self, tmp_path):
        path = tmp_path / "config.json"
        config = create_default_config(tmp_path / "subs.json")
        config.websocket_config.heartbeat_interval = 15.0
        config.save_to_file(path)

        loaded = NotifierConfig.load_from_file(path)
        assert isinstance(loaded.websocket_config, WebSocketConfig)
        assert loaded.websocket_config.heartbeat_interval == 15.0
        assert loaded.state_file == tmp_path / "subs.json"

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"max_subscriptions": 0, "log_level": "LOUD"}))
        with pytest.raises(ConfigurationError) as exc_info:
            NotifierConfig.load_from_file(path)
        assert "max_subscriptions" in str(exc_info.value)
        assert "log_level" in str(exc_info.value)

    def test_unknown_option_rejected(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"websocket_config": {"bogus": 1}}))
        with pytest.raises(ConfigurationError):
            NotifierConfig.load_from_file(path)

    def test_corrupt_file_rejected(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            NotifierConfig.load_from_file(path)

    def test_api_key_appended_as_token(self, monkeypatch):
        monkeypatch.delenv("STREAM_URL", raising=False)
        monkeypatch.setenv("STREAM_API_KEY", "secret")
        config = NotifierConfig()
        config.websocket_config.url = "wss://feed.test/socket/websocket?vsn=2.0.0"
        url = config.resolve_stream_url()
        assert url == "wss://feed.test/socket/websocket?vsn=2.0.0&token=secret"

    def test_no_api_key_leaves_url(self, monkeypatch):
        monkeypatch.delenv("STREAM_URL", raising=False)
        monkeypatch.delenv("STREAM_API_KEY", raising=False)
        config = NotifierConfig()
        assert config.resolve_stream_url() == config.websocket_config.url


class TestConfigValidator:
    def test_websocket_url_scheme(self):
        errors = ConfigValidator.validate_websocket_config({"url": "https://feed.test"})
        assert errors == ["url must start with ws:// or wss://"]

    def test_backoff_base_above_cap(self):
        errors = ConfigValidator.validate_websocket_config(
            {"reconnect_delay_base": 60, "reconnect_delay_max": 30}
        )
        assert any("must not exceed" in error for error in errors)

    def test_valid_config_has_no_errors(self):
        assert ConfigValidator.validate_notifier_config(NotifierConfig().to_dict()) == []


class TestSubscriptionValidator:
    @pytest.mark.parametrize("slug", ["cryptopunks", "bored-ape-yacht-club", "0n1-force"])
    def test_valid_slugs(self, slug):
        assert SubscriptionValidator.validate_slug(slug)

    @pytest.mark.parametrize("slug", ["", "CryptoPunks", "azuki_", "my collection", None, 12])
    def test_invalid_slugs(self, slug):
        assert not SubscriptionValidator.validate_slug(slug)

    def test_split_event_kinds_accepts_wire_names_and_labels(self):
        kinds, unknown = SubscriptionValidator.split_event_kinds(["item_sold", "listing-created", "bogus"])
        assert kinds == {EventKind.ITEM_SOLD, EventKind.LISTING_CREATED}
        assert unknown == ["bogus"]


class TestBackoff:
    def test_schedule(self):
        delays = [compute_backoff_delay(attempt, 5.0, 30.0) for attempt in range(1, 8)]
        assert delays == [5.0, 10.0, 20.0, 30.0, 30.0, 30.0, 30.0]

    def test_non_decreasing_and_capped(self):
        delays = [compute_backoff_delay(attempt, 5.0, 30.0) for attempt in range(1, 200)]
        assert delays == sorted(delays)
        assert max(delays) == 30.0
