"""Tests for the notifier service wiring, sinks and CLI."""

import json

import pytest

from stream_notifier.adapters.notification_adapter import (
    CallbackNotificationSink, LoggingNotificationSink, format_address, format_price, render_summary
)
from stream_notifier.cli import main
from stream_notifier.config import NotifierConfig
from stream_notifier.events.stream_events import EventKind, create_domain_event
from stream_notifier.services.notifier_service import StreamNotifierService
from stream_notifier.storage import JsonSubscriptionStore

from fixtures import InMemorySubscriptionStore, MockConnector, RecordingSink, event_frame, wait_until


@pytest.fixture
def config(tmp_path, ws_config):
    return NotifierConfig(
        state_file=tmp_path / "subscriptions.json",
        ack_timeout=0.2,
        join_throttle=0.01,
        resubscribe_delay=0,
        websocket_config=ws_config,
    )


class TestStreamNotifierService:
    async def test_end_to_end(self, config):
        store = InMemorySubscriptionStore({
            "subscriptions": {"u1": ["azuki"]},
            "event_filters": {"u1": ["item_sold"]},
        })
        sink = RecordingSink()
        connector = MockConnector()
        service = StreamNotifierService(
            config=config, store=store, sink=sink, connect_factory=connector, configure_logging=False
        )
        presence = []
        service.add_presence_listener(presence.append)

        async with service:
            websocket = await connector.wait_for_socket()
            await wait_until(lambda: service.registry.handle_for("azuki") is not None)

            websocket.inject(event_frame("azuki", "item_listed"))
            websocket.inject(event_frame("azuki", "item_sold"))
            await wait_until(lambda: sink.deliveries)

            status = service.get_status()
            assert status["connection_state"] == "connected"
            assert status["active_collections"] == ["azuki"]
            assert status["total_users"] == 1
            assert service.presence == "Monitoring collections"

        assert [event.event_name for _, event in sink.deliveries] == ["item_sold"]
        assert not service.is_running()
        assert service.presence == "Offline"
        assert "Monitoring collections" in presence
        assert store.document == {
            "subscriptions": {"u1": ["azuki"]},
            "event_filters": {"u1": ["item_sold"]},
        }

    async def test_exhaustion_reported(self, config):
        service = StreamNotifierService(
            config=config,
            store=InMemorySubscriptionStore(),
            sink=RecordingSink(),
            connect_factory=MockConnector(fail_forever=True),
            configure_logging=False,
        )

        await service.start()
        await service.wait_until_stopped()

        assert service.presence.startswith("Connection failed")
        assert service.get_status()["connection_state"] == "exhausted"
        await service.stop()

    async def test_stop_does_not_rewrite_state(self, config):
        store = InMemorySubscriptionStore({"subscriptions": {"u1": ["azuki"]}, "event_filters": {}})
        connector = MockConnector()
        service = StreamNotifierService(
            config=config, store=store, sink=RecordingSink(), connect_factory=connector, configure_logging=False
        )

        await service.start()
        await connector.wait_for_socket()
        edited = {"subscriptions": {"u1": ["azuki"], "u2": ["doodles"]}, "event_filters": {}}
        store.document = edited
        saves = store.save_count
        await service.stop()

        assert store.save_count == saves
        assert store.document == edited

    async def test_default_store_is_json_file(self, config):
        service = StreamNotifierService(config=config, connect_factory=MockConnector(), configure_logging=False)
        assert isinstance(service.store, JsonSubscriptionStore)
        assert service.store.path == config.state_file
        assert isinstance(service.sink, LoggingNotificationSink)


class TestSinks:
    def test_render_summary(self):
        event = create_domain_event("azuki", "item_sold", {
            "collection": {"slug": "azuki", "name": "Azuki"},
            "item": {"token_id": 42},
            "sale_price": "1.5",
            "maker": "0x1234567890abcdef1234567890abcdef12345678",
        })
        assert render_summary(event) == "Item Sold | Azuki - Token #42 - 1.500 ETH - from 0x1234...5678"

    def test_render_unknown_kind(self):
        event = create_domain_event("azuki", "collection_offer")
        assert render_summary(event) == "collection_offer | azuki"

    def test_formatters(self):
        assert format_price(None) == "N/A"
        assert format_price("1234.5") == "1,234.500 ETH"
        assert format_address("") == "Unknown"

    async def test_logging_sink_keeps_bounded_history(self):
        sink = LoggingNotificationSink(history_size=2)
        for kind in list(EventKind)[:3]:
            await sink.deliver("u1", create_domain_event("azuki", kind.value))
        assert len(sink.history) == 2
        assert sink.history[-1]["event"]["event_name"] == list(EventKind)[2].value

    async def test_callback_sink_sync_and_async(self):
        seen = []

        async def async_callback(subscriber, event):
            seen.append(("async", subscriber))

        await CallbackNotificationSink(lambda s, e: seen.append(("sync", s))).deliver("u1", create_domain_event("azuki", "item_sold"))
        await CallbackNotificationSink(async_callback).deliver("u2", create_domain_event("azuki", "item_sold"))

        assert seen == [("sync", "u1"), ("async", "u2")]


class TestCli:
    def run_cli(self, tmp_path, *args):
        return main(["--state-file", str(tmp_path / "subscriptions.json"), *args])

    def test_offline_subscription_edits(self, tmp_path, capsys):
        assert self.run_cli(tmp_path, "subscribe", "1234", "azuki", "--events", "item_sold") == 0
        assert self.run_cli(tmp_path, "subscribe", "1234", "doodles", "--events", "listing-created") == 0
        assert self.run_cli(tmp_path, "subscribe", "42", "doodles") == 0
        assert self.run_cli(tmp_path, "unsubscribe", "1234", "azuki") == 0
        assert self.run_cli(tmp_path, "filter", "42", "item_sold") == 0

        document = json.loads((tmp_path / "subscriptions.json").read_text())
        assert document == {
            "subscriptions": {"1234": ["doodles"], "42": ["doodles"]},
            "event_filters": {"1234": ["item_listed"], "42": ["item_sold"]},
        }
        assert "will be joined when the notifier connects" in capsys.readouterr().out

    def test_validation_errors_exit_2(self, tmp_path, capsys):
        assert self.run_cli(tmp_path, "subscribe", "1234", "Not A Slug") == 2
        assert self.run_cli(tmp_path, "unsubscribe", "1234", "azuki") == 2
        assert "Error:" in capsys.readouterr().out

    def test_clear(self, tmp_path, capsys):
        self.run_cli(tmp_path, "subscribe", "1234", "azuki")
        assert self.run_cli(tmp_path, "clear", "1234") == 0
        assert "Deactivated collections: azuki" in capsys.readouterr().out

    def test_status_json(self, tmp_path, capsys):
        self.run_cli(tmp_path, "subscribe", "1234", "azuki")
        capsys.readouterr()

        assert self.run_cli(tmp_path, "status", "--json") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["active_collections"] == ["azuki"]
        assert status["total_users"] == 1

    def test_events_listing(self, tmp_path, capsys):
        assert self.run_cli(tmp_path, "events") == 0
        out = capsys.readouterr().out
        for kind in EventKind:
            assert kind.value in out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
