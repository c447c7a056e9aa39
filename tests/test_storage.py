"""Tests for the JSON subscription store."""

import json

import pytest

from stream_notifier.exceptions import StorageError
from stream_notifier.storage import JsonSubscriptionStore, empty_document


def test_missing_file_is_empty(tmp_path):
    store = JsonSubscriptionStore(tmp_path / "subscriptions.json")
    assert store.load() == empty_document()


def test_save_then_load(tmp_path):
    store = JsonSubscriptionStore(tmp_path / "nested" / "subscriptions.json")
    document = {
        "subscriptions": {"u1": ["cryptopunks", "azuki"]},
        "event_filters": {"u1": ["item_sold"]},
    }
    store.save(document)

    assert store.load() == document
    # No temp files left behind
    assert [p.name for p in store.path.parent.iterdir()] == ["subscriptions.json"]


def test_reads_legacy_filter_key(tmp_path):
    path = tmp_path / "subscriptions.json"
    path.write_text(json.dumps({
        "subscriptions": {"u1": ["azuki"]},
        "eventFilters": {"u1": ["item_listed"]},
    }))
    document = JsonSubscriptionStore(path).load()
    assert document["event_filters"] == {"u1": ["item_listed"]}


def test_non_object_sections_are_ignored(tmp_path):
    path = tmp_path / "subscriptions.json"
    path.write_text(json.dumps({"subscriptions": ["azuki"], "event_filters": None}))
    assert JsonSubscriptionStore(path).load() == empty_document()


@pytest.mark.parametrize("content", ["{broken", "[]"])
def test_unreadable_file_raises(tmp_path, content):
    path = tmp_path / "subscriptions.json"
    path.write_text(content)
    with pytest.raises(StorageError):
        JsonSubscriptionStore(path).load()


def test_failed_save_keeps_previous_file(tmp_path):
    path = tmp_path / "subscriptions.json"
    store = JsonSubscriptionStore(path)
    store.save({"subscriptions": {"u1": ["azuki"]}, "event_filters": {}})

    with pytest.raises(StorageError):
        store.save({"subscriptions": {"u1": {"not", "serializable"}}, "event_filters": {}})

    assert json.loads(path.read_text())["subscriptions"] == {"u1": ["azuki"]}
