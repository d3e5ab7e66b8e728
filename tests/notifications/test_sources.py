"""Tests for issue sources, preference stores and event channels."""

import json
from datetime import date
from pathlib import Path

import pytest

from gentlenudge.errors import ConfigurationError, StorageError
from gentlenudge.notifications.channels import (
    EventChannel,
    EventType,
    InMemoryEventSink,
    JsonFileEventSink,
    NotificationEvent,
)
from gentlenudge.notifications.models import MessageTone, UserPreferences
from gentlenudge.notifications.sources import (
    InMemoryPreferenceStore,
    KeyValuePreferenceStore,
    StaticIssueSource,
    load_fixture,
)
from gentlenudge.notifications.storage import InMemoryKeyValueStore


def _event(n: int = 0) -> NotificationEvent:
    return NotificationEvent(
        event_type=EventType.CREATED, notification_id=f"notif_{n}", user_id="alice"
    )


class TestPreferenceStores:
    """Test preference stores."""

    def test_in_memory_defaults(self):
        store = InMemoryPreferenceStore()
        assert store.get("alice") is None
        assert store.get_or_default("alice") == UserPreferences.defaults("alice")

    def test_key_value_round_trip(self):
        kv = InMemoryKeyValueStore()
        store = KeyValuePreferenceStore(kv)
        prefs = UserPreferences(user_id="alice", preferred_tone=MessageTone.CASUAL, time_zone="Europe/Warsaw")

        store.set("alice", prefs)

        assert store.get("alice") == prefs
        assert kv.keys() == ["user:alice:preferences"]

    def test_corrupt_preferences(self):
        kv = InMemoryKeyValueStore()
        kv.set(KeyValuePreferenceStore.key("alice"), json.dumps({"user_id": "alice", "time_zone": "Nowhere/Else"}))
        with pytest.raises(StorageError):
            KeyValuePreferenceStore(kv).get("alice")


class TestLoadFixture:
    """Test JSON fixture loading."""

    def test_load(self, tmp_path: Path):
        path = tmp_path / "fixture.json"
        path.write_text(json.dumps({
            "users": {
                "alice": {
                    "preferences": {"notification_frequency": "moderate"},
                    "issues": [
                        {"key": "PROJ-1", "summary": "Docs", "last_updated": "2026-03-05T10:00:00+00:00",
                         "due_date": "2026-03-12"},
                    ],
                },
                "bob": {"issues": []},
            }
        }))

        source, preferences = load_fixture(path)

        assert isinstance(source, StaticIssueSource)
        assert source.user_ids() == ["alice", "bob"]
        assert source.list_candidate_issues("alice")[0].due_date == date(2026, 3, 12)
        assert preferences.get("alice").notification_frequency.value == "moderate"
        assert preferences.get("bob") is None

    @pytest.mark.parametrize(
        "content",
        [
            "not json",
            json.dumps({"people": {}}),
            json.dumps({"users": {"alice": {"issues": [{"summary": "no key"}]}}}),
            json.dumps({"users": {"alice": {"preferences": {"time_zone": "Nowhere/Else"}}}}),
        ],
    )
    def test_invalid(self, tmp_path: Path, content):
        path = tmp_path / "fixture.json"
        path.write_text(content)
        with pytest.raises(ConfigurationError):
            load_fixture(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_fixture(tmp_path / "missing.json")


class TestEventChannel:
    """Test event fan-out."""

    def test_background_flush(self):
        sink = InMemoryEventSink()
        channel = EventChannel([sink], background=True)
        for n in range(20):
            channel.publish(_event(n))

        channel.flush()

        assert [e.notification_id for e in sink.events] == [f"notif_{n}" for n in range(20)]
        channel.close()
        channel.publish(_event(99))
        assert sink.events[-1].notification_id == "notif_99"

    def test_json_feed_is_bounded(self, tmp_path: Path):
        sink = JsonFileEventSink(str(tmp_path / "events" / "feed.json"))
        for n in range(JsonFileEventSink.MAX_EVENTS + 5):
            sink.publish(_event(n))

        events = sink.read()

        assert len(events) == JsonFileEventSink.MAX_EVENTS
        assert events[-1]["notification_id"] == f"notif_{JsonFileEventSink.MAX_EVENTS + 4}"

    def test_unreadable_feed_is_replaced(self, tmp_path: Path):
        path = tmp_path / "feed.json"
        path.write_text("{broken")
        sink = JsonFileEventSink(str(path))
        sink.publish(_event())
        assert len(sink.read()) == 1
