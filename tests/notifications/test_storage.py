"""Tests for key-value stores and the notification repository."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from gentlenudge.errors import DuplicateError, StorageError
from gentlenudge.notifications.models import (
    MessageTone,
    NotificationContent,
    NotificationPriority,
    NotificationRecord,
    NotificationState,
    NotificationType,
)
from gentlenudge.notifications.retry_policy import RetryPolicy
from gentlenudge.notifications.storage import (
    InMemoryKeyValueStore,
    NotificationRepository,
    SqliteKeyValueStore,
)


def _record(issue_key: str = "PROJ-1", user_id: str = "alice") -> NotificationRecord:
    return NotificationRecord(
        user_id=user_id,
        issue_key=issue_key,
        type=NotificationType.STALE_REMINDER,
        priority=NotificationPriority.MEDIUM,
        content=NotificationContent(title="Quick check-in", message="Body", tone=MessageTone.CASUAL),
        scheduled_for=datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc),
    )


@pytest.fixture(params=["memory", "sqlite"])
def kv_store(request, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryKeyValueStore()
    else:
        sqlite_store = SqliteKeyValueStore(tmp_path / "data" / "nudges.db")
        yield sqlite_store
        sqlite_store.close()


class TestKeyValueStore:
    """Contract shared by every store implementation."""

    def test_get_missing(self, kv_store):
        assert kv_store.get("nope") is None

    def test_set_get_delete(self, kv_store):
        kv_store.set("a", "1")
        assert kv_store.get("a") == "1"
        kv_store.set("a", "2")
        assert kv_store.get("a") == "2"
        kv_store.delete("a")
        assert kv_store.get("a") is None
        kv_store.delete("a")

    def test_add_only_when_absent(self, kv_store):
        assert kv_store.add("slot", "first")
        assert not kv_store.add("slot", "second")
        assert kv_store.get("slot") == "first"

    def test_compare_and_swap(self, kv_store):
        assert kv_store.compare_and_swap("k", None, "v1")
        assert not kv_store.compare_and_swap("k", None, "v2")
        assert not kv_store.compare_and_swap("k", "stale", "v2")
        assert kv_store.compare_and_swap("k", "v1", "v2")
        assert kv_store.get("k") == "v2"

    def test_compare_and_swap_delete(self, kv_store):
        kv_store.set("k", "v")
        assert not kv_store.compare_and_swap("k", "other", None)
        assert kv_store.compare_and_swap("k", "v", None)
        assert kv_store.get("k") is None

    def test_keys_by_prefix_sorted(self, kv_store):
        for key in ("user:b", "user:a", "tracking:x"):
            kv_store.set(key, "1")
        assert kv_store.keys("user:") == ["user:a", "user:b"]
        assert kv_store.keys() == ["tracking:x", "user:a", "user:b"]


def test_sqlite_store_persists_across_connections(tmp_path: Path):
    path = tmp_path / "nudges.db"
    first = SqliteKeyValueStore(path)
    first.set("notification:1", "{}")
    first.close()

    second = SqliteKeyValueStore(path)
    try:
        assert second.get("notification:1") == "{}"
    finally:
        second.close()


class TestNotificationRepository:
    """Test typed persistence on top of the store."""

    def test_save_and_get_record(self, repository):
        record = _record()
        repository.save_record(record)
        assert repository.get_record(record.id) == record
        assert repository.get_record("notif_missing") is None

    def test_index_is_idempotent(self, repository):
        record = _record()
        repository.save_record(record)
        repository.index_record("alice", record.id)
        repository.index_record("alice", record.id)

        assert repository.user_record_ids("alice") == [record.id]
        assert repository.list_records("alice") == [record]
        assert repository.user_ids() == ["alice"]

    def test_claim_conflicts_with_active_holder(self, repository):
        first, second = _record(), _record()
        first.state = NotificationState.SCHEDULED
        repository.save_record(first)
        repository.claim_active_slot(first)

        with pytest.raises(DuplicateError) as exc_info:
            repository.claim_active_slot(second)

        assert exc_info.value.existing_id == first.id
        assert repository.active_record_id("alice", "PROJ-1", NotificationType.STALE_REMINDER) == first.id

    def test_claim_is_idempotent_for_holder(self, repository):
        record = _record()
        repository.claim_active_slot(record)
        repository.claim_active_slot(record)

    def test_stale_holder_is_reclaimed(self, repository):
        """A slot left behind by an inactive record is taken over."""
        stale, fresh = _record(), _record()
        stale.state = NotificationState.DISMISSED
        repository.save_record(stale)
        repository.claim_active_slot(stale)

        repository.claim_active_slot(fresh)

        assert repository.active_record_id("alice", "PROJ-1", NotificationType.STALE_REMINDER) == fresh.id

    def test_missing_holder_is_reclaimed(self, repository):
        orphan, fresh = _record(), _record()
        repository.claim_active_slot(orphan)
        repository.claim_active_slot(fresh)
        assert repository.active_record_id("alice", "PROJ-1", NotificationType.STALE_REMINDER) == fresh.id

    def test_release_only_by_holder(self, repository):
        holder, other = _record(), _record()
        repository.claim_active_slot(holder)

        repository.release_active_slot(other)
        assert repository.active_record_id("alice", "PROJ-1", NotificationType.STALE_REMINDER) == holder.id

        repository.release_active_slot(holder)
        assert repository.active_record_id("alice", "PROJ-1", NotificationType.STALE_REMINDER) is None

    def test_slots_are_per_issue(self, repository):
        repository.claim_active_slot(_record("PROJ-1"))
        repository.claim_active_slot(_record("PROJ-2"))
        repository.claim_active_slot(_record("PROJ-1", user_id="bob"))

    def test_update_tracking(self, repository):
        def bump(tracking):
            tracking.nudge_count += 1

        repository.update_tracking("alice", "PROJ-1", bump)
        tracking = repository.update_tracking("alice", "PROJ-1", bump)

        assert tracking.nudge_count == 2
        assert repository.get_tracking("alice", "PROJ-1").nudge_count == 2
        assert repository.get_tracking("alice", "PROJ-2") is None


class FlakyStore(InMemoryKeyValueStore):
    """Fails the first ``failures`` writes with a storage error."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.set_calls = 0

    def set(self, key: str, value: str) -> None:
        self.set_calls += 1
        if self.set_calls <= self.failures:
            raise StorageError("database is locked")
        super().set(key, value)


class TestRepositoryRetries:
    """Test that transient store failures are retried."""

    def test_transient_failures_are_retried(self, sleeper):
        store = FlakyStore(failures=2)
        repository = NotificationRepository(store, RetryPolicy(jitter_factor=0.0), sleep=sleeper)
        record = _record()

        repository.save_record(record)

        assert store.set_calls == 3
        assert sleeper.calls == [0.2, 0.4]
        assert repository.get_record(record.id) == record

    def test_exhaustion_raises_storage_error(self, sleeper):
        store = FlakyStore(failures=10)
        repository = NotificationRepository(store, RetryPolicy(max_attempts=3), sleep=sleeper)

        with pytest.raises(StorageError) as exc_info:
            repository.save_record(_record())

        assert exc_info.value.details["attempts"] == 3
        assert store.set_calls == 3
