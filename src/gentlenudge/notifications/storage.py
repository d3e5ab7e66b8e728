"""Key-value persistence for notification records and nudge tracking.

The engine needs only a small key-value contract with conditional writes.
Two implementations ship: a lock-protected in-memory store for tests and
embedding, and a SQLite store for the CLI and single-host deployments.

Key layout used by ``NotificationRepository``:

    notification:{id}                     -> record JSON
    active:{user}:{issue}:{type}          -> id of the record holding the dedup slot
    user:{user}:notifications             -> JSON list of record ids (creation order)
    tracking:{user}:{issue}               -> nudge tracking JSON
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from gentlenudge.errors import DuplicateError, StorageError, VersionConflictError
from gentlenudge.notifications.models import (
    NotificationRecord,
    NotificationType,
    NudgeTracking,
    utcnow,
)
from gentlenudge.notifications.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyValueStore(ABC):
    """Key-value contract with per-key read-modify-write consistency."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under ``key`` or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key`` unconditionally."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    @abstractmethod
    def add(self, key: str, value: str) -> bool:
        """Store ``value`` only if ``key`` is absent.

        Returns:
            True if the value was written
        """

    @abstractmethod
    def compare_and_swap(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        """Replace the value of ``key`` if it currently equals ``expected``.

        ``expected=None`` means the key must be absent; ``new=None`` deletes it.

        Returns:
            True if the swap happened
        """

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with ``prefix`` in sorted order."""


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store guarded by a single lock."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def add(self, key: str, value: str) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    def compare_and_swap(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        with self._lock:
            if self._data.get(key) != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = new
            return True

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def __len__(self) -> int:
        return len(self._data)


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SqliteKeyValueStore(KeyValueStore):
    """SQLite-backed key-value store (WAL mode, one table)."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(SCHEMA)
        self._lock = threading.Lock()

    def _execute(self, sql: str, params: tuple) -> int:
        """Run a write and return the number of affected rows."""
        try:
            with self._lock:
                with self._conn:
                    return self._conn.execute(sql, params).rowcount
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite operation failed: {exc}") from exc

    def _fetch(self, sql: str, params: tuple) -> List[tuple]:
        try:
            with self._lock:
                return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite query failed: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        rows = self._fetch("SELECT value FROM kv WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    def set(self, key: str, value: str) -> None:
        self._execute(
            "INSERT OR REPLACE INTO kv(key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, utcnow().isoformat()),
        )

    def delete(self, key: str) -> None:
        self._execute("DELETE FROM kv WHERE key = ?", (key,))

    def add(self, key: str, value: str) -> bool:
        return self._execute(
            "INSERT OR IGNORE INTO kv(key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, utcnow().isoformat()),
        ) == 1

    def compare_and_swap(self, key: str, expected: Optional[str], new: Optional[str]) -> bool:
        if expected is None:
            if new is None:
                return self.get(key) is None
            return self.add(key, new)
        if new is None:
            changed = self._execute("DELETE FROM kv WHERE key = ? AND value = ?", (key, expected))
        else:
            changed = self._execute(
                "UPDATE kv SET value = ?, updated_at = ? WHERE key = ? AND value = ?",
                (new, utcnow().isoformat(), key, expected),
            )
        return changed == 1

    def keys(self, prefix: str = "") -> List[str]:
        rows = self._fetch(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        )
        return [row[0] for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class NotificationRepository:
    """Typed persistence for records and tracking on top of a ``KeyValueStore``.

    Every store call is retried with the configured backoff; exhaustion
    surfaces as ``StorageError``. Writes are keyed by record id, so a
    retried write is idempotent.
    """

    MAX_CAS_ATTEMPTS = 16

    def __init__(
        self,
        store: KeyValueStore,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def record_key(notification_id: str) -> str:
        return f"notification:{notification_id}"

    @staticmethod
    def active_key(user_id: str, issue_key: str, notification_type: NotificationType) -> str:
        return f"active:{user_id}:{issue_key}:{notification_type.value}"

    @staticmethod
    def index_key(user_id: str) -> str:
        return f"user:{user_id}:notifications"

    @staticmethod
    def tracking_key(user_id: str, issue_key: str) -> str:
        return f"tracking:{user_id}:{issue_key}"

    def _call(self, operation: Callable[[], T], description: str) -> T:
        return self._retry.call(
            operation,
            description=description,
            retry_on=(StorageError,),
            error_cls=StorageError,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def save_record(self, record: NotificationRecord) -> None:
        payload = json.dumps(record.to_dict(), sort_keys=True)
        key = self.record_key(record.id)
        self._call(lambda: self.store.set(key, payload), f"save {record.id}")

    def discard_record(self, notification_id: str) -> None:
        """Delete a record body that never became visible (lost dedup claim)."""
        key = self.record_key(notification_id)
        self._call(lambda: self.store.delete(key), f"discard {notification_id}")

    def get_record(self, notification_id: str) -> Optional[NotificationRecord]:
        key = self.record_key(notification_id)
        raw = self._call(lambda: self.store.get(key), f"load {notification_id}")
        if raw is None:
            return None
        return NotificationRecord.from_dict(json.loads(raw))

    def iter_user_records(self, user_id: str) -> Iterator[NotificationRecord]:
        for notification_id in self.user_record_ids(user_id):
            record = self.get_record(notification_id)
            if record is not None:
                yield record

    def list_records(self, user_id: str) -> List[NotificationRecord]:
        return list(self.iter_user_records(user_id))

    def user_record_ids(self, user_id: str) -> List[str]:
        key = self.index_key(user_id)
        raw = self._call(lambda: self.store.get(key), f"load index for {user_id}")
        return json.loads(raw) if raw else []

    def user_ids(self) -> List[str]:
        keys = self._call(lambda: self.store.keys("user:"), "list users")
        return sorted(
            key[len("user:") : -len(":notifications")]
            for key in keys
            if key.endswith(":notifications")
        )

    def index_record(self, user_id: str, notification_id: str) -> None:
        """Append ``notification_id`` to the user's index (idempotent)."""
        key = self.index_key(user_id)
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self._call(lambda: self.store.get(key), f"load index for {user_id}")
            ids = json.loads(current) if current else []
            if notification_id in ids:
                return
            ids.append(notification_id)
            new = json.dumps(ids)
            if self._call(
                lambda: self.store.compare_and_swap(key, current, new),
                f"update index for {user_id}",
            ):
                return
            logger.debug(f"Index for {user_id} changed concurrently, retrying")
        raise VersionConflictError(
            f"Could not update notification index for {user_id}",
            details={"user_id": user_id, "notification_id": notification_id},
        )

    # ------------------------------------------------------------------
    # Dedup slots
    # ------------------------------------------------------------------

    def active_record_id(
        self, user_id: str, issue_key: str, notification_type: NotificationType
    ) -> Optional[str]:
        key = self.active_key(user_id, issue_key, notification_type)
        return self._call(lambda: self.store.get(key), f"load slot {key}")

    def claim_active_slot(self, record: NotificationRecord) -> None:
        """Conditionally reserve the (user, issue, type) slot for ``record``.

        A slot whose holder is missing or no longer active is taken over.

        Raises:
            DuplicateError: If another active record holds the slot
        """
        key = self.active_key(record.user_id, record.issue_key, record.type)
        for _ in range(self.MAX_CAS_ATTEMPTS):
            if self._call(lambda: self.store.add(key, record.id), f"claim slot {key}"):
                return
            holder_id = self._call(lambda: self.store.get(key), f"load slot {key}")
            if holder_id == record.id:
                return
            if holder_id is None:
                continue
            holder = self.get_record(holder_id)
            if holder is not None and holder.state.is_active:
                raise DuplicateError(
                    record.user_id,
                    record.issue_key,
                    record.type.value,
                    existing_id=holder_id,
                )
            logger.debug(f"Reclaiming stale slot {key} from {holder_id}")
            if self._call(
                lambda: self.store.compare_and_swap(key, holder_id, record.id),
                f"reclaim slot {key}",
            ):
                return
        raise VersionConflictError(f"Could not claim slot {key}", details={"key": key})

    def release_active_slot(self, record: NotificationRecord) -> None:
        """Free the slot if ``record`` still holds it."""
        key = self.active_key(record.user_id, record.issue_key, record.type)
        self._call(
            lambda: self.store.compare_and_swap(key, record.id, None),
            f"release slot {key}",
        )

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def get_tracking(self, user_id: str, issue_key: str) -> Optional[NudgeTracking]:
        key = self.tracking_key(user_id, issue_key)
        raw = self._call(lambda: self.store.get(key), f"load tracking {key}")
        if raw is None:
            return None
        return NudgeTracking.from_dict(json.loads(raw))

    def save_tracking(self, tracking: NudgeTracking) -> None:
        key = self.tracking_key(tracking.user_id, tracking.issue_key)
        payload = json.dumps(tracking.to_dict(), sort_keys=True)
        self._call(lambda: self.store.set(key, payload), f"save tracking {key}")

    def update_tracking(
        self,
        user_id: str,
        issue_key: str,
        mutate: Callable[[NudgeTracking], None],
    ) -> NudgeTracking:
        """Read-modify-write a tracking row with an optimistic version check."""
        key = self.tracking_key(user_id, issue_key)
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self._call(lambda: self.store.get(key), f"load tracking {key}")
            tracking = (
                NudgeTracking.from_dict(json.loads(current))
                if current
                else NudgeTracking(user_id=user_id, issue_key=issue_key)
            )
            mutate(tracking)
            new = json.dumps(tracking.to_dict(), sort_keys=True)
            if self._call(
                lambda: self.store.compare_and_swap(key, current, new),
                f"update tracking {key}",
            ):
                return tracking
            logger.debug(f"Tracking {key} changed concurrently, retrying")
        raise VersionConflictError(f"Could not update tracking {key}", details={"key": key})
