"""Outbound notification events for presentation layers.

The delivery manager publishes lifecycle events through an ``EventChannel``
to any number of ``EventSink`` implementations:
- InMemoryEventSink: collects events (tests, embedding)
- LoggingEventSink: writes one log line per event
- JsonFileEventSink: rolling JSON feed a dashboard can poll

Publication is best-effort. A failing sink is logged as a
``DeliveryError`` and never affects the persisted record.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from gentlenudge.errors import DeliveryError
from gentlenudge.notifications.models import NotificationRecord, utcnow

logger = logging.getLogger(__name__)


class EventType:
    CREATED = "notification.created"
    STATE_CHANGED = "notification.state_changed"
    DELIVERED = "notification.delivered"
    RESPONDED = "notification.responded"


@dataclass
class NotificationEvent:
    """A lifecycle event about one notification record.

    Attributes:
        event_type: One of the ``EventType`` names
        notification_id: Record the event is about
        user_id: Recipient
        payload: Record snapshot and transition details
        occurred_at: When the event was raised
    """

    event_type: str
    notification_id: str
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_record(
        cls, event_type: str, record: NotificationRecord, **extra: Any
    ) -> "NotificationEvent":
        payload = {"record": record.to_dict()}
        payload.update(extra)
        return cls(
            event_type=event_type,
            notification_id=record.id,
            user_id=record.user_id,
            payload=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventSink(ABC):
    """Abstract base class for event sinks."""

    @abstractmethod
    def publish(self, event: NotificationEvent) -> None:
        """Hand an event to this sink.

        Args:
            event: The event to publish

        Raises:
            Exception: Any failure; the channel converts it to DeliveryError
        """


class InMemoryEventSink(EventSink):
    """Keeps every event in a list."""

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]


class LoggingEventSink(EventSink):
    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def publish(self, event: NotificationEvent) -> None:
        logger.log(
            self._level,
            f"{event.event_type} {event.notification_id} (user={event.user_id})",
        )


class JsonFileEventSink(EventSink):
    """Rolling JSON feed of the most recent events.

    Stores events in a JSON file for a dashboard frontend to display.
    """

    DEFAULT_FEED_PATH = "~/.gentlenudge/events/feed.json"
    MAX_EVENTS = 100

    def __init__(self, storage_path: Optional[str] = None) -> None:
        self._storage_path = Path(os.path.expanduser(storage_path or self.DEFAULT_FEED_PATH))
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> List[Dict[str, Any]]:
        if not self._storage_path.exists():
            return []
        try:
            return json.loads(self._storage_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable event feed {self._storage_path}: {e}")
            return []

    def publish(self, event: NotificationEvent) -> None:
        with self._lock:
            events = self._load()
            events.append(event.to_dict())
            # Keep most recent
            events = events[-self.MAX_EVENTS :]
            self._storage_path.write_text(json.dumps(events, indent=2), encoding="utf-8")

    def read(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load()


class EventChannel:
    """Fans events out to sinks, optionally from a background thread.

    Usage:
        channel = EventChannel([LoggingEventSink()], background=True)
        channel.publish(event)
        channel.close()
    """

    def __init__(self, sinks: Optional[Sequence[EventSink]] = None, background: bool = False) -> None:
        self._sinks: List[EventSink] = list(sinks or [])
        self._background = background
        self._queue: "queue.Queue[Optional[NotificationEvent]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self.failures = 0
        if background:
            self._worker = threading.Thread(
                target=self._run, name="gentlenudge-events", daemon=True
            )
            self._worker.start()

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def publish(self, event: NotificationEvent) -> None:
        """Publish an event without ever raising."""
        if self._background:
            self._queue.put(event)
        else:
            self._dispatch(event)

    def _dispatch(self, event: NotificationEvent) -> None:
        for sink in self._sinks:
            try:
                sink.publish(event)
            except Exception as exc:
                self.failures += 1
                error = DeliveryError(
                    f"{type(sink).__name__} failed to publish {event.event_type}: {exc}",
                    details={"notification_id": event.notification_id},
                )
                logger.warning(f"{error.message} [{error.code}]")

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._dispatch(event)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until queued events have been dispatched."""
        if self._background:
            self._queue.join()

    def close(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(None)
            self._worker.join(timeout=5)
        self._worker = None
        self._background = False
