"""Shared fixtures for Gentle Nudge tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional, Union

import pytest

from gentlenudge.notifications.channels import EventChannel, InMemoryEventSink
from gentlenudge.notifications.config import EngineConfig
from gentlenudge.notifications.engine import NotificationEngine
from gentlenudge.notifications.models import IssueSnapshot, UserPreferences
from gentlenudge.notifications.sources import InMemoryPreferenceStore, StaticIssueSource
from gentlenudge.notifications.storage import InMemoryKeyValueStore, NotificationRepository

# Tuesday, outside the default 18:00-09:00 quiet hours
NOW = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock passed to the engine instead of the wall clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class SleepRecorder:
    """Stands in for time.sleep and records requested delays."""

    def __init__(self) -> None:
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def repository(store, sleeper) -> NotificationRepository:
    return NotificationRepository(store, sleep=sleeper)


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def channel(event_sink) -> EventChannel:
    return EventChannel([event_sink])


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def issue_source() -> StaticIssueSource:
    return StaticIssueSource()


@pytest.fixture
def preferences() -> UserPreferences:
    return UserPreferences(user_id="alice")


@pytest.fixture
def preference_store(preferences) -> InMemoryPreferenceStore:
    return InMemoryPreferenceStore([preferences])


@pytest.fixture
def make_issue(clock) -> Callable[..., IssueSnapshot]:
    """Factory for issue snapshots relative to the fake clock."""

    def _make(
        key: str = "PROJ-1",
        *,
        days_old: float = 5,
        status: str = "In Progress",
        due: Optional[Union[date, datetime]] = None,
        summary: str = "Polish the onboarding flow",
        project: str = "Onboarding",
    ) -> IssueSnapshot:
        return IssueSnapshot(
            key=key,
            summary=summary,
            status=status,
            priority="Medium",
            assignee="alice",
            last_updated=clock.now - timedelta(days=days_old),
            due_date=due,
            project_key=key.split("-")[0],
            project_name=project,
        )

    return _make


@pytest.fixture
def engine(issue_source, preference_store, store, config, channel, clock, sleeper):
    engine = NotificationEngine(
        issue_source,
        preference_store,
        store=store,
        config=config,
        channel=channel,
        clock=clock,
        sleep=sleeper,
    )
    yield engine
    engine.shutdown()
