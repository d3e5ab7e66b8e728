"""Collaborator contracts: where issues and preferences come from.

The engine never queries an issue tracker or edits preferences itself.
It is handed an ``IssueSource`` and a ``PreferenceStore``; the in-memory
and key-value implementations here back the CLI and the tests.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from gentlenudge.errors import ConfigurationError, StorageError
from gentlenudge.notifications.models import IssueSnapshot, UserPreferences
from gentlenudge.notifications.storage import KeyValueStore

logger = logging.getLogger(__name__)


class IssueSource(ABC):
    """Read-only source of candidate issues for a user."""

    @abstractmethod
    def list_candidate_issues(self, user_id: str) -> List[IssueSnapshot]:
        """Return the issues assigned to ``user_id``.

        Raises:
            IssueSourceError: On transient failures (retried by the engine)
        """


class StaticIssueSource(IssueSource):
    """Issue source over a fixed mapping of user id to issues."""

    def __init__(self, issues: Optional[Dict[str, Iterable[IssueSnapshot]]] = None) -> None:
        self._issues: Dict[str, List[IssueSnapshot]] = {
            user_id: list(items) for user_id, items in (issues or {}).items()
        }

    def list_candidate_issues(self, user_id: str) -> List[IssueSnapshot]:
        return list(self._issues.get(user_id, []))

    def add(self, user_id: str, issue: IssueSnapshot) -> None:
        self._issues.setdefault(user_id, []).append(issue)

    def user_ids(self) -> List[str]:
        return sorted(self._issues)


class PreferenceStore(ABC):
    """Owner of user preferences. The engine only reads."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserPreferences]:
        """Return stored preferences or None."""

    @abstractmethod
    def set(self, user_id: str, preferences: UserPreferences) -> None:
        """Replace the preferences of ``user_id``."""

    def get_or_default(self, user_id: str) -> UserPreferences:
        preferences = self.get(user_id)
        if preferences is None:
            logger.debug(f"No preferences for {user_id}, using defaults")
            return UserPreferences.defaults(user_id)
        return preferences


class InMemoryPreferenceStore(PreferenceStore):
    def __init__(self, preferences: Optional[Iterable[UserPreferences]] = None) -> None:
        self._prefs: Dict[str, UserPreferences] = {p.user_id: p for p in preferences or []}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[UserPreferences]:
        with self._lock:
            return self._prefs.get(user_id)

    def set(self, user_id: str, preferences: UserPreferences) -> None:
        with self._lock:
            self._prefs[user_id] = preferences


class KeyValuePreferenceStore(PreferenceStore):
    """Preferences persisted as JSON under ``user:{id}:preferences``."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def key(user_id: str) -> str:
        return f"user:{user_id}:preferences"

    def get(self, user_id: str) -> Optional[UserPreferences]:
        raw = self._store.get(self.key(user_id))
        if raw is None:
            return None
        try:
            return UserPreferences.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise StorageError(
                f"Stored preferences for {user_id} are invalid",
                details={"user_id": user_id, "errors": exc.error_count()},
            ) from exc

    def set(self, user_id: str, preferences: UserPreferences) -> None:
        self._store.set(self.key(user_id), preferences.model_dump_json())


def load_fixture(path: Path) -> tuple[StaticIssueSource, InMemoryPreferenceStore]:
    """Load issues and preferences from a JSON fixture file.

    The file holds ``{"users": {user_id: {"preferences": {...}, "issues": [...]}}}``.

    Raises:
        ConfigurationError: If the file is unreadable or malformed
    """
    try:
        data: Dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Failed to read fixture {path}: {exc}") from exc

    users = data.get("users")
    if not isinstance(users, dict):
        raise ConfigurationError(f"Fixture {path} must contain a 'users' mapping")

    issues: Dict[str, List[IssueSnapshot]] = {}
    preferences = InMemoryPreferenceStore()
    try:
        for user_id, entry in users.items():
            prefs = entry.get("preferences")
            if prefs is not None:
                preferences.set(user_id, UserPreferences(user_id=user_id, **prefs))
            issues[user_id] = [IssueSnapshot.from_dict(i) for i in entry.get("issues", [])]
    except (PydanticValidationError, KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid fixture {path}: {exc}") from exc

    logger.info(f"Loaded fixture with {len(users)} users from {path}")
    return StaticIssueSource(issues), preferences
