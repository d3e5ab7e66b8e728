"""Tests for notification domain models."""

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from gentlenudge.notifications.models import (
    DEFAULT_ENABLED_TYPES,
    IssueSnapshot,
    MessageTone,
    NotificationContent,
    NotificationFrequency,
    NotificationPriority,
    NotificationRecord,
    NotificationState,
    NotificationType,
    NudgeTracking,
    QuietHours,
    ResponseEntry,
    UserPreferences,
    UserResponse,
    dedup_key,
    ensure_utc,
    parse_hhmm,
)


class TestQuietHours:
    """Test quiet hours parsing."""

    def test_parse_hhmm(self):
        assert parse_hhmm("00:00") == 0
        assert parse_hhmm("09:30") == 570
        assert parse_hhmm("23:59") == 1439

    @pytest.mark.parametrize("value", ["24:00", "9:00", "12:60", "noon", ""])
    def test_parse_hhmm_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            parse_hhmm(value)

    def test_default_window_wraps_midnight(self):
        """Default quiet hours run from 18:00 to 09:00."""
        quiet = QuietHours()
        assert quiet.enabled
        assert quiet.start_minutes == 18 * 60
        assert quiet.end_minutes == 9 * 60

    def test_invalid_clock_rejected(self):
        with pytest.raises(ValidationError):
            QuietHours(start="25:00")


class TestUserPreferences:
    """Test user preference snapshot."""

    def test_defaults(self):
        prefs = UserPreferences.defaults("alice")
        assert prefs.notification_frequency is NotificationFrequency.GENTLE
        assert prefs.preferred_tone is MessageTone.ENCOURAGING
        assert prefs.stale_days_threshold == 3
        assert prefs.deadline_warning_days == 2
        assert prefs.enabled_notification_types == DEFAULT_ENABLED_TYPES
        assert prefs.time_zone == "UTC"

    def test_is_enabled(self):
        prefs = UserPreferences.defaults("alice")
        assert prefs.is_enabled(NotificationType.STALE_REMINDER)
        assert not prefs.is_enabled(NotificationType.PROGRESS_UPDATE)

    def test_unknown_time_zone_rejected(self):
        with pytest.raises(ValidationError):
            UserPreferences(user_id="alice", time_zone="Mars/Olympus_Mons")

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            UserPreferences(user_id="alice", stale_days_threshold=-1)

    def test_preferences_are_immutable(self):
        prefs = UserPreferences.defaults("alice")
        with pytest.raises(ValidationError):
            prefs.stale_days_threshold = 10

    def test_json_round_trip_keeps_enabled_types(self):
        prefs = UserPreferences(
            user_id="alice",
            enabled_notification_types=frozenset({NotificationType.DEADLINE_WARNING}),
        )
        restored = UserPreferences.model_validate_json(prefs.model_dump_json())
        assert restored == prefs


class TestVocabularies:
    """Test enum helpers."""

    def test_priority_rank_orders_levels(self):
        ranks = [p.rank for p in (NotificationPriority.LOW, NotificationPriority.MEDIUM, NotificationPriority.HIGH)]
        assert ranks == sorted(ranks)

    def test_response_target_state(self):
        assert UserResponse.ACKNOWLEDGED.target_state is NotificationState.ACKNOWLEDGED
        assert UserResponse.SNOOZED.target_state is NotificationState.SNOOZED

    def test_active_and_terminal_states(self):
        assert NotificationState.DELIVERED.is_active
        assert not NotificationState.SNOOZED.is_active
        assert not NotificationState.SNOOZED.is_terminal
        assert NotificationState.EXPIRED.is_terminal
        assert not NotificationState.SCHEDULED.is_terminal


class TestIssueSnapshot:
    """Test issue snapshot parsing."""

    def test_bare_due_date_stays_a_date(self):
        issue = IssueSnapshot.from_dict({
            "key": "PROJ-1",
            "last_updated": "2026-03-05T10:00:00+00:00",
            "due_date": "2026-03-12",
        })
        assert issue.due_date == date(2026, 3, 12)
        assert issue.status == "To Do"

    def test_naive_timestamps_are_utc(self):
        issue = IssueSnapshot.from_dict({
            "key": "PROJ-1",
            "last_updated": "2026-03-05T10:00:00",
            "due_date": "2026-03-12T17:00:00",
        })
        assert issue.last_updated == datetime(2026, 3, 5, 10, 0, tzinfo=timezone.utc)
        assert issue.due_date == datetime(2026, 3, 12, 17, 0, tzinfo=timezone.utc)


class TestNotificationRecord:
    """Test notification record persistence format."""

    def _record(self) -> NotificationRecord:
        return NotificationRecord(
            user_id="alice",
            issue_key="PROJ-1",
            type=NotificationType.STALE_REMINDER,
            priority=NotificationPriority.LOW,
            content=NotificationContent(title="Hi", message="Body", tone=MessageTone.CASUAL),
            scheduled_for=datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc),
        )

    def test_new_record_is_pending_with_unique_id(self):
        first, second = self._record(), self._record()
        assert first.state is NotificationState.PENDING
        assert first.id.startswith("notif_")
        assert first.id != second.id

    def test_dict_round_trip_with_history(self):
        record = self._record()
        record.state = NotificationState.SNOOZED
        record.snooze_count = 1
        record.response = UserResponse.SNOOZED
        record.response_history.append(
            ResponseEntry(UserResponse.SNOOZED, datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc))
        )

        restored = NotificationRecord.from_dict(record.to_dict())

        assert restored == record

    def test_dedup_key(self):
        record = self._record()
        assert record.dedup_key == "alice:PROJ-1:stale-reminder"
        assert record.dedup_key == dedup_key("alice", "PROJ-1", NotificationType.STALE_REMINDER)
        assert record.uses_dedup_slot

    def test_achievements_do_not_use_dedup_slot(self):
        record = self._record()
        record.type = NotificationType.ACHIEVEMENT_RECOGNITION
        assert not record.uses_dedup_slot


def test_tracking_defaults():
    tracking = NudgeTracking(user_id="alice", issue_key="PROJ-1")
    assert tracking.nudge_count == 0
    assert tracking.effectiveness_score == 0.0
    assert NudgeTracking.from_dict(tracking.to_dict()) == tracking


def test_tracking_counts_each_record_once():
    tracking = NudgeTracking(user_id="alice", issue_key="PROJ-1")
    first = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
    second = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)

    assert tracking.count_nudge("notif_b", second)
    assert tracking.count_nudge("notif_a", first)
    assert not tracking.count_nudge("notif_b", second)

    assert tracking.nudge_count == 2
    assert tracking.last_nudge_date == second
    assert NudgeTracking.from_dict(tracking.to_dict()).counted_ids == ["notif_b", "notif_a"]


def test_tracking_remembers_a_bounded_number_of_records():
    tracking = NudgeTracking(user_id="alice", issue_key="PROJ-1")
    when = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
    for n in range(NudgeTracking.MAX_COUNTED_IDS + 5):
        tracking.count_nudge(f"notif_{n}", when)

    assert tracking.nudge_count == NudgeTracking.MAX_COUNTED_IDS + 5
    assert len(tracking.counted_ids) == NudgeTracking.MAX_COUNTED_IDS
    assert tracking.counted_ids[0] == "notif_5"


def test_legacy_delivered_record_counts_as_counted():
    data = {
        "id": "notif_1",
        "user_id": "alice",
        "issue_key": "PROJ-1",
        "type": "stale-reminder",
        "priority": "low",
        "content": {"title": "t", "message": "m", "tone": "casual"},
        "scheduled_for": "2026-03-10T10:00:00+00:00",
        "state": "delivered",
        "created_at": "2026-03-10T10:00:00+00:00",
        "delivered_at": "2026-03-10T10:00:00+00:00",
    }
    assert NotificationRecord.from_dict(data).nudge_counted


def test_ensure_utc_converts_offsets():
    naive = datetime(2026, 3, 10, 10, 0)
    assert ensure_utc(naive).tzinfo is timezone.utc
    aware = datetime.fromisoformat("2026-03-10T11:00:00+01:00")
    assert ensure_utc(aware) == datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
