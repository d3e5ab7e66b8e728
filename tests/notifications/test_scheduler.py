"""Tests for quiet hours and frequency-cap scheduling."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from gentlenudge.errors import FrequencyCapExceededError
from gentlenudge.notifications.config import EngineConfig, FrequencyCap
from gentlenudge.notifications.models import (
    NotificationFrequency,
    QuietHours,
    UserPreferences,
)
from gentlenudge.notifications.scheduler import (
    MINUTES_PER_DAY,
    SchedulerService,
    fits_cap,
    in_quiet_hours,
    is_within_quiet_hours,
    next_allowed_time,
)

UTC = timezone.utc
NOW = datetime(2026, 3, 10, 10, 0, tzinfo=UTC)
NO_QUIET = QuietHours(enabled=False)


class TestQuietWindow:
    """Test the minutes-since-midnight window check."""

    @pytest.mark.parametrize(
        "start,end",
        [(1080, 540), (540, 1020), (0, 0), (1320, 0), (0, 360), (600, 601)],
    )
    def test_matches_brute_force_for_every_minute(self, start, end):
        expected = {(start + k) % MINUTES_PER_DAY for k in range((end - start) % MINUTES_PER_DAY)}
        for minute in range(MINUTES_PER_DAY):
            assert is_within_quiet_hours(minute, start, end) == (minute in expected), minute

    def test_boundaries_of_default_window(self):
        assert is_within_quiet_hours(18 * 60, 1080, 540)
        assert is_within_quiet_hours(8 * 60 + 59, 1080, 540)
        assert not is_within_quiet_hours(9 * 60, 1080, 540)
        assert not is_within_quiet_hours(17 * 60 + 59, 1080, 540)

    def test_disabled_window_never_quiet(self):
        assert not in_quiet_hours(NOW.replace(hour=23), NO_QUIET, ZoneInfo("UTC"))


class TestNextAllowedTime:
    """Test the earliest non-quiet instant."""

    def test_evening_moves_to_next_morning(self):
        desired = datetime(2026, 3, 10, 19, 30, tzinfo=UTC)
        result = next_allowed_time(desired, QuietHours(), ZoneInfo("UTC"))
        assert result == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)

    def test_early_morning_moves_to_same_morning(self):
        desired = datetime(2026, 3, 10, 3, 15, tzinfo=UTC)
        result = next_allowed_time(desired, QuietHours(), ZoneInfo("UTC"))
        assert result == datetime(2026, 3, 10, 9, 0, tzinfo=UTC)

    def test_local_time_zone(self):
        """09:00 in Warsaw is 08:00 UTC in winter."""
        desired = datetime(2026, 3, 10, 19, 30, tzinfo=UTC)
        result = next_allowed_time(desired, QuietHours(), ZoneInfo("Europe/Warsaw"))
        assert result == datetime(2026, 3, 11, 8, 0, tzinfo=UTC)

    def test_result_is_utc(self):
        desired = datetime.fromisoformat("2026-03-10T12:00:00+01:00")
        result = next_allowed_time(desired, QuietHours(), ZoneInfo("Europe/Warsaw"))
        assert result.utcoffset() == timedelta(0)
        assert result == desired

    @pytest.mark.parametrize("zone", ["UTC", "Europe/Warsaw", "America/New_York"])
    @pytest.mark.parametrize(
        "quiet",
        [QuietHours(), QuietHours(start="22:00", end="00:00"), QuietHours(start="12:00", end="13:30")],
    )
    def test_earliest_allowed_instant(self, zone, quiet):
        """Covers the spring DST change in Europe (2026-03-29)."""
        tz = ZoneInfo(zone)
        start = datetime(2026, 3, 28, 0, 0, tzinfo=UTC)
        for step in range(0, 3 * MINUTES_PER_DAY, 7):
            desired = start + timedelta(minutes=step)
            result = next_allowed_time(desired, quiet, tz)

            assert result >= desired
            assert not in_quiet_hours(result, quiet, tz)
            if not in_quiet_hours(desired, quiet, tz):
                assert result == desired
            else:
                assert in_quiet_hours(result - timedelta(minutes=1), quiet, tz)


class TestFitsCap:
    """Test the sliding-window cap check."""

    def test_empty_history_fits(self):
        assert fits_cap(NOW, [], FrequencyCap(max_notifications=1, window_hours=24))

    def test_window_is_half_open(self):
        cap = FrequencyCap(max_notifications=1, window_hours=24)
        assert not fits_cap(NOW + timedelta(hours=23, minutes=59), [NOW], cap)
        assert fits_cap(NOW + timedelta(hours=24), [NOW], cap)

    def test_candidate_before_existing_slot(self):
        cap = FrequencyCap(max_notifications=1, window_hours=24)
        assert not fits_cap(NOW, [NOW + timedelta(hours=5)], cap)
        assert fits_cap(NOW, [NOW + timedelta(hours=24)], cap)

    def test_moderate_allows_three(self):
        cap = FrequencyCap(max_notifications=3, window_hours=24)
        slots = [NOW, NOW + timedelta(hours=1)]
        assert fits_cap(NOW + timedelta(hours=2), slots, cap)
        assert not fits_cap(NOW + timedelta(hours=2), slots + [NOW + timedelta(hours=3)], cap)


class TestSchedulerService:
    """Test send-time decisions."""

    @pytest.fixture
    def scheduler(self) -> SchedulerService:
        return SchedulerService(EngineConfig())

    def test_desired_time_kept_when_allowed(self, scheduler):
        prefs = UserPreferences(user_id="alice")
        decision = scheduler.schedule(prefs, NOW)
        assert decision.scheduled_for == NOW
        assert decision.reasons == []
        assert not decision.deferred_by_cap

    def test_quiet_hours_adjustment(self, scheduler):
        prefs = UserPreferences(user_id="alice")
        decision = scheduler.schedule(prefs, NOW.replace(hour=19, minute=30))
        assert decision.scheduled_for == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)
        assert decision.adjusted_for_quiet_hours
        assert decision.reasons == ["quiet-hours"]

    def test_cap_defers_by_window(self, scheduler):
        prefs = UserPreferences(user_id="alice", quiet_hours=NO_QUIET)
        decision = scheduler.schedule(prefs, NOW, [NOW])
        assert decision.scheduled_for == NOW + timedelta(hours=24)
        assert decision.deferred_by_cap
        assert decision.reasons == ["frequency-cap"]

    def test_minimal_frequency_defers_a_week(self, scheduler):
        prefs = UserPreferences(
            user_id="alice",
            quiet_hours=NO_QUIET,
            notification_frequency=NotificationFrequency.MINIMAL,
        )
        decision = scheduler.schedule(prefs, NOW, [NOW - timedelta(days=2)])
        assert decision.scheduled_for == NOW + timedelta(days=5)

    def test_cap_then_quiet_hours(self, scheduler):
        prefs = UserPreferences(
            user_id="alice", quiet_hours=QuietHours(start="11:00", end="13:00")
        )
        occupied = [datetime(2026, 3, 10, 11, 30, tzinfo=UTC)]
        desired = datetime(2026, 3, 11, 10, 0, tzinfo=UTC)

        decision = scheduler.schedule(prefs, desired, occupied)

        assert decision.scheduled_for == datetime(2026, 3, 11, 13, 0, tzinfo=UTC)
        assert decision.reasons == ["frequency-cap", "quiet-hours"]
        assert decision.deferred_by_cap and decision.adjusted_for_quiet_hours

    def test_no_slot_within_horizon_raises(self):
        config = EngineConfig(delivery={"max_schedule_ahead_days": 1})
        scheduler = SchedulerService(config)
        prefs = UserPreferences(user_id="alice", quiet_hours=NO_QUIET)

        with pytest.raises(FrequencyCapExceededError) as exc_info:
            scheduler.schedule(prefs, NOW, [NOW, NOW + timedelta(days=1)])

        assert exc_info.value.details["frequency"] == "gentle"

    def test_can_deliver_now_counts_deliveries_only(self, scheduler):
        prefs = UserPreferences(user_id="alice")
        assert scheduler.can_deliver_now(prefs, NOW, [])
        assert not scheduler.can_deliver_now(prefs, NOW, [NOW - timedelta(hours=23)])
        assert scheduler.can_deliver_now(prefs, NOW, [NOW - timedelta(hours=24)])

    def test_is_quiet_uses_preferences(self, scheduler):
        prefs = UserPreferences(user_id="alice", time_zone="Europe/Warsaw")
        # 17:30 UTC is 18:30 in Warsaw
        assert scheduler.is_quiet(NOW.replace(hour=17, minute=30), prefs)
        assert not scheduler.is_quiet(NOW.replace(hour=16, minute=30), prefs)
