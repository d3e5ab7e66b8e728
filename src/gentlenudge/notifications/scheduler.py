"""Send-time computation: quiet hours and frequency caps.

Quiet hours are evaluated on the user's local wall clock as minutes since
midnight. ``start`` is inclusive, ``end`` exclusive, and a window with
``start > end`` wraps midnight. ``start == end`` is an empty window.

All functions take the current or desired time as an argument and never
read the clock themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from gentlenudge.errors import FrequencyCapExceededError
from gentlenudge.notifications.config import EngineConfig, FrequencyCap
from gentlenudge.notifications.models import (
    NotificationRecord,
    NotificationState,
    QuietHours,
    UserPreferences,
    ensure_utc,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def minutes_since_midnight(value: datetime) -> int:
    return value.hour * 60 + value.minute


def is_within_quiet_hours(minute: int, start: int, end: int) -> bool:
    """Whether ``minute`` (0-1439) falls inside the window [start, end)."""
    if start == end:
        return False
    if start < end:
        return start <= minute < end
    return minute >= start or minute < end


def in_quiet_hours(moment: datetime, quiet_hours: QuietHours, tz: ZoneInfo) -> bool:
    """Whether an instant falls inside the quiet window on the local clock."""
    if not quiet_hours.enabled:
        return False
    local = ensure_utc(moment).astimezone(tz)
    return is_within_quiet_hours(
        minutes_since_midnight(local), quiet_hours.start_minutes, quiet_hours.end_minutes
    )


def next_allowed_time(desired: datetime, quiet_hours: QuietHours, tz: ZoneInfo) -> datetime:
    """Earliest instant at or after ``desired`` outside the quiet window.

    Args:
        desired: Desired earliest send time
        quiet_hours: The user's quiet window
        tz: The user's time zone

    Returns:
        Timezone-aware UTC datetime
    """
    desired = ensure_utc(desired)
    if not in_quiet_hours(desired, quiet_hours, tz):
        return desired

    local = desired.astimezone(tz)
    start, end = quiet_hours.start_minutes, quiet_hours.end_minutes
    end_date = local.date()
    if start > end and minutes_since_midnight(local) >= start:
        # Evening part of a wrapping window ends tomorrow morning
        end_date += timedelta(days=1)

    end_local = datetime.combine(end_date, time(end // 60, end % 60), tzinfo=tz)
    return max(end_local.astimezone(timezone.utc), desired)


@dataclass
class SchedulingDecision:
    """Outcome of choosing a send time.

    Attributes:
        scheduled_for: Chosen send time (UTC)
        deferred_by_cap: The frequency cap pushed the time later
        adjusted_for_quiet_hours: Quiet hours pushed the time later
        reasons: Short tags explaining each adjustment
    """

    scheduled_for: datetime
    deferred_by_cap: bool = False
    adjusted_for_quiet_hours: bool = False
    reasons: List[str] = field(default_factory=list)


def occupied_slots(
    records: Iterable[NotificationRecord], exclude_id: Optional[str] = None
) -> List[datetime]:
    """Times that count against the frequency cap.

    A delivered record occupies its first delivery time. A scheduled record
    that has never been delivered reserves its scheduled time.
    """
    slots = []
    for record in records:
        if record.id == exclude_id:
            continue
        if record.delivered_at is not None:
            slots.append(record.delivered_at)
        elif record.state is NotificationState.SCHEDULED:
            slots.append(record.scheduled_for)
    return sorted(slots)


def delivered_slots(
    records: Iterable[NotificationRecord], exclude_id: Optional[str] = None
) -> List[datetime]:
    return sorted(
        r.delivered_at for r in records if r.delivered_at is not None and r.id != exclude_id
    )


def fits_cap(candidate: datetime, occupied: Sequence[datetime], cap: FrequencyCap) -> bool:
    """Whether adding ``candidate`` keeps every window containing it within the cap."""
    window = cap.window
    points = sorted(list(occupied) + [candidate])
    for start in points:
        if start > candidate or candidate >= start + window:
            continue
        if sum(1 for p in points if start <= p < start + window) > cap.max_notifications:
            return False
    return True


class SchedulerService:
    """Chooses send times honouring quiet hours and frequency caps.

    Args:
        config: Engine configuration (caps and scheduling horizon)
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()

    def next_allowed_time(self, desired: datetime, preferences: UserPreferences) -> datetime:
        return next_allowed_time(desired, preferences.quiet_hours, preferences.tz)

    def is_quiet(self, moment: datetime, preferences: UserPreferences) -> bool:
        return in_quiet_hours(moment, preferences.quiet_hours, preferences.tz)

    def cap_for(self, preferences: UserPreferences) -> FrequencyCap:
        return self.config.cap_for(preferences.notification_frequency)

    def schedule(
        self,
        preferences: UserPreferences,
        desired: datetime,
        occupied: Sequence[datetime] = (),
    ) -> SchedulingDecision:
        """Pick the earliest valid send time at or after ``desired``.

        Args:
            preferences: Recipient preferences (quiet hours, frequency, time zone)
            desired: Desired earliest send time
            occupied: Times already counting against the frequency cap

        Returns:
            The scheduling decision

        Raises:
            FrequencyCapExceededError: If no slot exists within the scheduling horizon
        """
        desired = ensure_utc(desired)
        cap = self.cap_for(preferences)
        horizon = desired + timedelta(days=self.config.delivery.max_schedule_ahead_days)

        quiet_adjusted = self.next_allowed_time(desired, preferences)
        if fits_cap(quiet_adjusted, occupied, cap):
            decision = SchedulingDecision(scheduled_for=quiet_adjusted)
            if quiet_adjusted != desired:
                decision.adjusted_for_quiet_hours = True
                decision.reasons.append("quiet-hours")
            return decision

        # Feasibility only changes where an occupied slot leaves the window
        best: Optional[datetime] = None
        best_moved = False
        for slot in occupied:
            release = slot + cap.window
            if release <= desired:
                continue
            candidate = self.next_allowed_time(release, preferences)
            if fits_cap(candidate, occupied, cap) and (best is None or candidate < best):
                best, best_moved = candidate, candidate != release

        if best is None or best > horizon:
            logger.debug(
                f"No frequency slot for {preferences.user_id} within "
                f"{self.config.delivery.max_schedule_ahead_days} days"
            )
            raise FrequencyCapExceededError(
                f"Frequency cap reached for {preferences.user_id}",
                details={
                    "user_id": preferences.user_id,
                    "frequency": preferences.notification_frequency.value,
                    "max_notifications": cap.max_notifications,
                    "window_hours": cap.window_hours,
                },
            )

        decision = SchedulingDecision(
            scheduled_for=best, deferred_by_cap=True, reasons=["frequency-cap"]
        )
        if best_moved:
            decision.adjusted_for_quiet_hours = True
            decision.reasons.append("quiet-hours")
        return decision

    def can_deliver_now(
        self,
        preferences: UserPreferences,
        now: datetime,
        delivered: Sequence[datetime],
    ) -> bool:
        """Whether a first delivery at ``now`` stays within the cap.

        Only actual deliveries count here; reservations are ignored.
        """
        cap = self.cap_for(preferences)
        since = ensure_utc(now) - cap.window
        recent = [d for d in delivered if since < d <= now]
        return len(recent) < cap.max_notifications
