"""Candidate detection: which issues are stale and which deadlines are near."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from gentlenudge.notifications.config import DetectionConfig
from gentlenudge.notifications.models import (
    DeadlineContext,
    DeadlineInfo,
    IssueSnapshot,
    NotificationPriority,
    SlaBreachRisk,
    StaleContext,
    UserPreferences,
    ensure_utc,
)

logger = logging.getLogger(__name__)

END_OF_DAY = time(23, 59, 59)


def days_since_update(issue: IssueSnapshot, now: datetime) -> int:
    """Whole days elapsed since the issue was last updated."""
    elapsed = ensure_utc(now) - ensure_utc(issue.last_updated)
    return max(0, elapsed // timedelta(days=1))


def stale_priority(days: int, threshold: int) -> NotificationPriority:
    """Escalate the longer an issue sits beyond the threshold."""
    if threshold > 0 and days > threshold * 3:
        return NotificationPriority.HIGH
    if threshold > 0 and days > threshold * 2:
        return NotificationPriority.MEDIUM
    return NotificationPriority.LOW


def evaluate_staleness(
    issue: IssueSnapshot,
    preferences: UserPreferences,
    now: datetime,
    detection: DetectionConfig,
) -> Optional[StaleContext]:
    """Return a stale context if ``issue`` qualifies for a stale reminder."""
    if detection.is_terminal(issue.status):
        return None
    days = days_since_update(issue, now)
    if days < preferences.stale_days_threshold:
        return None
    return StaleContext(issue=issue, days_since_update=days)


def resolve_due_date(due: Union[date, datetime], tz: ZoneInfo) -> datetime:
    """Due instant in UTC. A bare date means the end of that day locally."""
    if isinstance(due, datetime):
        return ensure_utc(due)
    return ensure_utc(datetime.combine(due, END_OF_DAY, tzinfo=tz))


def sla_breach_risk(is_overdue: bool, days_remaining: int, warning_days: int) -> SlaBreachRisk:
    if is_overdue or days_remaining <= 1:
        return SlaBreachRisk.HIGH
    if days_remaining <= warning_days / 2:
        return SlaBreachRisk.MEDIUM
    return SlaBreachRisk.LOW


def compute_deadline_info(
    due: Union[date, datetime],
    now: datetime,
    preferences: UserPreferences,
) -> DeadlineInfo:
    """Derive days/hours remaining and breach risk on the user's calendar.

    Args:
        due: Due date or instant
        now: Current time
        preferences: Supplies the time zone and warning window

    Returns:
        Deadline facts at ``now``
    """
    tz = preferences.tz
    now = ensure_utc(now)
    due_at = resolve_due_date(due, tz)
    hours_remaining = (due_at - now).total_seconds() / 3600
    days_remaining = (due_at.astimezone(tz).date() - now.astimezone(tz).date()).days
    is_overdue = due_at < now
    return DeadlineInfo(
        due_date=due_at,
        days_remaining=days_remaining,
        hours_remaining=hours_remaining,
        is_overdue=is_overdue,
        sla_breach_risk=sla_breach_risk(is_overdue, days_remaining, preferences.deadline_warning_days),
        buffer_time_hours=max(0.0, hours_remaining),
    )


def deadline_priority(deadline: DeadlineInfo) -> NotificationPriority:
    if deadline.is_overdue:
        return NotificationPriority.HIGH
    return {
        SlaBreachRisk.HIGH: NotificationPriority.HIGH,
        SlaBreachRisk.MEDIUM: NotificationPriority.MEDIUM,
        SlaBreachRisk.LOW: NotificationPriority.LOW,
    }[deadline.sla_breach_risk]


def evaluate_deadline(
    issue: IssueSnapshot,
    preferences: UserPreferences,
    now: datetime,
    detection: DetectionConfig,
) -> Optional[DeadlineContext]:
    """Return a deadline context if ``issue`` is due soon or overdue."""
    if issue.due_date is None or detection.is_terminal(issue.status):
        return None
    info = compute_deadline_info(issue.due_date, now, preferences)
    if info.is_overdue or 0 <= info.days_remaining <= preferences.deadline_warning_days:
        return DeadlineContext(issue=issue, deadline=info)
    return None

