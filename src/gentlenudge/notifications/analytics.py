"""Effectiveness statistics derived from notification response history.

Read-only with respect to notification records. The only thing written
back is ``NudgeTracking.effectiveness_score``.

Effectiveness score of an issue: weighted average of every response to
that issue's notifications, each weighted by exponential recency decay
relative to the latest response. Being a normalised average of weights in
[0, 1], it always lies in [0, 1]; no history scores 0.0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from gentlenudge.errors import ValidationError
from gentlenudge.notifications.config import AnalyticsConfig
from gentlenudge.notifications.models import (
    NotificationRecord,
    NotificationState,
    NudgeTracking,
    ResponseEntry,
    UserResponse,
    ensure_utc,
    utcnow,
)
from gentlenudge.notifications.storage import NotificationRepository

logger = logging.getLogger(__name__)


@dataclass
class DeliveryStats:
    scheduled: int = 0
    delivered: int = 0
    expired: int = 0
    success_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheduled": self.scheduled,
            "delivered": self.delivered,
            "expired": self.expired,
            "success_rate": round(self.success_rate, 4),
        }


@dataclass
class AnalyticsSummary:
    """Per-user notification statistics over a trailing window.

    Attributes:
        user_id: User the summary is about
        days: Window length in days
        period_start: Window start (UTC)
        period_end: Window end (UTC)
        total_sent: Notifications first delivered inside the window
        response_counts: Responses by type for those notifications
        effectiveness_rate: (acknowledged + actioned) / total_sent, 0 when nothing was sent
        issue_scores: Effectiveness score per issue key
        delivery: Lifecycle counts for records created inside the window
    """

    user_id: str
    days: int
    period_start: datetime
    period_end: datetime
    total_sent: int = 0
    response_counts: Dict[UserResponse, int] = field(
        default_factory=lambda: {response: 0 for response in UserResponse}
    )
    effectiveness_rate: float = 0.0
    issue_scores: Dict[str, float] = field(default_factory=dict)
    delivery: DeliveryStats = field(default_factory=DeliveryStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "days": self.days,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_sent": self.total_sent,
            "response_counts": {r.value: n for r, n in self.response_counts.items()},
            "effectiveness_rate": round(self.effectiveness_rate, 4),
            "issue_scores": {k: round(v, 4) for k, v in self.issue_scores.items()},
            "delivery": self.delivery.to_dict(),
        }


def effectiveness_score(
    history: Iterable[ResponseEntry],
    config: Optional[AnalyticsConfig] = None,
) -> float:
    """Decayed, weighted score of a response history.

    Args:
        history: Responses in any order
        config: Weights and decay half-life

    Returns:
        Score in [0, 1]; 0.0 for an empty history
    """
    config = config or AnalyticsConfig()
    entries = list(history)
    if not entries:
        return 0.0

    latest = max(ensure_utc(e.responded_at) for e in entries)
    half_life = timedelta(days=config.decay_half_life_days)
    weighted = 0.0
    total = 0.0
    for entry in entries:
        age = latest - ensure_utc(entry.responded_at)
        decay = 0.5 ** (age / half_life)
        weighted += config.response_weights[entry.response] * decay
        total += decay
    return max(0.0, min(1.0, weighted / total))


class AnalyticsAggregator:
    """Computes per-user summaries and refreshes per-issue scores."""

    def __init__(
        self,
        repository: NotificationRepository,
        config: Optional[AnalyticsConfig] = None,
    ) -> None:
        self.repository = repository
        self.config = config or AnalyticsConfig()

    def issue_history(self, records: Iterable[NotificationRecord], issue_key: str) -> List[ResponseEntry]:
        history: List[ResponseEntry] = []
        for record in records:
            if record.issue_key == issue_key:
                history.extend(record.response_history)
        return sorted(history, key=lambda e: e.responded_at)

    def refresh_issue(self, user_id: str, issue_key: str) -> NudgeTracking:
        """Recompute and store the effectiveness score of one issue."""
        records = self.repository.list_records(user_id)
        score = effectiveness_score(self.issue_history(records, issue_key), self.config)

        def _apply(tracking: NudgeTracking) -> None:
            tracking.effectiveness_score = score

        tracking = self.repository.update_tracking(user_id, issue_key, _apply)
        logger.debug(f"Effectiveness for {user_id}/{issue_key} is now {score:.3f}")
        return tracking

    def on_response(self, record: NotificationRecord, now: datetime) -> None:
        self.refresh_issue(record.user_id, record.issue_key)

    def summarize(
        self, user_id: str, days: int, now: Optional[datetime] = None
    ) -> AnalyticsSummary:
        """Build the analytics summary for ``user_id`` over the last ``days`` days.

        Raises:
            ValidationError: If ``days`` is not positive
        """
        if days < 1:
            raise ValidationError(
                f"Analytics window must be at least one day, got {days}",
                details={"days": days},
            )
        now = ensure_utc(now or utcnow())
        start = now - timedelta(days=days)
        records = self.repository.list_records(user_id)
        summary = AnalyticsSummary(user_id=user_id, days=days, period_start=start, period_end=now)

        sent = [r for r in records if r.delivered_at is not None and start <= r.delivered_at <= now]
        summary.total_sent = len(sent)
        for record in sent:
            for entry in record.response_history:
                summary.response_counts[entry.response] += 1
        if sent:
            positive = sum(
                1 for r in sent
                if r.response in (UserResponse.ACKNOWLEDGED, UserResponse.ACTIONED)
            )
            summary.effectiveness_rate = positive / len(sent)

        for issue_key in sorted({r.issue_key for r in records}):
            summary.issue_scores[issue_key] = effectiveness_score(
                self.issue_history(records, issue_key), self.config
            )

        created = [r for r in records if start <= r.created_at <= now]
        stats = summary.delivery
        stats.scheduled = sum(1 for r in created if r.state is NotificationState.SCHEDULED)
        stats.delivered = sum(1 for r in created if r.delivered_at is not None)
        stats.expired = sum(1 for r in created if r.state is NotificationState.EXPIRED)
        finished = stats.delivered + sum(
            1 for r in created if r.state is NotificationState.EXPIRED and r.delivered_at is None
        )
        stats.success_rate = stats.delivered / finished if finished else 0.0
        return summary
