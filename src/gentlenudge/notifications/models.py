"""Domain models for the notification engine.

Enums for the closed vocabularies (types, priorities, tones, lifecycle
states), the user preference snapshot, the read-only issue snapshot, the
per-type notification contexts, and the persisted records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Union
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Vocabularies
# =============================================================================


class NotificationType(str, Enum):
    """Kinds of nudges the engine can create."""

    STALE_REMINDER = "stale-reminder"
    DEADLINE_WARNING = "deadline-warning"
    PROGRESS_UPDATE = "progress-update"
    TEAM_ENCOURAGEMENT = "team-encouragement"
    ACHIEVEMENT_RECOGNITION = "achievement-recognition"


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    NotificationPriority.LOW: 0,
    NotificationPriority.MEDIUM: 1,
    NotificationPriority.HIGH: 2,
}


class NotificationFrequency(str, Enum):
    """How many nudges a user is willing to receive."""

    GENTLE = "gentle"  # 1 per day
    MODERATE = "moderate"  # 3 per day
    MINIMAL = "minimal"  # 1 per week


class MessageTone(str, Enum):
    ENCOURAGING = "encouraging"
    CASUAL = "casual"
    PROFESSIONAL = "professional"


class EncouragementStyle(str, Enum):
    CHEERFUL = "cheerful"
    SUPPORTIVE = "supportive"
    GENTLE = "gentle"
    MOTIVATIONAL = "motivational"
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"


class NotificationState(str, Enum):
    """Notification record lifecycle states."""

    PENDING = "pending"  # Created, no send time yet
    SCHEDULED = "scheduled"  # Waiting for its send time
    DELIVERED = "delivered"  # Shown to the user, awaiting response
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"
    ACTIONED = "actioned"
    SNOOZED = "snoozed"  # Transient, re-enters SCHEDULED
    EXPIRED = "expired"  # Not acted upon within the retention window

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


ACTIVE_STATES: FrozenSet[NotificationState] = frozenset(
    {NotificationState.PENDING, NotificationState.SCHEDULED, NotificationState.DELIVERED}
)

TERMINAL_STATES: FrozenSet[NotificationState] = frozenset(
    {
        NotificationState.ACKNOWLEDGED,
        NotificationState.DISMISSED,
        NotificationState.ACTIONED,
        NotificationState.EXPIRED,
    }
)


class UserResponse(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    DISMISSED = "dismissed"
    ACTIONED = "actioned"
    SNOOZED = "snoozed"

    @property
    def target_state(self) -> NotificationState:
        return NotificationState(self.value)


class SlaBreachRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ScanReason(str, Enum):
    """Trigger of a batch scan."""

    STALE = "stale-scan"
    DEADLINE = "deadline-scan"


class AchievementType(str, Enum):
    ISSUE_COMPLETED = "issue-completed"
    STREAK_MAINTAINED = "streak-maintained"
    TEAM_CONTRIBUTION = "team-contribution"


# =============================================================================
# Preferences
# =============================================================================

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_hhmm(value: str) -> int:
    """Convert an ``HH:MM`` wall-clock string to minutes since midnight."""
    match = _HHMM.match(value)
    if not match:
        raise ValueError(f"expected HH:MM, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


class QuietHours(BaseModel):
    """Local wall-clock window during which nothing may be scheduled.

    ``start`` is inclusive and ``end`` exclusive. A window whose start is
    later than its end wraps midnight (18:00 -> 09:00).
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    start: str = "18:00"
    end: str = "09:00"

    @field_validator("start", "end")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @property
    def start_minutes(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_hhmm(self.end)


DEFAULT_ENABLED_TYPES: FrozenSet[NotificationType] = frozenset(
    {
        NotificationType.STALE_REMINDER,
        NotificationType.DEADLINE_WARNING,
        NotificationType.ACHIEVEMENT_RECOGNITION,
    }
)


class UserPreferences(BaseModel):
    """Snapshot of one user's notification preferences.

    Owned by the preference store; the engine reads a fresh snapshot per run.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    notification_frequency: NotificationFrequency = NotificationFrequency.GENTLE
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    preferred_tone: MessageTone = MessageTone.ENCOURAGING
    stale_days_threshold: int = Field(default=3, ge=0)
    deadline_warning_days: int = Field(default=2, ge=0)
    enabled_notification_types: FrozenSet[NotificationType] = DEFAULT_ENABLED_TYPES
    time_zone: str = "UTC"
    encouragement_style: EncouragementStyle = EncouragementStyle.SUPPORTIVE
    personalized_greeting: Optional[str] = None
    max_daily_notifications: int = Field(default=5, ge=1)

    @field_validator("time_zone")
    @classmethod
    def _validate_time_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone {value!r}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    def is_enabled(self, notification_type: NotificationType) -> bool:
        return notification_type in self.enabled_notification_types

    @classmethod
    def defaults(cls, user_id: str) -> "UserPreferences":
        """Preferences used when the store has nothing for a user."""
        return cls(user_id=user_id)


# =============================================================================
# Issues
# =============================================================================


@dataclass(frozen=True)
class IssueSnapshot:
    """Read-only view of a work item handed to the engine by the issue source."""

    key: str
    summary: str
    status: str
    priority: str
    assignee: Optional[str]
    last_updated: datetime
    due_date: Optional[Union[datetime, date]] = None
    project_key: str = ""
    project_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "summary": self.summary,
            "status": self.status,
            "priority": self.priority,
            "assignee": self.assignee,
            "last_updated": self.last_updated.isoformat(),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "project_key": self.project_key,
            "project_name": self.project_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssueSnapshot":
        due_raw = data.get("due_date")
        due: Optional[Union[datetime, date]] = None
        if due_raw:
            # Bare dates stay dates; they are read in the user's time zone later
            due = date.fromisoformat(due_raw) if len(due_raw) == 10 else _parse_datetime(due_raw)
        return cls(
            key=data["key"],
            summary=data.get("summary", ""),
            status=data.get("status", "To Do"),
            priority=data.get("priority", "Medium"),
            assignee=data.get("assignee"),
            last_updated=_parse_datetime(data["last_updated"]),
            due_date=due,
            project_key=data.get("project_key", ""),
            project_name=data.get("project_name", ""),
        )


@dataclass(frozen=True)
class DeadlineInfo:
    """Derived deadline facts for one issue at one instant."""

    due_date: datetime
    days_remaining: int
    hours_remaining: float
    is_overdue: bool
    sla_breach_risk: SlaBreachRisk
    buffer_time_hours: float


# =============================================================================
# Notification contexts (one variant per type)
# =============================================================================


@dataclass(frozen=True)
class StaleContext:
    type: ClassVar[NotificationType] = NotificationType.STALE_REMINDER

    issue: IssueSnapshot
    days_since_update: int


@dataclass(frozen=True)
class DeadlineContext:
    type: ClassVar[NotificationType] = NotificationType.DEADLINE_WARNING

    issue: IssueSnapshot
    deadline: DeadlineInfo


@dataclass(frozen=True)
class ProgressContext:
    type: ClassVar[NotificationType] = NotificationType.PROGRESS_UPDATE

    issue: IssueSnapshot
    completed_this_week: int = 0


@dataclass(frozen=True)
class TeamContext:
    type: ClassVar[NotificationType] = NotificationType.TEAM_ENCOURAGEMENT

    issue: IssueSnapshot


@dataclass(frozen=True)
class AchievementContext:
    type: ClassVar[NotificationType] = NotificationType.ACHIEVEMENT_RECOGNITION

    achievement_type: AchievementType
    issue_key: Optional[str] = None
    summary: Optional[str] = None
    project_name: Optional[str] = None
    streak_count: int = 0


NotificationContext = Union[
    StaleContext, DeadlineContext, ProgressContext, TeamContext, AchievementContext
]


# =============================================================================
# Records
# =============================================================================


@dataclass
class NotificationContent:
    """Rendered text of a notification."""

    title: str
    message: str
    tone: MessageTone
    action_text: str = ""
    template_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "tone": self.tone.value,
            "action_text": self.action_text,
            "template_id": self.template_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationContent":
        return cls(
            title=data.get("title", ""),
            message=data.get("message", ""),
            tone=MessageTone(data.get("tone", "encouraging")),
            action_text=data.get("action_text", ""),
            template_id=data.get("template_id", ""),
        )


def new_notification_id() -> str:
    return f"notif_{uuid4().hex}"


@dataclass(frozen=True)
class ResponseEntry:
    """One user response to a delivered notification."""

    response: UserResponse
    responded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"response": self.response.value, "responded_at": self.responded_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseEntry":
        return cls(
            response=UserResponse(data["response"]),
            responded_at=_parse_datetime(data["responded_at"]),
        )


@dataclass
class NotificationRecord:
    """A persisted notification and its lifecycle state.

    Created by the engine, mutated only by the delivery manager, never
    hard-deleted so analytics can read the full history.

    Attributes:
        id: Unique identifier
        user_id: Recipient
        issue_key: Work item the nudge is about
        type: Notification type
        priority: Notification priority
        content: Rendered title/message/tone
        scheduled_for: When the notification may be delivered (UTC)
        state: Lifecycle state
        created_at: Creation time
        updated_at: Last state change
        delivered_at: First delivery time (re-deliveries keep the original)
        last_delivered_at: Most recent delivery time
        responded_at: Time of the latest user response
        response: Latest user response
        snooze_count: Number of snoozes
        response_history: Every response in order (snoozes included)
        nudge_counted: The first delivery has been added to the nudge tracking
    """

    user_id: str
    issue_key: str
    type: NotificationType
    priority: NotificationPriority
    content: NotificationContent
    scheduled_for: datetime
    state: NotificationState = NotificationState.PENDING
    id: str = field(default_factory=new_notification_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None
    last_delivered_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response: Optional[UserResponse] = None
    snooze_count: int = 0
    response_history: List[ResponseEntry] = field(default_factory=list)
    nudge_counted: bool = False

    @property
    def dedup_key(self) -> str:
        return dedup_key(self.user_id, self.issue_key, self.type)

    @property
    def uses_dedup_slot(self) -> bool:
        return self.type is not NotificationType.ACHIEVEMENT_RECOGNITION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "issue_key": self.issue_key,
            "type": self.type.value,
            "priority": self.priority.value,
            "content": self.content.to_dict(),
            "scheduled_for": _format_datetime(self.scheduled_for),
            "state": self.state.value,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "delivered_at": _format_datetime(self.delivered_at),
            "last_delivered_at": _format_datetime(self.last_delivered_at),
            "responded_at": _format_datetime(self.responded_at),
            "response": self.response.value if self.response else None,
            "snooze_count": self.snooze_count,
            "response_history": [entry.to_dict() for entry in self.response_history],
            "nudge_counted": self.nudge_counted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationRecord":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            issue_key=data["issue_key"],
            type=NotificationType(data["type"]),
            priority=NotificationPriority(data["priority"]),
            content=NotificationContent.from_dict(data.get("content", {})),
            scheduled_for=_parse_datetime(data["scheduled_for"]),
            state=NotificationState(data["state"]),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data.get("updated_at")) or _parse_datetime(data["created_at"]),
            delivered_at=_parse_datetime(data.get("delivered_at")),
            last_delivered_at=_parse_datetime(data.get("last_delivered_at")),
            responded_at=_parse_datetime(data.get("responded_at")),
            response=UserResponse(data["response"]) if data.get("response") else None,
            snooze_count=data.get("snooze_count", 0),
            response_history=[
                ResponseEntry.from_dict(entry) for entry in data.get("response_history", [])
            ],
            nudge_counted=data.get("nudge_counted", data.get("delivered_at") is not None),
        )


@dataclass
class NudgeTracking:
    """Per (user, issue) nudge history summary.

    ``counted_ids`` remembers the most recent records already added to
    ``nudge_count`` so a retried count is applied once.
    """

    MAX_COUNTED_IDS: ClassVar[int] = 50

    user_id: str
    issue_key: str
    last_nudge_date: Optional[datetime] = None
    nudge_count: int = 0
    user_response: Optional[UserResponse] = None
    effectiveness_score: float = 0.0
    counted_ids: List[str] = field(default_factory=list)

    def count_nudge(self, notification_id: str, delivered_at: datetime) -> bool:
        """Count one delivered record. Returns False if it was already counted."""
        if notification_id in self.counted_ids:
            return False
        self.nudge_count += 1
        if self.last_nudge_date is None or delivered_at > self.last_nudge_date:
            self.last_nudge_date = delivered_at
        self.counted_ids.append(notification_id)
        del self.counted_ids[: -self.MAX_COUNTED_IDS]
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "issue_key": self.issue_key,
            "last_nudge_date": _format_datetime(self.last_nudge_date),
            "nudge_count": self.nudge_count,
            "user_response": self.user_response.value if self.user_response else None,
            "effectiveness_score": self.effectiveness_score,
            "counted_ids": list(self.counted_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NudgeTracking":
        return cls(
            user_id=data["user_id"],
            issue_key=data["issue_key"],
            last_nudge_date=_parse_datetime(data.get("last_nudge_date")),
            nudge_count=data.get("nudge_count", 0),
            user_response=UserResponse(data["user_response"]) if data.get("user_response") else None,
            effectiveness_score=data.get("effectiveness_score", 0.0),
            counted_ids=list(data.get("counted_ids", [])),
        )


def dedup_key(user_id: str, issue_key: str, notification_type: NotificationType) -> str:
    """The (user, issue, type) triple that may hold at most one active record."""
    return f"{user_id}:{issue_key}:{notification_type.value}"
