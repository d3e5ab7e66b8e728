"""Notification engine for supportive issue reminders.

Decides whether, when and with what wording to nudge a user about a
stale or soon-due issue, honouring quiet hours, frequency caps and tone
preferences, and turns user responses into effectiveness statistics.
"""

from gentlenudge.notifications.analytics import AnalyticsAggregator, AnalyticsSummary
from gentlenudge.notifications.channels import (
    EventChannel,
    EventSink,
    InMemoryEventSink,
    JsonFileEventSink,
    LoggingEventSink,
    NotificationEvent,
)
from gentlenudge.notifications.config import (
    ConfigurationManager,
    EngineConfig,
    load_config,
)
from gentlenudge.notifications.content import ContentGenerator
from gentlenudge.notifications.delivery import DeliveryManager, DeliveryReport
from gentlenudge.notifications.engine import NotificationEngine, ScanFailure, ScanResult
from gentlenudge.notifications.models import (
    AchievementContext,
    AchievementType,
    IssueSnapshot,
    MessageTone,
    NotificationFrequency,
    NotificationPriority,
    NotificationRecord,
    NotificationState,
    NotificationType,
    NudgeTracking,
    QuietHours,
    ScanReason,
    UserPreferences,
    UserResponse,
)
from gentlenudge.notifications.scheduler import SchedulerService
from gentlenudge.notifications.sources import (
    InMemoryPreferenceStore,
    IssueSource,
    KeyValuePreferenceStore,
    PreferenceStore,
    StaticIssueSource,
)
from gentlenudge.notifications.storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    NotificationRepository,
    SqliteKeyValueStore,
)
from gentlenudge.notifications.tone import ToneAnalyzer

__all__ = [
    "AchievementContext",
    "AchievementType",
    "AnalyticsAggregator",
    "AnalyticsSummary",
    "ConfigurationManager",
    "ContentGenerator",
    "DeliveryManager",
    "DeliveryReport",
    "EngineConfig",
    "EventChannel",
    "EventSink",
    "InMemoryEventSink",
    "InMemoryKeyValueStore",
    "InMemoryPreferenceStore",
    "IssueSnapshot",
    "IssueSource",
    "JsonFileEventSink",
    "KeyValuePreferenceStore",
    "KeyValueStore",
    "LoggingEventSink",
    "MessageTone",
    "NotificationEngine",
    "NotificationEvent",
    "NotificationFrequency",
    "NotificationPriority",
    "NotificationRecord",
    "NotificationRepository",
    "NotificationState",
    "NotificationType",
    "NudgeTracking",
    "PreferenceStore",
    "QuietHours",
    "ScanFailure",
    "ScanReason",
    "ScanResult",
    "SchedulerService",
    "SqliteKeyValueStore",
    "StaticIssueSource",
    "ToneAnalyzer",
    "UserPreferences",
    "UserResponse",
    "load_config",
]
