"""Notification engine: the public operation surface.

Wires detection, scheduling, content and delivery together:

    candidates -> filter -> dedup check -> schedule -> render -> persist

Batch scans never raise. Each candidate's failure is collected into the
``ScanResult`` and the remaining candidates are still processed. Single
operations raise the typed ``NudgeError`` subclasses.

Usage:
    engine = NotificationEngine(issue_source, preference_store, store=SqliteKeyValueStore(path))
    result = engine.process_stale_issues("user-1")
    engine.deliver_due("user-1")
    engine.record_user_response(notification_id, UserResponse.ACKNOWLEDGED)
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from gentlenudge.errors import (
    DuplicateError,
    FrequencyCapExceededError,
    IssueSourceError,
    NudgeError,
    ValidationError,
)
from gentlenudge.notifications.analytics import AnalyticsAggregator, AnalyticsSummary
from gentlenudge.notifications.channels import EventChannel
from gentlenudge.notifications.config import EngineConfig
from gentlenudge.notifications.content import ContentGenerator
from gentlenudge.notifications.delivery import DeliveryManager, DeliveryReport
from gentlenudge.notifications.detection import (
    compute_deadline_info,
    days_since_update,
    deadline_priority,
    evaluate_deadline,
    evaluate_staleness,
    stale_priority,
)
from gentlenudge.notifications.models import (
    AchievementContext,
    AchievementType,
    DeadlineContext,
    IssueSnapshot,
    NotificationContext,
    NotificationPriority,
    NotificationRecord,
    NotificationType,
    ProgressContext,
    ScanReason,
    StaleContext,
    TeamContext,
    UserPreferences,
    UserResponse,
    ensure_utc,
    utcnow,
)
from gentlenudge.notifications.retry_policy import RetryPolicy
from gentlenudge.notifications.scheduler import SchedulerService
from gentlenudge.notifications.sources import IssueSource, PreferenceStore
from gentlenudge.notifications.storage import (
    InMemoryKeyValueStore,
    KeyValueStore,
    NotificationRepository,
)
from gentlenudge.notifications.tone import ToneAnalyzer

logger = logging.getLogger(__name__)

_SCAN_TYPES = {
    ScanReason.STALE: NotificationType.STALE_REMINDER,
    ScanReason.DEADLINE: NotificationType.DEADLINE_WARNING,
}

# Network failures of the issue source surface as OSError subclasses.
_TRANSIENT_SOURCE_ERRORS = (IssueSourceError, ConnectionError, TimeoutError, OSError)

_UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


@dataclass
class ScanFailure:
    """One candidate that could not be processed."""

    issue_key: str
    code: str
    message: str

    @classmethod
    def from_error(cls, issue_key: str, error: Exception) -> "ScanFailure":
        if isinstance(error, NudgeError):
            return cls(issue_key=issue_key, code=error.code, message=error.message)
        return cls(
            issue_key=issue_key,
            code=_UNEXPECTED_ERROR,
            message=f"{type(error).__name__}: {error}",
        )

    def to_dict(self) -> Dict[str, str]:
        return {"issue_key": self.issue_key, "code": self.code, "message": self.message}


@dataclass
class ScanResult:
    """Outcome of one user's scan.

    Attributes:
        user_id: Scanned user
        reason: Scan trigger
        created_ids: Ids of notifications created, in order
        skipped: Issue keys skipped because a notification is already active
            or the frequency cap leaves no slot
        failures: Per-candidate failures
        cancelled: The scan stopped early because of shutdown
    """

    user_id: str
    reason: ScanReason
    created_ids: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[ScanFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def created(self) -> int:
        return len(self.created_ids)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "reason": self.reason.value,
            "created": self.created,
            "created_ids": list(self.created_ids),
            "skipped": list(self.skipped),
            "failures": [f.to_dict() for f in self.failures],
            "cancelled": self.cancelled,
        }


class NotificationEngine:
    """Decides whether, when and how to nudge users about their issues.

    Args:
        issue_source: Supplies candidate issues per user
        preference_store: Supplies user preferences (read only)
        repository: Record and tracking persistence; built from ``store`` when omitted
        store: Key-value store backing a new repository (in-memory by default)
        config: Engine configuration
        channel: Event channel for presentation layers
        clock: Returns the current time; injected in tests
        sleep: Sleep used between retries; injected in tests
        rng: Seeded random source for phrasing variety
    """

    def __init__(
        self,
        issue_source: IssueSource,
        preference_store: PreferenceStore,
        repository: Optional[NotificationRepository] = None,
        *,
        store: Optional[KeyValueStore] = None,
        config: Optional[EngineConfig] = None,
        channel: Optional[EventChannel] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.issue_source = issue_source
        self.preference_store = preference_store
        self._retry = RetryPolicy.from_config(self.config.retry)
        self._sleep = sleep
        self._clock = clock or utcnow
        self._cancelled = threading.Event()

        self.repository = repository or NotificationRepository(
            store or InMemoryKeyValueStore(), retry_policy=self._retry, sleep=sleep
        )
        self.channel = channel or EventChannel(background=self.config.delivery.background_events)
        self.tone_analyzer = ToneAnalyzer()
        self.content = ContentGenerator(self.tone_analyzer, rng=rng)
        self.scheduler = SchedulerService(self.config)
        self.delivery = DeliveryManager(self.repository, self.scheduler, self.channel, self.config)
        self.analytics = AnalyticsAggregator(self.repository, self.config.analytics)
        self.delivery.add_response_listener(self.analytics.on_response)

        logger.info(
            f"Notification engine initialised (workers={self.config.workers.max_workers}, "
            f"retry attempts={self.config.retry.max_attempts})"
        )

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def preferences_for(self, user_id: str) -> UserPreferences:
        preferences = self.preference_store.get(user_id)
        if preferences is None:
            logger.debug(f"No preferences for {user_id}, using defaults")
            return UserPreferences(
                user_id=user_id, time_zone=self.config.detection.default_time_zone
            )
        return preferences

    def _list_candidates(self, user_id: str) -> List[IssueSnapshot]:
        return self._retry.call(
            lambda: self.issue_source.list_candidate_issues(user_id),
            description=f"list issues for {user_id}",
            retry_on=_TRANSIENT_SOURCE_ERRORS,
            error_cls=IssueSourceError,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def process_stale_issues(self, user_id: str) -> ScanResult:
        """Create stale reminders for every qualifying issue of ``user_id``."""
        return self._scan(user_id, ScanReason.STALE)

    def process_deadline_warnings(self, user_id: str) -> ScanResult:
        """Create deadline warnings for issues due soon or overdue."""
        return self._scan(user_id, ScanReason.DEADLINE)

    def _scan(self, user_id: str, reason: ScanReason) -> ScanResult:
        result = ScanResult(user_id=user_id, reason=reason)
        if self._cancelled.is_set():
            result.cancelled = True
            return result

        now = self.now()
        notification_type = _SCAN_TYPES[reason]
        try:
            preferences = self.preferences_for(user_id)
            if not preferences.is_enabled(notification_type):
                logger.debug(f"{notification_type.value} disabled for {user_id}, nothing to scan")
                return result
            self.delivery.expire_stale(user_id, now)
            issues = self._list_candidates(user_id)
        except NudgeError as exc:
            logger.warning(f"{reason.value} for {user_id} aborted: {exc.message}")
            result.failures.append(ScanFailure.from_error("*", exc))
            return result
        except Exception as exc:
            logger.error(f"{reason.value} for {user_id} aborted: {exc}", exc_info=True)
            result.failures.append(ScanFailure.from_error("*", exc))
            return result

        for issue in issues:
            if self._cancelled.is_set():
                result.cancelled = True
                logger.info(f"{reason.value} for {user_id} cancelled")
                break

            try:
                context, priority = self._detect(reason, issue, preferences, now)
                if context is None:
                    continue
                record = self._create(preferences, issue.key, context, priority, now)
            except DuplicateError as exc:
                logger.debug(f"Skipping {issue.key}: {exc.message}")
                result.skipped.append(issue.key)
            except FrequencyCapExceededError as exc:
                logger.debug(f"Skipping {issue.key}: {exc.message}")
                result.skipped.append(issue.key)
            except NudgeError as exc:
                logger.warning(f"Failed to create notification for {issue.key}: {exc.message}")
                result.failures.append(ScanFailure.from_error(issue.key, exc))
            except Exception as exc:
                logger.error(f"Failed to create notification for {issue.key}: {exc}", exc_info=True)
                result.failures.append(ScanFailure.from_error(issue.key, exc))
            else:
                result.created_ids.append(record.id)

        logger.info(
            f"{reason.value} for {user_id}: {result.created} created, "
            f"{len(result.skipped)} skipped, {len(result.failures)} failed"
        )
        return result

    def _detect(
        self,
        reason: ScanReason,
        issue: IssueSnapshot,
        preferences: UserPreferences,
        now: datetime,
    ) -> tuple[Optional[NotificationContext], NotificationPriority]:
        detection = self.config.detection
        if reason is ScanReason.STALE:
            stale = evaluate_staleness(issue, preferences, now, detection)
            if stale is None:
                return None, NotificationPriority.LOW
            return stale, stale_priority(stale.days_since_update, preferences.stale_days_threshold)

        deadline = evaluate_deadline(issue, preferences, now, detection)
        if deadline is None:
            return None, NotificationPriority.LOW
        return deadline, deadline_priority(deadline.deadline)

    def run_scan(
        self,
        user_ids: Iterable[str],
        reason: ScanReason = ScanReason.STALE,
    ) -> Dict[str, ScanResult]:
        """Scan many users with bounded parallelism.

        Candidates of one user are processed sequentially; users run
        concurrently on ``workers.max_workers`` threads.
        """
        users = list(dict.fromkeys(user_ids))
        if not users:
            return {}

        scan = self.process_stale_issues if reason is ScanReason.STALE else self.process_deadline_warnings
        workers = min(self.config.workers.max_workers, len(users))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gentlenudge-scan") as pool:
            futures = {user_id: pool.submit(scan, user_id) for user_id in users}
            results: Dict[str, ScanResult] = {}
            for user_id, future in futures.items():
                try:
                    results[user_id] = future.result()
                except Exception as exc:
                    logger.error(f"{reason.value} for {user_id} crashed: {exc}", exc_info=True)
                    failed = ScanResult(user_id=user_id, reason=reason)
                    failed.failures.append(ScanFailure.from_error("*", exc))
                    results[user_id] = failed

        total = sum(r.created for r in results.values())
        logger.info(f"{reason.value} finished for {len(users)} users, {total} notifications created")
        return results

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_notification(
        self,
        user_id: str,
        issue_key: str,
        notification_type: NotificationType,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> str:
        """Create a notification directly, bypassing scan filters.

        Dedup and the frequency cap still apply.

        Returns:
            Id of the new notification

        Raises:
            ValidationError: Disabled type, or no context can be built for it
            DuplicateError: An active notification exists for the triple
            FrequencyCapExceededError: No send slot within the scheduling horizon
            IssueSourceError: The issue source kept failing
        """
        try:
            notification_type = NotificationType(notification_type)
            priority = NotificationPriority(priority)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"issue_key": issue_key}) from exc
        if notification_type is NotificationType.ACHIEVEMENT_RECOGNITION:
            raise ValidationError(
                "Use create_achievement_notification for achievements",
                details={"type": notification_type.value},
            )

        now = self.now()
        preferences = self.preferences_for(user_id)
        self._ensure_enabled(preferences, notification_type)
        issue = self._find_issue(user_id, issue_key, now)
        context = self._context_for(notification_type, issue, preferences, now)
        return self._create(preferences, issue_key, context, priority, now).id

    def create_achievement_notification(
        self,
        user_id: str,
        achievement_type: AchievementType,
        context: Optional[AchievementContext] = None,
    ) -> str:
        """Celebrate an achievement.

        Achievements never collide with each other; only the frequency cap
        applies.

        Raises:
            ValidationError: Achievements are disabled, or ``context`` disagrees
                with ``achievement_type``
            FrequencyCapExceededError: No send slot within the scheduling horizon
        """
        achievement_type = AchievementType(achievement_type)
        if context is None:
            context = AchievementContext(achievement_type=achievement_type)
        elif context.achievement_type is not achievement_type:
            raise ValidationError(
                f"Context is for {context.achievement_type.value}, not {achievement_type.value}",
                details={"achievement_type": achievement_type.value},
            )

        now = self.now()
        preferences = self.preferences_for(user_id)
        issue_key = context.issue_key or f"achievement:{achievement_type.value}"
        return self._create(
            preferences, issue_key, context, NotificationPriority.MEDIUM, now
        ).id

    def _ensure_enabled(self, preferences: UserPreferences, notification_type: NotificationType) -> None:
        if not preferences.is_enabled(notification_type):
            raise ValidationError(
                f"{notification_type.value} notifications are disabled for {preferences.user_id}",
                details={"user_id": preferences.user_id, "type": notification_type.value},
            )

    def _ensure_no_active(self, user_id: str, issue_key: str, notification_type: NotificationType) -> None:
        holder_id = self.repository.active_record_id(user_id, issue_key, notification_type)
        if holder_id is None:
            return
        holder = self.repository.get_record(holder_id)
        if holder is not None and holder.state.is_active:
            raise DuplicateError(
                user_id, issue_key, notification_type.value, existing_id=holder_id
            )

    def _find_issue(self, user_id: str, issue_key: str, now: datetime) -> IssueSnapshot:
        for issue in self._list_candidates(user_id):
            if issue.key == issue_key:
                return issue
        logger.debug(f"{issue_key} not listed for {user_id}, using a bare snapshot")
        return IssueSnapshot(
            key=issue_key,
            summary="",
            status="",
            priority="",
            assignee=user_id,
            last_updated=now,
        )

    def _context_for(
        self,
        notification_type: NotificationType,
        issue: IssueSnapshot,
        preferences: UserPreferences,
        now: datetime,
    ) -> NotificationContext:
        if notification_type is NotificationType.STALE_REMINDER:
            return StaleContext(issue=issue, days_since_update=days_since_update(issue, now))
        if notification_type is NotificationType.DEADLINE_WARNING:
            if issue.due_date is None:
                raise ValidationError(
                    f"{issue.key} has no due date",
                    details={"issue_key": issue.key},
                )
            return DeadlineContext(
                issue=issue, deadline=compute_deadline_info(issue.due_date, now, preferences)
            )
        if notification_type is NotificationType.PROGRESS_UPDATE:
            return ProgressContext(issue=issue)
        return TeamContext(issue=issue)

    def _create(
        self,
        preferences: UserPreferences,
        issue_key: str,
        context: NotificationContext,
        priority: NotificationPriority,
        now: datetime,
    ) -> NotificationRecord:
        """Schedule, render and persist one notification."""
        notification_type = context.type
        user_id = preferences.user_id
        self._ensure_enabled(preferences, notification_type)
        if notification_type is not NotificationType.ACHIEVEMENT_RECOGNITION:
            self._ensure_no_active(user_id, issue_key, notification_type)

        decision = self.scheduler.schedule(preferences, now, self.delivery.reservations(user_id))
        tracking = self.repository.get_tracking(user_id, issue_key)
        nudge_count = tracking.nudge_count if tracking else 0
        content = self.content.generate(context, preferences, priority, nudge_count)

        record = NotificationRecord(
            user_id=user_id,
            issue_key=issue_key,
            type=notification_type,
            priority=priority,
            content=content,
            scheduled_for=decision.scheduled_for,
            created_at=now,
            updated_at=now,
        )
        if decision.reasons:
            logger.debug(f"Send time for {issue_key} adjusted: {', '.join(decision.reasons)}")
        return self.delivery.persist_new(record)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_notification(self, notification_id: str) -> NotificationRecord:
        return self.delivery.get_record(notification_id)

    def list_notifications(self, user_id: str) -> List[NotificationRecord]:
        return self.delivery.list_records(user_id)

    def deliver_due(self, user_id: str) -> DeliveryReport:
        """Deliver the user's notifications whose send time has come."""
        return self.delivery.deliver_due(user_id, self.preferences_for(user_id), self.now())

    def record_user_response(
        self, notification_id: str, response: Union[UserResponse, str]
    ) -> NotificationRecord:
        """Apply a user response.

        Raises:
            ValidationError: Unknown response value
            NotFoundError: Unknown notification id
            InvalidStateTransitionError: The notification is not delivered
        """
        try:
            response = UserResponse(response)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown response {response!r}",
                details={"valid": [r.value for r in UserResponse]},
            ) from exc

        record = self.delivery.get_record(notification_id)
        preferences = self.preferences_for(record.user_id)
        return self.delivery.record_response(notification_id, response, self.now(), preferences)

    def get_notification_analytics(self, user_id: str, days: int = 30) -> AnalyticsSummary:
        return self.analytics.summarize(user_id, days, self.now())

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def shutdown(self) -> None:
        """Stop launching new per-issue work and drain pending events."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self.channel.flush()
        self.channel.close()
        logger.info("Notification engine shut down")

    def get_status(self) -> Dict[str, Any]:
        return {
            "cancelled": self.cancelled,
            "max_workers": self.config.workers.max_workers,
            "retry_attempts": self.config.retry.max_attempts,
            "event_failures": self.channel.failures,
            "users": len(self.repository.user_ids()),
        }

