"""Notification record lifecycle: persistence, transitions and responses.

The DeliveryManager is the only component that mutates a persisted
``NotificationRecord``. Every transition is validated by the state
machine, persisted through the repository (with retries), and then
announced on the event channel. Event failures never roll back a write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from gentlenudge.errors import (
    FrequencyCapExceededError,
    InvalidStateTransitionError,
    NotFoundError,
    NudgeError,
)
from gentlenudge.notifications.channels import EventChannel, EventType, NotificationEvent
from gentlenudge.notifications.config import EngineConfig
from gentlenudge.notifications.models import (
    NotificationRecord,
    NotificationState,
    NudgeTracking,
    ResponseEntry,
    UserPreferences,
    UserResponse,
    ensure_utc,
    utcnow,
)
from gentlenudge.notifications.scheduler import (
    SchedulerService,
    delivered_slots,
    occupied_slots,
)
from gentlenudge.notifications.state_machine import StateMachineValidator
from gentlenudge.notifications.storage import NotificationRepository

logger = logging.getLogger(__name__)

ResponseListener = Callable[[NotificationRecord, datetime], None]


@dataclass
class DeliveryReport:
    """Outcome of one ``deliver_due`` pass."""

    delivered: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)
    held_for_quiet_hours: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    recounted: List[str] = field(default_factory=list)


class DeliveryManager:
    """Owns the notification record state machine.

    Usage:
        manager = DeliveryManager(repository, scheduler, channel)
        manager.persist_new(record)
        manager.deliver_due("user-1", preferences, now)
        manager.record_response(record.id, UserResponse.ACKNOWLEDGED, now, preferences)
    """

    def __init__(
        self,
        repository: NotificationRepository,
        scheduler: Optional[SchedulerService] = None,
        channel: Optional[EventChannel] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.repository = repository
        self.config = config or EngineConfig()
        self.scheduler = scheduler or SchedulerService(self.config)
        self.channel = channel or EventChannel()
        self.validator = StateMachineValidator()
        self._response_listeners: List[ResponseListener] = []

    def add_response_listener(self, listener: ResponseListener) -> None:
        self._response_listeners.append(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, notification_id: str) -> NotificationRecord:
        """Load a record.

        Raises:
            NotFoundError: If no record has this id
        """
        record = self.repository.get_record(notification_id)
        if record is None:
            raise NotFoundError(
                f"Notification {notification_id} not found",
                details={"notification_id": notification_id},
            )
        return record

    def list_records(
        self, user_id: str, state: Optional[NotificationState] = None
    ) -> List[NotificationRecord]:
        records = self.repository.list_records(user_id)
        if state is not None:
            records = [r for r in records if r.state is state]
        return records

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def persist_new(self, record: NotificationRecord) -> NotificationRecord:
        """Persist a PENDING record, claim its dedup slot and schedule it.

        The record body is written before the slot is claimed so a slot
        never points at a missing record. If the claim or the index write
        fails, the slot is released and the body discarded, so a failed
        creation leaves no trace.

        Raises:
            DuplicateError: If an active record already holds the dedup slot
            StorageError: If persistence fails after retries
        """
        if record.state is not NotificationState.PENDING:
            raise InvalidStateTransitionError(
                f"New records must start pending, got {record.state.value}",
                details={"notification_id": record.id},
            )

        self.repository.save_record(record)
        claimed = False
        try:
            if record.uses_dedup_slot:
                self.repository.claim_active_slot(record)
                claimed = True
            self.repository.index_record(record.user_id, record.id)
        except NudgeError:
            self._abandon(record, claimed)
            raise
        self._publish(NotificationEvent.for_record(EventType.CREATED, record))

        self._transition(record, NotificationState.SCHEDULED, record.created_at, reason="scheduled")
        logger.info(
            f"Notification {record.id} created for {record.user_id} "
            f"({record.type.value}, {record.priority.value}) at {record.scheduled_for.isoformat()}"
        )
        return record

    def _abandon(self, record: NotificationRecord, claimed: bool) -> None:
        """Undo a partially persisted creation.

        A slot whose holder is missing counts as free, so discarding the
        body alone is enough if the release fails.
        """
        if claimed:
            try:
                self.repository.release_active_slot(record)
            except NudgeError as exc:
                logger.error(f"Could not release slot of abandoned {record.id}: {exc.message}")
        try:
            self.repository.discard_record(record.id)
        except NudgeError as exc:
            logger.error(f"Could not discard abandoned {record.id}: {exc.message}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        record: NotificationRecord,
        to_state: NotificationState,
        now: datetime,
        *,
        reason: Optional[str] = None,
    ) -> NotificationRecord:
        from_state = record.state
        self.validator.validate_transition(record.id, from_state, to_state, reason=reason, timestamp=now)
        previous_updated_at = record.updated_at
        record.state = to_state
        record.updated_at = now
        try:
            self.repository.save_record(record)
        except NudgeError:
            record.state = from_state
            record.updated_at = previous_updated_at
            raise

        if to_state.is_terminal and record.uses_dedup_slot:
            self.repository.release_active_slot(record)

        self._publish(
            NotificationEvent.for_record(
                EventType.STATE_CHANGED,
                record,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
            )
        )
        return record

    def deliver(self, record: NotificationRecord, now: datetime) -> NotificationRecord:
        """Mark a scheduled record delivered.

        Only the first delivery of a record counts as a nudge. A count that
        cannot be written leaves ``nudge_counted`` unset and is retried by
        the next ``deliver_due``.
        """
        now = ensure_utc(now)
        first_delivery = record.delivered_at is None
        previous = (record.delivered_at, record.last_delivered_at)
        if first_delivery:
            record.delivered_at = now
        record.last_delivered_at = now
        try:
            self._transition(record, NotificationState.DELIVERED, now, reason="delivered")
        except NudgeError:
            record.delivered_at, record.last_delivered_at = previous
            raise

        if not record.nudge_counted:
            self._count_nudge(record)

        self._publish(
            NotificationEvent.for_record(EventType.DELIVERED, record, first_delivery=first_delivery)
        )
        logger.info(f"Delivered {record.id} to {record.user_id}")
        return record

    def _count_nudge(self, record: NotificationRecord) -> bool:
        """Add a delivered record to its nudge tracking, at most once."""
        delivered_at = record.delivered_at or record.updated_at
        try:
            self.repository.update_tracking(
                record.user_id,
                record.issue_key,
                lambda tracking: tracking.count_nudge(record.id, delivered_at),
            )
            record.nudge_counted = True
            self.repository.save_record(record)
        except NudgeError as exc:
            record.nudge_counted = False
            logger.warning(f"Nudge count for {record.id} not recorded, will retry: {exc.message}")
            return False
        return True

    def deliver_due(
        self,
        user_id: str,
        preferences: UserPreferences,
        now: Optional[datetime] = None,
    ) -> DeliveryReport:
        """Deliver every scheduled record whose send time has come.

        First deliveries are re-checked against the frequency cap using
        actual deliveries only; an over-cap record is moved to the next
        free slot instead of being sent. Nothing is delivered while the
        user is inside quiet hours. Delivered records whose nudge count was
        never written are counted first. A record that fails to deliver is
        reported in ``failed`` and the remaining records are still tried.
        """
        now = ensure_utc(now or utcnow())
        report = DeliveryReport()
        records = self.repository.list_records(user_id)
        for record in records:
            if record.delivered_at is not None and not record.nudge_counted:
                if self._count_nudge(record):
                    report.recounted.append(record.id)

        due = sorted(
            (r for r in records if r.state is NotificationState.SCHEDULED and r.scheduled_for <= now),
            key=lambda r: (r.scheduled_for, -r.priority.rank),
        )
        if not due:
            return report

        if self.scheduler.is_quiet(now, preferences):
            report.held_for_quiet_hours.extend(r.id for r in due)
            logger.debug(f"Holding {len(due)} notifications for {user_id}: quiet hours")
            return report

        for record in due:
            try:
                if record.delivered_at is None and not self.scheduler.can_deliver_now(
                    preferences, now, delivered_slots(records)
                ):
                    self._defer(record, preferences, records, now)
                    report.deferred.append(record.id)
                    continue
                self.deliver(record, now)
            except NudgeError as exc:
                logger.warning(f"Delivery of {record.id} failed: {exc.message}")
                report.failed[record.id] = exc.code
                continue
            report.delivered.append(record.id)

        return report

    def _defer(
        self,
        record: NotificationRecord,
        preferences: UserPreferences,
        records: List[NotificationRecord],
        now: datetime,
    ) -> None:
        occupied = delivered_slots(records, exclude_id=record.id)
        try:
            decision = self.scheduler.schedule(preferences, now, occupied)
        except FrequencyCapExceededError:
            logger.debug(f"No cap slot for {record.id} yet, leaving it scheduled")
            return
        record.scheduled_for = decision.scheduled_for
        record.updated_at = now
        self.repository.save_record(record)
        logger.debug(f"Deferred {record.id} to {decision.scheduled_for.isoformat()} (frequency cap)")

    def expire_stale(self, user_id: str, now: Optional[datetime] = None) -> List[str]:
        """Expire non-terminal records not acted upon within the retention window."""
        now = ensure_utc(now or utcnow())
        retention = timedelta(hours=self.config.delivery.retention_hours)
        expired = []
        for record in self.repository.list_records(user_id):
            if record.state.is_terminal:
                continue
            if record.state is NotificationState.DELIVERED:
                reference = record.last_delivered_at or record.delivered_at or record.updated_at
            elif record.state is NotificationState.SCHEDULED:
                reference = record.scheduled_for
            else:
                reference = record.updated_at
            if now - reference > retention:
                self._transition(record, NotificationState.EXPIRED, now, reason="retention")
                expired.append(record.id)
        if expired:
            logger.info(f"Expired {len(expired)} notifications for {user_id}")
        return expired

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def record_response(
        self,
        notification_id: str,
        response: UserResponse,
        now: Optional[datetime] = None,
        preferences: Optional[UserPreferences] = None,
    ) -> NotificationRecord:
        """Apply a user response to a delivered record.

        Snoozing moves the same record back to SCHEDULED with a new send
        time; the nudge count is not touched.

        Raises:
            NotFoundError: Unknown notification id
            InvalidStateTransitionError: The record is not delivered
        """
        now = ensure_utc(now or utcnow())
        record = self.get_record(notification_id)
        if record.state is not NotificationState.DELIVERED:
            raise InvalidStateTransitionError(
                f"Cannot record {response.value} for a {record.state.value} notification",
                details={"notification_id": notification_id, "state": record.state.value},
            )

        record.response = response
        record.responded_at = now
        record.response_history.append(ResponseEntry(response=response, responded_at=now))
        if response is UserResponse.SNOOZED:
            record.snooze_count += 1
        self._transition(record, response.target_state, now, reason=f"user-{response.value}")

        if response is UserResponse.SNOOZED:
            prefs = preferences or UserPreferences.defaults(record.user_id)
            desired = now + timedelta(minutes=self.config.delivery.snooze_minutes)
            record.scheduled_for = self.scheduler.next_allowed_time(desired, prefs)
            self._transition(record, NotificationState.SCHEDULED, now, reason="snooze")

        def _latest_response(tracking: NudgeTracking) -> None:
            tracking.user_response = response

        self.repository.update_tracking(record.user_id, record.issue_key, _latest_response)
        self._publish(
            NotificationEvent.for_record(EventType.RESPONDED, record, response=response.value)
        )
        logger.info(f"Recorded {response.value} for {record.id}")

        for listener in self._response_listeners:
            listener(record, now)
        return record

    def reservations(self, user_id: str, exclude_id: Optional[str] = None) -> List[datetime]:
        """Times counting against the user's frequency cap when scheduling."""
        return occupied_slots(self.repository.list_records(user_id), exclude_id=exclude_id)

    def _publish(self, event: NotificationEvent) -> None:
        self.channel.publish(event)
