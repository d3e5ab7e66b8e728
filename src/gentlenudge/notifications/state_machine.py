"""State machine validation for the notification record lifecycle.

    PENDING -> SCHEDULED -> DELIVERED -> ACKNOWLEDGED | DISMISSED | ACTIONED | SNOOZED
    SNOOZED -> SCHEDULED (same record, new scheduled_for)
    PENDING | SCHEDULED | DELIVERED | SNOOZED -> EXPIRED

Transitions only move forward, except the snooze loop. Same-state
transitions are idempotent and always allowed so persistence retries are
safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from gentlenudge.errors import InvalidStateTransitionError
from gentlenudge.notifications.models import NotificationState, utcnow

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[NotificationState, Set[NotificationState]] = {
    NotificationState.PENDING: {
        NotificationState.SCHEDULED,
        NotificationState.EXPIRED,
    },
    NotificationState.SCHEDULED: {
        NotificationState.DELIVERED,
        NotificationState.EXPIRED,
    },
    NotificationState.DELIVERED: {
        NotificationState.ACKNOWLEDGED,
        NotificationState.DISMISSED,
        NotificationState.ACTIONED,
        NotificationState.SNOOZED,
        NotificationState.EXPIRED,
    },
    NotificationState.SNOOZED: {
        NotificationState.SCHEDULED,
        NotificationState.EXPIRED,
    },
    NotificationState.ACKNOWLEDGED: set(),
    NotificationState.DISMISSED: set(),
    NotificationState.ACTIONED: set(),
    NotificationState.EXPIRED: set(),
}


@dataclass
class StateTransition:
    """Records one validated transition of a notification record."""

    notification_id: str
    from_state: NotificationState
    to_state: NotificationState
    timestamp: datetime
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self) -> bool:
        return self.to_state in VALID_TRANSITIONS.get(self.from_state, set())

    def is_idempotent(self) -> bool:
        return self.from_state == self.to_state


class StateMachineValidator:
    """Validates notification state transitions and keeps a bounded history."""

    MAX_HISTORY = 1000

    def __init__(self) -> None:
        self._transition_history: List[StateTransition] = []

    def validate_transition(
        self,
        notification_id: str,
        from_state: NotificationState,
        to_state: NotificationState,
        *,
        reason: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> StateTransition:
        """Validate a state transition before it is persisted.

        Args:
            notification_id: Record identifier
            from_state: Current state
            to_state: Desired state
            reason: Optional reason recorded with the transition
            timestamp: Transition time (defaults to now)

        Returns:
            The validated StateTransition

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        transition = StateTransition(
            notification_id=notification_id,
            from_state=from_state,
            to_state=to_state,
            timestamp=timestamp or utcnow(),
            reason=reason,
        )

        if not transition.is_valid() and not transition.is_idempotent():
            logger.warning(
                f"Invalid notification transition {from_state.value} -> {to_state.value} "
                f"for {notification_id}"
            )
            raise InvalidStateTransitionError(
                f"Invalid transition: {from_state.value} -> {to_state.value}",
                details={
                    "notification_id": notification_id,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                },
            )

        if transition.is_idempotent():
            logger.debug(f"Idempotent transition for {notification_id} ({from_state.value})")

        self._transition_history.append(transition)
        if len(self._transition_history) > self.MAX_HISTORY:
            self._transition_history = self._transition_history[-self.MAX_HISTORY :]
        return transition

    def history(self, notification_id: Optional[str] = None) -> List[StateTransition]:
        """Transitions validated so far, optionally for one record."""
        if notification_id is None:
            return list(self._transition_history)
        return [t for t in self._transition_history if t.notification_id == notification_id]
