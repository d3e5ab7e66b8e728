"""Centralized error definitions for Gentle Nudge.

Every engine-level failure is one of these types, so callers can branch on
the class (or on ``code``) and always have a user-friendly message at hand.

Usage:
    from gentlenudge.errors import DuplicateError, NudgeError, handle_error

    try:
        engine.create_notification(user_id, "PROJ-1", NotificationType.STALE_REMINDER)
    except DuplicateError:
        pass  # already active, skip
    except NudgeError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from gentlenudge.errors.user_messages import (
    error_payload,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class NudgeError(Exception):
    """Base exception for all Gentle Nudge errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether retrying may succeed
        details: Additional error details for debugging
    """

    code: str = "NUDGE_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = False

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Input Errors
# =============================================================================


class ValidationError(NudgeError):
    """Malformed input or a disabled notification type. Never retried."""

    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class FrequencyCapExceededError(ValidationError):
    """The user's notification frequency leaves no slot within the horizon."""

    code = "FREQUENCY_CAP_EXCEEDED"
    default_message = "Notification frequency cap reached"


class InvalidStateTransitionError(ValidationError):
    """A lifecycle transition not allowed by the notification state machine."""

    code = "INVALID_STATE_TRANSITION"
    default_message = "Invalid notification state transition"


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(NudgeError):
    """Unknown notification or user."""

    code = "NOT_FOUND"
    default_message = "Notification not found"


class DuplicateError(NudgeError):
    """An active notification already exists for the dedup key.

    Expected during scans; the candidate is skipped rather than retried.
    """

    code = "DUPLICATE"
    default_message = "An active notification already exists"

    def __init__(
        self,
        user_id: str,
        issue_key: str,
        notification_type: str,
        *,
        existing_id: str | None = None,
        message: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.issue_key = issue_key
        self.notification_type = notification_type
        self.existing_id = existing_id
        super().__init__(
            message
            or f"Active {notification_type} notification already exists for {issue_key}",
            details={
                "user_id": user_id,
                "issue_key": issue_key,
                "type": notification_type,
                "existing_id": existing_id,
            },
        )


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(NudgeError):
    """Persistence I/O failure, surfaced after bounded retries."""

    code = "STORAGE_ERROR"
    default_message = "Storage operation failed"
    recoverable = True


class VersionConflictError(StorageError):
    """An optimistic read-modify-write lost the race too many times."""

    code = "VERSION_CONFLICT"
    default_message = "Concurrent modification detected"


# =============================================================================
# Delivery Errors
# =============================================================================


class DeliveryError(NudgeError):
    """Event sink failure. Logged only; the persisted record stands."""

    code = "DELIVERY_ERROR"
    default_message = "Event delivery failed"
    recoverable = True


# =============================================================================
# Collaborator Errors
# =============================================================================


class IssueSourceError(NudgeError):
    """The issue source failed to list candidates (treated as transient)."""

    code = "ISSUE_SOURCE_ERROR"
    default_message = "Issue source unavailable"
    recoverable = True


class ConfigurationError(NudgeError):
    """Invalid or unreadable engine configuration."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message.

    Args:
        error: The exception to handle

    Returns:
        User-friendly error message with recovery suggestion
    """
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable.

    Args:
        error: The exception to check

    Returns:
        True if the error is recoverable
    """
    if isinstance(error, NudgeError):
        return error.recoverable
    return False


__all__ = [
    # Base
    "NudgeError",
    # Input
    "ValidationError",
    "FrequencyCapExceededError",
    "InvalidStateTransitionError",
    # Lookup
    "NotFoundError",
    "DuplicateError",
    # Storage
    "StorageError",
    "VersionConflictError",
    # Delivery
    "DeliveryError",
    # Collaborators
    "IssueSourceError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "is_recoverable",
    "error_payload",
]
