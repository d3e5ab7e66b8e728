"""User-friendly error messages for Gentle Nudge.

Maps error codes to short, supportive explanations and recovery hints so
callers (CLI, presentation layers) never surface raw technical errors.

Privacy Note:
- Messages NEVER include issue summaries or record identifiers
- Details stay in the ``details`` payload for debugging
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Input errors
    "VALIDATION_ERROR": "That request couldn't be accepted. Please check the values.",
    "FREQUENCY_CAP_EXCEEDED": "You've already had enough reminders for now.",
    "INVALID_STATE_TRANSITION": "That reminder can't be updated in its current state.",
    # Lookup errors
    "NOT_FOUND": "We couldn't find that reminder.",
    "DUPLICATE": "A reminder for this item is already active.",
    # Storage errors
    "STORAGE_ERROR": "Reminder data couldn't be saved. Please try again.",
    "VERSION_CONFLICT": "Reminder data changed while saving. Please try again.",
    # Delivery errors
    "DELIVERY_ERROR": "A reminder couldn't be shown right away.",
    # Collaborator errors
    "ISSUE_SOURCE_ERROR": "We couldn't load your work items right now.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    # Generic
    "NUDGE_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "VALIDATION_ERROR": "Check that the notification type is enabled in your preferences.",
    "FREQUENCY_CAP_EXCEEDED": "Reminders resume automatically once the frequency window passes.",
    "INVALID_STATE_TRANSITION": "Only delivered reminders accept a response.",
    "NOT_FOUND": "The reminder may have expired. Refresh and try again.",
    "DUPLICATE": "Respond to the existing reminder before creating another one.",
    "STORAGE_ERROR": "Wait a moment and retry. If it persists, check the storage backend.",
    "VERSION_CONFLICT": "Retry the operation.",
    "DELIVERY_ERROR": "The reminder is saved and will appear on the next refresh.",
    "ISSUE_SOURCE_ERROR": "Check the connection to the issue tracker and retry.",
    "CONFIGURATION_ERROR": "Run 'gentle-nudge config validate' to see what's wrong.",
    "NUDGE_ERROR": "Retry the operation.",
    "UNKNOWN_ERROR": "Retry the operation.",
}


def _error_code(error: Exception) -> str:
    return getattr(error, "code", "UNKNOWN_ERROR")


def get_user_message(error: Exception) -> str:
    """Get the user-facing message for an error.

    Args:
        error: The exception

    Returns:
        Catalog message, falling back to the generic one
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Exception) -> str:
    """Get the recovery suggestion for an error."""
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Exception, include_suggestion: bool = True) -> str:
    """Format an error as a single user-facing string.

    Args:
        error: The exception to format
        include_suggestion: Append the recovery suggestion

    Returns:
        Message, optionally followed by the suggestion
    """
    message = getattr(error, "user_message", None) or get_user_message(error)
    if not include_suggestion:
        return message
    return f"{message} {get_recovery_suggestion(error)}"


def error_payload(error: Exception) -> dict[str, Any]:
    """Build a serialisable payload for any exception."""
    to_dict = getattr(error, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {
        "code": "UNKNOWN_ERROR",
        "message": str(error),
        "user_message": get_user_message(error),
        "recoverable": False,
        "details": {},
    }
