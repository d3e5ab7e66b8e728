"""Gentle Nudge: supportive reminders about stale and due work items."""

__version__ = "0.1.0"
