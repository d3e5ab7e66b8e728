"""Command line entry point for Gentle Nudge."""

from .config import config_app
from .notifications import notifications_app

app = notifications_app
app.add_typer(config_app, name="config")

__all__ = ["app", "config_app", "notifications_app"]
