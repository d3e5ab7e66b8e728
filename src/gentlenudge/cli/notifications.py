"""Notification CLI commands.

Provides commands for:
- Scanning users for stale issues and upcoming deadlines
- Delivering due notifications
- Recording responses and listing notifications
- Viewing effectiveness analytics
- Checking quiet hours
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from gentlenudge.errors import NudgeError, error_payload, handle_error
from gentlenudge.notifications.channels import EventChannel, JsonFileEventSink, LoggingEventSink
from gentlenudge.notifications.config import DEFAULT_CONFIG_PATH, load_config
from gentlenudge.notifications.engine import NotificationEngine
from gentlenudge.notifications.models import (
    QuietHours,
    ScanReason,
    UserPreferences,
    UserResponse,
    ensure_utc,
    parse_hhmm,
)
from gentlenudge.notifications.scheduler import is_within_quiet_hours, next_allowed_time
from gentlenudge.notifications.sources import (
    IssueSource,
    KeyValuePreferenceStore,
    StaticIssueSource,
    load_fixture,
)
from gentlenudge.notifications.storage import SqliteKeyValueStore

logger = logging.getLogger(__name__)

console = Console()
notifications_app = typer.Typer(help="Gentle Nudge notification engine")

DEFAULT_DB_PATH = Path.home() / ".gentlenudge" / "data" / "nudges.db"

_SCAN_KINDS = {"stale": ScanReason.STALE, "deadline": ScanReason.DEADLINE}


@notifications_app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Supportive reminders about stale and soon-due work items."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        console.print(f"[red]Invalid --now value: {value}[/red]")
        raise typer.Exit(1)


def _build_engine(
    db_path: Path,
    config_path: Path,
    now: Optional[str],
    issue_source: Optional[IssueSource] = None,
    feed_path: Optional[Path] = None,
) -> NotificationEngine:
    """Engine over the SQLite store; preferences live in the same store."""
    config = load_config(config_path)
    store = SqliteKeyValueStore(Path(db_path).expanduser())
    sinks = [LoggingEventSink()]
    if feed_path is not None:
        sinks.append(JsonFileEventSink(str(feed_path)))
    fixed_now = _parse_now(now)
    return NotificationEngine(
        issue_source or StaticIssueSource(),
        KeyValuePreferenceStore(store),
        store=store,
        config=config,
        channel=EventChannel(sinks, background=config.delivery.background_events),
        clock=(lambda: fixed_now) if fixed_now else None,
    )


@contextmanager
def _open_engine(
    db_path: Path,
    config_path: Path,
    now: Optional[str],
    issue_source: Optional[IssueSource] = None,
    feed_path: Optional[Path] = None,
) -> Iterator[NotificationEngine]:
    """Engine whose queued events are flushed when the command ends."""
    engine = _build_engine(db_path, config_path, now, issue_source, feed_path)
    try:
        yield engine
    finally:
        engine.shutdown()


def _fail(exc: NudgeError, output_json: bool) -> None:
    logger.debug(f"Command failed: {exc.message}")
    if output_json:
        typer.echo(json.dumps({"success": False, "error": error_payload(exc)}))
    else:
        console.print(f"[red]Error:[/red] {handle_error(exc)}")
    raise typer.Exit(1)


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "-"


# ============================================================================
# Scan and delivery
# ============================================================================


@notifications_app.command("scan")
def scan_command(
    kind: str = typer.Argument("stale", help="Scan kind: stale or deadline"),
    fixture: Path = typer.Option(..., "--fixture", "-f", help="JSON file with users, preferences and issues"),
    users: Optional[List[str]] = typer.Option(None, "--user", "-u", help="Limit to these users"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite store path"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Engine configuration file"),
    feed_path: Optional[Path] = typer.Option(None, "--feed", help="Also append events to this JSON feed"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate at this ISO timestamp"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Scan users for stale issues or upcoming deadlines.

    Examples:
        gentle-nudge scan stale --fixture team.json
        gentle-nudge scan deadline --fixture team.json --user alice --json
    """
    reason = _SCAN_KINDS.get(kind.lower())
    if reason is None:
        console.print(f"[red]Invalid scan kind: {kind}[/red]")
        console.print(f"Valid: {', '.join(_SCAN_KINDS)}")
        raise typer.Exit(1)

    try:
        issue_source, fixture_prefs = load_fixture(fixture)
        user_ids = list(users) if users else issue_source.user_ids()
        with _open_engine(db_path, config_path, now, issue_source, feed_path) as engine:
            for user_id in user_ids:
                prefs = fixture_prefs.get(user_id)
                if prefs is not None:
                    engine.preference_store.set(user_id, prefs)
            results = engine.run_scan(user_ids, reason)
    except NudgeError as exc:
        _fail(exc, output_json)

    if output_json:
        typer.echo(json.dumps({
            "success": all(r.ok for r in results.values()),
            "results": {user_id: r.to_dict() for user_id, r in results.items()},
        }, indent=2))
        return

    table = Table(title=f"{reason.value} ({len(results)} users)")
    table.add_column("User", style="cyan")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    for user_id, result in results.items():
        table.add_row(user_id, str(result.created), str(len(result.skipped)), str(len(result.failures)))
    console.print(table)

    for result in results.values():
        for failure in result.failures:
            console.print(f"[red]{result.user_id} {failure.issue_key}: {failure.code}[/red] {failure.message}")


@notifications_app.command("deliver")
def deliver_command(
    user_id: str = typer.Argument(..., help="User whose due notifications to deliver"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite store path"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Engine configuration file"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate at this ISO timestamp"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Deliver notifications whose send time has come."""
    try:
        with _open_engine(db_path, config_path, now) as engine:
            report = engine.deliver_due(user_id)
    except NudgeError as exc:
        _fail(exc, output_json)

    if output_json:
        typer.echo(json.dumps({
            "success": not report.failed,
            "delivered": report.delivered,
            "deferred": report.deferred,
            "heldForQuietHours": report.held_for_quiet_hours,
            "failed": report.failed,
            "recounted": report.recounted,
        }))
        return

    console.print(f"Delivered: [green]{len(report.delivered)}[/green]")
    if report.deferred:
        console.print(f"Deferred by frequency cap: [yellow]{len(report.deferred)}[/yellow]")
    if report.held_for_quiet_hours:
        console.print(f"Held for quiet hours: [yellow]{len(report.held_for_quiet_hours)}[/yellow]")
    for notification_id, code in report.failed.items():
        console.print(f"[red]Failed: {notification_id} ({code})[/red]")


@notifications_app.command("respond")
def respond_command(
    notification_id: str = typer.Argument(..., help="Notification id"),
    response: str = typer.Argument(..., help="acknowledged, dismissed, actioned or snoozed"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite store path"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Engine configuration file"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate at this ISO timestamp"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Record a user response to a delivered notification."""
    try:
        with _open_engine(db_path, config_path, now) as engine:
            record = engine.record_user_response(notification_id, response)
    except NudgeError as exc:
        _fail(exc, output_json)

    if output_json:
        typer.echo(json.dumps({"success": True, "notification": record.to_dict()}))
        return

    console.print(f"Recorded [green]{response}[/green] for {record.id} (now {record.state.value})")
    if record.response is UserResponse.SNOOZED:
        console.print(f"Next delivery: {_format_time(record.scheduled_for)}")


@notifications_app.command("list")
def list_command(
    user_id: str = typer.Argument(..., help="User whose notifications to list"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite store path"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Engine configuration file"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List a user's notifications."""
    try:
        with _open_engine(db_path, config_path, None) as engine:
            records = engine.list_notifications(user_id)
    except NudgeError as exc:
        _fail(exc, output_json)

    if output_json:
        typer.echo(json.dumps({"success": True, "notifications": [r.to_dict() for r in records]}))
        return

    if not records:
        console.print("[yellow]No notifications found[/yellow]")
        return

    table = Table(title=f"Notifications for {user_id} ({len(records)} total)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Issue", style="blue")
    table.add_column("Type", style="green")
    table.add_column("Priority")
    table.add_column("State", style="yellow")
    table.add_column("Scheduled", style="magenta")
    table.add_column("Title")
    for record in records:
        table.add_row(
            record.id,
            record.issue_key,
            record.type.value,
            record.priority.value,
            record.state.value,
            _format_time(record.scheduled_for),
            record.content.title,
        )
    console.print(table)


# ============================================================================
# Analytics
# ============================================================================


@notifications_app.command("analytics")
def analytics_command(
    user_id: str = typer.Argument(..., help="User to summarise"),
    days: int = typer.Option(30, "--days", help="Trailing window in days"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite store path"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Engine configuration file"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluate at this ISO timestamp"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show notification effectiveness for a user."""
    try:
        with _open_engine(db_path, config_path, now) as engine:
            summary = engine.get_notification_analytics(user_id, days)
    except NudgeError as exc:
        _fail(exc, output_json)

    if output_json:
        typer.echo(json.dumps({"success": True, "analytics": summary.to_dict()}))
        return

    console.print(f"\nNotification analytics for [cyan]{user_id}[/cyan] (last {days} days)")
    console.print(f"Sent: {summary.total_sent}")
    console.print(f"Effectiveness rate: {summary.effectiveness_rate:.0%}")
    stats = summary.delivery
    console.print(
        f"Scheduled: {stats.scheduled}  Delivered: {stats.delivered}  "
        f"Expired: {stats.expired}  Success rate: {stats.success_rate:.0%}"
    )

    responses = Table(title="Responses")
    responses.add_column("Response", style="green")
    responses.add_column("Count", justify="right")
    for response, count in summary.response_counts.items():
        responses.add_row(response.value, str(count))
    console.print(responses)

    if summary.issue_scores:
        scores = Table(title="Effectiveness by issue")
        scores.add_column("Issue", style="blue")
        scores.add_column("Score", justify="right")
        for issue_key, score in summary.issue_scores.items():
            scores.add_row(issue_key, f"{score:.2f}")
        console.print(scores)


# ============================================================================
# Quiet hours
# ============================================================================


@notifications_app.command("quiet-hours")
def quiet_hours_command(
    at: str = typer.Argument(..., help="Local wall-clock time to check (HH:MM)"),
    start: str = typer.Option("18:00", "--start", help="Quiet hours start (HH:MM)"),
    end: str = typer.Option("09:00", "--end", help="Quiet hours end (HH:MM)"),
    time_zone: str = typer.Option("UTC", "--tz", help="IANA time zone"),
    on: Optional[str] = typer.Option(None, "--date", help="Local date (YYYY-MM-DD), default today"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Check whether a time falls inside a quiet-hours window.

    Examples:
        gentle-nudge quiet-hours 19:30
        gentle-nudge quiet-hours 07:00 --start 22:00 --end 08:00 --tz Europe/Warsaw
    """
    try:
        minute = parse_hhmm(at)
        window = QuietHours(start=start, end=end)
        tz = UserPreferences(user_id="cli", time_zone=time_zone).tz
        local_date = date.fromisoformat(on) if on else date.today()
    except ValueError as exc:
        console.print(f"[red]Invalid input: {exc}[/red]")
        raise typer.Exit(1)

    quiet = is_within_quiet_hours(minute, window.start_minutes, window.end_minutes)
    moment = datetime.combine(local_date, time(minute // 60, minute % 60), tzinfo=tz)
    allowed = next_allowed_time(moment, window, tz).astimezone(tz)

    if output_json:
        typer.echo(json.dumps({
            "time": at,
            "quiet": quiet,
            "nextAllowed": allowed.isoformat(),
        }))
        return

    status = "[yellow]quiet[/yellow]" if quiet else "[green]open[/green]"
    console.print(f"{at} is {status} for window {start}-{end} ({time_zone})")
    if quiet:
        console.print(f"Next allowed: {allowed.strftime('%Y-%m-%d %H:%M %Z')}")
