"""Tests for the gentle-nudge CLI commands."""

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from gentlenudge.cli import app
from gentlenudge.notifications.channels import EventType

NOW = "2026-03-10T10:00:00+00:00"


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def workspace(tmp_path: Path) -> dict:
    """Database, config and fixture paths inside a temporary directory."""
    fixture = tmp_path / "team.json"
    fixture.write_text(json.dumps({
        "users": {
            "alice": {
                "preferences": {"preferred_tone": "casual"},
                "issues": [
                    {
                        "key": "PROJ-1",
                        "summary": "Write the onboarding guide",
                        "status": "In Progress",
                        "last_updated": "2026-03-05T10:00:00+00:00",
                    },
                    {
                        "key": "PROJ-2",
                        "summary": "Fresh issue",
                        "status": "In Progress",
                        "last_updated": "2026-03-10T08:00:00+00:00",
                    },
                ],
            },
        }
    }))
    return {
        "db": str(tmp_path / "data" / "nudges.db"),
        "config": str(tmp_path / "config" / "engine.yaml"),
        "fixture": str(fixture),
    }


def _invoke(runner, workspace, *args):
    return runner.invoke(app, [*args, "--db", workspace["db"], "--config", workspace["config"]])


def _scan(runner, workspace, *extra):
    return _invoke(runner, workspace, "scan", "stale", "--fixture", workspace["fixture"], "--now", NOW, *extra)


def test_scan_json(runner, workspace):
    """Test stale scan with JSON output."""
    result = _scan(runner, workspace, "--json")

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["success"] is True
    alice = data["results"]["alice"]
    assert alice["created"] == 1
    assert alice["reason"] == "stale-scan"
    assert alice["failures"] == []


def test_scan_table(runner, workspace):
    """Test stale scan with table output."""
    result = _scan(runner, workspace)

    assert result.exit_code == 0
    assert "stale-scan" in result.stdout
    assert "alice" in result.stdout


def test_scan_feed_is_complete_on_exit(runner, workspace, tmp_path):
    """Test that queued events reach the feed before the command returns."""
    feed = tmp_path / "events" / "feed.json"

    result = _scan(runner, workspace, "--feed", str(feed), "--json")

    assert result.exit_code == 0
    created_id = json.loads(result.stdout)["results"]["alice"]["created_ids"][0]
    events = json.loads(feed.read_text())
    assert [e["event_type"] for e in events if e["notification_id"] == created_id] == [
        EventType.CREATED,
        EventType.STATE_CHANGED,
    ]


def test_scan_invalid_kind(runner, workspace):
    result = _invoke(runner, workspace, "scan", "weekly", "--fixture", workspace["fixture"])
    assert result.exit_code == 1
    assert "Invalid scan kind" in result.stdout


def test_scan_missing_fixture(runner, workspace, tmp_path):
    result = _invoke(
        runner, workspace, "scan", "stale", "--fixture", str(tmp_path / "missing.json"), "--json"
    )
    assert result.exit_code == 1
    assert json.loads(result.stdout)["error"]["code"] == "CONFIGURATION_ERROR"


def test_full_lifecycle(runner, workspace):
    """Scan, list, deliver, respond and summarise against one database."""
    assert _scan(runner, workspace, "--json").exit_code == 0

    listed = _invoke(runner, workspace, "list", "alice", "--json")
    assert listed.exit_code == 0
    notifications = json.loads(listed.stdout)["notifications"]
    assert len(notifications) == 1
    notification = notifications[0]
    assert notification["issue_key"] == "PROJ-1"
    assert notification["state"] == "scheduled"
    assert notification["content"]["tone"] == "casual"

    delivered = _invoke(runner, workspace, "deliver", "alice", "--now", NOW, "--json")
    assert delivered.exit_code == 0
    assert json.loads(delivered.stdout)["delivered"] == [notification["id"]]

    responded = _invoke(
        runner, workspace, "respond", notification["id"], "acknowledged", "--now", NOW, "--json"
    )
    assert responded.exit_code == 0
    assert json.loads(responded.stdout)["notification"]["state"] == "acknowledged"

    analytics = _invoke(runner, workspace, "analytics", "alice", "--now", NOW, "--json")
    assert analytics.exit_code == 0
    summary = json.loads(analytics.stdout)["analytics"]
    assert summary["total_sent"] == 1
    assert summary["response_counts"]["acknowledged"] == 1
    assert summary["issue_scores"]["PROJ-1"] == 0.6


def test_rescan_skips_active(runner, workspace):
    _scan(runner, workspace, "--json")
    data = json.loads(_scan(runner, workspace, "--json").stdout)
    assert data["results"]["alice"]["skipped"] == ["PROJ-1"]


def test_list_empty(runner, workspace):
    result = _invoke(runner, workspace, "list", "nobody")
    assert result.exit_code == 0
    assert "No notifications found" in result.stdout


def test_respond_unknown_notification(runner, workspace):
    result = _invoke(runner, workspace, "respond", "notif_missing", "acknowledged", "--json")

    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["success"] is False
    assert data["error"]["code"] == "NOT_FOUND"


def test_respond_invalid_value(runner, workspace):
    result = _invoke(runner, workspace, "respond", "notif_missing", "maybe", "--json")
    assert result.exit_code == 1
    assert json.loads(result.stdout)["error"]["code"] == "VALIDATION_ERROR"


def test_analytics_invalid_window(runner, workspace):
    result = _invoke(runner, workspace, "analytics", "alice", "--days", "0")
    assert result.exit_code == 1
    assert "Error" in result.stdout


class TestQuietHoursCommand:
    """Test the quiet-hours helper."""

    def test_evening_is_quiet(self, runner):
        result = runner.invoke(app, ["quiet-hours", "19:30", "--date", "2026-03-10", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["quiet"] is True
        assert data["nextAllowed"] == "2026-03-11T09:00:00+00:00"

    def test_daytime_is_open(self, runner):
        result = runner.invoke(app, ["quiet-hours", "12:00", "--date", "2026-03-10"])
        assert result.exit_code == 0
        assert "open" in result.stdout

    def test_custom_window_and_zone(self, runner):
        result = runner.invoke(
            app,
            ["quiet-hours", "07:00", "--start", "22:00", "--end", "08:00",
             "--tz", "Europe/Warsaw", "--date", "2026-03-10", "--json"],
        )
        data = json.loads(result.stdout)
        assert data["quiet"] is True
        assert data["nextAllowed"] == "2026-03-10T08:00:00+01:00"

    def test_invalid_time(self, runner):
        result = runner.invoke(app, ["quiet-hours", "25:00"])
        assert result.exit_code == 1


class TestConfigCommands:
    """Test configuration commands."""

    def test_validate_invalid(self, runner, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump({"workers": {"max_workers": 0}}))

        result = runner.invoke(app, ["config", "validate", "--config", str(path)])

        assert result.exit_code == 1
        assert "workers.max_workers" in result.stdout

    def test_validate_valid(self, runner, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(yaml.safe_dump({"delivery": {"snooze_minutes": 30}}))

        result = runner.invoke(app, ["config", "validate", "--config", str(path), "--verbose"])

        assert result.exit_code == 0
        assert "snooze 30m" in result.stdout

    def test_show_json_section(self, runner, tmp_path):
        result = runner.invoke(
            app,
            ["config", "show", "--config", str(tmp_path / "missing.yaml"),
             "--section", "workers", "--format", "json"],
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"workers": {"max_workers": 4}}

    def test_show_unknown_section(self, runner, tmp_path):
        result = runner.invoke(
            app, ["config", "show", "--config", str(tmp_path / "missing.yaml"), "--section", "nope"]
        )
        assert result.exit_code == 1
