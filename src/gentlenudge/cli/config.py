"""CLI commands for engine configuration management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from gentlenudge.errors import ConfigurationError
from gentlenudge.notifications.config import DEFAULT_CONFIG_PATH, ConfigurationManager

config_app = typer.Typer(help="Manage engine configuration", name="config")


@config_app.command("validate")
def validate_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", help="Show the loaded values"),
) -> None:
    """Validate the engine configuration file without applying it."""
    manager = ConfigurationManager(config_path=config_path)
    errors = manager.validate()

    if errors:
        typer.echo(f"Configuration validation failed: {config_path}")
        typer.echo("\nErrors:")
        for error in errors:
            typer.echo(f"  - {error}")
        raise typer.Exit(code=1)

    typer.echo(f"Configuration is valid: {config_path}")
    if verbose:
        config = manager.load()
        typer.echo("\nConfiguration details:")
        typer.echo(f"  Version: {config.version}")
        typer.echo(f"  Workers: {config.workers.max_workers}")
        typer.echo(
            f"  Retry: {config.retry.max_attempts} attempts, "
            f"{config.retry.base_delay_seconds}s base delay"
        )
        typer.echo(
            f"  Delivery: snooze {config.delivery.snooze_minutes}m, "
            f"retention {config.delivery.retention_hours}h"
        )


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to configuration file"),
    section: Optional[str] = typer.Option(
        None,
        "--section",
        help="Show one section (workers, retry, delivery, detection, analytics, frequency_caps)",
    ),
    format: str = typer.Option("yaml", "--format", help="Output format (yaml or json)"),
) -> None:
    """Display the effective engine configuration."""
    try:
        config = ConfigurationManager(config_path=config_path).load()
    except ConfigurationError as exc:
        typer.echo(f"Failed to load configuration: {exc}")
        raise typer.Exit(code=1)

    data = config.model_dump(mode="json")
    if section:
        if section not in data:
            typer.echo(f"Unknown section: {section}")
            typer.echo(f"Available sections: {', '.join(data.keys())}")
            raise typer.Exit(code=1)
        data = {section: data[section]}

    if format == "json":
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
