"""Engine configuration with validation, YAML persistence and defaults.

All tunables of the notification engine live in one ``EngineConfig``
tree. ``ConfigurationManager`` loads it from (and saves it to)
``~/.gentlenudge/config/engine.yaml``; a missing file means defaults.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from gentlenudge.errors import ConfigurationError
from gentlenudge.notifications.models import NotificationFrequency, UserResponse

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".gentlenudge" / "config" / "engine.yaml"


class WorkerConfig(BaseModel):
    """Worker pool configuration.

    Attributes:
        max_workers: Users scanned concurrently (1-32)
    """

    max_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum users processed concurrently"
    )


class RetryConfig(BaseModel):
    """Bounded exponential backoff for storage and issue-source calls.

    Attributes:
        max_attempts: Total attempts including the first (1-10)
        base_delay_seconds: Delay before the first retry
        backoff_multiplier: Exponential backoff multiplier (1.0-10.0)
        max_delay_seconds: Cap for a single delay
        jitter_factor: Random jitter factor (0.0-1.0)
    """

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.2, ge=0.0, le=60.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0, le=300.0)
    jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)


class DeliveryConfig(BaseModel):
    """Notification lifecycle timings.

    Attributes:
        snooze_minutes: Delay before a snoozed notification is re-delivered
        retention_hours: Non-terminal records older than this expire
        max_schedule_ahead_days: Furthest a frequency cap may defer a send
        background_events: Publish events from a background thread
    """

    snooze_minutes: int = Field(default=60, ge=1, le=7 * 24 * 60)
    retention_hours: int = Field(default=72, ge=1, le=24 * 90)
    max_schedule_ahead_days: int = Field(default=14, ge=1, le=90)
    background_events: bool = True


class DetectionConfig(BaseModel):
    """Candidate filtering rules.

    Attributes:
        terminal_statuses: Issue statuses that never get nudges (case-insensitive)
        default_time_zone: Time zone for users whose preferences are missing
    """

    terminal_statuses: List[str] = Field(
        default_factory=lambda: ["done", "resolved", "closed", "cancelled"]
    )
    default_time_zone: str = "UTC"

    @field_validator("terminal_statuses")
    @classmethod
    def _normalise(cls, value: List[str]) -> List[str]:
        return [status.strip().lower() for status in value if status.strip()]

    def is_terminal(self, status: str) -> bool:
        return status.strip().lower() in self.terminal_statuses


class AnalyticsConfig(BaseModel):
    """Effectiveness scoring parameters.

    Attributes:
        decay_half_life_days: Age at which a response counts half as much
        response_weights: Weight of each response in the effectiveness score
    """

    decay_half_life_days: float = Field(default=7.0, gt=0.0, le=365.0)
    response_weights: Dict[UserResponse, float] = Field(
        default_factory=lambda: {
            UserResponse.ACTIONED: 1.0,
            UserResponse.ACKNOWLEDGED: 0.6,
            UserResponse.SNOOZED: 0.3,
            UserResponse.DISMISSED: 0.0,
        }
    )

    @field_validator("response_weights")
    @classmethod
    def _validate_weights(cls, value: Dict[UserResponse, float]) -> Dict[UserResponse, float]:
        for response, weight in value.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"weight for {response.value} must be within [0, 1]")
        missing = set(UserResponse) - set(value)
        if missing:
            raise ValueError(f"missing weights for {sorted(r.value for r in missing)}")
        return value


class FrequencyCap(BaseModel):
    """At most ``max_notifications`` delivered per trailing ``window_hours``."""

    max_notifications: int = Field(ge=1)
    window_hours: int = Field(ge=1)

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.window_hours)


def _default_caps() -> Dict[NotificationFrequency, FrequencyCap]:
    return {
        NotificationFrequency.GENTLE: FrequencyCap(max_notifications=1, window_hours=24),
        NotificationFrequency.MODERATE: FrequencyCap(max_notifications=3, window_hours=24),
        NotificationFrequency.MINIMAL: FrequencyCap(max_notifications=1, window_hours=24 * 7),
    }


class EngineConfig(BaseModel):
    """Main notification engine configuration.

    Attributes:
        version: Configuration schema version
        workers: Worker pool configuration
        retry: Retry policy configuration
        delivery: Lifecycle timings
        detection: Candidate filtering
        analytics: Effectiveness scoring
        frequency_caps: Cap per notification frequency
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    version: int = Field(default=1, description="Configuration schema version")
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    frequency_caps: Dict[NotificationFrequency, FrequencyCap] = Field(
        default_factory=_default_caps
    )

    @field_validator("frequency_caps")
    @classmethod
    def _all_frequencies(
        cls, value: Dict[NotificationFrequency, FrequencyCap]
    ) -> Dict[NotificationFrequency, FrequencyCap]:
        merged = _default_caps()
        merged.update(value)
        return merged

    def cap_for(self, frequency: NotificationFrequency) -> FrequencyCap:
        return self.frequency_caps[frequency]


class ConfigurationManager:
    """Loads, validates and saves the engine configuration.

    Attributes:
        config_path: Path to the YAML configuration file
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to config file (default: ~/.gentlenudge/config/engine.yaml)
        """
        self._config_path = config_path or DEFAULT_CONFIG_PATH
        self._config: Optional[EngineConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> EngineConfig:
        """Load and validate configuration.

        Returns:
            Validated engine configuration

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not self._config_path.exists():
            logger.debug(f"No config at {self._config_path}, using defaults")
            self._config = EngineConfig()
            return self._config

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Failed to read configuration: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigurationError("Invalid configuration: top level must be a mapping")

        try:
            self._config = EngineConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(_format_errors(exc))}"
            ) from exc

        logger.info(f"Loaded engine configuration from {self._config_path}")
        return self._config

    def save(self, config: EngineConfig) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save
        """
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config
        logger.info(f"Saved engine configuration to {self._config_path}")

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate configuration without loading.

        Args:
            config_path: Optional path to config file to validate

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            EngineConfig(**data)
        except ValidationError as exc:
            return _format_errors(exc)
        except (OSError, yaml.YAMLError, TypeError) as exc:
            return [f"Failed to load configuration: {exc}"]
        return []


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


def load_config(config_path: Optional[Path] = None) -> EngineConfig:
    """Load the engine configuration from ``config_path`` or the default location."""
    return ConfigurationManager(config_path).load()
