"""Bounded exponential backoff for storage and issue-source calls.

Delays grow as ``base * multiplier**attempt``, are capped at
``max_delay_seconds`` and spread by random jitter to avoid retry storms
when many users are scanned at once.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field

from gentlenudge.errors import StorageError
from gentlenudge.notifications.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Retry policy for a persistence or collaborator call.

    Attributes:
        max_attempts: Total attempts including the first (1-10)
        base_delay_seconds: Delay before the first retry
        backoff_multiplier: Multiplier for exponential backoff (1.0-10.0)
        max_delay_seconds: Maximum delay cap in seconds
        jitter_factor: Random jitter factor (0.0-1.0)
    """

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=0.2, ge=0.0, le=60.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_delay_seconds: float = Field(default=5.0, ge=0.0, le=300.0)
    jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(**config.model_dump())

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Calculate retry delay with jitter.

        Args:
            attempt: Current retry attempt number (0-indexed)
            rng: Optional random source (module random by default)

        Returns:
            Delay in seconds, never negative
        """
        delay = self.base_delay_seconds * (self.backoff_multiplier ** attempt)
        delay = min(delay, self.max_delay_seconds)

        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            jitter = (rng or random).uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay + jitter)

        return delay

    def call(
        self,
        operation: Callable[[], T],
        *,
        description: str,
        retry_on: Tuple[Type[BaseException], ...] = (OSError,),
        error_cls: Type[Exception] = StorageError,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument callable to run
            description: Human readable name used in logs and the final error
            retry_on: Exception types that trigger a retry
            error_cls: Error raised once attempts are exhausted
            sleep: Sleep function (injected in tests)

        Returns:
            Whatever ``operation`` returns

        Raises:
            error_cls: After ``max_attempts`` failures
        """
        last_exc: Optional[BaseException] = None
        for attempt in range(self.max_attempts):
            try:
                return operation()
            except retry_on as exc:
                last_exc = exc
                if attempt + 1 >= self.max_attempts:
                    break
                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{self.max_attempts}): "
                    f"{exc}; retrying in {delay:.2f}s"
                )
                sleep(delay)

        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_exc}")
        raise error_cls(
            f"{description} failed after {self.max_attempts} attempts: {last_exc}",
            details={"attempts": self.max_attempts},
        ) from last_exc
