"""Retry policy with fixed, linear or exponential backoff."""

import random
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..errors import ErrorCategory


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RetryPolicy(BaseModel):
    """
    Per-node (or per-job) retry configuration.

    Delay for the retry following failed attempt ``n`` (1-based):
    - fixed:        base
    - linear:       base * n
    - exponential:  base * multiplier^(n-1)
    capped at max_delay_ms. With jitter the delay is drawn uniformly from
    [0, capped] ("full jitter"), so retries from many runs don't synchronise.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_attempts: int = 1
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = 1000
    max_delay_ms: int = 60_000
    multiplier: float = 2.0
    jitter: bool = False
    retry_on_timeout: bool = True

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_attempts must be >= 1, got {v}")
        return v

    @field_validator("base_delay_ms", "max_delay_ms")
    @classmethod
    def validate_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"delays must be non-negative, got {v}")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "RetryPolicy":
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")
        if self.max_delay_ms < self.base_delay_ms:
            # A cap below the base would make every strategy behave like 'fixed'
            self.max_delay_ms = self.base_delay_ms
        return self

    def calculate_delay_ms(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay in milliseconds before the retry that follows ``attempt``."""
        attempt = max(1, attempt)
        if self.strategy == BackoffStrategy.FIXED:
            delay = float(self.base_delay_ms)
        elif self.strategy == BackoffStrategy.LINEAR:
            delay = float(self.base_delay_ms) * attempt
        else:
            exponent = min(attempt - 1, 64)
            try:
                delay = self.base_delay_ms * (self.multiplier ** exponent)
            except OverflowError:
                delay = float(self.max_delay_ms)

        delay = min(delay, float(self.max_delay_ms))
        if self.jitter:
            delay = (rng or random).uniform(0.0, delay)
        return delay

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Same as calculate_delay_ms, in seconds."""
        return self.calculate_delay_ms(attempt, rng) / 1000.0

    def should_retry(self, attempt: int, category: ErrorCategory) -> bool:
        """Whether a failure of ``category`` on ``attempt`` earns another try."""
        if attempt >= self.max_attempts:
            return False
        if category == ErrorCategory.TIMEOUT:
            return self.retry_on_timeout
        return category.retryable
