"""
Outbox Configuration

All settings are read from environment variables with production defaults.
"""

import os
from typing import Optional


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class OutboxSettings:
    """
    Settings for the outbox writer and relay.

    Environment Variables:
        OUTBOX_ENABLED: Master switch for starting the relay; writes always
            go through the outbox (default: true)
        OUTBOX_RELAY_ENABLED: Run the relay in this process (default: true)
        OUTBOX_POLL_INTERVAL_MS: Relay poll interval (default: 5000)
        OUTBOX_BATCH_SIZE: Rows fetched per tick (default: 100)
        OUTBOX_MAX_ATTEMPTS: Delivery attempts before dead-lettering (default: 5)
        OUTBOX_RETRY_MAX_AGE_MS: Age cutoff for the retry sweep (default: 24h)
        OUTBOX_RETRY_BACKOFF_MS: Base delay before a failed row is retried (default: 0)
        OUTBOX_RETRY_BACKOFF_MAX_MS: Backoff ceiling (default: 30000)
        OUTBOX_RETRY_SWEEP_INTERVAL_MS: Runner retry sweep period, 0 disables (default: 0)
        OUTBOX_STOP_TIMEOUT_MS: Grace period for an in-flight tick on stop (default: 30000)
    """

    def __init__(
        self,
        enabled: Optional[bool] = None,
        relay_enabled: Optional[bool] = None,
        poll_interval_ms: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_max_age_ms: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None,
        retry_backoff_max_ms: Optional[int] = None,
        retry_sweep_interval_ms: Optional[int] = None,
        stop_timeout_ms: Optional[int] = None,
    ):
        self.enabled = _env_bool("OUTBOX_ENABLED") if enabled is None else enabled
        self.relay_enabled = (
            _env_bool("OUTBOX_RELAY_ENABLED") if relay_enabled is None else relay_enabled
        )
        self.poll_interval_ms = (
            _env_int("OUTBOX_POLL_INTERVAL_MS", 5000) if poll_interval_ms is None else poll_interval_ms
        )
        self.batch_size = _env_int("OUTBOX_BATCH_SIZE", 100) if batch_size is None else batch_size
        self.max_attempts = _env_int("OUTBOX_MAX_ATTEMPTS", 5) if max_attempts is None else max_attempts
        self.retry_max_age_ms = (
            _env_int("OUTBOX_RETRY_MAX_AGE_MS", 24 * 60 * 60 * 1000)
            if retry_max_age_ms is None else retry_max_age_ms
        )
        self.retry_backoff_ms = (
            _env_int("OUTBOX_RETRY_BACKOFF_MS", 0) if retry_backoff_ms is None else retry_backoff_ms
        )
        self.retry_backoff_max_ms = (
            _env_int("OUTBOX_RETRY_BACKOFF_MAX_MS", 30000)
            if retry_backoff_max_ms is None else retry_backoff_max_ms
        )
        self.retry_sweep_interval_ms = (
            _env_int("OUTBOX_RETRY_SWEEP_INTERVAL_MS", 0)
            if retry_sweep_interval_ms is None else retry_sweep_interval_ms
        )
        self.stop_timeout_ms = (
            _env_int("OUTBOX_STOP_TIMEOUT_MS", 30000) if stop_timeout_ms is None else stop_timeout_ms
        )

        if self.poll_interval_ms <= 0:
            raise ValueError("OUTBOX_POLL_INTERVAL_MS must be positive")
        if self.batch_size <= 0:
            raise ValueError("OUTBOX_BATCH_SIZE must be positive")
        if self.max_attempts <= 0:
            raise ValueError("OUTBOX_MAX_ATTEMPTS must be positive")

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000.0

    @property
    def relay_active(self) -> bool:
        """Whether this process should run the relay."""
        return self.enabled and self.relay_enabled

    def __repr__(self) -> str:
        return (
            f"OutboxSettings(enabled={self.enabled}, relay_enabled={self.relay_enabled}, "
            f"poll_interval_ms={self.poll_interval_ms}, batch_size={self.batch_size}, "
            f"max_attempts={self.max_attempts}, retry_max_age_ms={self.retry_max_age_ms})"
        )
