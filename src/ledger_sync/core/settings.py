"""Synchronization settings and configuration.

This module defines all configuration options for the ledger sync engine.
Settings are loaded from environment variables with sensible defaults and
frozen into a :class:`SyncConfig` before any component is built.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Polling domains, in the order they are started
DOMAIN_TRANSACTIONS = "transactions"
DOMAIN_STAKING = "staking"
DOMAIN_ADMIN = "admin"
POLL_DOMAINS = (DOMAIN_TRANSACTIONS, DOMAIN_STAKING, DOMAIN_ADMIN)


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Backend endpoints
    base_url: str | None = Field(default=None, alias="LEDGER_SYNC_BASE_URL")
    push_path: str = Field(default="/api/events/stream", alias="LEDGER_SYNC_PUSH_PATH")
    transactions_path: str = Field(
        default="/api/transactions",
        alias="LEDGER_SYNC_TRANSACTIONS_PATH",
    )
    staking_path: str = Field(default="/api/staking/stats", alias="LEDGER_SYNC_STAKING_PATH")
    admin_path: str = Field(default="/api/admin/stats/system", alias="LEDGER_SYNC_ADMIN_PATH")

    # Channel switches and cadences
    push_enabled: bool = Field(default=True, alias="LEDGER_SYNC_PUSH_ENABLED")
    poll_transactions_seconds: float = Field(
        default=3.0,
        alias="LEDGER_SYNC_POLL_TRANSACTIONS_SECONDS",
    )
    poll_staking_seconds: float = Field(default=5.0, alias="LEDGER_SYNC_POLL_STAKING_SECONDS")
    poll_admin_seconds: float = Field(default=10.0, alias="LEDGER_SYNC_POLL_ADMIN_SECONDS")
    degraded_poll_factor: float = Field(default=0.5, alias="LEDGER_SYNC_DEGRADED_POLL_FACTOR")

    # Reconciliation
    correlation_window_ms: int = Field(default=30_000, alias="LEDGER_SYNC_CORRELATION_WINDOW_MS")
    retry_ceiling: int = Field(default=20, alias="LEDGER_SYNC_RETRY_CEILING")
    failed_grace_seconds: float = Field(default=10.0, alias="LEDGER_SYNC_FAILED_GRACE_SECONDS")

    # Connection health
    freshness_threshold_ms: int = Field(
        default=15_000,
        alias="LEDGER_SYNC_FRESHNESS_THRESHOLD_MS",
    )
    stale_threshold_ms: int = Field(default=60_000, alias="LEDGER_SYNC_STALE_THRESHOLD_MS")
    health_tick_seconds: float = Field(default=1.0, alias="LEDGER_SYNC_HEALTH_TICK_SECONDS")

    # Transport
    http_timeout_seconds: float = Field(default=10.0, alias="LEDGER_SYNC_HTTP_TIMEOUT_SECONDS")
    poll_timeout_seconds: float = Field(default=8.0, alias="LEDGER_SYNC_POLL_TIMEOUT_SECONDS")
    push_backoff_base_seconds: float = Field(
        default=0.5,
        alias="LEDGER_SYNC_PUSH_BACKOFF_BASE_SECONDS",
    )
    push_backoff_max_seconds: float = Field(
        default=30.0,
        alias="LEDGER_SYNC_PUSH_BACKOFF_MAX_SECONDS",
    )

    log_level: str = Field(default="INFO", alias="LEDGER_SYNC_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )


@dataclass(frozen=True)
class PollIntervals:
    """Per-domain poll cadence in seconds."""

    transactions: float = 3.0
    staking: float = 5.0
    admin: float = 10.0

    def for_domain(self, domain: str) -> float:
        return float(getattr(self, domain))


@dataclass(frozen=True)
class SyncConfig:
    """Immutable configuration for one sync session."""

    base_url: str | None = None
    push_enabled: bool = True
    poll_intervals: PollIntervals = field(default_factory=PollIntervals)
    correlation_window_ms: int = 30_000
    retry_ceiling: int = 20
    freshness_threshold_ms: int = 15_000
    stale_threshold_ms: int = 60_000
    degraded_poll_factor: float = 0.5
    failed_grace_seconds: float = 10.0
    health_tick_seconds: float = 1.0
    http_timeout_seconds: float = 10.0
    poll_timeout_seconds: float = 8.0
    push_backoff_base_seconds: float = 0.5
    push_backoff_max_seconds: float = 30.0
    push_path: str = "/api/events/stream"
    poll_paths: dict[str, str] = field(
        default_factory=lambda: {
            DOMAIN_TRANSACTIONS: "/api/transactions",
            DOMAIN_STAKING: "/api/staking/stats",
            DOMAIN_ADMIN: "/api/admin/stats/system",
        }
    )

    def __post_init__(self) -> None:
        for domain in POLL_DOMAINS:
            if self.poll_intervals.for_domain(domain) <= 0:
                raise ValueError(f"poll interval for {domain!r} must be positive")
        if self.retry_ceiling < 1:
            raise ValueError("retry_ceiling must be at least 1")
        if self.correlation_window_ms < 0:
            raise ValueError("correlation_window_ms must not be negative")
        if self.freshness_threshold_ms <= 0:
            raise ValueError("freshness_threshold_ms must be positive")
        if self.stale_threshold_ms <= self.freshness_threshold_ms:
            raise ValueError("stale_threshold_ms must exceed freshness_threshold_ms")
        if not 0 < self.degraded_poll_factor <= 1:
            raise ValueError("degraded_poll_factor must be in (0, 1]")
        if self.push_backoff_base_seconds <= 0:
            raise ValueError("push_backoff_base_seconds must be positive")
        if self.push_backoff_max_seconds < self.push_backoff_base_seconds:
            raise ValueError("push_backoff_max_seconds must not be below the base delay")

    def as_public_dict(self) -> dict[str, object]:
        """Return the caller-facing configuration surface."""
        return {
            "push_enabled": self.push_enabled,
            "poll_intervals": {
                DOMAIN_TRANSACTIONS: self.poll_intervals.transactions,
                DOMAIN_STAKING: self.poll_intervals.staking,
                DOMAIN_ADMIN: self.poll_intervals.admin,
            },
            "correlation_window_ms": self.correlation_window_ms,
            "retry_ceiling": self.retry_ceiling,
            "freshness_threshold_ms": self.freshness_threshold_ms,
            "stale_threshold_ms": self.stale_threshold_ms,
        }


def load_sync_config(source: Settings | None = None) -> SyncConfig:
    """Build a configuration object from environment settings."""

    source = source or Settings()
    return SyncConfig(
        base_url=source.base_url,
        push_enabled=source.push_enabled,
        poll_intervals=PollIntervals(
            transactions=source.poll_transactions_seconds,
            staking=source.poll_staking_seconds,
            admin=source.poll_admin_seconds,
        ),
        correlation_window_ms=source.correlation_window_ms,
        retry_ceiling=source.retry_ceiling,
        freshness_threshold_ms=source.freshness_threshold_ms,
        stale_threshold_ms=source.stale_threshold_ms,
        degraded_poll_factor=source.degraded_poll_factor,
        failed_grace_seconds=source.failed_grace_seconds,
        health_tick_seconds=source.health_tick_seconds,
        http_timeout_seconds=source.http_timeout_seconds,
        poll_timeout_seconds=source.poll_timeout_seconds,
        push_backoff_base_seconds=source.push_backoff_base_seconds,
        push_backoff_max_seconds=source.push_backoff_max_seconds,
        push_path=source.push_path,
        poll_paths={
            DOMAIN_TRANSACTIONS: source.transactions_path,
            DOMAIN_STAKING: source.staking_path,
            DOMAIN_ADMIN: source.admin_path,
        },
    )
