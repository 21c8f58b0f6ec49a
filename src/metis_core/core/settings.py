"""Engine settings loaded from ``METIS_*`` environment variables.

All timing, budget and endpoint knobs of the engine live in one
:class:`EngineSettings` instance. Components receive it by injection; only the
CLI calls :func:`get_settings`.

Examples:
    >>> settings = EngineSettings(poll_interval_seconds=5, max_concurrent_executions=2)
    >>> settings.claim_ttl.total_seconds()
    120.0
"""

from __future__ import annotations

import platform
import uuid
from datetime import timedelta
from functools import lru_cache

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from metis_core.core.errors import ConfigError


def _default_worker_id() -> str:
    return f"{platform.node() or 'worker'}-{uuid.uuid4().hex[:8]}"


class EngineSettings(BaseSettings):
    """Workflow engine configuration.

    Every field can be set via ``METIS_<FIELD>`` (e.g.
    ``METIS_POLL_INTERVAL_SECONDS=10``) or an ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="METIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Scheduling ───────────────────────────────────────────────
    max_concurrent_executions: int = Field(default=4)
    scheduler_tick_seconds: float = Field(default=60.0)
    queue_page_size: int = Field(default=50)

    # ── Claims ───────────────────────────────────────────────────
    claim_ttl_seconds: float = Field(default=120.0, description="Claim lease, 2 x scheduler tick")
    worker_id: str = Field(default_factory=_default_worker_id)

    # ── Monitoring ───────────────────────────────────────────────
    poll_interval_seconds: float = Field(default=30.0)
    monitor_retry_budget: int = Field(default=3, description="Consecutive hard monitor failures tolerated")
    transient_retry_budget: int = Field(default=20, description="Consecutive upstream 5xx tolerated")
    pending_after_transient_failures: int = Field(default=1)
    period_of_no_processed_records_change_in_minutes: int = Field(default=30)
    execution_wall_clock_cap_minutes: int = Field(default=7 * 24 * 60)
    cancellation_check_interval_polls: int = Field(default=1)

    # ── Repository ───────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///metis_core.db")
    repository_retry_attempts: int = Field(default=3)

    # ── DPS / eCloud ─────────────────────────────────────────────
    dps_base_url: str = Field(default="http://localhost:8080/services")
    dps_username: str = Field(default="")
    dps_password: str = Field(default="")
    dps_connect_timeout_seconds: float = Field(default=10.0)
    dps_read_timeout_seconds: float = Field(default=30.0)
    ecloud_base_url: str = Field(default="http://localhost:8080/mcs")
    ecloud_provider: str = Field(default="metis_provider")

    # ── Plugin configuration (factory) ───────────────────────────
    validation_external_schemas_zip_url: str = Field(default="")
    validation_external_schema_root_path: str = Field(default="EDM-EXTERNAL.xsd")
    validation_external_schematron_root_path: str = Field(default="schematron/schematron.xsl")
    validation_internal_schemas_zip_url: str = Field(default="")
    validation_internal_schema_root_path: str = Field(default="EDM-INTERNAL.xsd")
    validation_internal_schematron_root_path: str = Field(default="schematron/schematron-internal.xsl")
    default_xslt_url: str = Field(default="")
    use_alternative_indexing_environment: bool = Field(default=False)
    default_sampling_size_for_link_checking: int = Field(default=1000)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="auto", description="json, console or auto")

    @model_validator(mode="after")
    def _validate_timings(self) -> EngineSettings:
        positive = {
            "max_concurrent_executions": self.max_concurrent_executions,
            "scheduler_tick_seconds": self.scheduler_tick_seconds,
            "claim_ttl_seconds": self.claim_ttl_seconds,
            "monitor_retry_budget": self.monitor_retry_budget,
            "transient_retry_budget": self.transient_retry_budget,
            "pending_after_transient_failures": self.pending_after_transient_failures,
            "period_of_no_processed_records_change_in_minutes": (
                self.period_of_no_processed_records_change_in_minutes
            ),
            "execution_wall_clock_cap_minutes": self.execution_wall_clock_cap_minutes,
            "cancellation_check_interval_polls": self.cancellation_check_interval_polls,
            "repository_retry_attempts": self.repository_retry_attempts,
            "queue_page_size": self.queue_page_size,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.poll_interval_seconds < 0:
            raise ValueError("poll_interval_seconds must not be negative")
        if self.claim_ttl_seconds <= self.scheduler_tick_seconds:
            raise ValueError(
                "claim_ttl_seconds must be larger than scheduler_tick_seconds "
                f"({self.claim_ttl_seconds} <= {self.scheduler_tick_seconds})"
            )
        if self.poll_interval_seconds >= self.claim_ttl_seconds / 2:
            raise ValueError(
                "poll_interval_seconds must be below half of claim_ttl_seconds "
                f"({self.poll_interval_seconds} >= {self.claim_ttl_seconds / 2})"
            )
        if self.log_format not in ("json", "console", "auto"):
            raise ValueError(f"log_format must be json, console or auto, got {self.log_format!r}")
        return self

    # ── Derived properties ───────────────────────────────────────

    @property
    def claim_ttl(self) -> timedelta:
        return timedelta(seconds=self.claim_ttl_seconds)

    @property
    def stall_threshold(self) -> timedelta:
        return timedelta(minutes=self.period_of_no_processed_records_change_in_minutes)

    @property
    def wall_clock_cap(self) -> timedelta:
        return timedelta(minutes=self.execution_wall_clock_cap_minutes)

    @property
    def json_logs(self) -> bool | None:
        """Renderer choice for :func:`configure_logging` (None = auto)."""
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


def load_settings(**overrides) -> EngineSettings:
    """Build settings, converting validation failures into :class:`ConfigError`."""
    try:
        return EngineSettings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid engine settings: {exc}", cause=exc) from exc


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Cached process-wide settings, for entry points only."""
    return load_settings()


__all__ = ["EngineSettings", "load_settings", "get_settings"]
