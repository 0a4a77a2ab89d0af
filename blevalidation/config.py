"""
BLE Validation — Configuration System

All configuration is Pydantic-validated and loaded from:
1. A YAML file (defaults for a project)
2. Environment variables (overrides)

Every tunable threshold of the validation run lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PHASE_ORDER: tuple[str, ...] = (
    "static_analysis",
    "database_simulation",
    "security_audit",
    "performance_analysis",
    "configuration_audit",
)

# ─── Sub-configs ──────────────────────────────────────────────────


class ValidationConfig(BaseModel):
    """Controller-level options passed at construction."""

    enabled_phases: list[str] = Field(default_factory=lambda: list(PHASE_ORDER))
    skip_optional_checks: bool = False
    max_concurrent_users: int = 150
    timeout_ms: int = 1_800_000  # 30 minutes for the whole run
    output_format: str = "JSON"  # "JSON" | "MARKDOWN"
    log_level: str = "INFO"

    @field_validator("enabled_phases")
    @classmethod
    def _known_phases(cls, value: list[str]) -> list[str]:
        unknown = [p for p in value if p not in PHASE_ORDER]
        if unknown:
            raise ValueError(f"Unknown validation phases: {', '.join(unknown)}")
        # Execution order is fixed regardless of how the caller listed them
        return [p for p in PHASE_ORDER if p in value]

    @field_validator("output_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        upper = value.upper()
        if upper not in ("JSON", "MARKDOWN"):
            raise ValueError(f"Unsupported output format: {value}")
        return upper


class SourcePathsConfig(BaseModel):
    """Locations of the read-only inputs, relative to ``project_root``."""

    project_root: Path = Path(".")
    ios_module_dir: str = "modules/BeaconBroadcaster/ios"
    android_module_dir: str = "modules/BLEBeaconManager/android"
    bridge_dir: str = "modules/BLE"
    migrations_dir: str = "supabase/migrations"
    package_json: str = "package.json"
    app_json: str = "app.json"
    app_config_js: str = "app.config.js"
    eas_json: str = "eas.json"

    def resolve(self, relative: str) -> Path:
        return (self.project_root / relative).resolve()


class ConcurrencyConfig(BaseModel):
    """Concurrent-load simulation parameters."""

    user_steps: list[int] = Field(default_factory=lambda: [10, 50, 100, 150])
    operations_per_user: int = 1
    min_success_rate: float = 0.95
    conditional_success_rate: float = 0.99
    p95_latency_bound_ms: float = 1_000.0
    conditional_p95_latency_ms: float = 500.0
    connection_pool_size: int = 20
    base_latency_ms: float = 40.0
    latency_jitter_ms: float = 20.0
    arrival_window_ms: float = 2_000.0
    connection_timeout_ms: float = 5_000.0
    duplicate_submission_rate: float = 0.1
    transient_error_rate: float = 0.0
    # Officers opening sessions at once, round-robin over this many organizations
    session_officers: int = 20
    session_organizations: int = 4
    # Highest acceptable chance of two active sessions in one org sharing a minor
    minor_collision_tolerance: float = 0.01
    # Steps above max_concurrent_users, run to find the capacity cliff
    stress_user_steps: list[int] = Field(default_factory=list)
    seed: int | None = 1337


class PerformanceConfig(BaseModel):
    """Device and backend thresholds for the performance phase."""

    battery_drain_max_pct_per_hour: float = 8.0
    memory_peak_max_mb: float = 100.0
    cpu_average_max_pct: float = 25.0
    cpu_peak_max_pct: float = 40.0
    network_max_kbps: float = 500.0
    max_websocket_connections: int = 200
    max_messages_per_second: int = 1_000
    max_query_latency_ms: float = 500.0


class VerdictConfig(BaseModel):
    target_concurrent_users: int = 150
    minimum_health_score: float = 70.0
    conditional_health_floor: float = 50.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Config ──────────────────────────────────────────────────


class BLEValidationConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="BLEVALIDATION_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    sources: SourcePathsConfig = Field(default_factory=SourcePathsConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    verdict: VerdictConfig = Field(default_factory=VerdictConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _align_targets(self) -> BLEValidationConfig:
        # The top concurrency step is the controller's configured ceiling
        steps = sorted({s for s in self.concurrency.user_steps if s > 0})
        ceiling = self.validation.max_concurrent_users
        steps = [s for s in steps if s <= ceiling]
        if not steps or steps[-1] != ceiling:
            steps.append(ceiling)
        self.concurrency.user_steps = steps
        return self


def load_config(config_path: str | Path | None = None) -> BLEValidationConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    if project_root := os.environ.get("BLEVALIDATION_PROJECT_ROOT"):
        raw.setdefault("sources", {})["project_root"] = project_root
    if phases := os.environ.get("BLEVALIDATION_PHASES"):
        raw.setdefault("validation", {})["enabled_phases"] = [
            p.strip() for p in phases.split(",") if p.strip()
        ]
    if log_level := os.environ.get("BLEVALIDATION_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level
        raw.setdefault("validation", {})["log_level"] = log_level

    return BLEValidationConfig(**raw)
