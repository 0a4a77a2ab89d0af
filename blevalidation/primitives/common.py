"""
BLE Validation — Common Primitives

Shared identifiers, timestamps, and the pydantic base model used by every
validation system.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def elapsed_ms(started: datetime, finished: datetime | None = None) -> int:
    """Whole milliseconds between two timestamps."""
    end = finished or utc_now()
    return int((end - started).total_seconds() * 1000)


# ─── Enums ────────────────────────────────────────────────────────


class RiskLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ─── Base Models ──────────────────────────────────────────────────


class ValidationBaseModel(BaseModel):
    """Base model for all validation primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class Timestamped(ValidationBaseModel):
    """Mixin for models with creation timestamps."""

    created_at: datetime = Field(default_factory=utc_now)
