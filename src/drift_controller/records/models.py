"""Drift record data model consumed by the status dashboard."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_serializer, field_validator


class DriftStatus(Enum):
    """Latest known state of an environment."""

    CLEAN = "clean"
    DRIFT = "drift"
    REMEDIATED = "remediated"
    ERROR = "error"


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class DriftRecord(BaseModel):
    """Latest reconciliation snapshot for one environment.

    Counts are strings because that is what the dashboard reads.
    """

    environment: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    status: DriftStatus
    drift_count: str = Field("0", pattern="^[0-9]+$")
    resources_to_add: str = Field("0", pattern="^[0-9]+$")
    resources_to_change: str = Field("0", pattern="^[0-9]+$")
    resources_to_destroy: str = Field("0", pattern="^[0-9]+$")
    apply_outcome: str = Field("", pattern="^(success|failure)?$")
    timestamp: datetime = Field(default_factory=utc_now)
    workflow_url: str = ""
    triggered_by: str = ""

    @field_validator(
        "drift_count",
        "resources_to_add",
        "resources_to_change",
        "resources_to_destroy",
        mode="before",
    )
    @classmethod
    def coerce_count(cls, v: Any) -> Any:
        """Accept integer counts and store them as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("timestamp")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        """Naive timestamps are assumed to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_serializer("timestamp")
    def serialize_timestamp(self, v: datetime) -> str:
        return v.isoformat()

    @field_serializer("status")
    def serialize_status(self, v: DriftStatus) -> str:
        return v.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DriftRecord":
        """Create DriftRecord from dictionary."""
        return cls(**data)

    def is_newer_than(self, other: Optional["DriftRecord"]) -> bool:
        """Check whether this record may replace ``other``."""
        return other is None or self.timestamp >= other.timestamp
