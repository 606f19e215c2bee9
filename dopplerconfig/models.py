"""Data models shared by the loaders and watchers."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class FailurePolicy(str, Enum):
    """What a loader does when every configuration source fails."""

    FAIL = "fail"
    FALLBACK = "fallback"
    WARN = "warn"

    @classmethod
    def parse(cls, value: str | None) -> "FailurePolicy":
        """Parse a policy name, defaulting to FALLBACK for unknown values."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.FALLBACK


class ConfigMetadata(BaseModel):
    """Information about a loaded configuration snapshot."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Provider name, or 'defaults'")
    loaded_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the snapshot was committed",
    )
    project: str | None = Field(default=None, description="Doppler project name")
    config: str | None = Field(default=None, description="Doppler config name")
    etag: str | None = Field(default=None, description="Version token of the source payload")
    key_count: int = Field(default=0, ge=0, description="Number of keys fetched")
    warnings: tuple[str, ...] = Field(
        default=(), description="Non-fatal issues encountered while loading"
    )


class ReloadDiff(BaseModel):
    """Which tenants appeared, disappeared, or stayed during a reload sweep.

    Presence is tracked, not content: a tenant in ``unchanged`` may carry new
    values.
    """

    added: list[str] = Field(default_factory=list, description="Newly present tenants")
    removed: list[str] = Field(default_factory=list, description="Tenants no longer present")
    unchanged: list[str] = Field(
        default_factory=list, description="Tenants present before and after"
    )
    failed: dict[str, str] = Field(
        default_factory=dict,
        description="Tenant code -> error message for tenants that failed to reload",
    )

    @property
    def has_changes(self) -> bool:
        """True when the set of tenants changed."""
        return bool(self.added or self.removed)
