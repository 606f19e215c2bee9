"""Bootstrap parameters needed to reach the configuration sources.

These come from DOPPLER_* environment variables and are read before the
full configuration exists.

Usage:
    from dopplerconfig.bootstrap import load_bootstrap

    bootstrap = load_bootstrap()
    if bootstrap.is_enabled:
        ...
"""

from datetime import timedelta
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dopplerconfig.mapper import parse_duration
from dopplerconfig.models import FailurePolicy

DEFAULT_DOPPLER_API_URL = "https://api.doppler.com/v3"
DEFAULT_WATCH_INTERVAL = timedelta(seconds=30)


class BootstrapSettings(BaseSettings):
    """Minimal settings used to bootstrap the full configuration.

    Loaded from environment variables:
    - DOPPLER_TOKEN: service or personal token
    - DOPPLER_PROJECT / DOPPLER_CONFIG: optional with service tokens
    - DOPPLER_FALLBACK_PATH: local JSON file used when Doppler is unavailable
    - DOPPLER_WATCH_ENABLED / DOPPLER_WATCH_INTERVAL: hot reload
    - DOPPLER_FAILURE_POLICY: fail | fallback | warn
    """

    model_config = SettingsConfigDict(
        env_prefix="DOPPLER_",
        case_sensitive=False,
        extra="ignore",
    )

    token: SecretStr | None = Field(default=None, description="Doppler token")
    project: str | None = Field(default=None, description="Doppler project name")
    config: str | None = Field(default=None, description="Doppler config name, e.g. 'prd'")
    fallback_path: str | None = Field(
        default=None, description="Path to the local JSON fallback file"
    )
    watch_enabled: bool = Field(default=False, description="Enable hot reload")
    watch_interval: timedelta = Field(
        default=DEFAULT_WATCH_INTERVAL, description="Polling interval when watching"
    )
    max_failures: int = Field(
        default=0,
        ge=0,
        description="Consecutive reload failures before the watcher stops (0 = unlimited)",
    )
    failure_policy: FailurePolicy = Field(
        default=FailurePolicy.FALLBACK,
        description="Behavior when every source fails",
    )
    api_url: str = Field(default=DEFAULT_DOPPLER_API_URL, description="Doppler API base URL")

    @field_validator("failure_policy", mode="before")
    @classmethod
    def _parse_failure_policy(cls, value: Any) -> FailurePolicy:
        if isinstance(value, FailurePolicy):
            return value
        return FailurePolicy.parse(value)

    @field_validator("watch_interval", mode="before")
    @classmethod
    def _parse_watch_interval(cls, value: Any) -> Any:
        # Plain numbers are seconds; "500ms" style durations are accepted too
        if isinstance(value, str):
            if not value.strip():
                return DEFAULT_WATCH_INTERVAL
            return parse_duration(value)
        return value

    @field_validator("token", "project", "config", "fallback_path", mode="before")
    @classmethod
    def _empty_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def is_enabled(self) -> bool:
        """True if Doppler integration is enabled (token is set)."""
        return self.token is not None and bool(self.token.get_secret_value())

    @property
    def has_fallback(self) -> bool:
        """True if a fallback path is configured."""
        return bool(self.fallback_path)


def load_bootstrap() -> BootstrapSettings:
    """Read bootstrap settings from the process environment."""
    return BootstrapSettings()
