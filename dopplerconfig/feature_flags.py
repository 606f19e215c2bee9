"""Feature flags backed by flat configuration values.

Flags live in Doppler under a common prefix (``FEATURE_RAG_ENABLED``) and are
looked up by short name (``flags.is_enabled("rag-enabled")``).
"""

import threading
import zlib
from collections.abc import Callable, Mapping
from typing import Annotated, Any

from pydantic import BaseModel

from dopplerconfig.loader import ConfigLoader
from dopplerconfig.schema import Setting

DEFAULT_PREFIX = "FEATURE_"

_TRUTHY = frozenset({"true", "1", "yes", "on", "enabled", "enable"})


def _crc32(value: str) -> int:
    return zlib.crc32(value.encode("utf-8"))


class FeatureFlags:
    """Feature flag lookups over a flat key/value map.

    Names are normalized (upper case, ``-`` and spaces become ``_``) and the
    prefix is added unless already present. Boolean results are cached until
    :meth:`update` replaces the values.
    """

    def __init__(self, values: Mapping[str, str], prefix: str = DEFAULT_PREFIX) -> None:
        self._values = dict(values)
        self._prefix = prefix
        self._lock = threading.Lock()
        self._cache: dict[str, bool] = {}

    @classmethod
    def from_loader(
        cls,
        loader: ConfigLoader[Any],
        prefix: str = DEFAULT_PREFIX,
        *,
        follow: bool = True,
    ) -> "FeatureFlags":
        """Build flags from a loader's current values.

        Args:
            loader: A loader that has completed at least one load
            prefix: Flag key prefix
            follow: Refresh the flags whenever the loader reloads
        """
        flags = cls(loader.values, prefix)
        if follow:
            loader.on_change(lambda _old, _new: flags.update(loader.values))
        return flags

    def _key(self, name: str) -> str:
        if not self._prefix:
            return name
        normalized = name.upper().replace("-", "_").replace(" ", "_")
        if normalized.startswith(self._prefix.upper()):
            return normalized
        return self._prefix + normalized

    def _lookup(self, name: str) -> str | None:
        key = self._key(name)
        with self._lock:
            if key in self._values:
                return self._values[key]
            folded = key.casefold()
            for candidate, value in self._values.items():
                if candidate.casefold() == folded:
                    return value
        return None

    def is_enabled(self, name: str) -> bool:
        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached

        value = self._lookup(name)
        result = value is not None and value.strip().lower() in _TRUTHY

        with self._lock:
            self._cache[name] = result
        return result

    def is_disabled(self, name: str) -> bool:
        return not self.is_enabled(name)

    def get_int(self, name: str, default: int = 0) -> int:
        """Integer flag value, or ``default`` if absent or not an integer."""
        value = self._lookup(name)
        if value is None:
            return default
        try:
            return int(value.strip())
        except ValueError:
            return default

    def get_float(self, name: str, default: float = 0.0) -> float:
        """Float flag value, or ``default`` if absent or not a number."""
        value = self._lookup(name)
        if value is None:
            return default
        try:
            return float(value.strip())
        except ValueError:
            return default

    def get_string(self, name: str, default: str = "") -> str:
        value = self._lookup(name)
        return default if value is None else value

    def get_list(self, name: str, default: list[str] | None = None) -> list[str]:
        """Comma-separated flag value, items trimmed."""
        value = self._lookup(name)
        if not value:
            return list(default or [])
        return [item.strip() for item in value.split(",")]

    def update(self, values: Mapping[str, str]) -> None:
        """Replace the underlying values and clear cached results."""
        with self._lock:
            self._values = dict(values)
            self._cache.clear()


class CommonFeatureFlags(BaseModel):
    """Flags most services share."""

    doppler_enabled: Annotated[
        bool,
        Setting("FEATURE_DOPPLER_ENABLED", default="false", description="Doppler integration active"),
    ] = False
    maintenance_mode: Annotated[
        bool,
        Setting("FEATURE_MAINTENANCE_MODE", default="false", description="Serve maintenance responses"),
    ] = False
    debug_logging: Annotated[
        bool,
        Setting("FEATURE_DEBUG_LOGGING", default="false", description="Verbose debug logging"),
    ] = False
    rate_limit_bypass: Annotated[
        bool,
        Setting("FEATURE_RATE_LIMIT_BYPASS", default="false", description="Disable rate limiting"),
    ] = False


class RolloutConfig(BaseModel):
    """Percentage-based rollout with allow and block lists."""

    percentage: Annotated[
        int,
        Setting("ROLLOUT_PERCENTAGE", default="0", validate="max=100"),
    ] = 0
    allowed_users: Annotated[list[str], Setting("ROLLOUT_ALLOWED_USERS")] = []
    blocked_users: Annotated[list[str], Setting("ROLLOUT_BLOCKED_USERS")] = []

    def should_enable(
        self, user_id: str, hash_func: Callable[[str], int] = _crc32
    ) -> bool:
        """Decide whether a user gets the feature.

        The allow list wins, then the block list, then a stable hash bucket
        compared against the percentage.
        """
        if user_id in self.allowed_users:
            return True
        if user_id in self.blocked_users:
            return False
        if self.percentage <= 0:
            return False
        if self.percentage >= 100:
            return True
        return hash_func(user_id) % 100 < self.percentage
