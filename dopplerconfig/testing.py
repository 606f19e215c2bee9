"""Test doubles for code that consumes dopplerconfig.

MockProvider serves in-memory values, RecordingProvider records every fetch
of a wrapped provider, and mock_loader wires a loader to a MockProvider.
"""

import threading
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel

from dopplerconfig.loader import ConfigLoader
from dopplerconfig.models import FailurePolicy
from dopplerconfig.providers.base import FlatConfig, Provider

T = TypeVar("T", bound=BaseModel)


class MockProvider(Provider):
    """In-memory provider for tests.

    Returns configurable values without any I/O. Per-project values take
    precedence over the default values in ``fetch_project``.
    """

    def __init__(
        self,
        values: dict[str, str] | None = None,
        *,
        name: str = "mock",
        version: str | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._values: FlatConfig = dict(values or {})
        self._projects: dict[tuple[str, str], FlatConfig] = {}
        self._error: Exception | None = None
        self._close_error: Exception | None = None
        self._name = name
        self._version = version
        self.fetch_count = 0
        self.closed = False

    @property
    def name(self) -> str:
        """Return the provider name."""
        return self._name

    @property
    def version(self) -> str | None:
        return self._version

    async def fetch(self) -> FlatConfig:
        """Return a copy of the default values."""
        with self._lock:
            self.fetch_count += 1
            if self._error is not None:
                raise self._error
            return dict(self._values)

    async def fetch_project(self, project: str | None, config: str | None) -> FlatConfig:
        """Return per-project values, falling back to the default values."""
        with self._lock:
            self.fetch_count += 1
            if self._error is not None:
                raise self._error
            values = self._projects.get((project or "", config or ""), self._values)
            return dict(values)

    async def close(self) -> None:
        self.closed = True
        if self._close_error is not None:
            raise self._close_error

    def set_value(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def set_values(self, values: dict[str, str]) -> None:
        """Replace all default values."""
        with self._lock:
            self._values = dict(values)

    def set_project_values(
        self, project: str | None, config: str | None, values: dict[str, str]
    ) -> None:
        """Set the values served for one project/config combination."""
        with self._lock:
            self._projects[(project or "", config or "")] = dict(values)

    def remove_project_values(self, project: str | None, config: str | None) -> None:
        with self._lock:
            self._projects.pop((project or "", config or ""), None)

    def set_error(self, error: Exception | None) -> None:
        """Make every fetch raise ``error`` (None restores normal behavior)."""
        with self._lock:
            self._error = error

    def set_close_error(self, error: Exception | None) -> None:
        self._close_error = error

    def set_version(self, version: str | None) -> None:
        self._version = version

    def clear(self) -> None:
        """Remove all values and errors."""
        with self._lock:
            self._values = {}
            self._projects = {}
            self._error = None


@dataclass
class FetchCall:
    """One recorded fetch invocation."""

    project: str | None = None
    config: str | None = None
    values: FlatConfig | None = None
    error: Exception | None = None
    default: bool = False


class RecordingProvider(Provider):
    """Wraps a provider and records every fetch call."""

    def __init__(self, provider: Provider) -> None:
        self._provider = provider
        self._lock = threading.Lock()
        self._calls: list[FetchCall] = []

    @property
    def name(self) -> str:
        """Return the provider name."""
        return f"recording:{self._provider.name}"

    @property
    def version(self) -> str | None:
        return self._provider.version

    async def fetch(self) -> FlatConfig:
        try:
            values = await self._provider.fetch()
        except Exception as exc:
            self._record(FetchCall(error=exc, default=True))
            raise
        self._record(FetchCall(values=values, default=True))
        return values

    async def fetch_project(self, project: str | None, config: str | None) -> FlatConfig:
        try:
            values = await self._provider.fetch_project(project, config)
        except Exception as exc:
            self._record(FetchCall(project=project, config=config, error=exc))
            raise
        self._record(FetchCall(project=project, config=config, values=values))
        return values

    async def close(self) -> None:
        await self._provider.close()

    def _record(self, call: FetchCall) -> None:
        with self._lock:
            self._calls.append(call)

    @property
    def calls(self) -> list[FetchCall]:
        """Copy of the recorded calls, oldest first."""
        with self._lock:
            return list(self._calls)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self._calls)

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()


def mock_loader(
    model: type[T],
    values: dict[str, str] | None = None,
    *,
    failure_policy: FailurePolicy = FailurePolicy.FAIL,
) -> tuple[ConfigLoader[T], MockProvider]:
    """Create a loader backed by a fresh MockProvider.

    Example:
        loader, provider = mock_loader(AppConfig, {"PORT": "8080"})
        config = await loader.load()
    """
    provider = MockProvider(values)
    loader = ConfigLoader(model, provider, failure_policy=failure_policy)
    return loader, provider
