"""Typed configuration loader.

Fetches a flat map from the primary provider (falling back to the secondary
one), maps it onto a config model and publishes it as the current snapshot.
Reloads notify registered change callbacks with the old and new snapshot.

Usage:
    loader = ConfigLoader.from_bootstrap(AppConfig, load_bootstrap())
    config = await loader.load()
    loader.on_change(lambda old, new: ...)
"""

import asyncio
import inspect
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from dopplerconfig.bootstrap import BootstrapSettings, load_bootstrap
from dopplerconfig.errors import NoSourceError, ProviderCloseError, SourceError
from dopplerconfig.mapper import map_values
from dopplerconfig.models import ConfigMetadata, FailurePolicy
from dopplerconfig.observability.logging import get_logger
from dopplerconfig.observability.metrics import CONFIG_LOAD_LATENCY, CONFIG_LOADS
from dopplerconfig.providers.base import FlatConfig, Provider
from dopplerconfig.providers.doppler import DopplerProvider
from dopplerconfig.providers.local import FileProvider

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

ChangeCallback = Callable[[T, T], Awaitable[None] | None]

DEFAULTS_SOURCE = "defaults"


async def fetch_with_fallback(
    primary: Provider | None,
    fallback: Provider | None,
    project: str | None = None,
    config: str | None = None,
) -> tuple[FlatConfig, Provider]:
    """Fetch from the primary provider, then from the fallback.

    Project and config are passed through when given; otherwise each provider
    uses its own defaults.

    Raises:
        SourceError: If every configured provider failed
    """
    last_error: Exception | None = None

    for provider in (primary, fallback):
        if provider is None:
            continue
        try:
            if project is None and config is None:
                values = await provider.fetch()
            else:
                values = await provider.fetch_project(project, config)
        except Exception as exc:
            last_error = exc
            CONFIG_LOADS.labels(source=provider.name, outcome="error").inc()
            logger.warning(
                "config_source_failed",
                source=provider.name,
                project=project,
                error=str(exc),
            )
            continue
        CONFIG_LOADS.labels(source=provider.name, outcome="success").inc()
        return values, provider

    raise SourceError(f"failed to load configuration: {last_error}") from last_error


class ConfigLoader(Generic[T]):
    """Loads and hot-reloads a typed configuration snapshot.

    Loads are serialized; readers of ``current`` never block on I/O and
    always see either the previous or the new snapshot, never a mix.
    """

    def __init__(
        self,
        model: type[T],
        provider: Provider | None = None,
        fallback: Provider | None = None,
        *,
        failure_policy: FailurePolicy = FailurePolicy.FALLBACK,
        project: str | None = None,
        config: str | None = None,
    ) -> None:
        """Initialize loader.

        Args:
            model: Config model class
            provider: Primary source (usually Doppler)
            fallback: Secondary source (usually a local file)
            failure_policy: What to do when every source fails on first load
            project: Project name recorded in metadata
            config: Config name recorded in metadata
        """
        if provider is None and fallback is None:
            raise NoSourceError(
                "no configuration source: set DOPPLER_TOKEN or DOPPLER_FALLBACK_PATH"
            )

        self._model = model
        self._provider = provider
        self._fallback = fallback
        self._failure_policy = failure_policy
        self._project = project
        self._config = config

        self._load_lock = asyncio.Lock()
        self._state_lock = threading.Lock()
        self._current: T | None = None
        self._metadata: ConfigMetadata | None = None
        self._values: FlatConfig = {}
        self._callbacks: list[ChangeCallback] = []

    @classmethod
    def from_bootstrap(
        cls, model: type[T], bootstrap: BootstrapSettings | None = None
    ) -> "ConfigLoader[T]":
        """Build a loader from bootstrap settings.

        Creates a Doppler provider when a token is set and a file fallback when
        a fallback path is set.

        Raises:
            NoSourceError: If neither is configured
        """
        bootstrap = bootstrap or load_bootstrap()

        provider: Provider | None = None
        if bootstrap.is_enabled:
            assert bootstrap.token is not None
            provider = DopplerProvider(
                bootstrap.token.get_secret_value(),
                bootstrap.project,
                bootstrap.config,
                api_url=bootstrap.api_url,
            )

        fallback: Provider | None = None
        if bootstrap.has_fallback:
            assert bootstrap.fallback_path is not None
            fallback = FileProvider(bootstrap.fallback_path)

        return cls(
            model,
            provider,
            fallback,
            failure_policy=bootstrap.failure_policy,
            project=bootstrap.project,
            config=bootstrap.config,
        )

    @property
    def model(self) -> type[T]:
        return self._model

    @property
    def current(self) -> T | None:
        """Latest committed snapshot, or None before the first load."""
        with self._state_lock:
            return self._current

    @property
    def metadata(self) -> ConfigMetadata | None:
        """Metadata of the latest committed snapshot."""
        with self._state_lock:
            return self._metadata

    @property
    def values(self) -> FlatConfig:
        """Copy of the flat map behind the latest snapshot."""
        with self._state_lock:
            return dict(self._values)

    def on_change(self, callback: ChangeCallback) -> None:
        """Register a callback invoked with (old, new) after each reload.

        Callbacks may be plain functions or coroutine functions. They run in
        registration order; the same callback may be registered twice.
        """
        with self._state_lock:
            self._callbacks.append(callback)

    async def load(self) -> T:
        """Load the configuration and publish it as the current snapshot.

        Raises:
            SourceError: If every source failed and the policy does not allow defaults
            MappingError: If a required field is missing
        """
        return await self._load(notify=False)

    async def reload(self) -> T:
        """Reload the configuration, notifying change callbacks.

        On failure the previous snapshot is kept.
        """
        return await self._load(notify=True)

    async def _load(self, notify: bool) -> T:
        operation = "reload" if notify else "load"
        started = time.perf_counter()

        async with self._load_lock:
            with self._state_lock:
                has_snapshot = self._current is not None

            values, source, etag, warnings = await self._fetch(has_snapshot)
            result = map_values(self._model, values)
            warnings.extend(result.warnings)

            metadata = ConfigMetadata(
                source=source,
                project=self._project,
                config=self._config,
                etag=etag,
                key_count=len(values),
                warnings=tuple(warnings),
            )

            with self._state_lock:
                old = self._current
                self._current = result.config
                self._metadata = metadata
                self._values = dict(values)
                callbacks = list(self._callbacks)

        CONFIG_LOAD_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)
        logger.info(
            "config_loaded",
            operation=operation,
            source=source,
            key_count=metadata.key_count,
            warnings=len(warnings),
        )

        if notify and old is not None:
            await notify_callbacks(callbacks, old, result.config)

        return result.config

    async def _fetch(
        self, has_snapshot: bool
    ) -> tuple[FlatConfig, str, str | None, list[str]]:
        try:
            values, provider = await fetch_with_fallback(self._provider, self._fallback)
        except SourceError as exc:
            if has_snapshot or self._failure_policy == FailurePolicy.FAIL:
                logger.error("config_load_failed", error=str(exc))
                raise

            CONFIG_LOADS.labels(source=DEFAULTS_SOURCE, outcome="success").inc()
            if self._failure_policy == FailurePolicy.WARN:
                logger.warning("config_using_defaults", error=str(exc))
                return {}, DEFAULTS_SOURCE, None, [f"all sources failed: {exc}"]

            logger.info("config_using_defaults", error=str(exc))
            return {}, DEFAULTS_SOURCE, None, []

        return values, provider.name, provider.version, []

    async def close(self) -> None:
        """Close both providers.

        Raises:
            ProviderCloseError: With every close failure
        """
        await close_providers(self._provider, self._fallback)


async def close_providers(*providers: Provider | None) -> None:
    """Close each provider, collecting every failure.

    Raises:
        ProviderCloseError: If any provider failed to close
    """
    errors: list[BaseException] = []
    for provider in providers:
        if provider is None:
            continue
        try:
            await provider.close()
        except Exception as exc:
            errors.append(exc)
    if errors:
        raise ProviderCloseError(errors)


async def notify_callbacks(callbacks: Sequence[Callable[..., Any]], *args: Any) -> None:
    """Invoke callbacks in order, awaiting coroutine results.

    A failing callback is logged and does not stop the remaining ones.
    """
    for callback in callbacks:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "config_change_callback_failed",
                callback=getattr(callback, "__qualname__", repr(callback)),
                error=str(e),
            )
