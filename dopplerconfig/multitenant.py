"""Multi-tenant configuration loading.

One environment-wide config object plus one config object per tenant
(project code). Tenants map to Doppler configs inside a single project; each
is fetched and mapped independently so one broken tenant never takes the
others down during a reload sweep.

Usage:
    loader = MultiTenantLoader(EnvConfig, ProjectConfig, provider, project="tenants")
    await loader.load_env()
    await loader.load_all_projects(["acme", "globex"])
    diff = await loader.reload_projects()
"""

import asyncio
import threading
from collections.abc import Awaitable, Callable, Iterable
from datetime import timedelta
from typing import Generic, TypeVar

from pydantic import BaseModel

from dopplerconfig.bootstrap import DEFAULT_WATCH_INTERVAL, BootstrapSettings, load_bootstrap
from dopplerconfig.errors import NoSourceError
from dopplerconfig.loader import close_providers, fetch_with_fallback, notify_callbacks
from dopplerconfig.mapper import map_values
from dopplerconfig.models import ReloadDiff
from dopplerconfig.observability.logging import get_logger
from dopplerconfig.observability.metrics import TENANT_RELOAD_FAILURES
from dopplerconfig.providers.base import Provider
from dopplerconfig.providers.doppler import DopplerProvider
from dopplerconfig.providers.local import FileProvider
from dopplerconfig.watcher import PollingWatcher

logger = get_logger(__name__)

E = TypeVar("E", bound=BaseModel)
P = TypeVar("P", bound=BaseModel)

EnvChangeCallback = Callable[[E, E], Awaitable[None] | None]
ProjectChangeCallback = Callable[[ReloadDiff], Awaitable[None] | None]


class MultiTenantLoader(Generic[E, P]):
    """Loads an env-wide config plus one config per tenant."""

    def __init__(
        self,
        env_model: type[E],
        project_model: type[P],
        provider: Provider | None = None,
        fallback: Provider | None = None,
        *,
        project: str | None = None,
    ) -> None:
        """Initialize loader.

        Args:
            env_model: Model of the environment-wide config
            project_model: Model of each tenant config
            provider: Primary source (usually Doppler)
            fallback: Secondary source (usually a local file)
            project: Doppler project holding the tenant configs
        """
        if provider is None and fallback is None:
            raise NoSourceError("no configuration source available")

        self._env_model = env_model
        self._project_model = project_model
        self._provider = provider
        self._fallback = fallback
        self._project = project

        self._env_lock = asyncio.Lock()
        self._projects_lock = asyncio.Lock()
        self._lock = threading.Lock()
        self._env: E | None = None
        self._projects: dict[str, P] = {}
        self._env_callbacks: list[EnvChangeCallback] = []
        self._project_callbacks: list[ProjectChangeCallback] = []

    @classmethod
    def from_bootstrap(
        cls,
        env_model: type[E],
        project_model: type[P],
        bootstrap: BootstrapSettings | None = None,
    ) -> "MultiTenantLoader[E, P]":
        """Build a loader from bootstrap settings.

        Raises:
            NoSourceError: If neither a token nor a fallback path is configured
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

        return cls(env_model, project_model, provider, fallback, project=bootstrap.project)

    @property
    def env(self) -> E | None:
        """Current environment config, or None before load_env()."""
        with self._lock:
            return self._env

    def project(self, code: str) -> P | None:
        """Config of one tenant, or None if it is not loaded."""
        with self._lock:
            return self._projects.get(code)

    def projects(self) -> dict[str, P]:
        """Copy of every loaded tenant config."""
        with self._lock:
            return dict(self._projects)

    def project_codes(self) -> list[str]:
        """Sorted codes of every loaded tenant."""
        with self._lock:
            return sorted(self._projects)

    def on_env_change(self, callback: EnvChangeCallback) -> None:
        """Register a callback invoked with (old, new) when the env config is replaced."""
        with self._lock:
            self._env_callbacks.append(callback)

    def on_project_change(self, callback: ProjectChangeCallback) -> None:
        """Register a callback invoked with the ReloadDiff of each sweep."""
        with self._lock:
            self._project_callbacks.append(callback)

    async def load_env(self) -> E:
        """Fetch and map the environment config.

        Raises:
            SourceError: If every source failed
            MappingError: If a required field is missing
        """
        async with self._env_lock:
            values, provider = await fetch_with_fallback(self._provider, self._fallback)
            config = map_values(self._env_model, values).config

            with self._lock:
                old = self._env
                self._env = config
                callbacks = list(self._env_callbacks)

        logger.info("env_config_loaded", source=provider.name, key_count=len(values))

        if old is not None:
            await notify_callbacks(callbacks, old, config)
        return config

    async def load_project(self, code: str) -> P:
        """Fetch and map one tenant, replacing only that tenant's entry.

        Raises:
            SourceError: If every source failed
            MappingError: If a required field is missing
        """
        async with self._projects_lock:
            config = await self._fetch_project(code)
            with self._lock:
                self._projects[code] = config
        return config

    async def load_all_projects(self, codes: Iterable[str]) -> dict[str, P]:
        """Load each tenant in order. The first failure aborts the rest."""
        result: dict[str, P] = {}
        for code in codes:
            result[code] = await self.load_project(code)
        return result

    async def reload_projects(self, codes: Iterable[str] | None = None) -> ReloadDiff:
        """Re-fetch tenants and report which appeared or disappeared.

        Args:
            codes: Target tenant set (defaults to every loaded tenant)

        A tenant that fails to reload keeps its previous entry and is listed
        in ``failed``; a failing tenant that was never loaded is not added.
        Sweeps and single-tenant loads are serialized: a tenant loaded while
        a sweep runs is stored after the sweep commits, not overwritten by it.
        """
        async with self._projects_lock:
            with self._lock:
                previous = dict(self._projects)
            targets = sorted(set(codes) if codes is not None else set(previous))

            results = await asyncio.gather(
                *(self._fetch_project(code) for code in targets), return_exceptions=True
            )

            updated: dict[str, P] = {}
            failed: dict[str, str] = {}
            for code, result in zip(targets, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    failed[code] = str(result)
                    TENANT_RELOAD_FAILURES.labels(project=code).inc()
                    logger.warning("project_reload_failed", project=code, error=str(result))
                    if code in previous:
                        updated[code] = previous[code]
                    continue
                updated[code] = result

            with self._lock:
                self._projects = updated
                callbacks = list(self._project_callbacks)

        if failed:
            logger.error(
                "project_reload_partial_failure",
                failed_count=len(failed),
                failed_projects=sorted(failed),
            )

        diff = ReloadDiff(
            added=sorted(set(updated) - set(previous)),
            removed=sorted(set(previous) - set(updated)),
            unchanged=sorted(set(updated) & set(previous)),
            failed=failed,
        )

        logger.info(
            "projects_reloaded",
            added=len(diff.added),
            removed=len(diff.removed),
            unchanged=len(diff.unchanged),
            failed=len(diff.failed),
        )

        await notify_callbacks(callbacks, diff)
        return diff

    async def _fetch_project(self, code: str) -> P:
        values, _ = await fetch_with_fallback(
            self._provider, self._fallback, self._project, code
        )
        return map_values(self._project_model, values).config

    async def close(self) -> None:
        """Close both providers.

        Raises:
            ProviderCloseError: With every close failure
        """
        await close_providers(self._provider, self._fallback)


class MultiTenantWatcher(PollingWatcher, Generic[E, P]):
    """Periodically reloads the env config and every tenant."""

    def __init__(
        self,
        loader: MultiTenantLoader[E, P],
        *,
        interval: timedelta | float = DEFAULT_WATCH_INTERVAL,
        max_failures: int = 0,
    ) -> None:
        self._loader = loader
        super().__init__(
            name="multitenant",
            tick=self._reload_all,
            interval=interval,
            max_failures=max_failures,
        )

    @property
    def loader(self) -> MultiTenantLoader[E, P]:
        return self._loader

    async def _reload_all(self) -> None:
        await self._loader.load_env()
        await self._loader.reload_projects()
