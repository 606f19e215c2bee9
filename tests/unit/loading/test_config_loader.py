"""Tests for ConfigLoader."""

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any

import pytest
from prometheus_client import REGISTRY
from pydantic import BaseModel, Field

from dopplerconfig.bootstrap import BootstrapSettings
from dopplerconfig.errors import (
    MissingRequiredFieldError,
    NoSourceError,
    ProviderCloseError,
    SourceError,
)
from dopplerconfig.loader import DEFAULTS_SOURCE, ConfigLoader, fetch_with_fallback
from dopplerconfig.models import FailurePolicy
from dopplerconfig.providers.base import FlatConfig
from dopplerconfig.providers.doppler import DopplerProvider
from dopplerconfig.providers.local import FileProvider
from dopplerconfig.schema import Setting
from dopplerconfig.testing import MockProvider


class ServiceConfig(BaseModel):
    port: Annotated[int, Setting("PORT", default="8080")] = 0
    name: Annotated[str, Setting("NAME", default="default-svc")] = ""


class StrictConfig(BaseModel):
    name: Annotated[str, Setting("NAME", required=True)] = ""


class RedisConfig(BaseModel):
    host: str = ""
    port: int = 0


class CacheConfig(BaseModel):
    redis: RedisConfig = Field(default_factory=RedisConfig)


def loads_total(source: str, outcome: str) -> float:
    value = REGISTRY.get_sample_value(
        "dopplerconfig_loads_total", {"source": source, "outcome": outcome}
    )
    return value or 0.0


class SlowProvider(MockProvider):
    """Tracks how many fetches run at the same time."""

    def __init__(self, values: dict[str, str]) -> None:
        super().__init__(values, name="slow")
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self) -> FlatConfig:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().fetch()
        finally:
            self.in_flight -= 1


class TestLoad:
    """Tests for the first load."""

    @pytest.mark.asyncio
    async def test_load_from_primary(self, mock_provider: MockProvider) -> None:
        """Should map primary values and record metadata."""
        mock_provider.set_version('"etag-1"')
        loader = ConfigLoader(ServiceConfig, mock_provider, project="backend", config="dev")

        config = await loader.load()

        assert config.port == 9000
        assert config.name == "svc"
        assert loader.current is config
        metadata = loader.metadata
        assert metadata is not None
        assert metadata.source == "mock"
        assert metadata.project == "backend"
        assert metadata.config == "dev"
        assert metadata.etag == '"etag-1"'
        assert metadata.key_count == 2
        assert metadata.warnings == ()

    @pytest.mark.asyncio
    async def test_uses_fallback(
        self, mock_provider: MockProvider, fallback_provider: MockProvider
    ) -> None:
        """Should use the fallback when the primary fails."""
        mock_provider.set_error(SourceError("doppler down"))
        loader = ConfigLoader(ServiceConfig, mock_provider, fallback_provider)
        before = loads_total("mock", "error")

        config = await loader.load()

        assert config.port == 7000
        assert loader.metadata is not None
        assert loader.metadata.source == "fallback"
        assert loads_total("mock", "error") == before + 1

    @pytest.mark.asyncio
    async def test_fallback_only(self, fallback_provider: MockProvider) -> None:
        """Should work with only a fallback provider."""
        loader = ConfigLoader(ServiceConfig, fallback=fallback_provider)

        assert (await loader.load()).name == "from-fallback"

    @pytest.mark.asyncio
    async def test_nested_file_fills_untagged_fields(
        self, write_json: Callable[[str, Any], Path]
    ) -> None:
        """Should map a nested fallback file onto untagged nested fields."""
        path = write_json("fallback.json", {"redis": {"host": "cache", "port": 6380}})
        loader = ConfigLoader(CacheConfig, fallback=FileProvider(path))

        config = await loader.load()

        assert config.redis.host == "cache"
        assert config.redis.port == 6380
        assert loader.metadata is not None
        assert loader.metadata.warnings == ()

    def test_no_source(self) -> None:
        """Should refuse to build without any provider."""
        with pytest.raises(NoSourceError):
            ConfigLoader(ServiceConfig)

    @pytest.mark.asyncio
    async def test_required_missing_not_committed(self) -> None:
        """Should not publish a snapshot when a required field is missing."""
        loader = ConfigLoader(StrictConfig, MockProvider({}))

        with pytest.raises(MissingRequiredFieldError):
            await loader.load()

        assert loader.current is None
        assert loader.metadata is None

    @pytest.mark.asyncio
    async def test_mapping_warnings_in_metadata(self) -> None:
        """Should carry coercion warnings into metadata."""
        loader = ConfigLoader(ServiceConfig, MockProvider({"PORT": "eighty"}))

        config = await loader.load()

        assert config.port == 0
        assert loader.metadata is not None
        assert loader.metadata.warnings == ("failed to set port: invalid int value 'eighty'",)


class TestFailurePolicy:
    """Tests for behavior when every source fails on first load."""

    @pytest.mark.asyncio
    async def test_fail(self, mock_provider: MockProvider) -> None:
        """Should raise under FAIL."""
        mock_provider.set_error(SourceError("down"))
        loader = ConfigLoader(ServiceConfig, mock_provider, failure_policy=FailurePolicy.FAIL)

        with pytest.raises(SourceError, match="failed to load configuration"):
            await loader.load()
        assert loader.current is None

    @pytest.mark.asyncio
    async def test_fallback_to_defaults(self, mock_provider: MockProvider) -> None:
        """Should map defaults silently under FALLBACK."""
        mock_provider.set_error(SourceError("down"))
        loader = ConfigLoader(ServiceConfig, mock_provider)

        config = await loader.load()

        assert config.port == 8080
        assert config.name == "default-svc"
        assert loader.metadata is not None
        assert loader.metadata.source == DEFAULTS_SOURCE
        assert loader.metadata.warnings == ()

    @pytest.mark.asyncio
    async def test_warn(self, mock_provider: MockProvider) -> None:
        """Should map defaults and record a warning under WARN."""
        mock_provider.set_error(SourceError("down"))
        loader = ConfigLoader(ServiceConfig, mock_provider, failure_policy=FailurePolicy.WARN)

        await loader.load()

        assert loader.metadata is not None
        assert loader.metadata.source == DEFAULTS_SOURCE
        assert loader.metadata.warnings[0].startswith("all sources failed:")

    @pytest.mark.asyncio
    async def test_defaults_still_need_required(self, mock_provider: MockProvider) -> None:
        """Should still fail when defaults leave a required field empty."""
        mock_provider.set_error(SourceError("down"))
        loader = ConfigLoader(StrictConfig, mock_provider)

        with pytest.raises(MissingRequiredFieldError):
            await loader.load()


class TestReload:
    """Tests for reloads after a snapshot exists."""

    @pytest.mark.asyncio
    async def test_reload_picks_up_changes(self, mock_provider: MockProvider) -> None:
        """Should publish new values."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        await loader.load()

        mock_provider.set_value("PORT", "9100")
        config = await loader.reload()

        assert config.port == 9100
        assert loader.current is config

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_snapshot(self, mock_provider: MockProvider) -> None:
        """Should raise and keep the previous snapshot, whatever the policy."""
        loader = ConfigLoader(ServiceConfig, mock_provider, failure_policy=FailurePolicy.WARN)
        first = await loader.load()

        mock_provider.set_error(SourceError("down"))
        with pytest.raises(SourceError):
            await loader.reload()

        assert loader.current is first
        assert loader.metadata is not None
        assert loader.metadata.source == "mock"

    @pytest.mark.asyncio
    async def test_mapping_failure_keeps_snapshot(self) -> None:
        """Should keep the snapshot when a required field disappears."""
        provider = MockProvider({"NAME": "api"})
        loader = ConfigLoader(StrictConfig, provider)
        first = await loader.load()

        provider.set_values({})
        with pytest.raises(MissingRequiredFieldError):
            await loader.reload()

        assert loader.current is first

    @pytest.mark.asyncio
    async def test_concurrent_loads_serialized(self) -> None:
        """Should never run two fetches at once."""
        provider = SlowProvider({"PORT": "1"})
        loader = ConfigLoader(ServiceConfig, provider)

        await asyncio.gather(loader.load(), loader.reload(), loader.reload())

        assert provider.max_in_flight == 1
        assert provider.fetch_count == 3

    @pytest.mark.asyncio
    async def test_values_is_a_copy(self, mock_provider: MockProvider) -> None:
        """Should expose the raw values without sharing state."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        await loader.load()

        values = loader.values
        values["PORT"] = "1"

        assert loader.values == {"PORT": "9000", "NAME": "svc"}


class TestChangeCallbacks:
    """Tests for on_change."""

    @pytest.mark.asyncio
    async def test_called_with_old_and_new(self, mock_provider: MockProvider) -> None:
        """Should pass both snapshots in registration order."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        calls: list[tuple[str, int, int]] = []
        loader.on_change(lambda old, new: calls.append(("first", old.port, new.port)))
        loader.on_change(lambda old, new: calls.append(("second", old.port, new.port)))

        await loader.load()
        mock_provider.set_value("PORT", "9001")
        await loader.reload()

        assert calls == [("first", 9000, 9001), ("second", 9000, 9001)]

    @pytest.mark.asyncio
    async def test_not_called_on_load(self, mock_provider: MockProvider) -> None:
        """Should not notify on the first load or on load()."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        calls: list[object] = []
        loader.on_change(lambda old, new: calls.append(new))

        await loader.reload()
        await loader.load()

        assert calls == []

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self, mock_provider: MockProvider) -> None:
        """Should await coroutine callbacks."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        seen: list[int] = []

        async def record(old: ServiceConfig, new: ServiceConfig) -> None:
            await asyncio.sleep(0)
            seen.append(new.port)

        loader.on_change(record)
        await loader.load()
        await loader.reload()

        assert seen == [9000]

    @pytest.mark.asyncio
    async def test_failing_callback_isolated(self, mock_provider: MockProvider) -> None:
        """Should keep notifying after a callback raises."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        seen: list[str] = []

        def broken(old: ServiceConfig, new: ServiceConfig) -> None:
            raise RuntimeError("boom")

        loader.on_change(broken)
        loader.on_change(lambda old, new: seen.append(new.name))
        await loader.load()

        config = await loader.reload()

        assert seen == ["svc"]
        assert loader.current is config

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, mock_provider: MockProvider) -> None:
        """Should call a callback once per registration."""
        loader = ConfigLoader(ServiceConfig, mock_provider)
        calls: list[int] = []

        def record(old: ServiceConfig, new: ServiceConfig) -> None:
            calls.append(new.port)

        loader.on_change(record)
        loader.on_change(record)
        await loader.load()
        await loader.reload()

        assert calls == [9000, 9000]


class TestClose:
    """Tests for closing providers."""

    @pytest.mark.asyncio
    async def test_closes_both(
        self, mock_provider: MockProvider, fallback_provider: MockProvider
    ) -> None:
        """Should close primary and fallback."""
        loader = ConfigLoader(ServiceConfig, mock_provider, fallback_provider)

        await loader.close()

        assert mock_provider.closed
        assert fallback_provider.closed

    @pytest.mark.asyncio
    async def test_aggregates_errors(
        self, mock_provider: MockProvider, fallback_provider: MockProvider
    ) -> None:
        """Should close every provider and report every failure."""
        mock_provider.set_close_error(RuntimeError("primary"))
        fallback_provider.set_close_error(RuntimeError("fallback"))
        loader = ConfigLoader(ServiceConfig, mock_provider, fallback_provider)

        with pytest.raises(ProviderCloseError) as exc_info:
            await loader.close()

        assert [str(e) for e in exc_info.value.errors] == ["primary", "fallback"]
        assert fallback_provider.closed


@pytest.mark.usefixtures("clean_doppler_env")
class TestFromBootstrap:
    """Tests for building loaders from bootstrap settings."""

    @pytest.mark.asyncio
    async def test_file_only(self, write_json: Callable[[str, Any], Path]) -> None:
        """Should load from the fallback file when no token is set."""
        path = write_json("fallback.json", {"PORT": "6000", "NAME": "file"})
        bootstrap = BootstrapSettings(fallback_path=str(path))

        loader = ConfigLoader.from_bootstrap(ServiceConfig, bootstrap)
        config = await loader.load()

        assert config.port == 6000
        assert loader.metadata is not None
        assert loader.metadata.source == f"file:{path}"

    @pytest.mark.asyncio
    async def test_token_creates_doppler_provider(self) -> None:
        """Should use Doppler as primary when a token is set."""
        bootstrap = BootstrapSettings(
            token="dp.st.test", project="backend", config="dev", failure_policy="fail"
        )

        loader = ConfigLoader.from_bootstrap(ServiceConfig, bootstrap)

        assert isinstance(loader._provider, DopplerProvider)
        assert loader._failure_policy == FailurePolicy.FAIL
        await loader.close()

    def test_nothing_configured(self) -> None:
        """Should raise NoSourceError without token or fallback path."""
        with pytest.raises(NoSourceError):
            ConfigLoader.from_bootstrap(ServiceConfig, BootstrapSettings())


class TestFetchWithFallback:
    """Tests for the shared fetch helper."""

    @pytest.mark.asyncio
    async def test_project_passthrough(self) -> None:
        """Should use fetch_project when a project or config is given."""
        provider = MockProvider({"A": "default"})
        provider.set_project_values("tenants", "acme", {"A": "acme"})

        values, used = await fetch_with_fallback(provider, None, "tenants", "acme")

        assert values == {"A": "acme"}
        assert used is provider

    @pytest.mark.asyncio
    async def test_all_fail(self) -> None:
        """Should chain the last error."""
        primary = MockProvider()
        primary.set_error(SourceError("primary down"))
        fallback = MockProvider(name="fallback")
        fallback.set_error(SourceError("file missing"))

        with pytest.raises(SourceError) as exc_info:
            await fetch_with_fallback(primary, fallback)

        assert "file missing" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, SourceError)
