"""Doppler API provider.

Fetches secrets from ``GET /v3/configs/config/secrets`` through a resilient
transport. Successful payloads are cached with their ETag so a 304 response
returns the cached copy instead of failing.
"""

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from dopplerconfig.bootstrap import DEFAULT_DOPPLER_API_URL
from dopplerconfig.errors import CircuitOpenError, DopplerError, SourceError
from dopplerconfig.observability.logging import get_logger
from dopplerconfig.providers.base import FlatConfig, Provider
from dopplerconfig.providers.transport import CircuitState, ResilientTransport

logger = get_logger(__name__)

# Error bodies are truncated to limit memory use and exposure
MAX_ERROR_BODY_SIZE = 1024


class DopplerProvider(Provider):
    """Provider reading configuration directly from the Doppler API.

    The token can be a service token (which encodes project and config) or a
    personal token (which needs explicit project and config).
    """

    def __init__(
        self,
        token: str,
        project: str | None = None,
        config: str | None = None,
        *,
        api_url: str = DEFAULT_DOPPLER_API_URL,
        transport: ResilientTransport | None = None,
    ) -> None:
        """Initialize Doppler provider.

        Args:
            token: Doppler service or personal token
            project: Default project name
            config: Default config name
            api_url: Doppler API base URL
            transport: HTTP transport (defaults to ResilientTransport())
        """
        if not token:
            raise ValueError("doppler token is required")

        self._token = token
        self._project = project
        self._config = config
        self._api_url = api_url.rstrip("/")
        self._transport = transport or ResilientTransport()
        self._lock = asyncio.Lock()
        self._cache: dict[tuple[str | None, str | None], tuple[str, FlatConfig]] = {}
        self._etag: str | None = None

    @property
    def name(self) -> str:
        """Return the provider name."""
        return "doppler"

    @property
    def version(self) -> str | None:
        """ETag of the most recent successful response."""
        return self._etag

    @property
    def circuit_state(self) -> CircuitState:
        """State of the Doppler API circuit breaker."""
        return self._transport.circuit_state

    async def fetch(self) -> FlatConfig:
        """Retrieve secrets for the configured project/config."""
        return await self.fetch_project(self._project, self._config)

    async def fetch_project(self, project: str | None, config: str | None) -> FlatConfig:
        """Retrieve secrets for a specific project/config.

        Raises:
            DopplerError: If the API returns a non-success status
            SourceError: If the request fails or the payload is malformed
        """
        cache_key = (project, config)
        params: dict[str, str] = {}
        if project:
            params["project"] = project
        if config:
            params["config"] = config

        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }
        async with self._lock:
            cached = self._cache.get(cache_key)
        if cached is not None:
            headers["If-None-Match"] = cached[0]

        try:
            response = await self._transport.get(
                f"{self._api_url}/configs/config/secrets",
                params=params,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "doppler_request_failed",
                error=str(exc),
                project=project,
                config=config,
            )
            raise SourceError(f"doppler API request failed: {exc}") from exc

        if response.status_code == 304 and cached is not None:
            logger.debug("doppler_cache_hit", project=project, config=config)
            return dict(cached[1])

        if response.status_code != 200:
            raw = response.text
            if len(raw) >= MAX_ERROR_BODY_SIZE:
                raw = raw[: MAX_ERROR_BODY_SIZE - 3] + "..."
            raise DopplerError(
                status_code=response.status_code,
                message=f"API returned status {response.status_code}",
                raw=raw,
            )

        values = self._decode(response)

        etag = response.headers.get("ETag")
        async with self._lock:
            if etag:
                self._cache[cache_key] = (etag, values)
                self._etag = etag
            else:
                self._cache.pop(cache_key, None)

        return dict(values)

    @staticmethod
    def _decode(response: httpx.Response) -> FlatConfig:
        try:
            payload = response.json()
            secrets = payload["secrets"]
            return {key: str(entry.get("raw") or "") for key, entry in secrets.items()}
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise SourceError(f"failed to decode doppler response: {exc}") from exc

    async def close(self) -> None:
        """Close the underlying transport."""
        await self._transport.aclose()


def health_check(provider: DopplerProvider) -> Callable[[], Awaitable[None]]:
    """Build a health check for a Doppler provider.

    The check fails fast when the circuit breaker is open, otherwise performs
    a fetch to verify end-to-end connectivity.
    """

    async def check() -> None:
        if provider.circuit_state == CircuitState.OPEN:
            raise CircuitOpenError("circuit breaker is open")
        await provider.fetch()

    return check
