"""Provider interface for configuration sources.

A provider turns some backend (Doppler API, local file, process environment,
in-memory test double) into a flat key -> string map.
"""

from abc import ABC, abstractmethod

FlatConfig = dict[str, str]


class Provider(ABC):
    """Abstract interface for configuration sources.

    Implementations must be safe for concurrent calls. Failures are raised as
    SourceError subclasses; cancellation follows the calling task.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return a human-readable name for metadata and logging."""
        pass

    @property
    def version(self) -> str | None:
        """Version token of the most recent payload, if the source has one."""
        return None

    async def fetch(self) -> FlatConfig:
        """Retrieve all configuration values from the source."""
        return await self.fetch_project(None, None)

    @abstractmethod
    async def fetch_project(self, project: str | None, config: str | None) -> FlatConfig:
        """Retrieve configuration for a specific project/config combination.

        Used for multi-tenant scenarios where each tenant has its own config.

        Args:
            project: Project name (None for the provider's default)
            config: Config name (None for the provider's default)

        Returns:
            Flat key -> value mapping
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the provider."""
        return None
