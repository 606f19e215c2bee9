"""Configuration source providers.

- DopplerProvider: Doppler API over a resilient HTTP transport
- FileProvider: local JSON fallback file
- EnvProvider: process environment
"""

from dopplerconfig.providers.base import FlatConfig, Provider
from dopplerconfig.providers.doppler import DopplerProvider, health_check
from dopplerconfig.providers.local import (
    EnvProvider,
    FileProvider,
    flatten_json,
    write_fallback_file,
)
from dopplerconfig.providers.transport import (
    CircuitBreaker,
    CircuitState,
    ResilientTransport,
    RetryPolicy,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "DopplerProvider",
    "EnvProvider",
    "FileProvider",
    "FlatConfig",
    "Provider",
    "ResilientTransport",
    "RetryPolicy",
    "flatten_json",
    "health_check",
    "write_fallback_file",
]
