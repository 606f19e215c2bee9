"""Observability: structured logging and metrics.

Provides standardized observability primitives using structlog for logging
and Prometheus for metrics.
"""

from dopplerconfig.observability.logging import SecretRedactor, get_logger, setup_logging

__all__ = ["SecretRedactor", "get_logger", "setup_logging"]
