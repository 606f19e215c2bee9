"""Exception hierarchy for configuration loading.

All exceptions inherit from ConfigError so callers can catch every failure
of the engine with one clause. Source errors abort the triggering operation,
mapping errors abort a load, validation errors are aggregated.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dopplerconfig.validation import FieldError


class ConfigError(Exception):
    """Base exception for all configuration errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Source errors
# ============================================================================


class SourceError(ConfigError):
    """A configuration source could not produce values."""


class DopplerError(SourceError):
    """The Doppler API answered with a non-success status."""

    def __init__(self, status_code: int, message: str, raw: str = "") -> None:
        super().__init__(f"doppler error {status_code}: {message}")
        self.status_code = status_code
        self.raw = raw


class FileSourceError(SourceError):
    """The local fallback file is missing, unreadable, or malformed."""


class CircuitOpenError(SourceError):
    """The circuit breaker is open and requests are rejected."""


class NoSourceError(SourceError):
    """Neither a remote token nor a fallback path was configured."""


# ============================================================================
# Mapping errors
# ============================================================================


class MappingError(ConfigError):
    """Fatal error while mapping flat values onto a config model."""


class MissingRequiredFieldError(MappingError):
    """A required field has no value and no default."""

    def __init__(self, field: str, key: str) -> None:
        super().__init__(f"required field {field} (key: {key}) not found")
        self.field = field
        self.key = key


class ConfigSchemaError(ConfigError):
    """A config model declares a field the mapper cannot handle."""


# ============================================================================
# Aggregate errors
# ============================================================================


class ConfigValidationError(ConfigError):
    """One or more validation rules failed.

    Carries every violation found in a single pass.
    """

    def __init__(self, errors: Sequence["FieldError"]) -> None:
        self.errors = list(errors)
        super().__init__(self._format(self.errors))

    @staticmethod
    def _format(errors: list["FieldError"]) -> str:
        if not errors:
            return "no validation errors"
        if len(errors) == 1:
            return str(errors[0])
        lines = [f"{len(errors)} validation errors:"]
        lines.extend(f"  {i}. {error}" for i, error in enumerate(errors, start=1))
        return "\n".join(lines)


class ProviderCloseError(ConfigError):
    """Closing one or more providers failed."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"close errors: {details}")
