"""Declarative validation of mapped config objects.

Rules are declared on fields with ``Setting(validate=...)`` and checked in a
single pass over the whole object tree. Every violation is collected; nothing
fails fast. Models may add cross-field checks by defining
``validate_config(self)``.
"""

import ipaddress
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel

from dopplerconfig.errors import ConfigValidationError
from dopplerconfig.schema import FieldDescriptor, ModelSchema, Rule, build_schema
from dopplerconfig.secret import REDACTED, SecretValue

_INT_RE = re.compile(r"[+-]?\d+")
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*$")
_LABEL_RE = re.compile(r"[a-zA-Z0-9-]{1,63}")

MAX_HOSTNAME_LENGTH = 253


@dataclass(frozen=True)
class FieldError:
    """A single validation failure."""

    field: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"{self.field}: {self.message} (value: {self.value})"


class RegexCache:
    """Thread-safe cache of compiled patterns keyed by pattern text."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._patterns: dict[str, re.Pattern[str]] = {}

    def get(self, pattern: str) -> re.Pattern[str]:
        """Return the compiled pattern, compiling it on first use.

        Raises:
            re.error: If the pattern is invalid
        """
        with self._lock:
            compiled = self._patterns.get(pattern)
            if compiled is None:
                compiled = re.compile(pattern)
                self._patterns[pattern] = compiled
            return compiled

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    def clear(self) -> None:
        with self._lock:
            self._patterns.clear()


def _is_empty(value: Any) -> bool:
    return value is None or not value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, SecretValue):
        return value.get_secret_value()
    if isinstance(value, list):
        return ",".join(str(item) for item in value)
    return str(value)


def _is_valid_hostname(host: str) -> bool:
    if not host or len(host) > MAX_HOSTNAME_LENGTH:
        return False
    for label in host.split("."):
        if not _LABEL_RE.fullmatch(label):
            return False
        if label.startswith("-") or label.endswith("-"):
            return False
    return True


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _is_port_digits(text: str) -> bool:
    return text.isascii() and text.isdigit()


def _split_host_port(value: str) -> str | None:
    """Strip an optional numeric port. Returns None if the form is invalid."""
    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            return None
        host, rest = value[1:end], value[end + 1 :]
        if rest and not (rest.startswith(":") and _is_port_digits(rest[1:])):
            return None
        return host if _is_ip(host) else None

    if value.count(":") == 1:
        host, _, port = value.partition(":")
        if not _is_port_digits(port):
            return None
        return host

    if ":" in value:
        # Bare IPv6 literal
        return value if _is_ip(value) else None

    return value


class Validator:
    """Checks config objects against their declared rules.

    Example:
        validator = Validator()
        errors = validator.collect(config)
        validator.validate(config)  # raises ConfigValidationError
    """

    def __init__(self, regex_cache: RegexCache | None = None) -> None:
        self._regex_cache = regex_cache or RegexCache()
        self._rules: dict[str, Callable[[Rule, Any, str], FieldError | None]] = {
            "min": self._check_min,
            "max": self._check_max,
            "port": self._check_port,
            "url": self._check_url,
            "host": self._check_host,
            "email": self._check_email,
            "oneof": self._check_oneof,
            "regex": self._check_regex,
        }

    @property
    def regex_cache(self) -> RegexCache:
        return self._regex_cache

    def validate(self, config: BaseModel) -> None:
        """Validate a config object.

        Raises:
            ConfigValidationError: With every violation found
        """
        errors = self.collect(config)
        if errors:
            raise ConfigValidationError(errors)

    def collect(self, config: BaseModel) -> list[FieldError]:
        """Return every violation found in the config object tree."""
        errors: list[FieldError] = []
        self._walk(build_schema(type(config)), config, "", errors)
        return errors

    def _walk(
        self, schema: ModelSchema, obj: BaseModel, prefix: str, errors: list[FieldError]
    ) -> None:
        for descriptor in schema.fields:
            value = getattr(obj, descriptor.name, None)
            if descriptor.nested is not None:
                if isinstance(value, BaseModel):
                    self._walk(descriptor.nested, value, f"{descriptor.path}.", errors)
                continue
            self._check_field(descriptor, value, errors)

        self._run_hook(obj, prefix, errors)

    def _check_field(
        self, descriptor: FieldDescriptor, value: Any, errors: list[FieldError]
    ) -> None:
        if _is_empty(value):
            if descriptor.required:
                errors.append(
                    FieldError(descriptor.path, "required field is missing or empty")
                )
            return

        for rule in descriptor.rules:
            error = self._rules[rule.name](rule, value, descriptor.path)
            if error is None:
                continue
            if descriptor.secret and error.value is not None:
                error = FieldError(error.field, error.message, REDACTED)
            errors.append(error)

    @staticmethod
    def _run_hook(obj: BaseModel, prefix: str, errors: list[FieldError]) -> None:
        hook = getattr(obj, "validate_config", None)
        if not callable(hook):
            return
        try:
            result = hook()
        except ConfigValidationError as exc:
            errors.extend(exc.errors)
            return
        except Exception as exc:
            errors.append(FieldError(f"{prefix}custom", str(exc)))
            return
        if result:
            errors.extend(result)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def _measure(value: Any) -> int | float | None:
        if _is_number(value):
            return value
        if isinstance(value, timedelta):
            return value.total_seconds()
        if isinstance(value, (str, list, SecretValue)):
            return len(value)
        return None

    def _check_bound(self, rule: Rule, value: Any, path: str, lower: bool) -> FieldError | None:
        param = (rule.param or "").strip()
        if not _INT_RE.fullmatch(param):
            return FieldError(
                path,
                f"invalid {rule.name} validation parameter: {param!r} is not a valid integer",
                param,
            )
        limit = int(param)
        measured = self._measure(value)
        if measured is None:
            return None
        if lower and measured < limit:
            return FieldError(path, f"must be at least {limit}", measured)
        if not lower and measured > limit:
            return FieldError(path, f"must be at most {limit}", measured)
        return None

    def _check_min(self, rule: Rule, value: Any, path: str) -> FieldError | None:
        return self._check_bound(rule, value, path, lower=True)

    def _check_max(self, rule: Rule, value: Any, path: str) -> FieldError | None:
        return self._check_bound(rule, value, path, lower=False)

    @staticmethod
    def _check_port(rule: Rule, value: Any, path: str) -> FieldError | None:
        if isinstance(value, str):
            if not _INT_RE.fullmatch(value.strip()):
                return FieldError(path, "invalid port number", value)
            port = int(value)
        elif isinstance(value, int) and not isinstance(value, bool):
            port = value
        else:
            return None
        if not 1 <= port <= 65535:
            return FieldError(path, "port must be between 1 and 65535", port)
        return None

    @staticmethod
    def _check_url(rule: Rule, value: Any, path: str) -> FieldError | None:
        if not isinstance(value, str):
            return None
        try:
            parts = urlsplit(value)
        except ValueError:
            return FieldError(path, "invalid URL", value)
        if (
            any(ch.isspace() for ch in value)
            or not _SCHEME_RE.match(parts.scheme)
            or not (parts.netloc or parts.path)
        ):
            return FieldError(path, "invalid URL", value)
        return None

    @staticmethod
    def _check_host(rule: Rule, value: Any, path: str) -> FieldError | None:
        if not isinstance(value, str):
            return None
        host = _split_host_port(value)
        if host is None:
            return FieldError(path, "invalid host:port format", value)
        if _is_ip(host) or _is_valid_hostname(host):
            return None
        return FieldError(path, "invalid hostname", value)

    @staticmethod
    def _check_email(rule: Rule, value: Any, path: str) -> FieldError | None:
        if not isinstance(value, str):
            return None
        if not _EMAIL_RE.match(value):
            return FieldError(path, "invalid email address", value)
        return None

    @staticmethod
    def _check_oneof(rule: Rule, value: Any, path: str) -> FieldError | None:
        if isinstance(value, timedelta):
            return None
        options = (rule.param or "").split("|")
        text = _as_text(value)
        if text in options:
            return None
        return FieldError(path, f"must be one of: {rule.param}", text)

    def _check_regex(self, rule: Rule, value: Any, path: str) -> FieldError | None:
        if isinstance(value, SecretValue):
            text = value.get_secret_value()
        elif isinstance(value, str):
            text = value
        else:
            return None
        pattern = rule.param or ""
        try:
            compiled = self._regex_cache.get(pattern)
        except re.error:
            return FieldError(path, "invalid regex pattern", pattern)
        if not compiled.search(text):
            return FieldError(path, f"must match pattern: {pattern}", text)
        return None


_default_validator = Validator()


def validate_config(config: BaseModel) -> None:
    """Validate a config object with the shared default validator.

    Raises:
        ConfigValidationError: With every violation found
    """
    _default_validator.validate(config)


def collect_errors(config: BaseModel) -> list[FieldError]:
    """Return every violation found with the shared default validator."""
    return _default_validator.collect(config)

