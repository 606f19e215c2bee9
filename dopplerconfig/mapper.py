"""Maps flat string key/value sources onto typed config models.

The mapper is driven by the cached schema of the model (see
``dopplerconfig.schema``). Missing required values abort the mapping; values
that cannot be coerced are reported as warnings and leave the field at its
zero value.
"""

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from dopplerconfig.errors import MissingRequiredFieldError
from dopplerconfig.observability.logging import get_logger
from dopplerconfig.observability.metrics import MAPPING_WARNINGS
from dopplerconfig.schema import FieldDescriptor, FieldKind, ModelSchema, build_schema
from dopplerconfig.secret import SecretValue

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_INT_RE = re.compile(r"[+-]?\d+")
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_DURATION_UNITS: dict[str, float] = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}

_TRUE_VALUES = frozenset({"true", "t", "yes", "y", "on", "enabled", "1"})
_FALSE_VALUES = frozenset({"false", "f", "no", "n", "off", "disabled", "0"})


@dataclass
class MappingResult(Generic[T]):
    """A mapped config object plus the non-fatal problems found."""

    config: T
    warnings: list[str] = field(default_factory=list)


def _to_timedelta(value: str, **amount: float) -> timedelta:
    try:
        return timedelta(**amount)
    except OverflowError:
        raise ValueError(f"duration out of range {value!r}") from None


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "300ms", "1.5s", "1h30m" or "-2m".

    A bare integer is read as whole seconds.

    Raises:
        ValueError: If the text is not a duration or is out of range
    """
    text = value.strip()
    if _INT_RE.fullmatch(text):
        return _to_timedelta(value, seconds=int(text))

    sign = 1
    body = text
    if body[:1] in ("+", "-"):
        sign = -1 if body[0] == "-" else 1
        body = body[1:]

    if not body:
        raise ValueError(f"invalid duration {value!r}")

    micros = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(body):
        if match.start() != pos:
            break
        micros += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(body):
        raise ValueError(f"invalid duration {value!r}")

    return _to_timedelta(value, microseconds=sign * micros)


def format_duration(value: timedelta) -> str:
    """Render a timedelta in the form accepted by :func:`parse_duration`."""
    micros = round(value / timedelta(microseconds=1))
    if micros == 0:
        return "0s"

    sign = "-" if micros < 0 else ""
    micros = abs(micros)

    if micros < 1_000_000:
        if micros % 1_000 == 0:
            return f"{sign}{micros // 1_000}ms"
        return f"{sign}{micros}us"

    hours, rest = divmod(micros, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    whole, fraction = divmod(rest, 1_000_000)

    seconds = str(whole)
    if fraction:
        seconds += "." + f"{fraction:06d}".rstrip("0")

    parts = [sign]
    if hours:
        parts.append(f"{hours}h")
    if hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return "".join(parts)


def _parse_int(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError(f"invalid int value {value!r}")
    return int(value)


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"invalid float value {value!r}") from None


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value {value!r}")


def _parse_list(value: str) -> list[str]:
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",")]


_COERCERS: dict[FieldKind, Callable[[str], Any]] = {
    FieldKind.STRING: str,
    FieldKind.INT: _parse_int,
    FieldKind.FLOAT: _parse_float,
    FieldKind.BOOL: _parse_bool,
    FieldKind.DURATION: parse_duration,
    FieldKind.STRING_LIST: _parse_list,
    FieldKind.SECRET: SecretValue,
}


def coerce(kind: FieldKind, value: str) -> Any:
    """Convert a raw string to the Python value of the given kind.

    Raises:
        ValueError: If the string is not valid for the kind
    """
    return _COERCERS[kind](value)


def _resolve(descriptor: FieldDescriptor, values: Mapping[str, str]) -> str:
    assert descriptor.key is not None
    raw = values.get(descriptor.key, "")
    if raw == "" and descriptor.default is not None:
        raw = descriptor.default
    if raw == "" and descriptor.required:
        raise MissingRequiredFieldError(descriptor.path, descriptor.key)
    return raw


def _construct(schema: ModelSchema, values: Mapping[str, str], warnings: list[str]) -> BaseModel:
    data: dict[str, Any] = {}

    for descriptor in schema.fields:
        if descriptor.nested is not None:
            data[descriptor.name] = _construct(descriptor.nested, values, warnings)
            continue

        raw = _resolve(descriptor, values)
        if raw == "":
            data[descriptor.name] = descriptor.zero()
            continue

        try:
            data[descriptor.name] = coerce(descriptor.kind, raw)
        except ValueError as exc:
            warnings.append(f"failed to set {descriptor.path}: {exc}")
            data[descriptor.name] = descriptor.zero()

    return schema.model.model_construct(**data)


def map_values(model: type[T], values: Mapping[str, str]) -> MappingResult[T]:
    """Build a config object of ``model`` from a flat key/value map.

    Raises:
        MissingRequiredFieldError: If a required field has no value or default
        ConfigSchemaError: If the model cannot be mapped at all
    """
    schema = build_schema(model)
    warnings: list[str] = []
    config = _construct(schema, values, warnings)

    if warnings:
        MAPPING_WARNINGS.labels(model=model.__name__).inc(len(warnings))
        for warning in warnings:
            logger.warning("config_field_coercion_failed", model=model.__name__, detail=warning)

    return MappingResult(config=config, warnings=warnings)  # type: ignore[arg-type]


def _render(kind: FieldKind, value: Any) -> str:
    if kind == FieldKind.BOOL:
        return "true" if value else "false"
    if kind == FieldKind.DURATION:
        return format_duration(value)
    if kind == FieldKind.STRING_LIST:
        return ",".join(value)
    if kind == FieldKind.SECRET:
        return value.get_secret_value()
    if kind == FieldKind.FLOAT:
        return repr(value)
    return str(value)


def dump_values(config: BaseModel, keys: Iterable[str] | None = None) -> dict[str, str]:
    """Serialize a config object back into a flat key/value map.

    Args:
        config: Config object built by :func:`map_values`
        keys: If given, only these source keys are emitted

    Secrets are emitted in clear text; the result is meant for fallback
    files and tests, not for logs.
    """
    wanted = set(keys) if keys is not None else None
    result: dict[str, str] = {}

    def walk(schema: ModelSchema, obj: BaseModel) -> None:
        for descriptor in schema.fields:
            value = getattr(obj, descriptor.name)
            if descriptor.nested is not None:
                walk(descriptor.nested, value)
                continue
            assert descriptor.key is not None
            if value is None or (wanted is not None and descriptor.key not in wanted):
                continue
            result[descriptor.key] = _render(descriptor.kind, value)

    walk(build_schema(type(config)), config)
    return result
