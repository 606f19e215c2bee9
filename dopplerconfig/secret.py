"""Redaction-on-display wrapper for sensitive configuration values."""

from typing import Any

from pydantic import GetCoreSchemaHandler, GetJsonSchemaHandler
from pydantic.json_schema import JsonSchemaValue
from pydantic_core import core_schema

REDACTED = "[REDACTED]"
EMPTY = "[empty]"


class SecretValue:
    """A string that never shows its content when rendered.

    ``str``, ``repr``, ``format`` and pydantic serialization all produce
    ``[REDACTED]`` (or ``[empty]`` when the value is unset). The raw value is
    only reachable through :meth:`get_secret_value`.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str = "") -> None:
        self._value = value

    def get_secret_value(self) -> str:
        """Return the raw secret."""
        return self._value

    def __str__(self) -> str:
        return REDACTED if self._value else EMPTY

    def __repr__(self) -> str:
        return f"SecretValue('{self}')"

    def __format__(self, format_spec: str) -> str:
        return format(str(self), format_spec)

    def __bool__(self) -> bool:
        return bool(self._value)

    def __len__(self) -> int:
        return len(self._value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)

    @classmethod
    def _validate(cls, value: Any) -> "SecretValue":
        if isinstance(value, SecretValue):
            return value
        if isinstance(value, str):
            return cls(value)
        raise ValueError(f"expected str or SecretValue, got {type(value).__name__}")

    @classmethod
    def __get_pydantic_core_schema__(
        cls, _source_type: Any, _handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(
                str, when_used="always"
            ),
        )

    @classmethod
    def __get_pydantic_json_schema__(
        cls, _core_schema: core_schema.CoreSchema, _handler: GetJsonSchemaHandler
    ) -> JsonSchemaValue:
        return {"type": "string", "writeOnly": True, "format": "password"}
