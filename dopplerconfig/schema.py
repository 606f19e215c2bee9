"""Declarative field schema for config models.

Config models are pydantic models whose fields carry mapping metadata through
``typing.Annotated``:

    class RedisConfig(BaseModel):
        host: Annotated[str, Setting("REDIS_HOST", default="localhost", validate="host")] = ""
        password: Annotated[SecretValue, Setting("REDIS_PASSWORD")] = SecretValue()

    class AppConfig(BaseModel):
        port: Annotated[int, Setting("PORT", default="8080", validate="port")] = 0
        redis: RedisConfig = Field(default_factory=RedisConfig)

The Python default of each field is its zero value; ``Setting.default`` is the
string substituted when the source has no value.

Key rules:
- An explicit ``Setting`` key is used as-is, prefixed only by the
  ``Nested(prefix=...)`` prefixes of enclosing fields.
- A field without an explicit key uses ``<prefix><a>_<b>``, where the path
  is the attribute names below the nearest prefixed level (or the root)
  joined by ``KEY_SEPARATOR``. ``flatten_json`` joins nested file keys the
  same way, so a nested fallback file fills untagged nested fields.
- ``Nested(embed=True)`` adds neither a path segment nor a prefix.

Schemas are built once per model class and cached.
"""

import types
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from functools import cache
from typing import Any, Union, get_args, get_origin

from pydantic import BaseModel
from pydantic.fields import FieldInfo

from dopplerconfig.errors import ConfigSchemaError
from dopplerconfig.secret import SecretValue

KNOWN_RULES: frozenset[str] = frozenset(
    {"min", "max", "port", "url", "host", "email", "oneof", "regex"}
)

KEY_SEPARATOR = "_"


@dataclass(frozen=True)
class Setting:
    """Mapping metadata for a leaf field.

    Args:
        key: Source key in the flat map (defaults to the field path)
        default: String used when the source value is absent or empty
        required: Fail the load if no value or default is available
        secret: Redact the value in dumps and validation errors
        validate: Rule list, e.g. "port" or "min=1,max=10" or ["regex=^a,b$"]
        description: Human-readable documentation
    """

    key: str | None = None
    default: str | None = None
    required: bool = False
    secret: bool = False
    validate: str | Sequence[str] | None = None
    description: str | None = None


@dataclass(frozen=True)
class Nested:
    """Mapping metadata for a nested config model field.

    Args:
        prefix: Prepended to every source key inside the nested model
        embed: Treat the nested fields as if declared on the parent
    """

    prefix: str = ""
    embed: bool = False


class FieldKind(str, Enum):
    """Value kinds the mapper knows how to coerce."""

    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    DURATION = "duration"
    STRING_LIST = "string_list"
    SECRET = "secret"
    NESTED = "nested"


@dataclass(frozen=True)
class Rule:
    """One declarative validation rule."""

    name: str
    param: str | None = None


@dataclass(frozen=True, eq=False)
class FieldDescriptor:
    """Per-field mapping and validation metadata."""

    name: str
    path: str
    kind: FieldKind
    key: str | None = None
    default: str | None = None
    required: bool = False
    secret: bool = False
    rules: tuple[Rule, ...] = ()
    description: str | None = None
    nested: "ModelSchema | None" = None
    field_info: FieldInfo | None = field(default=None, repr=False)

    def zero(self) -> Any:
        """Value the field takes when the source provides nothing."""
        if self.field_info is not None and not self.field_info.is_required():
            return self.field_info.get_default(call_default_factory=True)
        return _KIND_ZERO[self.kind]()


@dataclass(frozen=True, eq=False)
class ModelSchema:
    """Ordered field descriptors of one config model."""

    model: type[BaseModel]
    fields: tuple[FieldDescriptor, ...]

    def leaves(self) -> list[FieldDescriptor]:
        """All leaf descriptors, depth first."""
        result: list[FieldDescriptor] = []
        for descriptor in self.fields:
            if descriptor.nested is not None:
                result.extend(descriptor.nested.leaves())
            else:
                result.append(descriptor)
        return result


_KIND_ZERO: dict[FieldKind, Callable[[], Any]] = {
    FieldKind.STRING: str,
    FieldKind.INT: int,
    FieldKind.FLOAT: float,
    FieldKind.BOOL: bool,
    FieldKind.DURATION: timedelta,
    FieldKind.STRING_LIST: list,
    FieldKind.SECRET: SecretValue,
}

_SCALAR_KINDS: dict[Any, FieldKind] = {
    str: FieldKind.STRING,
    int: FieldKind.INT,
    float: FieldKind.FLOAT,
    bool: FieldKind.BOOL,
    timedelta: FieldKind.DURATION,
    SecretValue: FieldKind.SECRET,
}


def parse_rules(declared: str | Sequence[str] | None) -> tuple[Rule, ...]:
    """Parse a validation rule list.

    A string is split on commas; ``regex=`` consumes the rest of the string
    since patterns may contain commas. A sequence holds one rule per item.

    Raises:
        ConfigSchemaError: For unknown rule names
    """
    if not declared:
        return ()

    tokens: list[str] = []
    if isinstance(declared, str):
        remaining = declared
        while remaining:
            stripped = remaining.lstrip()
            if stripped.startswith("regex="):
                tokens.append(stripped)
                break
            head, _, remaining = remaining.partition(",")
            tokens.append(head)
    else:
        tokens = list(declared)

    rules: list[Rule] = []
    for token in tokens:
        token = token.strip()
        if not token:
            continue
        name, sep, param = token.partition("=")
        name = name.strip()
        if name not in KNOWN_RULES:
            raise ConfigSchemaError(f"unknown validation rule: {name!r}")
        rules.append(Rule(name=name, param=param if sep else None))
    return tuple(rules)


def _unwrap_optional(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def _leaf_kind(annotation: Any, path: str) -> FieldKind:
    if annotation in _SCALAR_KINDS:
        return _SCALAR_KINDS[annotation]
    if get_origin(annotation) is list and get_args(annotation) == (str,):
        return FieldKind.STRING_LIST
    raise ConfigSchemaError(f"unsupported type for field {path}: {annotation!r}")


def _find_metadata(info: FieldInfo, kind: type) -> Any:
    for item in info.metadata:
        if isinstance(item, kind):
            return item
    return None


def _build(
    model: type[BaseModel], key_prefix: str, name_path: str, attr_path: str
) -> ModelSchema:
    descriptors: list[FieldDescriptor] = []

    for name, info in model.model_fields.items():
        path = f"{attr_path}{name}"
        annotation = _unwrap_optional(info.annotation)
        setting = _find_metadata(info, Setting)
        nested = _find_metadata(info, Nested)

        if _is_model(annotation):
            if setting is not None:
                raise ConfigSchemaError(
                    f"field {path} is a nested model and cannot carry a Setting"
                )
            nested = nested or Nested()
            if nested.embed:
                child_prefix, child_names = key_prefix, name_path
            elif nested.prefix:
                child_prefix, child_names = key_prefix + nested.prefix, ""
            else:
                child_prefix, child_names = key_prefix, f"{name_path}{name}{KEY_SEPARATOR}"
            descriptors.append(
                FieldDescriptor(
                    name=name,
                    path=path,
                    kind=FieldKind.NESTED,
                    nested=_build(annotation, child_prefix, child_names, f"{path}."),
                    field_info=info,
                )
            )
            continue

        if nested is not None:
            raise ConfigSchemaError(f"field {path} is not a model and cannot be Nested")

        setting = setting or Setting()
        kind = _leaf_kind(annotation, path)
        key = key_prefix + (setting.key or f"{name_path}{name}")
        descriptors.append(
            FieldDescriptor(
                name=name,
                path=path,
                kind=kind,
                key=key,
                default=setting.default,
                required=setting.required,
                secret=setting.secret or kind == FieldKind.SECRET,
                rules=parse_rules(setting.validate),
                description=setting.description or info.description,
                field_info=info,
            )
        )

    return ModelSchema(model=model, fields=tuple(descriptors))


@cache
def build_schema(model: type[BaseModel]) -> ModelSchema:
    """Build (once) and return the field schema of a config model.

    Raises:
        ConfigSchemaError: If the model declares unsupported fields or rules
    """
    if not _is_model(model):
        raise ConfigSchemaError(f"config model must be a pydantic BaseModel, got {model!r}")
    return _build(model, key_prefix="", name_path="", attr_path="")
