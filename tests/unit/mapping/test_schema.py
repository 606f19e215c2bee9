"""Tests for config model schema building."""

from typing import Annotated

import pytest
from pydantic import BaseModel, Field

from dopplerconfig.errors import ConfigSchemaError
from dopplerconfig.schema import FieldKind, Nested, Rule, Setting, build_schema, parse_rules
from dopplerconfig.secret import SecretValue


class RedisConfig(BaseModel):
    host: Annotated[str, Setting("HOST", default="localhost")] = ""
    db: int = 0


class CommonConfig(BaseModel):
    log_level: Annotated[str, Setting("LOG_LEVEL", default="info")] = ""


class DatabaseConfig(BaseModel):
    url: Annotated[str, Setting("DATABASE_URL", required=True)] = ""
    pool_size: int = 0


class ServiceConfig(BaseModel):
    port: Annotated[int, Setting("PORT", validate="port")] = 0
    password: Annotated[SecretValue, Setting("PASSWORD")] = SecretValue()
    redis: Annotated[RedisConfig, Nested(prefix="REDIS_")] = Field(default_factory=RedisConfig)
    common: Annotated[CommonConfig, Nested(embed=True)] = Field(default_factory=CommonConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)


def keys_by_path(model: type[BaseModel]) -> dict[str, str | None]:
    return {leaf.path: leaf.key for leaf in build_schema(model).leaves()}


class TestKeyRules:
    """Tests for source key resolution."""

    def test_explicit_and_derived_keys(self) -> None:
        """Should apply prefixes, joined paths, and embedding consistently."""
        assert keys_by_path(ServiceConfig) == {
            "port": "PORT",
            "password": "PASSWORD",
            "redis.host": "REDIS_HOST",
            "redis.db": "REDIS_db",
            "common.log_level": "LOG_LEVEL",
            "database.url": "DATABASE_URL",
            "database.pool_size": "database_pool_size",
        }

    def test_nested_prefixes_accumulate(self) -> None:
        """Should stack prefixes of enclosing nested fields."""

        class Outer(BaseModel):
            cache: Annotated[
                ServiceConfig, Nested(prefix="CACHE_")
            ] = Field(default_factory=ServiceConfig)

        keys = keys_by_path(Outer)

        assert keys["cache.port"] == "CACHE_PORT"
        assert keys["cache.redis.host"] == "CACHE_REDIS_HOST"
        assert keys["cache.database.pool_size"] == "CACHE_database_pool_size"

    def test_inherited_fields(self) -> None:
        """Should include fields declared on base models."""

        class Extended(CommonConfig):
            region: Annotated[str, Setting("REGION")] = ""

        assert keys_by_path(Extended) == {"log_level": "LOG_LEVEL", "region": "REGION"}


class TestDescriptors:
    """Tests for field descriptor contents."""

    def test_kinds_and_flags(self) -> None:
        """Should record kind, default, required, and secret flags."""
        leaves = {leaf.path: leaf for leaf in build_schema(ServiceConfig).leaves()}

        assert leaves["port"].kind == FieldKind.INT
        assert leaves["port"].rules == (Rule("port"),)
        assert leaves["password"].kind == FieldKind.SECRET
        assert leaves["password"].secret
        assert leaves["redis.host"].default == "localhost"
        assert leaves["database.url"].required

    def test_optional_unwrapped(self) -> None:
        """Should treat X | None as X."""

        class WithOptional(BaseModel):
            retries: Annotated[int | None, Setting("RETRIES")] = None

        (leaf,) = build_schema(WithOptional).leaves()
        assert leaf.kind == FieldKind.INT
        assert leaf.zero() is None

    def test_schema_cached(self) -> None:
        """Should build each model's schema once."""
        assert build_schema(ServiceConfig) is build_schema(ServiceConfig)


class TestSchemaErrors:
    """Tests for invalid model declarations."""

    def test_unsupported_type(self) -> None:
        """Should reject types the mapper cannot coerce."""

        class Bad(BaseModel):
            weights: dict[str, int] = {}

        with pytest.raises(ConfigSchemaError, match="unsupported type"):
            build_schema(Bad)

    def test_unknown_rule(self) -> None:
        """Should reject unknown validation rules at schema build time."""

        class Bad(BaseModel):
            name: Annotated[str, Setting("NAME", validate="uppercase")] = ""

        with pytest.raises(ConfigSchemaError, match="unknown validation rule"):
            build_schema(Bad)

    def test_setting_on_nested_model(self) -> None:
        """Should reject Setting metadata on nested models."""

        class Bad(BaseModel):
            redis: Annotated[RedisConfig, Setting("REDIS")] = Field(default_factory=RedisConfig)

        with pytest.raises(ConfigSchemaError):
            build_schema(Bad)

    def test_not_a_model(self) -> None:
        """Should reject non-model types."""
        with pytest.raises(ConfigSchemaError):
            build_schema(dict)  # type: ignore[arg-type]


class TestParseRules:
    """Tests for rule list parsing."""

    def test_comma_separated(self) -> None:
        """Should split rules and parameters."""
        assert parse_rules("min=1, max=10,port") == (
            Rule("min", "1"),
            Rule("max", "10"),
            Rule("port"),
        )

    def test_regex_keeps_commas(self) -> None:
        """Should let a trailing regex rule contain commas."""
        assert parse_rules("min=2,regex=^[a-z]{1,3}$") == (
            Rule("min", "2"),
            Rule("regex", "^[a-z]{1,3}$"),
        )

    def test_sequence_form(self) -> None:
        """Should accept one rule per item."""
        assert parse_rules(["regex=a,b", "min=1"]) == (Rule("regex", "a,b"), Rule("min", "1"))

    def test_empty(self) -> None:
        """Should return no rules for empty input."""
        assert parse_rules(None) == ()
        assert parse_rules("") == ()
