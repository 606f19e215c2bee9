"""dopplerconfig: typed configuration loading and hot reload backed by Doppler.

Flat key/value secrets from Doppler (or a local JSON fallback file) are mapped
onto pydantic config models, validated against declarative rules, and kept
fresh by a background watcher. A multi-tenant loader manages one config per
tenant next to an environment-wide config.
"""

from dopplerconfig.bootstrap import BootstrapSettings, load_bootstrap
from dopplerconfig.errors import (
    CircuitOpenError,
    ConfigError,
    ConfigSchemaError,
    ConfigValidationError,
    DopplerError,
    FileSourceError,
    MappingError,
    MissingRequiredFieldError,
    NoSourceError,
    ProviderCloseError,
    SourceError,
)
from dopplerconfig.feature_flags import CommonFeatureFlags, FeatureFlags, RolloutConfig
from dopplerconfig.loader import ConfigLoader
from dopplerconfig.mapper import MappingResult, dump_values, map_values, parse_duration
from dopplerconfig.models import ConfigMetadata, FailurePolicy, ReloadDiff
from dopplerconfig.multitenant import MultiTenantLoader, MultiTenantWatcher
from dopplerconfig.providers import (
    DopplerProvider,
    EnvProvider,
    FileProvider,
    Provider,
    write_fallback_file,
)
from dopplerconfig.schema import Nested, Setting, build_schema
from dopplerconfig.secret import SecretValue
from dopplerconfig.validation import FieldError, RegexCache, Validator, validate_config
from dopplerconfig.watcher import ConfigWatcher, watch, watch_with_callback

__version__ = "0.1.0"

__all__ = [
    "BootstrapSettings",
    "CircuitOpenError",
    "CommonFeatureFlags",
    "ConfigError",
    "ConfigLoader",
    "ConfigMetadata",
    "ConfigSchemaError",
    "ConfigValidationError",
    "ConfigWatcher",
    "DopplerError",
    "DopplerProvider",
    "EnvProvider",
    "FailurePolicy",
    "FeatureFlags",
    "FieldError",
    "FileProvider",
    "FileSourceError",
    "MappingError",
    "MappingResult",
    "MissingRequiredFieldError",
    "MultiTenantLoader",
    "MultiTenantWatcher",
    "Nested",
    "NoSourceError",
    "Provider",
    "ProviderCloseError",
    "RegexCache",
    "ReloadDiff",
    "RolloutConfig",
    "SecretValue",
    "Setting",
    "SourceError",
    "Validator",
    "__version__",
    "build_schema",
    "dump_values",
    "load_bootstrap",
    "map_values",
    "parse_duration",
    "validate_config",
    "watch",
    "watch_with_callback",
    "write_fallback_file",
]
