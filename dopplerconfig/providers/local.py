"""Local configuration sources: JSON fallback file and process environment."""

import json
import os
from pathlib import Path
from typing import Any

from dopplerconfig.errors import FileSourceError
from dopplerconfig.providers.base import FlatConfig, Provider
from dopplerconfig.schema import KEY_SEPARATOR


def _render_scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def flatten_json(
    data: dict[str, Any], separator: str = KEY_SEPARATOR, prefix: str = ""
) -> FlatConfig:
    """Flatten a nested JSON object into a single-level string map.

    Nested keys are joined with ``separator``
    ({"server": {"port": 8080}} -> {"server_port": "8080"}). Arrays become
    comma-joined strings, null becomes "", booleans become "true"/"false",
    and integral numbers lose their fractional part.
    """
    result: FlatConfig = {}
    for key, value in data.items():
        full_key = f"{prefix}{separator}{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_json(value, separator, full_key))
        elif isinstance(value, list):
            result[full_key] = ",".join(_render_scalar(item) for item in value)
        else:
            result[full_key] = _render_scalar(value)
    return result


class FileProvider(Provider):
    """Provider reading configuration from a local JSON file.

    Used as a fallback when Doppler is unavailable or for local development.
    The file may be flat or nested; nested objects are flattened.
    """

    def __init__(self, path: str | Path, *, separator: str = KEY_SEPARATOR) -> None:
        self._path = Path(path)
        self._separator = separator

    @property
    def name(self) -> str:
        """Return the provider name."""
        return f"file:{self._path}"

    @property
    def path(self) -> Path:
        return self._path

    async def fetch_project(self, project: str | None, config: str | None) -> FlatConfig:
        """Read the file. Project/config are ignored for file sources."""
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise FileSourceError(f"fallback file not found: {self._path}") from exc
        except OSError as exc:
            raise FileSourceError(f"failed to read fallback file: {exc}") from exc

        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise FileSourceError(f"failed to parse fallback file: {exc}") from exc

        if not isinstance(data, dict):
            raise FileSourceError(
                f"failed to parse fallback file: expected a JSON object, got {type(data).__name__}"
            )

        return flatten_json(data, self._separator)


class EnvProvider(Provider):
    """Provider reading configuration from environment variables.

    If a prefix is set, only variables starting with it are included.
    """

    def __init__(self, prefix: str = "") -> None:
        self._prefix = prefix

    @property
    def name(self) -> str:
        """Return the provider name."""
        if self._prefix:
            return f"env:{self._prefix}*"
        return "env"

    async def fetch_project(self, project: str | None, config: str | None) -> FlatConfig:
        """Snapshot the environment. Project/config are ignored."""
        return {
            key: value
            for key, value in os.environ.items()
            if not self._prefix or key.startswith(self._prefix)
        }


def write_fallback_file(path: str | Path, values: FlatConfig) -> None:
    """Write a flat map as a fallback file readable by FileProvider.

    Useful for creating local development files or caching Doppler values.
    The file is created with owner-only permissions.
    """
    file_path = Path(path)
    data = json.dumps(values, indent=2, sort_keys=True)
    try:
        fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.chmod(file_path, 0o600)
    except OSError as exc:
        raise FileSourceError(f"failed to write fallback file: {exc}") from exc
