"""Shared test fixtures for the dopplerconfig test suite."""

import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from dopplerconfig.testing import MockProvider


@pytest.fixture
def clean_doppler_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every DOPPLER_* variable from the environment."""
    for key in list(os.environ):
        if key.upper().startswith("DOPPLER_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def write_json(tmp_path: Path) -> Callable[[str, Any], Path]:
    """Factory fixture to write JSON files in a temporary directory.

    Usage:
        def test_something(write_json):
            path = write_json("fallback.json", {"PORT": "8080"})
    """

    def _write(filename: str, data: Any) -> Path:
        path = tmp_path / filename
        path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture
def mock_provider() -> MockProvider:
    """Create a mock provider with a minimal value set."""
    return MockProvider({"PORT": "9000", "NAME": "svc"})


@pytest.fixture
def fallback_provider() -> MockProvider:
    """Create a second mock provider used as fallback."""
    return MockProvider({"PORT": "7000", "NAME": "from-fallback"}, name="fallback")
