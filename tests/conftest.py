"""Pytest fixtures and configuration for job tracker tests.

Provides common fixtures for configuration loading and app config objects.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from jobtracker.config import reset_config
from jobtracker.config_schema import AppConfig


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

inference:
  classify_url: "https://models.test/classify"
  extract_url: "https://models.test/extract"

pipeline:
  confidence_threshold: 0.5
  excluded_senders: []
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary.

    Delays are zeroed so pipeline tests do not sleep.
    """
    return {
        "schema_version": 1,
        "gmail": {
            "chunk_delay_seconds": 0.0,
        },
        "inference": {
            "classify_url": "https://models.test/classify",
            "extract_url": "https://models.test/extract",
            "batch_delay_seconds": 0.0,
        },
        "pipeline": {
            "confidence_threshold": 0.5,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the JOBTRACKER_CONFIG_PATH environment variable."""
    old_value = os.environ.get("JOBTRACKER_CONFIG_PATH")
    os.environ["JOBTRACKER_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["JOBTRACKER_CONFIG_PATH"]
    else:
        os.environ["JOBTRACKER_CONFIG_PATH"] = old_value
