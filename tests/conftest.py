"""Pytest fixtures and configuration for finmail tests.

Provides common fixtures for configuration, database, and seeded users.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from finmail.config import reset_config
from finmail.config_schema import AppConfig
from finmail.db.store import DatabaseStore, User


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

google:
  client_id: "test-client-id"

gmail:
  max_results: 50

batch:
  item_delay_ms: 0
"""


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a valid config as a dictionary, pointing into data_dir."""
    return {
        "schema_version": 1,
        "google": {"client_id": "test-client-id", "client_secret": "test-secret"},
        "gmail": {"max_results": 50},
        "batch": {"item_delay_ms": 0, "max_items": 100},
        "database": {"path": str(data_dir / "finmail.db")},
        "export": {"directory": str(data_dir / "exports"), "default_format": "csv"},
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
    """Set the FINMAIL_CONFIG_PATH environment variable."""
    old_value = os.environ.get("FINMAIL_CONFIG_PATH")
    os.environ["FINMAIL_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["FINMAIL_CONFIG_PATH"]
    else:
        os.environ["FINMAIL_CONFIG_PATH"] = old_value


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
async def user(store: DatabaseStore) -> User:
    """A user with Gmail tokens."""
    return await store.upsert_user(
        email="owner@example.com",
        google_id="google-123",
        access_token="access-token",
        refresh_token="refresh-token",
    )
