"""finmail configuration: config/config.yaml validated into AppConfig.

FINMAIL_CONFIG_PATH overrides the file location. The loaded config is cached
process-wide; the batch worker calls reload_config_if_changed() before each
job so edits to item_delay_ms or max_items apply without a restart.

Usage:
    from finmail.config import get_config, reload_config_if_changed

    config = get_config()
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from finmail.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from finmail.core.errors import ConfigLoadError, ConfigValidationError
from finmail.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "FINMAIL_CONFIG_PATH"

_FIELD_HINTS = {
    "missing": "is required",
    "string_type": "must be a string",
    "int_type": "must be an integer",
    "int_parsing": "must be an integer",
    "bool_type": "must be true or false",
    "bool_parsing": "must be true or false",
}


@dataclass
class _Cached:
    config: AppConfig
    path: Path
    mtime: float


_lock = threading.Lock()
_cached: _Cached | None = None


def config_path() -> Path:
    """The config file in use: $FINMAIL_CONFIG_PATH or config/config.yaml."""
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _describe(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        field = ".".join(str(loc) for loc in err["loc"])
        lines.append(f"  - {field}: {_FIELD_HINTS.get(err['type'], err['msg'])}")
    return "\n".join(lines)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} and fill in the google section."
        )
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"{path} must hold a YAML mapping, got {type(data).__name__}")
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file, bypassing the cache.

    Raises:
        ConfigLoadError: If the file is missing or is not a YAML mapping
        ConfigValidationError: If a field is invalid or the schema version is too new
    """
    path = path or config_path()
    try:
        config = AppConfig(**_read_yaml(path))
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration in {path}:\n{_describe(e)}") from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{path} uses config schema version {config.schema_version}, newer than the "
            f"version {CURRENT_SCHEMA_VERSION} this finmail release reads. Upgrade finmail."
        )

    logger.info(
        "config_loaded",
        path=str(path),
        schema_version=config.schema_version,
        database=config.database.path,
        item_delay_ms=config.batch.item_delay_ms,
    )
    return config


def get_config() -> AppConfig:
    """The cached config, loaded from disk on first use."""
    global _cached
    with _lock:
        if _cached is None:
            path = config_path()
            config = load_config(path)
            _cached = _Cached(config=config, path=path, mtime=path.stat().st_mtime)
        return _cached.config


def reload_config_if_changed() -> bool:
    """Reload the cached config when its file's mtime moved.

    An invalid edit keeps the previous config and is not retried until the
    file changes again.

    Returns:
        True if a new config was loaded
    """
    with _lock:
        if _cached is None:
            return False

        try:
            mtime = _cached.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_stat_failed", path=str(_cached.path), error=str(e))
            return False
        if mtime <= _cached.mtime:
            return False

        _cached.mtime = mtime
        try:
            _cached.config = load_config(_cached.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_cached.path), error=str(e))
            return False
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file for the validate-config command.

    Returns:
        (is_valid, message)
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    return True, (
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - database: {config.database.path}\n"
        f"  - exports: {config.export.directory}\n"
        f"  - {len(config.gmail.financial_queries)} financial queries\n"
        f"  - batch item delay: {config.batch.item_delay_ms}ms"
    )


def reset_config() -> None:
    """Drop the cached config (tests)."""
    global _cached
    with _lock:
        _cached = None
