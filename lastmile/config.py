"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. explicit path passed to load_config()
2. ./lastmile.yaml (working directory)
3. ~/.lastmile/config.yaml (user home)

Environment variables override YAML: LASTMILE_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, field_validator

from lastmile.utils.paths import get_user_config_dir

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """Store connection settings.

    url=None defers to DATABASE_URL / LASTMILE_DB_PATH / the platform
    data directory (see lastmile.db.connection.get_database_url).
    """

    url: str | None = None
    echo: bool = False
    busy_timeout_seconds: int = 30


class SnapshotConfig(BaseModel):
    """Snapshot log settings."""

    business_timezone: str = "UTC"
    default_page_size: int = 50

    @field_validator("business_timezone")
    @classmethod
    def known_timezone(cls, value: str) -> str:
        """Reject timezone names zoneinfo cannot resolve."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value


class TaskConfig(BaseModel):
    """Manual coordination task settings."""

    default_page_size: int = 50
    schedule_initial_reminder: bool = True
    default_provider_code: str = "manual"


class LoggingConfig(BaseModel):
    """Logging settings for host applications."""

    level: str = "info"
    format: Literal["text", "verbose"] = "text"


class LastmileConfig(BaseModel):
    """Top-level configuration for the coordination core."""

    database: DatabaseConfig = DatabaseConfig()
    snapshots: SnapshotConfig = SnapshotConfig()
    tasks: TaskConfig = TaskConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "lastmile.yaml",
        Path.cwd() / "lastmile.yml",
        get_user_config_dir() / "config.yaml",
        get_user_config_dir() / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply LASTMILE_<SECTION>_<KEY> env var overrides to config data.

    For example, ``LASTMILE_SNAPSHOTS_BUSINESS_TIMEZONE`` maps to section
    ``snapshots``, field ``business_timezone``.
    """
    prefix = "LASTMILE_"
    known_sections = sorted(
        LastmileConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            # Coerce to int, bool, or keep as string
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> LastmileConfig:
    """Load configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.lastmile/).

    Returns:
        Parsed and validated LastmileConfig. Defaults (plus env overrides)
        when no config file exists.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return LastmileConfig(**data)


_LOG_FORMATS = {
    "text": "%(levelname)s:%(name)s:%(message)s",
    "verbose": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
}


def configure_logging(config: LastmileConfig) -> None:
    """Configure stdout logging for a host application.

    The library modules only create loggers; the embedding process
    decides where records go.
    """
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=_LOG_FORMATS[config.logging.format],
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("lastmile").setLevel(level)
