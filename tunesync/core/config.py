"""
Configuration management for tunesync.

This module handles loading, validating, and providing access to the
application configuration stored in config.yaml.

The configuration file contains:
    - Storage directory holding the database, cached files and logs
    - Sync tuning (retry bound, page size, timeouts, name prefixes)
    - The remote sources to register on startup

Configuration File Location:
    The config.yaml file is read from the current working directory
    unless an explicit path is passed with --config.

Example config.yaml:
    storage:
      directory: "~/.tunesync"
      database: null        # Optional: defaults to {directory}/tunesync.db

    sync:
      max_tries: 3
      page_size: 500
      timeout: 30
      retry_delay: 1.5
      name_prefixes: ["The "]

    sources:
      - name: "Living room"
        host: "192.168.1.20"
        port: 5545
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tunesync.core.exceptions import ConfigError


# Default configuration file name (current working directory)
CONFIG_FILENAME = "config.yaml"

DEFAULT_STORAGE_DIRECTORY = "~/.tunesync"
DEFAULT_NAME_PREFIXES = ("The ",)


@dataclass(frozen=True)
class StorageConfig:
    """
    Local storage configuration.

    Attributes:
        directory: Root directory for everything tunesync writes.
                   Path expansion is performed (~ is expanded to home directory).
        database_path: SQLite database file. Defaults to {directory}/tunesync.db.
        cache_directory: Cached media, artwork and photos. Always {directory}/cache.
    """
    directory: Path
    database_path: Path
    cache_directory: Path


@dataclass(frozen=True)
class SyncConfig:
    """
    Sync engine tuning.

    Attributes:
        max_tries: Attempts per source before a transient network error
                   abandons it. Default: 3.
        page_size: Records requested per remote page. Default: 500.
        timeout: Network timeout in seconds for one request. Default: 30.
        retry_delay: Base delay for exponential backoff between attempts.
        name_prefixes: Display-name prefixes split into name_prefix so that
                       sorting ignores them. Default: ("The ",).
    """
    max_tries: int = 3
    page_size: int = 500
    timeout: float = 30.0
    retry_delay: float = 1.5
    name_prefixes: tuple[str, ...] = DEFAULT_NAME_PREFIXES


@dataclass(frozen=True)
class SourceConfig:
    """A remote origin declared in config.yaml."""
    host: str
    port: int
    name: str | None = None


@dataclass(frozen=True)
class Config:
    """
    Complete application configuration.

    Created by load_config() and treated as immutable.

    Attributes:
        storage: Where the database, cache and logs live.
        sync: Sync engine tuning.
        sources: Sources to register in the database on startup.

    Example:
        config = load_config()
        print(f"Database: {config.storage.database_path}")
        print(f"Up to {config.sync.max_tries} tries per source")
    """
    storage: StorageConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    sources: tuple[SourceConfig, ...] = ()


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration from config.yaml.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for config.yaml in current working directory.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If the config file is not found, has invalid YAML syntax,
                     or contains invalid values. details['field'] names the
                     offending field when one is to blame.

    Behavior:
        1. Locate config file (explicit path or CWD/config.yaml)
        2. Read and parse YAML content
        3. Parse storage, sync and sources sections, applying defaults
        4. Create and return frozen Config object

    Thread Safety:
        This function is NOT thread-safe. Call it once at startup.
    """
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"file_path": str(config_path)}
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except IOError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    # An empty file means "all defaults"
    if raw_config is None:
        raw_config = {}

    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    return Config(
        storage=_parse_storage_config(_section(raw_config, "storage")),
        sync=_parse_sync_config(_section(raw_config, "sync")),
        sources=_parse_sources(raw_config.get("sources")),
    )


def _section(raw_config: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw_config.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(
            f"Section '{name}' must be a dictionary",
            details={"field": name}
        )
    return section


def _parse_path(value: Any, field_name: str) -> Path:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"'{field_name}' must be a non-empty string",
            details={"field": field_name}
        )
    return Path(value.strip()).expanduser().resolve()


def _parse_storage_config(section: dict[str, Any]) -> StorageConfig:
    """
    Parse the storage section.

    Does NOT create any directory; that happens when the database
    and file manager are initialized.
    """
    directory = _parse_path(
        section.get("directory", DEFAULT_STORAGE_DIRECTORY), "storage.directory"
    )

    raw_database = section.get("database")
    if raw_database is not None:
        database_path = _parse_path(raw_database, "storage.database")
    else:
        database_path = directory / "tunesync.db"

    return StorageConfig(
        directory=directory,
        database_path=database_path,
        cache_directory=directory / "cache",
    )


def _positive_number(section: dict[str, Any], key: str, default, kind: type):
    raw = section.get(key)
    if raw is None:
        return default
    # bool is a subclass of int; reject it explicitly
    valid = isinstance(raw, (int, float)) if kind is float else isinstance(raw, int)
    if isinstance(raw, bool) or not valid or raw <= 0:
        label = "integer" if kind is int else "number"
        raise ConfigError(
            f"'sync.{key}' must be a positive {label}",
            details={"field": f"sync.{key}", "value": raw}
        )
    return kind(raw)


def _parse_sync_config(section: dict[str, Any]) -> SyncConfig:
    """
    Parse the sync section, applying defaults for missing fields.

    Raises:
        ConfigError: If a numeric field is not positive or name_prefixes
                     is not a list of non-empty strings.
    """
    defaults = SyncConfig()

    prefixes = section.get("name_prefixes")
    if prefixes is None:
        name_prefixes = defaults.name_prefixes
    else:
        if not isinstance(prefixes, list) or not all(
            isinstance(p, str) and p for p in prefixes
        ):
            raise ConfigError(
                "'sync.name_prefixes' must be a list of non-empty strings",
                details={"field": "sync.name_prefixes"}
            )
        name_prefixes = tuple(prefixes)

    return SyncConfig(
        max_tries=_positive_number(section, "max_tries", defaults.max_tries, int),
        page_size=_positive_number(section, "page_size", defaults.page_size, int),
        timeout=_positive_number(section, "timeout", defaults.timeout, float),
        retry_delay=_positive_number(section, "retry_delay", defaults.retry_delay, float),
        name_prefixes=name_prefixes,
    )


def _parse_sources(raw_sources: Any) -> tuple[SourceConfig, ...]:
    """
    Parse the sources list.

    Each entry needs a host and a port in 1..65535; name is optional.
    """
    if raw_sources is None:
        return ()

    if not isinstance(raw_sources, list):
        raise ConfigError(
            "'sources' must be a list",
            details={"field": "sources"}
        )

    sources = []
    for index, entry in enumerate(raw_sources):
        prefix = f"sources[{index}]"
        if not isinstance(entry, dict):
            raise ConfigError(
                f"'{prefix}' must be a dictionary",
                details={"field": prefix}
            )

        host = entry.get("host")
        if not isinstance(host, str) or not host.strip():
            raise ConfigError(
                f"'{prefix}.host' must be a non-empty string",
                details={"field": f"{prefix}.host"}
            )

        port = entry.get("port")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError(
                f"'{prefix}.port' must be an integer between 1 and 65535",
                details={"field": f"{prefix}.port", "value": port}
            )

        name = entry.get("name")
        if name is not None and not isinstance(name, str):
            raise ConfigError(
                f"'{prefix}.name' must be a string",
                details={"field": f"{prefix}.name"}
            )

        sources.append(SourceConfig(host=host.strip(), port=port, name=name))

    return tuple(sources)
