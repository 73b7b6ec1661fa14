"""
Configuration settings management for Tessera.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.tessera/config.yaml by default, with the
path overridable via the TESSERA_CONFIG environment variable.

The resulting Settings value is immutable. It is built once per process
(or per run) and handed to each component's constructor; components never
look configuration up on their own.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".tessera"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024  # 10 MiB

SUPPORTED_STORAGE_DRIVERS = {"local", "memory", "s3"}
SUPPORTED_DATABASE_DRIVERS = {"mysql", "mariadb", "pgsql", "postgres", "postgresql", "sqlite"}
SUPPORTED_ENCRYPTION_METHODS = {"AES-256-CBC", "AES-192-CBC", "AES-128-CBC"}


@dataclass(frozen=True)
class DatabaseConnection:
    """Connection details for a single database to dump."""

    name: str
    driver: str = "sqlite"
    host: str = "localhost"
    port: int | None = None
    database: str = ""
    username: str = ""
    password: str = ""
    unix_socket: str = ""


@dataclass(frozen=True)
class DatabaseConfig:
    """Database dump settings."""

    enabled: bool = False
    connections: tuple[DatabaseConnection, ...] = ()
    include_tables: tuple[str, ...] = ()
    exclude_tables: tuple[str, ...] = ()
    include_triggers: bool = True
    include_routines: bool = False
    extra_flags: str = ""
    parallel: bool = False


@dataclass(frozen=True)
class FilesConfig:
    """Filesystem backup settings."""

    enabled: bool = True
    paths: tuple[str, ...] = ()
    exclude_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class FilterConfig:
    """File filter settings. All configured filters are ANDed."""

    include_extensions: tuple[str, ...] = ()
    exclude_extensions: tuple[str, ...] = ()
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    max_file_size_bytes: int | None = None


@dataclass(frozen=True)
class StorageConfig:
    """Object storage target settings."""

    driver: str = "local"
    root: str = str(DEFAULT_CONFIG_DIR / "storage")
    backup_path: str = "backups"
    bucket: str = ""
    region: str = ""
    endpoint_url: str = ""
    prefix: str = ""
    retries: int = 3
    backoff_ms: int = 500
    max_backoff_ms: int = 5000


@dataclass(frozen=True)
class BackupConfig:
    """Archive construction settings."""

    compression_level: int = 6
    work_dir: str = str(DEFAULT_CONFIG_DIR / "work")
    verify: bool = True


@dataclass(frozen=True)
class ChunkedConfig:
    """Chunked (streaming) backup settings."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_concurrent_uploads: int = 3
    upload_timeout_seconds: float = 60.0
    temp_prefix: str = "tessera_chunk_"
    strict_framing: bool = False


@dataclass(frozen=True)
class SecurityConfig:
    """Encryption settings."""

    encrypt_backups: bool = False
    backup_password: str | None = None
    encryption_method: str = "AES-256-CBC"


@dataclass(frozen=True)
class Settings:
    """
    Complete Tessera configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with TESSERA_.

    Attributes:
        app_name: Application name recorded in every manifest.
        environment: Deployment environment recorded in every manifest.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        storage: Object storage target.
        database: Database connections to dump.
        files: Filesystem paths to archive.
        filters: File filter chain configuration.
        backup: Archive construction settings.
        chunked: Streaming backup settings.
        security: Envelope encryption settings.
    """

    app_name: str = "tessera"
    environment: str = "production"
    log_level: str = "INFO"

    storage: StorageConfig = field(default_factory=StorageConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    files: FilesConfig = field(default_factory=FilesConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    chunked: ChunkedConfig = field(default_factory=ChunkedConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @property
    def encryption_enabled(self) -> bool:
        """Whether archives produced with these settings are encrypted."""
        return self.security.encrypt_backups

    def with_encryption(self, enabled: bool) -> "Settings":
        """Return a copy with encryption switched on or off."""
        return replace(self, security=replace(self.security, encrypt_backups=enabled))

    def with_compression_level(self, level: int) -> "Settings":
        """Return a copy with a different (clamped) compression level."""
        return replace(
            self,
            backup=replace(self.backup, compression_level=clamp_compression_level(level)),
        )

    def with_verification(self, enabled: bool) -> "Settings":
        """Return a copy with post-build verification switched on or off."""
        return replace(self, backup=replace(self.backup, verify=enabled))


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def clamp_compression_level(level: int) -> int:
    """Clamp a compression level to the 1-9 range."""
    return max(1, min(9, int(level)))


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from TESSERA_CONFIG environment variable if set,
    otherwise returns the default path (~/.tessera/config.yaml).
    """
    env_path = os.environ.get("TESSERA_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses TESSERA_CONFIG environment variable or default path.

    Returns:
        Validated, immutable Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    config_data: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

    _apply_environment_overrides(config_data)

    settings = settings_from_dict(config_data)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def settings_from_dict(data: dict[str, Any]) -> Settings:
    """
    Build a Settings value from parsed YAML data.

    Raises:
        ConfigurationError: If a section has the wrong shape.
    """
    try:
        return _build_settings(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}") from e


def _build_settings(data: dict[str, Any]) -> Settings:
    """Construct the nested frozen dataclasses from a config mapping."""
    defaults = Settings()
    app = data.get("tessera", {}) or {}

    storage = data.get("storage", {}) or {}
    database = data.get("database", {}) or {}
    files = data.get("files", {}) or {}
    filters = data.get("filters", {}) or {}
    backup = data.get("backup", {}) or {}
    chunked = data.get("chunked", {}) or {}
    security = data.get("security", {}) or {}

    connections = tuple(
        _build_connection(conn) for conn in (database.get("connections") or [])
    )

    max_file_size = filters.get("max_file_size_bytes")

    return Settings(
        app_name=str(app.get("app_name", defaults.app_name)),
        environment=str(app.get("environment", defaults.environment)),
        log_level=str(app.get("log_level", defaults.log_level)).upper(),
        storage=StorageConfig(
            driver=str(storage.get("driver", defaults.storage.driver)).lower(),
            root=str(storage.get("root", defaults.storage.root)),
            backup_path=str(storage.get("backup_path", defaults.storage.backup_path)),
            bucket=str(storage.get("bucket", "") or ""),
            region=str(storage.get("region", "") or ""),
            endpoint_url=str(storage.get("endpoint_url", "") or ""),
            prefix=str(storage.get("prefix", "") or ""),
            retries=int(storage.get("retries", defaults.storage.retries)),
            backoff_ms=int(storage.get("backoff_ms", defaults.storage.backoff_ms)),
            max_backoff_ms=int(storage.get("max_backoff_ms", defaults.storage.max_backoff_ms)),
        ),
        database=DatabaseConfig(
            enabled=_parse_bool(database.get("enabled", bool(connections))),
            connections=connections,
            include_tables=_as_tuple(database.get("include_tables")),
            exclude_tables=_as_tuple(database.get("exclude_tables")),
            include_triggers=_parse_bool(database.get("include_triggers", True)),
            include_routines=_parse_bool(database.get("include_routines", False)),
            extra_flags=str(database.get("extra_flags", "") or ""),
            parallel=_parse_bool(database.get("parallel", False)),
        ),
        files=FilesConfig(
            enabled=_parse_bool(files.get("enabled", True)),
            paths=_as_tuple(files.get("paths")),
            exclude_paths=_as_tuple(files.get("exclude_paths")),
        ),
        filters=FilterConfig(
            include_extensions=_as_tuple(filters.get("include_extensions")),
            exclude_extensions=_as_tuple(filters.get("exclude_extensions")),
            include_patterns=_as_tuple(filters.get("include_patterns")),
            exclude_patterns=_as_tuple(filters.get("exclude_patterns")),
            max_file_size_bytes=int(max_file_size) if max_file_size is not None else None,
        ),
        backup=BackupConfig(
            compression_level=clamp_compression_level(
                backup.get("compression_level", defaults.backup.compression_level)
            ),
            work_dir=str(backup.get("work_dir", defaults.backup.work_dir)),
            verify=_parse_bool(backup.get("verify", True)),
        ),
        chunked=ChunkedConfig(
            chunk_size=int(chunked.get("chunk_size", DEFAULT_CHUNK_SIZE)),
            max_concurrent_uploads=int(chunked.get("max_concurrent_uploads", 3)),
            upload_timeout_seconds=float(chunked.get("upload_timeout_seconds", 60)),
            temp_prefix=str(chunked.get("temp_prefix", defaults.chunked.temp_prefix)),
            strict_framing=_parse_bool(chunked.get("strict_framing", False)),
        ),
        security=SecurityConfig(
            encrypt_backups=_parse_bool(security.get("encrypt_backups", False)),
            backup_password=security.get("backup_password") or None,
            encryption_method=str(
                security.get("encryption_method", defaults.security.encryption_method)
            ).upper(),
        ),
    )


def _build_connection(data: dict[str, Any]) -> DatabaseConnection:
    """Build a DatabaseConnection from one entry of database.connections."""
    if not isinstance(data, dict) or not data.get("name"):
        raise ValueError("each database connection needs a 'name'")
    port = data.get("port")
    return DatabaseConnection(
        name=str(data["name"]),
        driver=str(data.get("driver", "sqlite")).lower(),
        host=str(data.get("host", "localhost")),
        port=int(port) if port is not None else None,
        database=str(data.get("database", "")),
        username=str(data.get("username", "") or ""),
        password=str(data.get("password", "") or ""),
        unix_socket=str(data.get("unix_socket", "") or ""),
    )


def _as_tuple(value: Any) -> tuple[str, ...]:
    """Normalize a scalar-or-list config value to a tuple of strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _parse_bool(value: Any) -> bool:
    """Parse YAML/env style booleans."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _apply_environment_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides to raw config data."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "TESSERA_LOG_LEVEL": ("tessera.log_level", str),
        "TESSERA_STORAGE_DRIVER": ("storage.driver", str),
        "TESSERA_STORAGE_ROOT": ("storage.root", str),
        "TESSERA_S3_BUCKET": ("storage.bucket", str),
        "TESSERA_STORAGE_RETRIES": ("storage.retries", int),
        "TESSERA_STORAGE_BACKOFF_MS": ("storage.backoff_ms", int),
        "TESSERA_STORAGE_MAX_BACKOFF_MS": ("storage.max_backoff_ms", int),
        "TESSERA_COMPRESSION_LEVEL": ("backup.compression_level", int),
        "TESSERA_CHUNK_SIZE": ("chunked.chunk_size", int),
        "TESSERA_MAX_CONCURRENT_UPLOADS": ("chunked.max_concurrent_uploads", int),
        "TESSERA_ENCRYPT_BACKUPS": ("security.encrypt_backups", _parse_bool),
        "TESSERA_BACKUP_PASSWORD": ("security.backup_password", str),
        "TESSERA_PARALLEL_DATABASES": ("database.parallel", _parse_bool),
    }

    for env_var, (key_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_value(data, key_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e

    return data


def _set_nested_value(data: dict[str, Any], path: str, value: Any) -> None:
    """Set a nested key on a mapping using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        section = data.get(part)
        if not isinstance(section, dict):
            section = {}
            data[part] = section
        data = section
    data[parts[-1]] = value


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.storage.driver not in SUPPORTED_STORAGE_DRIVERS:
        raise ConfigurationError(
            f"Unsupported storage driver: {settings.storage.driver}. "
            f"Must be one of: {', '.join(sorted(SUPPORTED_STORAGE_DRIVERS))}"
        )

    if settings.storage.driver == "s3" and not settings.storage.bucket:
        raise ConfigurationError("storage.bucket is required for the s3 driver")

    if settings.storage.retries < 0:
        raise ConfigurationError("storage.retries must not be negative")

    for connection in settings.database.connections:
        if connection.driver not in SUPPORTED_DATABASE_DRIVERS:
            raise ConfigurationError(
                f"Unsupported database driver '{connection.driver}' "
                f"for connection '{connection.name}'"
            )

    names = [connection.name for connection in settings.database.connections]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate database connection names: {', '.join(duplicates)}")

    if settings.chunked.chunk_size < 1:
        raise ConfigurationError("chunked.chunk_size must be at least 1 byte")

    if settings.chunked.max_concurrent_uploads < 1:
        raise ConfigurationError("chunked.max_concurrent_uploads must be at least 1")

    if settings.security.encryption_method not in SUPPORTED_ENCRYPTION_METHODS:
        raise ConfigurationError(
            f"Unsupported encryption_method: {settings.security.encryption_method}. "
            f"Must be one of: {', '.join(sorted(SUPPORTED_ENCRYPTION_METHODS))}"
        )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "tessera": {
            "app_name": settings.app_name,
            "environment": settings.environment,
            "log_level": settings.log_level,
        },
        "storage": {
            "driver": settings.storage.driver,
            "root": settings.storage.root,
            "backup_path": settings.storage.backup_path,
            "bucket": settings.storage.bucket,
            "region": settings.storage.region,
            "endpoint_url": settings.storage.endpoint_url,
            "prefix": settings.storage.prefix,
            "retries": settings.storage.retries,
            "backoff_ms": settings.storage.backoff_ms,
            "max_backoff_ms": settings.storage.max_backoff_ms,
        },
        "database": {
            "enabled": settings.database.enabled,
            "connections": [
                {
                    "name": conn.name,
                    "driver": conn.driver,
                    "host": conn.host,
                    "port": conn.port,
                    "database": conn.database,
                    "username": conn.username,
                    "unix_socket": conn.unix_socket,
                }
                for conn in settings.database.connections
            ],
            "include_tables": list(settings.database.include_tables),
            "exclude_tables": list(settings.database.exclude_tables),
            "include_triggers": settings.database.include_triggers,
            "include_routines": settings.database.include_routines,
            "extra_flags": settings.database.extra_flags,
            "parallel": settings.database.parallel,
        },
        "files": {
            "enabled": settings.files.enabled,
            "paths": list(settings.files.paths),
            "exclude_paths": list(settings.files.exclude_paths),
        },
        "filters": {
            "include_extensions": list(settings.filters.include_extensions),
            "exclude_extensions": list(settings.filters.exclude_extensions),
            "include_patterns": list(settings.filters.include_patterns),
            "exclude_patterns": list(settings.filters.exclude_patterns),
            "max_file_size_bytes": settings.filters.max_file_size_bytes,
        },
        "backup": {
            "compression_level": settings.backup.compression_level,
            "work_dir": settings.backup.work_dir,
            "verify": settings.backup.verify,
        },
        "chunked": {
            "chunk_size": settings.chunked.chunk_size,
            "max_concurrent_uploads": settings.chunked.max_concurrent_uploads,
            "upload_timeout_seconds": settings.chunked.upload_timeout_seconds,
            "temp_prefix": settings.chunked.temp_prefix,
            "strict_framing": settings.chunked.strict_framing,
        },
        "security": {
            "encrypt_backups": settings.security.encrypt_backups,
            "encryption_method": settings.security.encryption_method,
        },
    }
