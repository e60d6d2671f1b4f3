"""Service configuration loading and validation.

Reads a calpush TOML file, parses all sections, and returns a validated
ServiceConfig dataclass.  Every section is optional; a missing file path
yields the built-in defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from calpush.core.channels import DEFAULT_CHANNEL_TTL_SECONDS, DEFAULT_RENEW_WINDOW_SECONDS
from calpush.core.streams import DEFAULT_QUEUE_SIZE
from calpush.core.sync import DEFAULT_FULL_SYNC_WINDOW_DAYS

CONFIG_ENV_VAR = "CALPUSH_CONFIG"
DEFAULT_USER_HEADER = "X-Authenticated-User"

# Pattern matching ${VAR_NAME}: supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_LOG_FORMATS = ("text", "json")
_STORAGE_BACKENDS = ("memory", "postgres")


class ConfigError(Exception):
    """Raised when service configuration is missing, malformed, or invalid."""


@dataclass
class ServerConfig:
    """HTTP listener settings from the [server] section."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=list)
    user_header: str = DEFAULT_USER_HEADER


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS
    calendar_id: str = "primary"
    transparent_resync: bool = False


@dataclass
class ChannelsConfig:
    """Push channel settings from the [channels] section.

    ``webhook_address`` is the public HTTPS URL of ``POST /api/notifications``.
    Without it, reconcile still works but no push channels are created.
    """

    webhook_address: str | None = None
    channel_token: str | None = None
    ttl_seconds: int = DEFAULT_CHANNEL_TTL_SECONDS
    renew_window_seconds: int = DEFAULT_RENEW_WINDOW_SECONDS


@dataclass
class StreamConfig:
    keepalive_seconds: float = 30.0
    queue_size: int = DEFAULT_QUEUE_SIZE


@dataclass
class StorageConfig:
    backend: str = "memory"  # "memory" or "postgres"
    database_url: str | None = None


@dataclass
class ServiceConfig:
    """Fully parsed calpush configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    channels: ChannelsConfig = field(default_factory=ChannelsConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    source: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view with secrets masked, for display."""
        data = asdict(self)
        data.pop("source", None)
        if data["channels"].get("channel_token"):
            data["channels"]["channel_token"] = "***"
        if data["storage"].get("database_url"):
            data["storage"]["database_url"] = "***"
        return data


# ---------------------------------------------------------------------------
# Environment variable expansion
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table, got {type(section).__name__}")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be an integer.") from exc
    if isinstance(raw, bool) or value <= 0:
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be a positive integer.")
    return value


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string, got {type(value).__name__}")
    # Normalise empty/whitespace string → unset
    return value.strip() or None


def _parse_server(data: dict[str, Any]) -> ServerConfig:
    section = _section(data, "server")
    origins = section.get("cors_origins", [])
    if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
        raise ConfigError("server.cors_origins must be a list of strings")
    port = _positive_int(section, "port", ServerConfig.port, where="server")
    if port > 65535:
        raise ConfigError(f"Invalid server.port: {port!r}. Must be at most 65535.")
    return ServerConfig(
        host=str(section.get("host", ServerConfig.host)),
        port=port,
        cors_origins=list(origins),
        user_header=_optional_str(section, "user_header") or DEFAULT_USER_HEADER,
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be one of {_LOG_FORMATS}.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=_optional_str(section, "log_root"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    transparent_resync = section.get("transparent_resync", False)
    if not isinstance(transparent_resync, bool):
        raise ConfigError("sync.transparent_resync must be a boolean")
    return SyncConfig(
        full_sync_window_days=_positive_int(
            section, "full_sync_window_days", DEFAULT_FULL_SYNC_WINDOW_DAYS, where="sync"
        ),
        calendar_id=_optional_str(section, "calendar_id") or "primary",
        transparent_resync=transparent_resync,
    )


def _parse_channels(data: dict[str, Any]) -> ChannelsConfig:
    section = _section(data, "channels")
    webhook_address = _optional_str(section, "webhook_address")
    if webhook_address is not None and not webhook_address.startswith("https://"):
        # Google refuses to deliver push notifications to plain HTTP endpoints.
        raise ConfigError(
            f"Invalid channels.webhook_address: {webhook_address!r}. Must be an https:// URL."
        )
    ttl_seconds = _positive_int(
        section, "ttl_seconds", DEFAULT_CHANNEL_TTL_SECONDS, where="channels"
    )
    renew_window_seconds = _positive_int(
        section, "renew_window_seconds", DEFAULT_RENEW_WINDOW_SECONDS, where="channels"
    )
    if renew_window_seconds >= ttl_seconds:
        raise ConfigError(
            "channels.renew_window_seconds must be smaller than channels.ttl_seconds"
        )
    return ChannelsConfig(
        webhook_address=webhook_address,
        channel_token=_optional_str(section, "channel_token"),
        ttl_seconds=ttl_seconds,
        renew_window_seconds=renew_window_seconds,
    )


def _parse_stream(data: dict[str, Any]) -> StreamConfig:
    section = _section(data, "stream")
    raw_keepalive = section.get("keepalive_seconds", StreamConfig.keepalive_seconds)
    try:
        keepalive = float(raw_keepalive)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid stream.keepalive_seconds: {raw_keepalive!r}") from exc
    if keepalive <= 0:
        raise ConfigError(
            f"Invalid stream.keepalive_seconds: {raw_keepalive!r}. Must be positive."
        )
    return StreamConfig(
        keepalive_seconds=keepalive,
        queue_size=_positive_int(section, "queue_size", DEFAULT_QUEUE_SIZE, where="stream"),
    )


def _parse_storage(data: dict[str, Any]) -> StorageConfig:
    section = _section(data, "storage")
    backend = str(section.get("backend", "memory")).lower()
    if backend not in _STORAGE_BACKENDS:
        raise ConfigError(
            f"Invalid storage.backend: {backend!r}. Must be one of {_STORAGE_BACKENDS}."
        )
    database_url = _optional_str(section, "database_url")
    if backend == "postgres" and database_url is None:
        raise ConfigError("storage.database_url is required when storage.backend = 'postgres'")
    return StorageConfig(backend=backend, database_url=database_url)


def parse_config(data: dict[str, Any], *, source: Path | None = None) -> ServiceConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)
    return ServiceConfig(
        server=_parse_server(data),
        logging=_parse_logging(data),
        sync=_parse_sync(data),
        channels=_parse_channels(data),
        stream=_parse_stream(data),
        storage=_parse_storage(data),
        source=source,
    )


def load_config(path: Path | str | None = None) -> ServiceConfig:
    """Load and validate a calpush TOML file.

    When *path* is None the ``CALPUSH_CONFIG`` environment variable is
    consulted; when that is unset too, the defaults are returned.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if not env_path:
            return parse_config({})
        path = env_path

    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, source=toml_path)
