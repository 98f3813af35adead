from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, cast

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".feedsync"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("sync_store_path", Path("sync-store.db")),
    ("token_dir", Path("tokens")),
    ("youtube_client_secret_path", Path("youtube-client-secret.json")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "daemon_enabled",
    "telemetry_enabled",
)
_POSITIVE_NUMBER_FIELDS: tuple[str, ...] = (
    "youtube_request_timeout_seconds",
    "youtube_authorization_timeout_seconds",
    "ask_timeout_seconds",
    "add_account_timeout_seconds",
    "synchronization_timeout_seconds",
    "heartbeat_minute_seconds",
    "heartbeat_quarter_of_hour_seconds",
    "heartbeat_hour_seconds",
    "authorization_retry_attempts",
    "sync_store_quota_bytes",
    "sync_store_quota_bytes_per_item",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{FEEDSYNC_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `FEEDSYNC_*` environment variable (or `.env`).
    Paths default to locations inside `data_dir` unless explicitly set.
    """

    model_config = SettingsConfigDict(
        env_prefix="FEEDSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state, logs, and OAuth artifacts.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite entity database path. {_data_dir_default_note(Path('state.db'))}",
    )
    sync_store_path: Path = Field(
        default=_default_in_data_dir(Path("sync-store.db")),
        description=(
            "SQLite file backing the local synchronized store. "
            f"{_data_dir_default_note(Path('sync-store.db'))}"
        ),
    )

    # YouTube Data API access.
    token_dir: Path = Field(
        default=_default_in_data_dir(Path("tokens")),
        description=(
            "Directory holding one OAuth token JSON per account (`<account_id>.json`). "
            f"{_data_dir_default_note(Path('tokens'))}"
        ),
    )
    youtube_client_secret_path: Path = Field(
        default=_default_in_data_dir(Path("youtube-client-secret.json")),
        description=(
            "OAuth client secret JSON path used by the interactive authorization flow. "
            f"{_data_dir_default_note(Path('youtube-client-secret.json'))}"
        ),
    )
    youtube_api_key: str | None = Field(
        default=None,
        description="API key used for unauthorized (public data) requests.",
    )
    youtube_request_timeout_seconds: float = Field(
        default=20.0,
        description="Socket timeout applied to YouTube Data API requests.",
    )
    youtube_authorization_timeout_seconds: float = Field(
        default=300.0,
        description="How long the interactive OAuth consent flow may wait for the user.",
    )
    current_account_id: str | None = Field(
        default=None,
        description="Account id of the identity currently signed in on this installation.",
    )

    # Bus and synchronization behavior.
    ask_timeout_seconds: float = Field(
        default=15.0,
        description="Default deadline for request/response exchanges over the event bus.",
    )
    add_account_timeout_seconds: float = Field(
        default=30.0,
        description="How long the interactive add-account flow waits for synchronization.",
    )
    synchronization_timeout_seconds: float = Field(
        default=300.0,
        description="Deadline for an on-demand synchronization pass requested over HTTP.",
    )
    heartbeat_minute_seconds: float = Field(
        default=60.0,
        description="Period of the `heartbeat.minute` topic.",
    )
    heartbeat_quarter_of_hour_seconds: float = Field(
        default=900.0,
        description="Period of the `heartbeat.quarter-of-hour` topic (synchronization passes).",
    )
    heartbeat_hour_seconds: float = Field(
        default=3600.0,
        description="Period of the `heartbeat.hour` topic (view count refresh).",
    )
    authorization_retry_attempts: int = Field(
        default=3,
        description="Attempts made for a privileged request failing with an authorization error.",
    )
    authorization_retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff step between authorization retries.",
    )
    sync_store_quota_bytes: int = Field(
        default=102_400,
        description="Total byte quota of the synchronized store.",
    )
    sync_store_quota_bytes_per_item: int = Field(
        default=8_192,
        description="Byte quota of a single synchronized store key.",
    )
    daemon_enabled: bool = Field(
        default=True,
        description="Start the background daemon (heartbeats and synchronizers) with the API.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("FEEDSYNC_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("FEEDSYNC_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_POSITIVE_NUMBER_FIELDS)
    @classmethod
    def _require_positive(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"FEEDSYNC_{str(info.field_name).upper()} must be positive.")
        return value

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = cast(str, info.field_name)
        default_value = cls.model_fields[field_name].default
        if not isinstance(default_value, bool):
            raise TypeError(f"{field_name} must default to a boolean")
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", "current_account_id", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
