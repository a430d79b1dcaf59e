from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".stream-guide"
REFRESH_STRATEGIES: frozenset[str] = frozenset({"rss", "search"})
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{STREAM_GUIDE_DATA_DIR}}/{relative_path}` when not explicitly set."


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

    This class is the single source of truth for config options:
    - what each option controls,
    - where it comes from (`STREAM_GUIDE_*`),
    - and what its default is.
    """

    model_config = SettingsConfigDict(
        env_prefix="STREAM_GUIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state, logs, and the scheduler lock.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )
    default_timezone: str = Field(
        default="America/Los_Angeles",
        description="Timezone whose local midnight starts a new quota day.",
    )

    # YouTube Data API and quota guardrails.
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API v3 key used for metered calls.",
    )
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=0,
        description="Daily YouTube Data API quota budget enforced before every metered call.",
    )
    feed_http_timeout_seconds: float = Field(
        default=15.0,
        description="HTTP timeout for the free channel RSS feed.",
    )

    # Refresh scheduling.
    refresh_strategy: Literal["rss", "search"] = Field(
        default="rss",
        description=(
            "Refresh cycle strategy. `rss` pulls every channel feed and confirms with "
            "video details; `search` runs quota-aware direct searches on stale channels."
        ),
    )
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="STREAM_GUIDE_ENABLE_SCHEDULER",
        description="Enable the background refresh loop.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=1_800,
        description="Cadence of background refresh cycles.",
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

    @field_validator("refresh_strategy", mode="before")
    @classmethod
    def _normalize_refresh_strategy(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("STREAM_GUIDE_REFRESH_STRATEGY must be a string.")
        normalized = value.strip().lower()
        if normalized in REFRESH_STRATEGIES:
            return normalized
        raise ValueError("STREAM_GUIDE_REFRESH_STRATEGY must be set to: rss, search.")

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("STREAM_GUIDE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("STREAM_GUIDE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("default_timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("STREAM_GUIDE_DEFAULT_TIMEZONE must be a non-empty string.")
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone: {normalized}") from exc
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_api_configuration(*, youtube_api_key: str | None) -> None:
    errors: list[str] = []

    if youtube_api_key is None:
        errors.append("STREAM_GUIDE_YOUTUBE_API_KEY is required for metered YouTube calls.")

    if errors:
        bullets = "\n".join(f"- {message}" for message in errors)
        raise ValueError(f"Invalid production configuration:\n{bullets}")


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


def load_settings(*, validate_api_key: bool = True) -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_api_key:
        _validate_api_configuration(youtube_api_key=settings.youtube_api_key)

    return settings
