"""Application configuration via environment variables and .env file."""

import re
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")

_ENV_PREFIX = "ANCHORWATCH_"


def _field_to_env_key(name: str) -> str:
    """Convert a Settings field name to its ANCHORWATCH_ env var name."""
    return _ENV_PREFIX + name.upper()


def _parse_env_line(line: str) -> tuple[str, str] | None:
    """Parse a single KEY=VALUE or KEY="VALUE" line. Returns (key, value) or None."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    m = re.match(r"([A-Za-z_][A-Za-z0-9_]*)=(.*)$", line)
    if not m:
        return None
    key, raw = m.group(1), m.group(2).strip()
    if len(raw) >= 2 and raw[0] == raw[-1] == '"':
        raw = raw[1:-1].replace('\\"', '"')
    return key, raw


def _format_env_value(value: str | float | int | bool | None) -> str:
    """Render a config value for .env, quoting when it holds spaces or quotes."""
    if value is None:
        return ""
    text = str(value).lower() if isinstance(value, bool) else str(value)
    if re.search(r'[\s#"\\]', text):
        return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return text


class Settings(BaseSettings):
    model_config = {
        "env_prefix": _ENV_PREFIX,
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/anchorwatch.db")

    # Logging
    log_level: str = "info"

    # Drift detection
    alarm_sensitivity: float = 0.5  # 0 = full radius, 1 = 20% tighter
    default_radius: float = 50.0  # meters
    gps_accuracy_threshold: float = 10.0  # meters; worse fixes are ignored
    gps_lost_threshold: int = 30  # seconds without a fix before "GPS lost"
    gps_restore_delay: int = 5  # seconds of healthy GPS before clearing "GPS lost"
    auto_dismiss_window: int = 120  # seconds an alarm stays eligible for auto-dismiss
    health_check_interval: int = 15  # seconds between GPS health checks

    # GPS source
    # Env: ANCHORWATCH_GPS_MODE="mock"
    gps_mode: str = "mock"
    gps_interval: int = 5
    gps_accuracy_hint: str = "high"
    mock_latitude: float = 43.2965
    mock_longitude: float = 5.3698

    # Session sync
    position_update_interval: int = 5  # seconds; clamped to >= 5 by the sync service

    # Pairing / remote store
    remote_mode: str = "memory"
    remote_url: str | None = None
    remote_api_key: str | None = None
    session_ttl_hours: int = 24
    session_create_min_interval: int = 5
    auth_max_retries: int = 2
    auth_retry_delay: float = 2.0
    join_link_scheme: str = "anchorwatch"

    # Alerts
    webhook_url: str | None = None

    # Authentication (optional, omit to disable)
    auth_username: str = "admin"
    auth_password: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("alarm_sensitivity", mode="after")
    @classmethod
    def clamp_sensitivity(cls, v: float) -> float:
        """Sensitivity is a dial between 0 and 1."""
        return min(max(v, 0.0), 1.0)

    @field_validator("default_radius", mode="after")
    @classmethod
    def check_radius(cls, v: float) -> float:
        if not 20.0 <= v <= 100.0:
            raise ValueError(f"default_radius must be between 20 and 100 meters, got {v}")
        return v

    @field_validator("gps_mode", "remote_mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip().lower()
        return v


# Fields a user may change at runtime through the settings API.
EDITABLE_FIELDS = frozenset(
    {
        "alarm_sensitivity",
        "default_radius",
        "gps_accuracy_threshold",
        "auto_dismiss_window",
        "position_update_interval",
        "webhook_url",
    }
)


def save_config(values: dict[str, str | float | int | bool | None]) -> None:
    """Save configuration to the .env file.

    Only keys that are Settings fields are stored. Lines that are not
    ANCHORWATCH_* variables (comments, other tools' vars) are preserved.
    """
    valid_fields = set(Settings.model_fields.keys())
    updates = {_field_to_env_key(k): v for k, v in values.items() if k in valid_fields}

    kept_lines: list[str] = []
    ours: dict[str, str] = {}
    if _ENV_FILE.exists():
        for line in _ENV_FILE.read_text(encoding="utf-8").splitlines():
            parsed = _parse_env_line(line)
            if parsed is not None and parsed[0].startswith(_ENV_PREFIX):
                ours[parsed[0]] = parsed[1]
            else:
                kept_lines.append(line)

    for key, value in updates.items():
        ours[key] = _format_env_value(value)

    with open(_ENV_FILE, "w", encoding="utf-8") as f:
        for line in kept_lines:
            f.write(line + "\n")
        if kept_lines and ours:
            f.write("\n")
        for key in sorted(ours):
            f.write(f"{key}={ours[key]}\n")


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
