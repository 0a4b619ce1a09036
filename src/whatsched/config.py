"""Configuration for whatsched.

Settings live in ~/.whatsched/config.yaml and can be overridden with
WHATSCHED_* environment variables, so a container deployment never needs
the file at all:

    WHATSCHED_DATA_DIR                 where db.json and config.yaml live
    WHATSCHED_HOST / WHATSCHED_PORT    HTTP bind address
    WHATSCHED_GREEN_API_INSTANCE_ID    Green API instance
    WHATSCHED_GREEN_API_TOKEN          Green API token
    WHATSCHED_LOG_LEVEL                DEBUG, INFO, WARNING...
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


ENV_PREFIX = "WHATSCHED_"


def get_config_dir() -> Path:
    """Get the whatsched data directory."""
    override = os.environ.get(f"{ENV_PREFIX}DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".whatsched"


def get_config_path() -> Path:
    return get_config_dir() / "config.yaml"


class GreenAPIConfig(BaseModel):
    """Credentials and polling knobs for the Green API bridge."""
    instance_id: str = ""
    api_token: str = ""
    api_url: str = "https://api.green-api.com"
    poll_interval_s: float = 5.0
    timeout_s: float = 30.0

    def is_configured(self) -> bool:
        return bool(self.instance_id and self.api_token)


class Settings(BaseModel):
    """Effective service settings."""
    data_dir: Path = Field(default_factory=get_config_dir)
    store_file: Path | None = None  # defaults to <data_dir>/db.json

    host: str = "0.0.0.0"
    port: int = 5000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    green_api: GreenAPIConfig = Field(default_factory=GreenAPIConfig)

    # Session / cache / scheduler cadence
    reconnect_delay_s: float = 5.0
    cache_refresh_interval_s: float = 300.0
    activity_window_s: float = 600.0
    conversation_limit: int = 100
    delivery_interval_s: float = 60.0

    log_level: str = "INFO"

    @property
    def store_path(self) -> Path:
        return self.store_file or (self.data_dir / "db.json")


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load the raw YAML configuration (empty dict if absent)."""
    config_path = path or get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


def save_config(config: dict[str, Any], path: Path | None = None) -> None:
    """Save raw configuration to the YAML file."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(config, f, default_flow_style=False)


def _apply_env(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay WHATSCHED_* environment variables onto raw config."""
    env = os.environ
    simple = {
        "DATA_DIR": "data_dir",
        "STORE_FILE": "store_file",
        "HOST": "host",
        "PORT": "port",
        "LOG_LEVEL": "log_level",
        "RECONNECT_DELAY_S": "reconnect_delay_s",
        "DELIVERY_INTERVAL_S": "delivery_interval_s",
    }
    for suffix, key in simple.items():
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if value:
            data[key] = value

    origins = env.get(f"{ENV_PREFIX}CORS_ORIGINS")
    if origins:
        data["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

    green = dict(data.get("green_api") or {})
    for suffix, key in (
        ("GREEN_API_INSTANCE_ID", "instance_id"),
        ("GREEN_API_TOKEN", "api_token"),
        ("GREEN_API_URL", "api_url"),
    ):
        value = env.get(f"{ENV_PREFIX}{suffix}")
        if value:
            green[key] = value
    if green:
        data["green_api"] = green
    return data


def load_settings(path: Path | None = None) -> Settings:
    """Build Settings from the YAML file plus environment overrides."""
    data = _apply_env(dict(load_config(path)))
    return Settings.model_validate(data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global Settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (next get_settings() reloads)."""
    global _settings
    _settings = None
