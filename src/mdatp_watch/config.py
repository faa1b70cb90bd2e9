"""Configuration loading and validation."""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT, DEFAULT_VERSION
from .exceptions import ConfigError
from .watch.planner import DEFAULT_FILTER_FIELD
from .watch.stream import DEFAULT_BUFFER_SIZE
from .watch.watcher import WatchSettings

DEFAULT_CONFIG_PATH = "~/.mdatp-watch/config.yaml"
LOCAL_CONFIG_NAME = ".mdatp-watch.yaml"


class CredentialsConfig(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.tenant_id)


class ApiConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    version: str = DEFAULT_VERSION
    timeout_seconds: float = DEFAULT_TIMEOUT


class WatchConfig(BaseModel):
    ticker_interval_seconds: float = 5.0
    max_interval_minutes: float = 24 * 60.0
    buffer_size: int = DEFAULT_BUFFER_SIZE
    indent_output: bool = False
    filter_field: str = DEFAULT_FILTER_FIELD
    output: str = ""  # "" = stdout | file://... | tcp://host:port | udp://host:port
    state_file: str = ""  # Empty = do not persist lastFetchTime


class MdatpWatchConfig(BaseModel):
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)

    def watch_settings(self) -> WatchSettings:
        """Engine settings; range checks happen when the watcher starts."""
        return WatchSettings(
            ticker_interval=timedelta(seconds=self.watch.ticker_interval_seconds),
            max_interval=timedelta(minutes=self.watch.max_interval_minutes),
            buffer_size=self.watch.buffer_size,
            indent_output=self.watch.indent_output,
            filter_field=self.watch.filter_field,
        )


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} with environment variable values."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    return re.sub(r"\$\{(\w+)\}", replacer, text)


def _config_from_env() -> MdatpWatchConfig:
    """Build config from environment variables (containers, CI)."""
    return MdatpWatchConfig(
        credentials=CredentialsConfig(
            client_id=os.environ.get("MDATP_CLIENT_ID", ""),
            client_secret=os.environ.get("MDATP_CLIENT_SECRET", ""),
            tenant_id=os.environ.get("MDATP_TENANT_ID", ""),
        ),
        api=ApiConfig(
            base_url=os.environ.get("MDATP_BASE_URL", DEFAULT_BASE_URL),
        ),
    )


def _default_path() -> Path:
    """``./.mdatp-watch.yaml`` if present, else the per-user config."""
    local = Path.cwd() / LOCAL_CONFIG_NAME
    if local.exists():
        return local
    return Path(DEFAULT_CONFIG_PATH).expanduser()


def load_config(path: str | Path | None = None) -> MdatpWatchConfig:
    """Load config from YAML file, env vars, or defaults.

    Priority: config file (with ${ENV} interpolation) > env vars > defaults.
    An explicitly given path must exist.
    """
    if path is None:
        path = _default_path()
        if not path.exists():
            return _config_from_env()
    else:
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

    raw_text = path.read_text()
    interpolated = _interpolate_env_vars(raw_text)
    try:
        data = yaml.safe_load(interpolated)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return _config_from_env()
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    try:
        return MdatpWatchConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e


def save_config(config: MdatpWatchConfig, path: str | Path | None = None) -> Path:
    """Save config to YAML file."""
    if path is None:
        path = Path(DEFAULT_CONFIG_PATH).expanduser()
    else:
        path = Path(path).expanduser()

    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump()
    path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))
    return path
