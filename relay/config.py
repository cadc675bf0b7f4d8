"""Configuration loading: YAML file + environment variable overrides."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from .chunker import MARKER_RESERVE
from .errors import ConfigError
from .telegram import MESSAGE_LIMIT

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "relay"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Largest chunk body that still fits one Telegram message once marked
MAX_CHUNK_LIMIT = MESSAGE_LIMIT - MARKER_RESERVE

DEFAULTS: dict[str, Any] = {
    "telegram": {
        "bot_token": "",
        "allowed_chats": [],  # empty = serve every chat
        "poll_timeout": 30,
    },
    "agent": {
        "command": "claude",
        "sdk_enabled": True,
        "sdk_timeout_ms": 15_000,
        "cli_timeout_ms": 15_000,
        "max_concurrent": 3,
    },
    "limits": {
        "cooldown_ms": 3_000,
        "sweep_interval_ms": 60_000,
        "max_message_length": 4_000,
        "chunk_limit": 4_000,
    },
    "data_dir": str(DEFAULT_CONFIG_DIR / "data"),
}


class Config:
    """Merged configuration from YAML + env vars."""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_FILE
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self):
        merged = _deep_copy(DEFAULTS)

        if self._path.exists():
            try:
                with open(self._path) as f:
                    file_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(
                    f"{self._path} is not valid YAML", component="config", detail=str(exc),
                ) from exc
            if not isinstance(file_data, dict):
                raise ConfigError(
                    f"{self._path} must contain a mapping, got {type(file_data).__name__}",
                    component="config",
                )
            _deep_merge(merged, file_data)

        env_map = {
            "RELAY_BOT_TOKEN": ("telegram", "bot_token"),
            "RELAY_AGENT_COMMAND": ("agent", "command"),
            "RELAY_SDK_ENABLED": ("agent", "sdk_enabled"),
            "RELAY_MAX_CONCURRENT": ("agent", "max_concurrent"),
            "RELAY_CLI_TIMEOUT_MS": ("agent", "cli_timeout_ms"),
            "RELAY_SDK_TIMEOUT_MS": ("agent", "sdk_timeout_ms"),
            "RELAY_COOLDOWN_MS": ("limits", "cooldown_ms"),
            "RELAY_DATA_DIR": ("data_dir",),
        }
        for env_key, path in env_map.items():
            val = os.environ.get(env_key)
            if val is not None:
                _set_nested(merged, path, _coerce(val))

        self._data = merged

    # -- Accessors --

    @property
    def path(self) -> Path:
        return self._path

    @property
    def bot_token(self) -> str:
        return self._data["telegram"]["bot_token"]

    @property
    def allowed_chats(self) -> set[int]:
        return {int(c) for c in self._data["telegram"]["allowed_chats"] or []}

    @property
    def poll_timeout(self) -> int:
        return int(self._data["telegram"]["poll_timeout"])

    @property
    def agent_command(self) -> str:
        return self._data["agent"]["command"]

    @property
    def sdk_enabled(self) -> bool:
        return bool(self._data["agent"]["sdk_enabled"])

    @property
    def sdk_timeout(self) -> float:
        """SDK soft timeout in seconds."""
        return int(self._data["agent"]["sdk_timeout_ms"]) / 1000

    @property
    def cli_timeout(self) -> float:
        """CLI hard timeout in seconds."""
        return int(self._data["agent"]["cli_timeout_ms"]) / 1000

    @property
    def max_concurrent(self) -> int:
        return int(self._data["agent"]["max_concurrent"])

    @property
    def cooldown(self) -> float:
        return int(self._data["limits"]["cooldown_ms"]) / 1000

    @property
    def sweep_interval(self) -> float:
        return int(self._data["limits"]["sweep_interval_ms"]) / 1000

    @property
    def max_message_length(self) -> int:
        return int(self._data["limits"]["max_message_length"])

    @property
    def chunk_limit(self) -> int:
        return int(self._data["limits"]["chunk_limit"])

    @property
    def data_dir(self) -> Path:
        return Path(self._data["data_dir"]).expanduser()

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def error_log(self) -> Path:
        return self.data_dir / "errors.log"

    def validate(self) -> list[str]:
        """Return list of validation errors, empty if config is valid."""
        errors = []
        if not self.bot_token:
            errors.append("telegram.bot_token is required")
        if not self.agent_command:
            errors.append("agent.command is required")
        if self.max_concurrent < 1:
            errors.append("agent.max_concurrent must be at least 1")
        if self.cooldown < 0:
            errors.append("limits.cooldown_ms must not be negative")
        if self.chunk_limit < 1:
            errors.append("limits.chunk_limit must be at least 1")
        elif self.chunk_limit > MAX_CHUNK_LIMIT:
            errors.append(
                f"limits.chunk_limit must be at most {MAX_CHUNK_LIMIT} "
                f"(Telegram allows {MESSAGE_LIMIT} chars including the part marker)"
            )
        return errors

    def raw(self) -> dict[str, Any]:
        return _deep_copy(self._data)


def _deep_copy(d: dict) -> dict:
    return copy.deepcopy(d)


def _deep_merge(base: dict, override: dict):
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v


def _set_nested(d: dict, keys: tuple, value):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _coerce(val: str):
    """Try to coerce string env var to int/bool."""
    if val.isdigit():
        return int(val)
    if val.lower() in ("true", "false"):
        return val.lower() == "true"
    return val
