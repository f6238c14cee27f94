from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

CONFIG_TABLE = "pibot"


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""


@dataclass(slots=True)
class BotConfig:
    telegram_bot_token: str
    owner_chat_id: int | None = None
    pi_executable: str = "pi"
    provider: str | None = None
    model: str | None = None
    working_directory: str | None = None
    polling_timeout_seconds: int = 30
    heartbeat_interval_seconds: int = 300
    session_ttl_seconds: int = 900
    call_timeout_seconds: int = 600
    heartbeat_timeout_seconds: int = 300
    watchdog_interval_seconds: float = 30.0
    web_enabled: bool = True
    web_host: str = "127.0.0.1"
    web_port: int = 8787

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BotConfig:
        merged: dict[str, Any] = {}
        known = {item.name for item in fields(cls)}
        for key, value in data.items():
            if key in known:
                merged[key] = value
        table = data.get(CONFIG_TABLE)
        if isinstance(table, dict):
            for key, value in table.items():
                if key in known:
                    merged[key] = value

        token = merged.get("telegram_bot_token")
        if not isinstance(token, str) or not token.strip():
            raise ConfigError("missing required config field: telegram_bot_token")

        config = cls(**merged)
        config.validate()
        return config

    def validate(self) -> None:
        if (
            isinstance(self.web_port, bool)
            or not isinstance(self.web_port, int)
            or not 0 < self.web_port <= 65535
        ):
            raise ConfigError(f"invalid web_port value: {self.web_port} (expected 1-65535)")
        for name in (
            "watchdog_interval_seconds",
            "polling_timeout_seconds",
            "heartbeat_interval_seconds",
            "session_ttl_seconds",
            "call_timeout_seconds",
            "heartbeat_timeout_seconds",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ConfigError(f"{name} must be a number, got {value!r}")
        if self.watchdog_interval_seconds <= 0:
            raise ConfigError("watchdog_interval_seconds must be positive")
        if self.owner_chat_id is not None and (
            isinstance(self.owner_chat_id, bool) or not isinstance(self.owner_chat_id, int)
        ):
            raise ConfigError(f"owner_chat_id must be an integer, got {self.owner_chat_id!r}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def agent_directory(self, config_path: Path) -> Path:
        return config_path.resolve().parent

    def resolved_working_directory(self, config_path: Path) -> Path:
        if not self.working_directory:
            return self.agent_directory(config_path)
        path = Path(self.working_directory).expanduser()
        if not path.is_absolute():
            path = self.agent_directory(config_path) / path
        return path


def default_config_dir() -> Path:
    return Path.home() / ".config" / "pibot"


def default_config_path() -> Path:
    return default_config_dir() / "config.toml"


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BotConfig) -> str:
    lines = [f"[{CONFIG_TABLE}]"]
    for key, value in config.to_dict().items():
        if value is None:
            continue
        lines.append(f"{key} = {_toml_value(value)}")
    return "\n".join(lines) + "\n"


def load_config(path: Path) -> BotConfig:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"failed parsing TOML config file {path}: {exc}") from exc
    return BotConfig.from_dict(data)


def save_config(path: Path, config: BotConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
