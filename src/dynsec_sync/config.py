"""
dynsec-sync configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/dynsec-sync/dynsec-sync.env (system install)
2) ~/.config/dynsec-sync/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)
"""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


class AuthMode(str, Enum):
    PASSWORD_FILE = "password_file"
    DYNAMIC_SECURITY = "dynamic_security"


DEFAULT_SYSTEM_CLIENTS = ("server_admin", "mqtt_client")


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/dynsec-sync/dynsec-sync.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "dynsec-sync" / ".env"

    # 3) project override
    yield Path(".env")


def _env(key: str, default: str) -> str:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_seconds(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def _parse_auth_mode(raw: str) -> AuthMode:
    try:
        return AuthMode(raw.lower())
    except ValueError as exc:
        allowed = ", ".join(m.value for m in AuthMode)
        raise ConfigError(f"Invalid MQTT_AUTH_MODE {raw!r}; allowed: {allowed}") from exc


def _parse_list(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True, slots=True)
class SyncConfig:
    auth_mode: AuthMode
    mqtt_host: str
    mqtt_port: int
    admin_username: str
    admin_password: str  # empty in password_file mode
    default_role: str
    command_timeout_s: float
    passwd_file: Path
    mosquitto_passwd: str
    reload_debounce_s: float
    reload_command: tuple[str, ...]
    system_clients: tuple[str, ...]
    database_url: str


def load_config(*, dotenv_enabled: bool = True) -> SyncConfig:
    """
    Load config by reading env files and then validating environment variables.

    Returns an immutable SyncConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    auth_mode = _parse_auth_mode(_env("MQTT_AUTH_MODE", AuthMode.PASSWORD_FILE.value))

    mqtt_host = _env("MQTT_HOST", "localhost")
    mqtt_port = _parse_int("MQTT_PORT", _env("MQTT_PORT", "1883"))
    if not (1 <= mqtt_port <= 65535):
        raise ConfigError(f"MQTT_PORT out of range: {mqtt_port}")

    admin_username = _env("MQTT_DYNSEC_ADMIN_USER", "server_admin")
    if auth_mode is AuthMode.DYNAMIC_SECURITY:
        admin_password = _require_env("MQTT_DYNSEC_ADMIN_PASS")
    else:
        admin_password = os.getenv("MQTT_DYNSEC_ADMIN_PASS", "")

    reload_command = tuple(shlex.split(_env("MQTT_RELOAD_COMMAND", "pkill -HUP mosquitto")))
    if not reload_command:
        raise ConfigError("MQTT_RELOAD_COMMAND must not be empty")

    return SyncConfig(
        auth_mode=auth_mode,
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        admin_username=admin_username,
        admin_password=admin_password,
        default_role=_env("MQTT_DYNSEC_DEFAULT_ROLE", "device"),
        command_timeout_s=_parse_seconds("MQTT_COMMAND_TIMEOUT", _env("MQTT_COMMAND_TIMEOUT", "10")),
        passwd_file=Path(_env("MQTT_PASSWD_FILE", "/etc/mosquitto/passwd")),
        mosquitto_passwd=_env("MQTT_MOSQUITTO_PASSWD", "mosquitto_passwd"),
        reload_debounce_s=_parse_seconds("MQTT_RELOAD_DEBOUNCE", _env("MQTT_RELOAD_DEBOUNCE", "2")),
        reload_command=reload_command,
        system_clients=_parse_list(_env("MQTT_SYSTEM_CLIENTS", ",".join(DEFAULT_SYSTEM_CLIENTS))),
        database_url=_env("DATABASE_URL", "postgresql://postgres@localhost:5432/mousetrap_monitor"),
    )
