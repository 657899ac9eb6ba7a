"""Configuration management for wacli.

Loads user settings from ~/.whatsapp-cli/config.cfg (plus an optional .env
in the same directory) and exposes them as a Settings dataclass that is
built once per process and passed around explicitly.
"""

import configparser
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values

DEFAULT_DATA_DIR = Path.home() / ".whatsapp-cli"

# Default location for user configuration.
CONFIG_PATH = DEFAULT_DATA_DIR / "config.cfg"

ENV_PREFIX = "WACLI_"


@dataclass
class Settings:
    data_dir: Path
    auth_dir: Path
    logs_dir: Path
    debug_mode: bool = False
    session_factory: str = ""
    boot_timeout: float = 90.0
    call_timeout: float = 30.0
    slow_call_timeout: float = 60.0
    probe_timeout: float = 1.5
    start_timeout: float = 95.0
    poll_interval: float = 0.6
    login_timeout: float = 180.0

    @property
    def state_file(self) -> Path:
        return self.data_dir / "daemon.json"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / "daemon.lock"

    @property
    def log_file(self) -> Path:
        return self.logs_dir / "wacli.log"

    @property
    def daemon_log_file(self) -> Path:
        return self.logs_dir / "daemon.log"


def load_raw_config(path: Path = CONFIG_PATH) -> Dict[str, str]:
    """
    Load configuration values from the standard config path.

    Keys come back lowercased. Values from a sibling ``.env`` file fill in
    keys missing from the INI, and ``WACLI_*`` environment variables win
    over both.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    env_path = path.parent / ".env"
    if env_path.exists():
        data.update(
            {k.lower(): v for k, v in dotenv_values(env_path).items() if v is not None}
        )

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})

    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX) and value.strip() != "":
            data[key[len(ENV_PREFIX):].lower()] = value

    return data


def _get_bool(raw: Dict[str, str], key: str, default: bool = False) -> bool:
    value = raw.get(key, "")
    if isinstance(value, bool):
        return value
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for '{key}': {value!r} is not a number")
    if result <= 0:
        raise ValueError(f"Invalid value for '{key}': must be positive")
    return result


def get_settings(raw: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from raw configuration values.
    Raises ValueError if a numeric field cannot be parsed.
    """
    raw = load_raw_config() if raw is None else raw

    data_dir = Path(raw.get("data_dir") or DEFAULT_DATA_DIR).expanduser()
    auth_dir = Path(raw.get("auth_dir") or data_dir / "auth").expanduser()
    logs_dir = Path(raw.get("logs_dir") or data_dir / "logs").expanduser()

    return Settings(
        data_dir=data_dir,
        auth_dir=auth_dir,
        logs_dir=logs_dir,
        debug_mode=_get_bool(raw, "debug_mode", False) or _get_bool(raw, "debug", False),
        session_factory=str(raw.get("session_factory", "")).strip(),
        boot_timeout=_get_float(raw, "boot_timeout", 90.0),
        call_timeout=_get_float(raw, "call_timeout", 30.0),
        slow_call_timeout=_get_float(raw, "slow_call_timeout", 60.0),
        probe_timeout=_get_float(raw, "probe_timeout", 1.5),
        start_timeout=_get_float(raw, "start_timeout", 95.0),
        poll_interval=_get_float(raw, "poll_interval", 0.6),
        login_timeout=_get_float(raw, "login_timeout", 180.0),
    )
