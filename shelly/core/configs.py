"""Configuration management for shelly.

Loads user settings from ~/.config/shelly/config.cfg, an optional .env file
and SHELLY_* environment variables (highest precedence).
Provides Settings (paths, collaborator commands and timing constants).
"""

import configparser
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values

from shelly.utils import seed_hash

# Default location for user configuration.
CONFIG_PATH = Path.home() / ".config" / "shelly" / "config.cfg"
ENV_PATH = Path(".env")
ENV_PREFIX = "SHELLY_"


@dataclass
class Settings:
    base_dir: Path = field(default_factory=lambda: Path.home() / ".shelly")
    state_dir: Optional[Path] = None
    remote_shell_command: str = "npx hyperssh"
    tunnel_command: str = "npx hypertele-server"
    request_timeout: float = 5.0
    exec_timeout: float = 30.0
    probe_timeout: float = 1.0
    spawn_poll_interval: float = 0.1
    spawn_poll_attempts: int = 50
    stop_settle_delay: float = 0.3
    drain_grace: float = 0.1
    max_log_entries: int = 10000
    plugins: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir)
        if self.state_dir is None:
            self.state_dir = self.base_dir / "seeds"
        self.state_dir = Path(self.state_dir)

    def endpoint_path(self, seed: str) -> Path:
        # AF_UNIX paths are capped around 108 bytes, seeds are not.
        return self.base_dir / f"daemon-{seed_hash(seed)[:16]}.sock"

    def daemon_log_path(self, seed: str) -> Path:
        return self.base_dir / f"daemon-{seed_hash(seed)[:16]}.log"

    @property
    def current_seed_path(self) -> Path:
        return self.base_dir / "current-seed"


def load_raw_config(
    path: Path = CONFIG_PATH,
    env_path: Optional[Path] = ENV_PATH,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Load configuration values from the config file, .env and the environment.
    Values are returned with lowercase keys for convenience.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})

    if env_path is not None and env_path.exists():
        data.update(_strip_prefix(dotenv_values(env_path)))

    environ = os.environ if environ is None else environ
    data.update(_strip_prefix(environ))

    return data


def _strip_prefix(values) -> Dict[str, str]:
    return {
        k[len(ENV_PREFIX):].lower(): v
        for k, v in values.items()
        if k.upper().startswith(ENV_PREFIX) and v is not None
    }


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid value for '{key}': {value!r} is not a number")


def _get_int(raw: Dict[str, str], key: str, default: int) -> int:
    return int(_get_float(raw, key, default))


def get_settings(raw: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build Settings from raw configuration values.
    Raises ValueError if a numeric setting cannot be parsed.
    """
    raw = load_raw_config() if raw is None else raw

    base_dir = Path(raw.get("base_dir") or Path.home() / ".shelly").expanduser()
    state_dir = raw.get("state_dir")

    plugins = [p.strip() for p in raw.get("plugins", "").split(",") if p.strip()]

    return Settings(
        base_dir=base_dir,
        state_dir=Path(state_dir).expanduser() if state_dir else None,
        remote_shell_command=raw.get("remote_shell_command", "").strip() or "npx hyperssh",
        tunnel_command=raw.get("tunnel_command", "").strip() or "npx hypertele-server",
        request_timeout=_get_float(raw, "request_timeout", 5.0),
        exec_timeout=_get_float(raw, "exec_timeout", 30.0),
        probe_timeout=_get_float(raw, "probe_timeout", 1.0),
        spawn_poll_interval=_get_float(raw, "spawn_poll_interval", 0.1),
        spawn_poll_attempts=_get_int(raw, "spawn_poll_attempts", 50),
        stop_settle_delay=_get_float(raw, "stop_settle_delay", 0.3),
        drain_grace=_get_float(raw, "drain_grace", 0.1),
        max_log_entries=_get_int(raw, "max_log_entries", 10000),
        plugins=plugins,
    )
