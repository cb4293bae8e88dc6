"""Configuration loader for the relay daemon.

Loads relayd.toml, applies environment variable overrides (credentials and
the Codex thread options), validates required fields, and provides typed
access to all settings.
Immutable after load; no runtime config reloading.
"""

import logging
import os
import tomllib
from collections.abc import Callable
from pathlib import Path
from typing import Any

from backends import ThreadOptions

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _parse_bool(val: str) -> bool:
    return val.lower() == "true"


# Environment variable overrides: env var → (key path, converter)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
    "FEISHU_APP_ID": (("channel", "feishu", "app_id"), str),
    "FEISHU_APP_SECRET": (("channel", "feishu", "app_secret"), str),
    "FEISHU_VERIFICATION_TOKEN": (("channel", "feishu", "verification_token"), str),
    "CODEX_SKIP_GIT_CHECK": (("thread", "skip_git_repo_check"), _parse_bool),
    "CODEX_SANDBOX_MODE": (("thread", "sandbox_mode"), str),
    "CODEX_APPROVAL_POLICY": (("thread", "approval_policy"), str),
    "CODEX_REASONING_EFFORT": (("thread", "reasoning_effort"), str),
    "CODEX_WEB_SEARCH_ENABLED": (("thread", "web_search_enabled"), _parse_bool),
    "CODEX_WORKING_DIRECTORY": (("thread", "working_directory"), str),
    "OPENAI_API_KEY": (("backend", "openai", "api_key"), str),
    "RELAYD_HTTP_TOKEN": (("http", "auth_token"), str),
    "WEB_PORT": (("http", "port"), int),
}

_CHANNEL_TYPES = ("feishu", "cli")
_BACKEND_TYPES = ("codex-exec", "openai-conversations")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _deep_set(d: dict, keys: tuple[str, ...] | list[str], value: Any) -> None:
    for k in keys[:-1]:
        d = d.setdefault(k, {})
    d[keys[-1]] = value


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from relayd.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, (key_path, convert) in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if not val:
                continue
            try:
                _deep_set(self._data, key_path, convert(val))
            except ValueError:
                log.warning("Ignoring invalid value for %s: %r", env_var, val)

    def _validate(self):
        errors = []
        ch_type = _deep_get(self._data, "channel", "type")
        if not ch_type:
            errors.append("[channel] type is required")
        elif ch_type not in _CHANNEL_TYPES:
            errors.append(f"[channel] type must be one of {', '.join(_CHANNEL_TYPES)}")
        if ch_type == "feishu":
            fs = _deep_get(self._data, "channel", "feishu", default={})
            if not fs.get("app_id"):
                errors.append("[channel.feishu] app_id is required (or set FEISHU_APP_ID)")
            if not fs.get("app_secret"):
                errors.append("[channel.feishu] app_secret is required (or set FEISHU_APP_SECRET)")
            if not fs.get("verification_token"):
                errors.append("[channel.feishu] verification_token is required "
                              "(or set FEISHU_VERIFICATION_TOKEN)")
        backend_type = self.backend_type
        if backend_type not in _BACKEND_TYPES:
            errors.append(f"[backend] type must be one of {', '.join(_BACKEND_TYPES)}")
        if backend_type == "openai-conversations" and not self.openai_api_key:
            errors.append("[backend.openai] api_key is required (or set OPENAI_API_KEY)")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    @property
    def config_dir(self) -> Path:
        """Directory containing relayd.toml (for resolving relative paths)."""
        return self._config_dir

    # --- Channel ---

    @property
    def channel_type(self) -> str:
        return self._data["channel"]["type"]

    @property
    def feishu_config(self) -> dict:
        return _deep_get(self._data, "channel", "feishu", default={})

    # --- Backend ---

    @property
    def backend_type(self) -> str:
        return _deep_get(self._data, "backend", "type", default="codex-exec")

    @property
    def codex_binary(self) -> str:
        return _deep_get(self._data, "backend", "codex", "binary", default="codex")

    @property
    def codex_home(self) -> str:
        return _deep_get(self._data, "backend", "codex", "codex_home", default="")

    @property
    def codex_turn_timeout(self) -> float:
        return float(_deep_get(self._data, "backend", "codex", "turn_timeout", default=0))

    @property
    def openai_api_key(self) -> str:
        return _deep_get(self._data, "backend", "openai", "api_key", default="")

    @property
    def openai_base_url(self) -> str:
        return _deep_get(self._data, "backend", "openai", "base_url", default="")

    @property
    def openai_model(self) -> str:
        return _deep_get(self._data, "backend", "openai", "model", default="gpt-5")

    # --- Thread options ---

    @property
    def thread_options(self) -> ThreadOptions:
        t = _deep_get(self._data, "thread", default={})
        workdir = t.get("working_directory", "")
        return ThreadOptions(
            sandbox_mode=t.get("sandbox_mode", "workspace-write"),
            approval_policy=t.get("approval_policy", "never"),
            reasoning_effort=t.get("reasoning_effort", "medium"),
            web_search_enabled=t.get("web_search_enabled", True),
            working_directory=str(_resolve_path(workdir)) if workdir else "",
            skip_git_repo_check=t.get("skip_git_repo_check", True),
            model=t.get("model", ""),
        )

    # --- Router ---

    @property
    def fallback_reply(self) -> str:
        return _deep_get(self._data, "router", "fallback_reply",
                         default="Codex returned no content")

    @property
    def error_prefix(self) -> str:
        return _deep_get(self._data, "router", "error_prefix", default="Error: ")

    # --- HTTP status API ---

    @property
    def http_enabled(self) -> bool:
        return _deep_get(self._data, "http", "enabled", default=False)

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=3000)

    @property
    def http_auth_token(self) -> str:
        return _deep_get(self._data, "http", "auth_token", default="")

    @property
    def http_max_logs(self) -> int:
        return _deep_get(self._data, "http", "max_logs", default=500)

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.relayd"))

    @property
    def session_file(self) -> Path:
        raw = _deep_get(self._data, "paths", "session_file", default="./bot_sessions.json")
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = self._config_dir / p
        return p.resolve()

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.relayd/relayd.log"))

    # --- Logging ---

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as relayd.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to relayd.toml config file.
        overrides: Dict of dotted-key overrides applied to the raw TOML data
                   before constructing Config (e.g. CLI args).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    try:
        with open(p, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {p}: {e}") from e
    if overrides:
        for key_path, value in overrides.items():
            _deep_set(data, key_path.split("."), value)
    return Config(data, config_dir=p.parent)
