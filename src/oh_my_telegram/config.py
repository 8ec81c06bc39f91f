import dataclasses
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = "oh-my-telegram.yml"

DEFAULT_AGENTS = ["sisyphus", "oracle", "prometheus", "librarian", "metis"]

DEFAULT_CONFIG: Dict[str, Any] = {
    "telegram": {
        "bot_token_env": "TELEGRAM_BOT_TOKEN",
        "allowed_users": [],
        "drop_pending_updates": True,
        "polling": {
            "timeout_seconds": 30,
            "request_margin_seconds": 5,
            "backoff_seconds": 1.0,
            "allowed_updates": ["message", "callback_query"],
        },
    },
    "opencode": {
        "base_url": "http://127.0.0.1:4096",
        "web_url": None,
        "default_agent": "sisyphus",
        "agents": list(DEFAULT_AGENTS),
        "working_directory": None,
        "session_prefix": "telegram",
        "request_timeout_seconds": None,
    },
    "interactions": {
        "poll_interval_seconds": 2.0,
    },
    "sessions": {
        "idle_ttl_seconds": 3600,
        "sweep_interval_seconds": 3600,
        "delete_delay_seconds": 0.1,
    },
    "keyboard": {
        "enabled": True,
        "rows": None,
    },
    "progress": {
        "enabled": True,
    },
    "log": {
        "path": ".oh-my-telegram/bot.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
    "shutdown_grace_seconds": 2.0,
}

# Environment variables that override YAML values.
ENV_ALLOWED_USERS = "ALLOWED_USERS"
ENV_DEFAULT_AGENT = "DEFAULT_AGENT"
ENV_WORKING_DIRECTORY = "WORKING_DIRECTORY"
ENV_SESSION_PREFIX = "SESSION_PREFIX"
ENV_OPENCODE_URL = "OPENCODE_URL"


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class BotConfigError(ConfigError):
    """Raised when the bot config fails validation."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass(frozen=True)
class PollingConfig:
    timeout_seconds: int
    request_margin_seconds: float
    backoff_seconds: float
    allowed_updates: List[str]


@dataclasses.dataclass(frozen=True)
class OpenCodeConfig:
    base_url: str
    web_url: str
    default_agent: str
    agents: List[str]
    working_directory: str
    session_prefix: str
    request_timeout_seconds: Optional[float]


@dataclasses.dataclass(frozen=True)
class BotConfig:
    root: Path
    bot_token_env: str
    bot_token: Optional[str]
    allowed_users: List[str]
    drop_pending_updates: bool
    polling: PollingConfig
    opencode: OpenCodeConfig
    interaction_poll_interval_seconds: float
    idle_ttl_seconds: float
    sweep_interval_seconds: float
    delete_delay_seconds: float
    keyboard_enabled: bool
    keyboard_rows: Optional[List[List[Dict[str, str]]]]
    progress_enabled: bool
    log: LogConfig
    shutdown_grace_seconds: float

    @classmethod
    def from_raw(
        cls,
        raw: Optional[Dict[str, Any]],
        *,
        root: Path,
        env: Optional[Dict[str, str]] = None,
    ) -> "BotConfig":
        env = env if env is not None else dict(os.environ)
        cfg = _merge_defaults(DEFAULT_CONFIG, raw if isinstance(raw, dict) else {})

        telegram = cfg["telegram"]
        bot_token_env = str(telegram.get("bot_token_env") or "TELEGRAM_BOT_TOKEN")
        bot_token = env.get(bot_token_env) or telegram.get("bot_token") or None

        allowed_users = _parse_str_list(telegram.get("allowed_users"))
        if env.get(ENV_ALLOWED_USERS):
            allowed_users = _parse_str_list(env[ENV_ALLOWED_USERS])

        polling_raw = telegram.get("polling") or {}
        allowed_updates = polling_raw.get("allowed_updates")
        polling = PollingConfig(
            timeout_seconds=int(polling_raw.get("timeout_seconds", 30)),
            request_margin_seconds=float(polling_raw.get("request_margin_seconds", 5)),
            backoff_seconds=float(polling_raw.get("backoff_seconds", 1.0)),
            allowed_updates=(
                [str(item) for item in allowed_updates if item]
                if isinstance(allowed_updates, list)
                else ["message", "callback_query"]
            ),
        )

        opencode_raw = cfg["opencode"]
        base_url = str(env.get(ENV_OPENCODE_URL) or opencode_raw.get("base_url"))
        web_url = opencode_raw.get("web_url") or base_url
        agents = _parse_str_list(opencode_raw.get("agents")) or list(DEFAULT_AGENTS)
        working_directory = (
            env.get(ENV_WORKING_DIRECTORY)
            or opencode_raw.get("working_directory")
            or str(root)
        )
        request_timeout = opencode_raw.get("request_timeout_seconds")
        opencode = OpenCodeConfig(
            base_url=base_url.rstrip("/"),
            web_url=str(web_url).rstrip("/"),
            default_agent=str(
                env.get(ENV_DEFAULT_AGENT) or opencode_raw.get("default_agent")
            ),
            agents=agents,
            working_directory=str(working_directory),
            session_prefix=str(
                env.get(ENV_SESSION_PREFIX) or opencode_raw.get("session_prefix")
            ),
            request_timeout_seconds=(
                float(request_timeout) if request_timeout is not None else None
            ),
        )

        sessions = cfg["sessions"]
        keyboard = cfg["keyboard"]
        rows = keyboard.get("rows")
        log_cfg = cfg["log"]
        log_path = Path(str(log_cfg.get("path")))
        if not log_path.is_absolute():
            log_path = root / log_path

        return cls(
            root=root,
            bot_token_env=bot_token_env,
            bot_token=bot_token,
            allowed_users=allowed_users,
            drop_pending_updates=bool(telegram.get("drop_pending_updates", True)),
            polling=polling,
            opencode=opencode,
            interaction_poll_interval_seconds=float(
                cfg["interactions"].get("poll_interval_seconds", 2.0)
            ),
            idle_ttl_seconds=float(sessions.get("idle_ttl_seconds", 3600)),
            sweep_interval_seconds=float(sessions.get("sweep_interval_seconds", 3600)),
            delete_delay_seconds=float(sessions.get("delete_delay_seconds", 0.1)),
            keyboard_enabled=bool(keyboard.get("enabled", True)),
            keyboard_rows=rows if isinstance(rows, list) else None,
            progress_enabled=bool(cfg["progress"].get("enabled", True)),
            log=LogConfig(
                path=log_path,
                max_bytes=int(log_cfg.get("max_bytes", 10_000_000)),
                backup_count=int(log_cfg.get("backup_count", 3)),
            ),
            shutdown_grace_seconds=float(cfg.get("shutdown_grace_seconds", 2.0)),
        )

    def validate(self) -> None:
        issues: list[str] = []
        if not self.bot_token:
            issues.append(f"missing bot token env '{self.bot_token_env}'")
        if self.polling.timeout_seconds <= 0:
            issues.append("telegram.polling.timeout_seconds must be greater than 0")
        if self.polling.request_margin_seconds <= 0:
            issues.append(
                "telegram.polling.request_margin_seconds must be greater than 0"
            )
        if not self.opencode.agents:
            issues.append("opencode.agents must not be empty")
        elif self.opencode.default_agent not in self.opencode.agents:
            issues.append(
                f"opencode.default_agent '{self.opencode.default_agent}' "
                "is not listed in opencode.agents"
            )
        if not self.opencode.session_prefix:
            issues.append("opencode.session_prefix must be set")
        if self.interaction_poll_interval_seconds <= 0:
            issues.append("interactions.poll_interval_seconds must be greater than 0")
        if issues:
            raise BotConfigError("; ".join(issues))

    @property
    def long_poll_request_timeout(self) -> float:
        return self.polling.timeout_seconds + self.polling.request_margin_seconds


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_str_list(raw: Any) -> List[str]:
    values: List[str] = []
    if raw is None:
        return values
    if isinstance(raw, (int, str)):
        return [part for part in re.split(r"[,\s]+", str(raw).strip()) if part]
    if isinstance(raw, Iterable):
        for item in raw:
            values.extend(_parse_str_list(item))
    return values


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest oh-my-telegram.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_config(root: Path) -> None:
    """Best-effort load of a .env file sitting next to the config."""
    try:
        candidate = root / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def load_config(
    start: Path, *, config_path: Optional[Path] = None
) -> BotConfig:
    """
    Load the bot config. An explicit path wins; otherwise the nearest
    oh-my-telegram.yml walking upward from start is used. Without any file the
    defaults plus environment overrides apply.
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        path: Optional[Path] = config_path
    else:
        path = find_nearest_config_path(start)
    root = path.parent.resolve() if path else start.resolve()
    _load_dotenv_for_config(root)
    data: Dict[str, Any] = {}
    if path is not None:
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping")
    _validate_sections(data)
    return BotConfig.from_raw(data, root=root)


def _validate_sections(cfg: Dict[str, Any]) -> None:
    for key in ("telegram", "opencode", "interactions", "sessions", "keyboard", "log"):
        value = cfg.get(key)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(f"{key} section must be a mapping")
    telegram = cfg.get("telegram") or {}
    polling = telegram.get("polling")
    if polling is not None and not isinstance(polling, dict):
        raise ConfigError("telegram.polling section must be a mapping")
    rows = (cfg.get("keyboard") or {}).get("rows")
    if rows is not None:
        if not isinstance(rows, list) or not all(isinstance(row, list) for row in rows):
            raise ConfigError("keyboard.rows must be a list of button rows")
        for row in rows:
            for button in row:
                if not isinstance(button, dict) or not {
                    "text",
                    "callback_data",
                } <= set(button):
                    raise ConfigError(
                        "keyboard.rows buttons need text and callback_data"
                    )
    log_cfg = cfg.get("log") or {}
    for key in ("max_bytes", "backup_count"):
        if key in log_cfg and not isinstance(log_cfg.get(key), int):
            raise ConfigError(f"log.{key} must be an integer")
