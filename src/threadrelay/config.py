"""Relay configuration.

Settings are read from ~/.threadrelay/settings.yaml (optional) and then
overridden by environment variables:

- MATTERMOST_URL, MATTERMOST_BOT_TOKEN, MATTERMOST_BOT_ID (required)
- THREADRELAY_CHANNEL_ID (required), THREADRELAY_CHANNELS ("id:/path,id2:/path")
- THREADRELAY_ALLOWED_USERS, THREADRELAY_SKIP_PERMISSIONS
- THREADRELAY_CLAUDE_BIN, THREADRELAY_PERMISSION_COMMAND, THREADRELAY_SYSTEM_PROMPT_FILE
- THREADRELAY_IDLE_TIMEOUT, THREADRELAY_LOG_LEVEL
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import yaml  # type: ignore

from .paths import ensure_home
from .runners.claude import DEFAULT_PERMISSION_TOOL
from .util.fs import atomic_write_text

logger = logging.getLogger("threadrelay.config")

DEFAULT_IDLE_TIMEOUT_SECONDS = 1800


class ConfigError(ValueError):
    """Raised when required settings are missing or malformed."""


@dataclass
class RelayConfig:
    mattermost_url: str
    bot_token: str
    bot_id: str
    channel_id: str
    channels: Dict[str, str] = field(default_factory=dict)
    allowed_users: List[str] = field(default_factory=list)
    skip_permissions: bool = False
    claude_bin: str = "claude"
    permission_command: str = "threadrelay-permission-server"
    permission_tool: str = DEFAULT_PERMISSION_TOOL
    system_prompt_file: Optional[str] = None
    idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.channels:
            self.channels = {self.channel_id: os.getcwd()}

    def working_dir_for_channel(self, channel_id: Optional[str]) -> Optional[str]:
        if not channel_id:
            return None
        return self.channels.get(channel_id)

    def is_allowed(self, username: str) -> bool:
        if not self.allowed_users:
            return True
        return username in self.allowed_users

    def permission_env(
        self, *, channel_id: Optional[str], thread_id: str = "", skip: Optional[bool] = None
    ) -> Optional[Dict[str, str]]:
        """Env handed to the permission-prompt server, or None when prompts are skipped.

        skip overrides skip_permissions for one session (the !permissions command).
        """
        skip_prompts = self.skip_permissions if skip is None else skip
        if skip_prompts:
            return None
        return {
            "PLATFORM_URL": self.mattermost_url,
            "PLATFORM_TOKEN": self.bot_token,
            "PLATFORM_CHANNEL_ID": channel_id or self.channel_id,
            "PLATFORM_THREAD_ID": thread_id,
            "PLATFORM_BOT_ID": self.bot_id,
            "ALLOWED_USERS": ",".join(self.allowed_users),
        }

    def read_system_prompt(self) -> Optional[str]:
        if not self.system_prompt_file:
            return None
        p = Path(self.system_prompt_file).expanduser()
        try:
            text = p.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning(f"Cannot read system prompt file {p}: {e}")
            return None
        return text or None


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings() -> Dict[str, Any]:
    """Load settings.yaml from the relay home (empty dict if absent or malformed)."""
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable settings file {p}: {e}")
        return {}
    return doc if isinstance(doc, dict) else {}


def save_settings(settings: Dict[str, Any]) -> None:
    p = _settings_path()
    atomic_write_text(p, yaml.safe_dump(settings, allow_unicode=True, sort_keys=False))


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        items = [str(x) for x in value]
    else:
        items = str(value or "").split(",")
    return [x.strip() for x in items if x.strip()]


def parse_channels(value: Any, *, default_dir: str) -> Dict[str, str]:
    """Parse "id:/path,id2" (or a yaml mapping) into {channel_id: working_dir}."""
    if isinstance(value, dict):
        return {str(k).strip(): str(v or default_dir) for k, v in value.items() if str(k).strip()}
    out: Dict[str, str] = {}
    for entry in str(value or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        channel, _, path = entry.partition(":")
        out[channel.strip()] = path.strip() or default_dir
    return out


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"MATTERMOST_URL must be an HTTP(S) URL, got: {url}")


def load_config(
    env: Optional[Mapping[str, str]] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> RelayConfig:
    """Build a RelayConfig from settings.yaml overlaid with environment variables."""
    env = os.environ if env is None else env
    doc = load_settings() if settings is None else settings

    def pick(env_key: str, doc_key: str, default: Any = None) -> Any:
        v = env.get(env_key)
        if v is not None and str(v).strip():
            return v
        dv = doc.get(doc_key)
        return default if dv is None else dv

    def required(env_key: str, doc_key: str) -> str:
        v = str(pick(env_key, doc_key, "") or "").strip()
        if not v:
            raise ConfigError(f"Missing required setting: {env_key}")
        return v

    url = required("MATTERMOST_URL", "mattermost_url")
    _validate_url(url)
    channel_id = required("THREADRELAY_CHANNEL_ID", "channel_id")

    channels = parse_channels(pick("THREADRELAY_CHANNELS", "channels", ""), default_dir=os.getcwd())
    try:
        idle_timeout = int(pick("THREADRELAY_IDLE_TIMEOUT", "idle_timeout_seconds", DEFAULT_IDLE_TIMEOUT_SECONDS))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"THREADRELAY_IDLE_TIMEOUT must be an integer: {e}") from e

    return RelayConfig(
        mattermost_url=url,
        bot_token=required("MATTERMOST_BOT_TOKEN", "bot_token"),
        bot_id=required("MATTERMOST_BOT_ID", "bot_id"),
        channel_id=channel_id,
        channels=channels,
        allowed_users=_parse_list(pick("THREADRELAY_ALLOWED_USERS", "allowed_users", "")),
        skip_permissions=_parse_bool(pick("THREADRELAY_SKIP_PERMISSIONS", "skip_permissions", False)),
        claude_bin=str(pick("THREADRELAY_CLAUDE_BIN", "claude_bin", "claude")),
        permission_command=str(pick("THREADRELAY_PERMISSION_COMMAND", "permission_command", "threadrelay-permission-server")),
        system_prompt_file=pick("THREADRELAY_SYSTEM_PROMPT_FILE", "system_prompt_file", None),
        idle_timeout_seconds=idle_timeout,
        log_level=str(pick("THREADRELAY_LOG_LEVEL", "log_level", "INFO")),
    )
