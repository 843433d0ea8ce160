"""Configuration management for yumi.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for every subsystem: command prefix, access control,
message handling, continuations, group metadata retries, the bridge
transport, plugins and logging.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
import re
from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("yumi.bot")

DEFAULT_PREFIX = "!"
DEFAULT_REPLY_EXPIRE_MS = 10 * 60 * 1000
DEFAULT_REACTION_EXPIRE_MS = 5 * 60 * 1000


class Config:
    """Central configuration manager for yumi.

    Loads settings.yaml and .env from the config directory. Provides
    typed property accessors for every configurable subsystem. The
    only runtime mutation is the global prefix, persisted through
    save_settings().

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def save_settings(self):
        """Write the current settings back to settings.yaml."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        filepath = self.config_dir / "settings.yaml"
        with open(filepath, "w") as f:
            yaml.dump(self.settings, f, default_flow_style=False, allow_unicode=True)

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        return section if isinstance(section, dict) else {}

    def validate(self):
        """Validate critical settings at startup.

        Logs warnings/errors but does not raise -- the bot starts in
        degraded mode.
        """
        if not self.bot_admins:
            logger.warning("no_bot_admins", msg="Tier 2 commands will be unusable")
        for n in self.bot_admins:
            if not re.fullmatch(r"\d{5,15}", n):
                logger.error("invalid_admin_number_format", number="..." + n[-4:])

        if not self.prefix or any(ch.isspace() for ch in self.prefix):
            logger.error("config_invalid_value", key="prefix", value=self.prefix)

        if self.whitelist_enabled and not self.whitelist_numbers:
            logger.warning("whitelist_empty", msg="Only bot admins can use commands")

        attempts = self.metadata_retry_attempts
        if not isinstance(attempts, int) or attempts < 1:
            logger.error(
                "config_invalid_value",
                key="group_metadata.retry_attempts",
                value=attempts,
                valid=">= 1",
            )

    # --- Commands & access control ---

    @property
    def prefix(self) -> str:
        """Global command prefix (default "!")."""
        return str(self.settings.get("prefix", DEFAULT_PREFIX))

    def set_prefix(self, prefix: str) -> None:
        """Change the global prefix and persist it."""
        self.settings["prefix"] = prefix
        self.save_settings()
        logger.info("global_prefix_changed", prefix=prefix)

    @staticmethod
    def _numbers(values) -> List[str]:
        if not isinstance(values, list):
            logger.error("number_list_invalid_type", type=type(values).__name__)
            return []
        return [re.sub(r"[^\d]", "", str(v)) for v in values if str(v).strip()]

    @property
    def bot_admins(self) -> List[str]:
        """Bot-admin numbers, digits only."""
        return self._numbers(self.settings.get("bot_admins", []))

    @property
    def admin_only(self) -> bool:
        """Only bot admins may use commands."""
        return bool(self._section("admin_only").get("enabled", False))

    @property
    def whitelist_enabled(self) -> bool:
        return bool(self._section("whitelist").get("enabled", False))

    @property
    def whitelist_numbers(self) -> List[str]:
        return self._numbers(self._section("whitelist").get("numbers", []))

    # --- Message handling ---

    @property
    def auto_read(self) -> bool:
        """Mark inbound messages as read before dispatch (default False)."""
        return bool(self._section("message_handling").get("auto_read", False))

    @property
    def delete_command_messages(self) -> bool:
        """Delete the originating command message after handling (default False)."""
        return bool(self._section("message_handling").get("delete_command_messages", False))

    @property
    def unwrap_ephemeral(self) -> bool:
        """Unwrap disappearing/view-once wrappers once (default True)."""
        return bool(self._section("message_handling").get("unwrap_ephemeral", True))

    @property
    def log_messages(self) -> bool:
        return bool(self._section("log_events").get("messages", True))

    @property
    def log_commands(self) -> bool:
        return bool(self._section("log_events").get("commands", True))

    # --- Continuations ---

    @property
    def reply_expire_ms(self) -> int:
        """Default lifetime of reply continuations (10 minutes)."""
        return int(self._section("continuations").get("reply_expire_ms", DEFAULT_REPLY_EXPIRE_MS))

    @property
    def reaction_expire_ms(self) -> int:
        """Default lifetime of reaction continuations (5 minutes)."""
        return int(
            self._section("continuations").get("reaction_expire_ms", DEFAULT_REACTION_EXPIRE_MS)
        )

    @property
    def suppress_events_on_rejected(self) -> bool:
        """Rejected follow-ups (wrong emoji, no permission) skip passive events."""
        return bool(self._section("continuations").get("suppress_events_on_rejected", True))

    # --- Group metadata ---

    @property
    def metadata_retry_attempts(self) -> int:
        return self._section("group_metadata").get("retry_attempts", 3)

    @property
    def metadata_retry_base_delay(self) -> float:
        """First retry delay in seconds; doubles per attempt."""
        return float(self._section("group_metadata").get("retry_base_delay", 1.0))

    # --- Transport ---

    @property
    def bridge_url(self) -> str:
        """Bridge API URL. Env var BRIDGE_API_URL takes precedence."""
        return os.environ.get("BRIDGE_API_URL") or self.settings.get(
            "bridge_url", "http://127.0.0.1:3000"
        )

    @property
    def bridge_token(self) -> str:
        """Bearer token for the bridge API (optional)."""
        return os.environ.get("BRIDGE_API_TOKEN", "")

    @property
    def bridge_timeout(self) -> int:
        """Per-request timeout in seconds for bridge calls (default 30)."""
        return int(self.settings.get("bridge_timeout", 30))

    # --- Storage ---

    @property
    def thread_data_path(self) -> Path:
        """JSON file holding per-chat overrides."""
        configured = self.settings.get("thread_data_path")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "data" / "thread_data.json"

    # --- Plugins ---

    @property
    def plugins_dir(self) -> Path:
        """Get plugins directory path."""
        configured = self.settings.get("plugins_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "plugins"

    @property
    def plugin_allowlist(self) -> Optional[List[str]]:
        allowlist = self.settings.get("plugin_allowlist")
        if allowlist is not None and not isinstance(allowlist, list):
            logger.error("plugin_allowlist_invalid_type", type=type(allowlist).__name__)
            return None
        return allowlist

    # --- Logging ---

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"dispatch": "DEBUG"}."""
        return self._section("logging").get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        return self._section("logging").get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        return self._section("logging").get("backup_count", 5)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global Config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
