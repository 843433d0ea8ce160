"""Tests for settings loading, defaults and the persisted global prefix."""

from pathlib import Path
from unittest.mock import patch

import yaml

from yumi.config import DEFAULT_REACTION_EXPIRE_MS, DEFAULT_REPLY_EXPIRE_MS, Config


class TestDefaults:

    def test_empty_config_dir(self, tmp_path):
        """A missing settings.yaml should give the documented defaults."""
        config = Config(tmp_path)

        assert config.prefix == "!"
        assert config.bot_admins == []
        assert config.admin_only is False
        assert config.whitelist_enabled is False
        assert config.auto_read is False
        assert config.delete_command_messages is False
        assert config.unwrap_ephemeral is True
        assert config.reply_expire_ms == DEFAULT_REPLY_EXPIRE_MS == 600000
        assert config.reaction_expire_ms == DEFAULT_REACTION_EXPIRE_MS == 300000
        assert config.suppress_events_on_rejected is True
        assert config.metadata_retry_attempts == 3
        assert config.metadata_retry_base_delay == 1.0
        assert config.bridge_timeout == 30
        assert config.plugin_allowlist is None
        assert config.logging_level == "INFO"

    def test_default_paths_under_repo_root(self, tmp_path):
        """Data, plugin and log paths default to well-known names."""
        config = Config(tmp_path)
        assert config.thread_data_path.name == "thread_data.json"
        assert config.plugins_dir.name == "plugins"
        assert config.log_dir.name == "logs"


class TestSettings:

    def test_values_from_yaml(self, make_config, tmp_path):
        """Settings are read from settings.yaml and numbers normalized."""
        config = make_config(
            prefix=".",
            admin_only={"enabled": True},
            whitelist={"enabled": True, "numbers": ["+1 (555) 222-2222"]},
            message_handling={"auto_read": True, "unwrap_ephemeral": False},
            continuations={"reply_expire_ms": 5000, "suppress_events_on_rejected": False},
            plugin_allowlist=["weather"],
        )

        assert config.prefix == "."
        assert config.bot_admins == ["15551111111"]
        assert config.admin_only is True
        assert config.whitelist_numbers == ["15552222222"]
        assert config.auto_read is True
        assert config.unwrap_ephemeral is False
        assert config.reply_expire_ms == 5000
        assert config.suppress_events_on_rejected is False
        assert config.plugin_allowlist == ["weather"]
        assert config.plugins_dir == tmp_path / "plugins"

    def test_invalid_allowlist_ignored(self, make_config):
        """A non-list allowlist disables allowlisting."""
        assert make_config(plugin_allowlist="weather").plugin_allowlist is None

    def test_non_list_admins_ignored(self, make_config):
        """A non-list bot_admins value yields no admins."""
        assert make_config(bot_admins="15551111111").bot_admins == []

    def test_malformed_section_falls_back(self, make_config):
        """A section that isn't a mapping falls back to defaults."""
        config = make_config(message_handling="yes please")
        assert config.auto_read is False

    def test_set_prefix_persists(self, make_config):
        """set_prefix writes settings.yaml and a fresh Config sees it."""
        config = make_config()
        config.set_prefix("$")

        saved = yaml.safe_load((config.config_dir / "settings.yaml").read_text())
        assert saved["prefix"] == "$"
        assert Config(config.config_dir).prefix == "$"


class TestEnvironment:

    def test_bridge_env_overrides(self, tmp_path, monkeypatch):
        """BRIDGE_API_URL and BRIDGE_API_TOKEN come from the environment."""
        monkeypatch.setenv("BRIDGE_API_URL", "https://bridge.example:8443")
        monkeypatch.setenv("BRIDGE_API_TOKEN", "secret-token")
        config = Config(tmp_path)

        assert config.bridge_url == "https://bridge.example:8443"
        assert config.bridge_token == "secret-token"

    def test_dotenv_file_loaded(self, tmp_path, monkeypatch):
        """Values in config/.env are loaded into the environment."""
        monkeypatch.delenv("BRIDGE_API_TOKEN", raising=False)
        (tmp_path / ".env").write_text("BRIDGE_API_TOKEN=from-dotenv\n")

        config = Config(tmp_path)

        assert config.bridge_token == "from-dotenv"
        monkeypatch.delenv("BRIDGE_API_TOKEN", raising=False)


class TestValidate:

    def test_reports_bad_values(self, make_config):
        """validate() logs each bad value instead of raising."""
        config = make_config(bot_admins=["12"], prefix="a b", group_metadata={"retry_attempts": 0})

        with patch("yumi.config.logger") as logger:
            config.validate()

        events = [c.args[0] for c in logger.error.call_args_list]
        assert "invalid_admin_number_format" in events
        assert events.count("config_invalid_value") == 2

    def test_missing_admins_warned(self, tmp_path):
        """validate() warns when no bot admin is configured."""
        config = Config(Path(tmp_path))
        with patch("yumi.config.logger") as logger:
            config.validate()
        assert logger.warning.call_args_list[0].args[0] == "no_bot_admins"
