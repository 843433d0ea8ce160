"""Plugin base class and types for yumi extensibility."""

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, List, Optional, Union

import structlog

from .commands.base import BaseCommand, CommandDescriptor
from .events import BaseEvent, EventListener

if TYPE_CHECKING:
    from .commands.base import BotContext

CommandUnit = Union[BaseCommand, CommandDescriptor]
EventUnit = Union[BaseEvent, EventListener]


class PluginContext:
    """Interface exposed to plugins for interacting with the bot.

    Plugins receive this in their constructor. They should never
    import bot.py directly.
    """

    def __init__(
        self,
        plugin_name: str,
        bot: "BotContext",
        settings: dict,
        data_dir: Path,
    ):
        self.plugin_name = plugin_name
        self.bot = bot
        # Only expose the plugin's own config section, not full settings
        self._plugin_settings = (settings.get("plugins") or {}).get(plugin_name) or {}
        self.data_dir = data_dir
        self.logger = structlog.get_logger("yumi.commands").bind(plugin=plugin_name)

    def get_config(self, key: str, default: Any = None) -> Any:
        """Read a value from plugins.<plugin_name>.<key> in settings.yaml."""
        return self._plugin_settings.get(key, default)

    def get_env(self, key: str) -> Optional[str]:
        """Read an environment variable."""
        return os.environ.get(key)

    @property
    def enabled(self) -> bool:
        """Whether this plugin is enabled in config (default True)."""
        return self._plugin_settings.get("enabled", True)


class YumiPlugin:
    """Base class for all yumi plugins.

    Subclass this and override the methods you need.
    Place your plugin in plugins/<name>/plugin.py.
    """

    name: str = ""
    description: str = ""
    version: str = "1.0.0"

    def __init__(self, ctx: PluginContext):
        self.ctx = ctx

    def commands(self) -> List[CommandUnit]:
        """Return the commands to install (BaseCommand instances or descriptors)."""
        return []

    def events(self) -> List[EventUnit]:
        """Return the passive listeners to install."""
        return []

    async def on_start(self) -> None:
        """Called after the bot connects, or when loaded into a running bot."""
        pass

    async def on_stop(self) -> None:
        """Called during shutdown or before the plugin is unloaded."""
        pass
