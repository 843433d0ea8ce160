"""Plugin discovery, loading, and lifecycle management.

A plugin is installed by registering its commands and listeners with
the bot's registries under ``source=<plugin name>`` and uninstalled by
removing everything carrying that source, so load/unload/reload work
on a running bot.
"""

import importlib.util
import sys
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog

from .commands.base import BUILTIN_COMMANDS, BaseCommand, CommandDescriptor
from .events import BaseEvent, EventListener
from .exceptions import PluginLoadError, RegistryError
from .plugin_base import PluginContext, YumiPlugin

if TYPE_CHECKING:
    from .commands.base import BotContext

logger = structlog.get_logger("yumi.commands")


class PluginLoader:
    """Discovers, loads, and manages the lifecycle of yumi plugins."""

    def __init__(
        self,
        plugins_dir: Path,
        settings: dict,
        bot: "BotContext",
        data_dir: Path,
        allowlist: Optional[List[str]] = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self._settings = settings
        self._bot = bot
        self._data_dir = Path(data_dir)
        self._allowlist = allowlist
        self._started = False
        self.plugins: Dict[str, YumiPlugin] = {}

    # --- Discovery ---

    def available(self) -> List[str]:
        """Names of plugin directories containing a plugin.py."""
        if not self.plugins_dir.is_dir():
            return []
        return [
            d.name for d in sorted(self.plugins_dir.iterdir())
            if d.is_dir() and (d / "plugin.py").is_file()
        ]

    def discover_and_load(self) -> None:
        """Scan plugins_dir for plugin.py files and load them."""
        if not self.plugins_dir.is_dir():
            logger.info("plugin_loader_no_dir", path=str(self.plugins_dir))
            return

        # Add plugins_dir to sys.path so plugins can import each other
        plugins_str = str(self.plugins_dir)
        if plugins_str not in sys.path:
            sys.path.append(plugins_str)

        for plugin_name in self.available():
            # Enforce allowlist if configured
            if self._allowlist is not None and plugin_name not in self._allowlist:
                logger.warning(
                    "plugin_blocked_not_in_allowlist",
                    plugin=plugin_name,
                    allowlist=self._allowlist,
                )
                continue
            if self._disabled(plugin_name):
                logger.info("plugin_skipped_disabled", plugin=plugin_name)
                continue
            try:
                self._load_plugin(plugin_name)
            except PluginLoadError as e:
                logger.error("plugin_load_failed", plugin=plugin_name, error=str(e))

        logger.info(
            "plugin_loader_complete",
            plugins_loaded=len(self.plugins),
            commands=sum(len(self._bot.commands.by_source(n)) for n in self.plugins),
            events=sum(len(self._bot.events.by_source(n)) for n in self.plugins),
        )

    def _disabled(self, plugin_name: str) -> bool:
        plugin_config = (self._settings.get("plugins") or {}).get(plugin_name, {})
        return isinstance(plugin_config, dict) and plugin_config.get("enabled") is False

    # --- Install / uninstall ---

    def _load_plugin(self, plugin_name: str) -> YumiPlugin:
        """Import plugins/<name>/plugin.py, instantiate and install it.

        Raises:
            PluginLoadError: Missing file, import error, no plugin class,
                or the constructor raised.
        """
        plugin_file = self.plugins_dir / plugin_name / "plugin.py"
        if not plugin_file.is_file():
            raise PluginLoadError(f"no plugin.py for {plugin_name!r}", name=plugin_name)

        module_name = f"{plugin_name}.plugin"
        try:
            spec = importlib.util.spec_from_file_location(module_name, plugin_file)
            module = importlib.util.module_from_spec(spec)
            sys.modules[module_name] = module
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(
                f"import failed: {e}", name=plugin_name, error_type=type(e).__name__,
            ) from e

        # Find the YumiPlugin subclass
        plugin_cls = None
        for attr in module.__dict__.values():
            if (
                isinstance(attr, type)
                and issubclass(attr, YumiPlugin)
                and attr is not YumiPlugin
            ):
                plugin_cls = attr
                break

        if plugin_cls is None:
            sys.modules.pop(module_name, None)
            raise PluginLoadError("no YumiPlugin subclass found", name=plugin_name)

        ctx = PluginContext(
            plugin_name=plugin_name,
            bot=self._bot,
            settings=self._settings,
            data_dir=self._data_dir / plugin_name,
        )
        try:
            plugin = plugin_cls(ctx)
            self._install(plugin_name, plugin)
        except Exception as e:
            self._uninstall(plugin_name)
            sys.modules.pop(module_name, None)
            raise PluginLoadError(
                f"install failed: {e}", name=plugin_name, error_type=type(e).__name__,
            ) from e

        self.plugins[plugin_name] = plugin
        logger.info(
            "plugin_loaded",
            plugin=plugin_name,
            version=plugin.version,
            commands=[d.name for d in self._bot.commands.by_source(plugin_name)],
        )
        return plugin

    def _install(self, plugin_name: str, plugin: YumiPlugin) -> None:
        for unit in plugin.commands():
            if isinstance(unit, BaseCommand):
                descriptor = unit.descriptor(source=plugin_name)
            elif isinstance(unit, CommandDescriptor):
                descriptor = replace(unit, source=plugin_name)
            else:
                logger.warning("plugin_invalid_command", plugin=plugin_name, type=type(unit).__name__)
                continue

            if descriptor.name in BUILTIN_COMMANDS:
                logger.warning(
                    "plugin_builtin_override_blocked", command=descriptor.name, plugin=plugin_name,
                )
                continue
            existing = self._bot.commands.get(descriptor.name) if descriptor.name else None
            if existing is not None and existing.source != plugin_name:
                logger.warning(
                    "plugin_command_conflict",
                    command=descriptor.name,
                    plugin=plugin_name,
                    owner=existing.source,
                )
                continue
            try:
                self._bot.commands.register(descriptor)
            except RegistryError as e:
                logger.warning("plugin_invalid_command", plugin=plugin_name, error=str(e))

        for unit in plugin.events():
            if isinstance(unit, BaseEvent):
                listener = unit.listener(source=plugin_name)
            elif isinstance(unit, EventListener):
                listener = replace(unit, source=plugin_name)
            else:
                logger.warning("plugin_invalid_event", plugin=plugin_name, type=type(unit).__name__)
                continue
            try:
                self._bot.events.register(listener)
            except RegistryError as e:
                logger.warning("plugin_invalid_event", plugin=plugin_name, error=str(e))

    def _uninstall(self, plugin_name: str) -> None:
        for descriptor in self._bot.commands.by_source(plugin_name):
            self._bot.commands.unregister(descriptor.name)
        for listener in self._bot.events.by_source(plugin_name):
            self._bot.events.unregister(listener.name)

    # --- Runtime load / unload ---

    async def load(self, plugin_name: str) -> YumiPlugin:
        """Load one plugin into the running bot (reloads if already loaded).

        Raises:
            PluginLoadError: Not allowlisted, disabled, or failed to load.
        """
        if self._allowlist is not None and plugin_name not in self._allowlist:
            raise PluginLoadError("plugin not in allowlist", name=plugin_name)
        if self._disabled(plugin_name):
            raise PluginLoadError("plugin disabled in config", name=plugin_name)
        if plugin_name in self.plugins:
            await self.unload(plugin_name)
        plugin = self._load_plugin(plugin_name)
        if self._started:
            await self._start(plugin_name, plugin)
        return plugin

    async def unload(self, plugin_name: str) -> bool:
        """Uninstall a plugin. Returns False if it was not loaded."""
        plugin = self.plugins.pop(plugin_name, None)
        if plugin is None:
            return False
        self._uninstall(plugin_name)
        sys.modules.pop(f"{plugin_name}.plugin", None)
        if self._started:
            await self._stop(plugin_name, plugin)
        logger.info("plugin_unloaded", plugin=plugin_name)
        return True

    async def reload(self, plugin_name: str) -> YumiPlugin:
        await self.unload(plugin_name)
        return await self.load(plugin_name)

    # --- Lifecycle hooks ---

    async def _start(self, plugin_name: str, plugin: YumiPlugin) -> None:
        try:
            await plugin.on_start()
            logger.info("plugin_started", plugin=plugin_name)
        except Exception as e:
            logger.error("plugin_start_failed", plugin=plugin_name, error=str(e))

    async def _stop(self, plugin_name: str, plugin: YumiPlugin) -> None:
        try:
            await plugin.on_stop()
            logger.info("plugin_stopped", plugin=plugin_name)
        except Exception as e:
            logger.error("plugin_stop_failed", plugin=plugin_name, error=str(e))

    async def start_all(self) -> None:
        """Call on_start() on all loaded plugins."""
        self._started = True
        for plugin_name, plugin in list(self.plugins.items()):
            await self._start(plugin_name, plugin)

    async def stop_all(self) -> None:
        """Call on_stop() on all loaded plugins (reverse order)."""
        for plugin_name, plugin in reversed(list(self.plugins.items())):
            await self._stop(plugin_name, plugin)
        self._started = False
