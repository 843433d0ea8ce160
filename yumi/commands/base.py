"""Base classes for the command framework.

Defines the command contract, the per-invocation context handed to
handlers, and the registry that maps names and aliases to command
descriptors and owns the per-(command, sender) cooldown ledger.

Key classes:
    BotContext: Dependency container shared by all commands.
    CommandDescriptor: Registered form of a command.
    BaseCommand: ABC that built-in and plugin commands extend.
    CommandContext: What a handler receives for one invocation.
    CommandRegistry: Name/alias -> descriptor map plus cooldowns.

Constants:
    BUILTIN_COMMANDS: Frozenset of reserved command names that
        plugins are not allowed to override.
"""

from __future__ import annotations

import math
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Tuple,
    Union,
)

import structlog

from ..continuations import ContinuationEntry, ContinuationKind, DeletionHandle
from ..exceptions import DuplicateNameConflict, InvalidDescriptor

if TYPE_CHECKING:
    from ..config import Config
    from ..continuations import ContinuationRegistry
    from ..events import EventRegistry
    from ..models import GroupMetadata, NormalizedMessage
    from ..plugin_loader import PluginLoader
    from ..security import PermissionResolver
    from ..thread_store import ThreadStore
    from ..transport import Transport

logger = structlog.get_logger("yumi.commands")

# Single source of truth for builtin command names.
# plugin_loader.py imports this to block plugin overrides.
BUILTIN_COMMANDS = frozenset({"help", "prefix", "poll", "cmd", "ping"})

COMMAND_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")

# Prune expired cooldown entries once the ledger grows past this size
COOLDOWN_PRUNE_THRESHOLD = 512

CommandHandler = Callable[["CommandContext"], Awaitable[Optional[str]]]


@dataclass
class BotContext:
    """Dependency container for commands.

    Gives handlers typed access to the shared services without coupling
    them to YumiBot. The plugin loader is created after the built-in
    commands are registered, so it is stored behind a property that
    raises RuntimeError if accessed before the bot is started.
    """

    config: "Config"
    transport: "Transport"
    commands: "CommandRegistry"
    events: "EventRegistry"
    replies: "ContinuationRegistry"
    reactions: "ContinuationRegistry"
    threads: "ThreadStore"
    permissions: "PermissionResolver"
    _plugin_loader: Optional["PluginLoader"] = field(default=None, repr=False)

    @property
    def plugin_loader(self) -> "PluginLoader":
        if self._plugin_loader is None:
            raise RuntimeError("Bot not started, plugin_loader not available")
        return self._plugin_loader

    @property
    def bot_id(self) -> Optional[str]:
        return self.transport.bot_id

    def effective_prefix(self, chat_id: str) -> str:
        """Chat-local prefix override if set, else the global prefix."""
        return self.threads.get_prefix(chat_id) or self.config.prefix


@dataclass
class CommandDescriptor:
    """A command as the registry stores it.

    Attributes:
        name: Unique, lowercase key.
        handler: Async callable receiving a CommandContext. A returned
            string is sent back as a quoted reply.
        aliases: Alternative names resolving to this command.
        permission: Required tier (0 everyone, 1 group admin, 2 bot admin).
        cooldown_seconds: Per-sender cooldown; 0 disables it.
        reaction_handler: Fallback callback for reaction continuations
            registered without their own callback.
        no_prefix: Also trigger on the bare command word without prefix.
        source: "builtin" or the name of the plugin that installed it.
    """

    name: str
    handler: CommandHandler
    aliases: FrozenSet[str] = frozenset()
    permission: int = 0
    cooldown_seconds: int = 0
    reaction_handler: Optional[CommandHandler] = None
    description: str = ""
    category: str = "general"
    usage: str = ""
    no_prefix: bool = False
    source: str = "builtin"


class BaseCommand(ABC):
    """Abstract base class for commands.

    Subclasses set the class attributes and implement run(). A command
    that sends a message expecting a reaction may also define an async
    ``handle_reaction(ctx)`` method, used for reaction continuations
    registered without their own callback.

    Args:
        bot: Shared BotContext dependency container.
    """

    name: str = ""
    aliases: Tuple[str, ...] = ()
    permission: int = 0
    cooldown: int = 0
    description: str = ""
    category: str = "general"
    usage: str = ""
    no_prefix: bool = False

    def __init__(self, bot: BotContext):
        self.bot = bot

    @abstractmethod
    async def run(self, ctx: "CommandContext") -> Optional[str]:
        """Execute the command.

        Returning a string sends it as a quoted reply. Returning None
        means the handler already responded (or stays silent).
        """
        ...

    def descriptor(self, source: str = "builtin") -> CommandDescriptor:
        """Build the registry descriptor for this command."""
        return CommandDescriptor(
            name=self.name,
            handler=self.run,
            aliases=frozenset(a.lower() for a in self.aliases),
            permission=self.permission,
            cooldown_seconds=self.cooldown,
            reaction_handler=getattr(self, "handle_reaction", None),
            description=self.description,
            category=self.category,
            usage=self.usage,
            no_prefix=self.no_prefix,
            source=source,
        )


def message_id_of(sent: Union[str, Dict[str, Any], None]) -> Optional[str]:
    """Id of a sent message, from the transport's result dict or a bare id."""
    if isinstance(sent, str):
        return sent or None
    if isinstance(sent, dict):
        return (sent.get("key") or {}).get("id")
    return None


@dataclass
class CommandContext:
    """Everything a handler gets for one invocation.

    For continuation callbacks ``state`` is the object the continuation
    owns and ``delete_continuation`` cancels it; for reaction follow-ups
    the emoji is on ``message.reaction``.
    """

    bot: BotContext
    message: "NormalizedMessage"
    args: List[str] = field(default_factory=list)
    command: Optional[CommandDescriptor] = None
    group_metadata: Optional["GroupMetadata"] = None
    prefix: str = "!"
    is_command: bool = True
    state: Any = None
    delete_continuation: Optional[DeletionHandle] = None

    @property
    def chat_id(self) -> str:
        return self.message.chat_id

    @property
    def sender_id(self) -> str:
        return self.message.sender_id

    @property
    def sender_number(self) -> str:
        return self.message.sender_number

    @property
    def bot_id(self) -> Optional[str]:
        return self.bot.bot_id

    @property
    def is_group(self) -> bool:
        return self.message.is_group

    @property
    def text(self) -> str:
        """Arguments re-joined with single spaces."""
        return " ".join(self.args)

    # --- Outbound helpers ---

    async def send(
        self,
        content: Union[str, Dict[str, Any]],
        quoted: bool = False,
        chat_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send a message to this chat (or ``chat_id``)."""
        if isinstance(content, str):
            content = {"text": content}
        options = {"quoted": self.message.key} if quoted and self.message.key else None
        return await self.bot.transport.send_message(chat_id or self.chat_id, content, options)

    async def reply(self, text: str) -> Dict[str, Any]:
        """Send ``text`` quoting the triggering message."""
        return await self.send(text, quoted=True)

    async def edit(self, sent: Union[str, Dict[str, Any]], text: str) -> Dict[str, Any]:
        """Replace the text of a message the bot sent earlier."""
        key = {"remoteJid": self.chat_id, "id": message_id_of(sent), "fromMe": True}
        return await self.bot.transport.send_message(self.chat_id, {"text": text, "edit": key})

    async def react(self, emoji: str) -> Dict[str, Any]:
        """React to the triggering message."""
        return await self.bot.transport.send_message(
            self.chat_id, {"react": {"text": emoji, "key": self.message.key}},
        )

    # --- Continuations ---

    def register_reply(
        self,
        sent: Union[str, Dict[str, Any]],
        callback: CommandHandler,
        *,
        state: Any = None,
        permission: int = 0,
        expire_after_ms: Optional[int] = None,
        auto_delete: bool = True,
        notify_errors: bool = True,
        notify_permission_errors: bool = True,
    ) -> DeletionHandle:
        """Resume ``callback`` when someone replies to ``sent``."""
        return self.bot.replies.register(ContinuationEntry(
            target_message_id=message_id_of(sent) or "",
            callback=callback,
            kind=ContinuationKind.REPLY,
            permission=permission,
            command_name=self.command.name if self.command else None,
            chat_id=self.chat_id,
            expire_after_ms=expire_after_ms,
            auto_delete=auto_delete,
            notify_errors=notify_errors,
            notify_permission_errors=notify_permission_errors,
            state=state,
        ))

    def register_reaction(
        self,
        sent: Union[str, Dict[str, Any]],
        callback: Optional[CommandHandler] = None,
        *,
        required_reaction: Optional[str] = None,
        state: Any = None,
        permission: int = 0,
        expire_after_ms: Optional[int] = None,
        auto_delete: bool = True,
        notify_errors: bool = True,
        notify_permission_errors: bool = True,
        notify_wrong_reaction: bool = True,
    ) -> DeletionHandle:
        """Resume ``callback`` when someone reacts to ``sent``.

        Without a callback the command's own ``handle_reaction`` runs.
        """
        return self.bot.reactions.register(ContinuationEntry(
            target_message_id=message_id_of(sent) or "",
            callback=callback,
            kind=ContinuationKind.REACTION,
            permission=permission,
            command_name=self.command.name if self.command else None,
            chat_id=self.chat_id,
            expire_after_ms=expire_after_ms,
            auto_delete=auto_delete,
            required_reaction=required_reaction,
            notify_errors=notify_errors,
            notify_permission_errors=notify_permission_errors,
            notify_wrong_reaction=notify_wrong_reaction,
            state=state,
        ))


class CommandRegistry:
    """Maps command names and aliases to descriptors.

    Also owns the cooldown ledger: (command name, sender number) ->
    monotonic expiry. Entries in the past are treated as absent and
    pruned once the ledger grows.
    """

    def __init__(self):
        self._commands: Dict[str, CommandDescriptor] = {}
        self._aliases: Dict[str, str] = {}
        self._cooldowns: Dict[Tuple[str, str], float] = {}

    # --- Registration ---

    @staticmethod
    def _validate(descriptor: CommandDescriptor) -> None:
        name = descriptor.name
        if not isinstance(name, str) or not COMMAND_NAME_PATTERN.match(name):
            raise InvalidDescriptor(f"invalid command name {name!r}", name=name)
        if not callable(descriptor.handler):
            raise InvalidDescriptor("command handler is not callable", name=name)
        if descriptor.reaction_handler is not None and not callable(descriptor.reaction_handler):
            raise InvalidDescriptor("reaction handler is not callable", name=name)
        if descriptor.permission not in (0, 1, 2):
            raise InvalidDescriptor(
                f"invalid permission tier {descriptor.permission!r}", name=name,
            )
        if not isinstance(descriptor.cooldown_seconds, int) or descriptor.cooldown_seconds < 0:
            raise InvalidDescriptor(
                f"invalid cooldown {descriptor.cooldown_seconds!r}", name=name,
            )

    def register(self, descriptor: CommandDescriptor, overwrite: bool = True) -> CommandDescriptor:
        """Insert or replace a command.

        Raises:
            InvalidDescriptor: Descriptor is malformed. Nothing changes.
            DuplicateNameConflict: ``overwrite`` is False and the name
                is taken. Nothing changes.
        """
        self._validate(descriptor)
        name = descriptor.name

        if name in self._commands:
            if not overwrite:
                raise DuplicateNameConflict(f"command {name!r} already registered", name=name)
            self._drop_aliases(name)
            logger.info("command_replaced", command=name, source=descriptor.source)

        self._commands[name] = descriptor

        for alias in sorted(descriptor.aliases):
            alias = alias.lower()
            if alias == name:
                continue
            if alias in self._commands:
                logger.warning("command_alias_conflict", command=name, alias=alias)
                continue
            owner = self._aliases.get(alias)
            if owner and owner != name:
                logger.warning("command_alias_taken_over", command=name, alias=alias, previous=owner)
            self._aliases[alias] = name

        # A command name shadows any alias of the same spelling
        self._aliases.pop(name, None)

        logger.debug(
            "command_registered",
            command=name,
            aliases=sorted(descriptor.aliases),
            permission=descriptor.permission,
            source=descriptor.source,
        )
        return descriptor

    def _drop_aliases(self, name: str) -> None:
        for alias in [a for a, owner in self._aliases.items() if owner == name]:
            del self._aliases[alias]

    def unregister(self, name: str) -> Optional[CommandDescriptor]:
        """Remove a command, its aliases and its cooldowns."""
        name = name.lower()
        descriptor = self._commands.pop(name, None)
        if descriptor is None:
            return None
        self._drop_aliases(name)
        for key in [k for k in self._cooldowns if k[0] == name]:
            del self._cooldowns[key]
        logger.info("command_unregistered", command=name, source=descriptor.source)
        return descriptor

    # --- Lookup ---

    def resolve(self, name_or_alias: Optional[str]) -> Optional[CommandDescriptor]:
        """Look up a command by name or alias, case-insensitively."""
        if not name_or_alias:
            return None
        key = name_or_alias.lower()
        descriptor = self._commands.get(key)
        if descriptor is not None:
            return descriptor
        target = self._aliases.get(key)
        return self._commands.get(target) if target else None

    def get(self, name: str) -> Optional[CommandDescriptor]:
        return self._commands.get(name.lower())

    @property
    def names(self) -> FrozenSet[str]:
        """All registered command names."""
        return frozenset(self._commands.keys())

    def descriptors(self) -> List[CommandDescriptor]:
        return [self._commands[n] for n in sorted(self._commands)]

    def by_source(self, source: str) -> List[CommandDescriptor]:
        return [d for d in self.descriptors() if d.source == source]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def __len__(self) -> int:
        return len(self._commands)

    # --- Cooldowns ---

    def check_cooldown(self, name: str, sender: str) -> Optional[int]:
        """Seconds left on the sender's cooldown, or None if eligible."""
        expiry = self._cooldowns.get((name, sender))
        if expiry is None:
            return None
        remaining = expiry - time.monotonic()
        if remaining <= 0:
            del self._cooldowns[(name, sender)]
            return None
        return max(1, math.ceil(remaining))

    def apply_cooldown(self, name: str, sender: str) -> None:
        """Start the cooldown window for (name, sender)."""
        descriptor = self._commands.get(name)
        if descriptor is None or descriptor.cooldown_seconds <= 0:
            return
        if len(self._cooldowns) >= COOLDOWN_PRUNE_THRESHOLD:
            self.prune_cooldowns()
        self._cooldowns[(name, sender)] = time.monotonic() + descriptor.cooldown_seconds

    def claim_cooldown(self, name: str, sender: str) -> Optional[int]:
        """Check and apply in one step.

        Returns the remaining seconds if the sender is still cooling
        down (nothing recorded), else records the new window and
        returns None. Synchronous, so atomic on the event loop.
        """
        remaining = self.check_cooldown(name, sender)
        if remaining is not None:
            return remaining
        self.apply_cooldown(name, sender)
        return None

    def prune_cooldowns(self) -> int:
        """Drop expired ledger entries. Returns how many were removed."""
        now = time.monotonic()
        expired = [k for k, expiry in self._cooldowns.items() if expiry <= now]
        for key in expired:
            del self._cooldowns[key]
        if expired:
            logger.debug("cooldowns_pruned", count=len(expired))
        return len(expired)
