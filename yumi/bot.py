"""WhatsApp bot implementation for yumi.

Wires the registries, permission resolver, thread store, plugin loader
and dispatcher together, subscribes to the transport's event stream
and runs one dispatch task per inbound message.

Key classes:
    YumiBot: Main bot class -- owns all service instances and the
        event subscriptions.

Key functions:
    log_task_exception: Done-callback that logs fire-and-forget failures.
"""

import asyncio
import time as _time
from collections import OrderedDict
from typing import Any, Awaitable, List, Optional, Set

import structlog

from .commands.base import BotContext, CommandRegistry
from .commands.core import builtin_commands
from .config import Config, get_config
from .continuations import ContinuationKind, ContinuationRegistry
from .dispatcher import Dispatcher
from .events import EventRegistry
from .logging_config import mask_id
from .normalizer import group_name
from .plugin_loader import PluginLoader
from .security import PermissionResolver
from .thread_store import ThreadStore
from .transport import (
    EVENT_CALL,
    EVENT_CONTACTS_UPDATE,
    EVENT_GROUP_PARTICIPANTS,
    EVENT_GROUPS_INVITE,
    EVENT_MESSAGES_UPSERT,
    BridgeTransport,
    Transport,
)

logger = structlog.get_logger("yumi.bot")

DEDUP_WINDOW_SECONDS = 60
SHUTDOWN_GRACE_SECONDS = 10


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("background_task_failed", error=str(exc), exc_type=type(exc).__name__)


class YumiBot:
    """WhatsApp bot with command, event and continuation registries.

    Owns the full message lifecycle: transport subscription, duplicate
    suppression, one dispatch task per inbound message, side-event
    logging, and plugin start/stop.

    Args:
        config: Config instance (defaults to the global one).
        transport: Transport to use (defaults to a BridgeTransport
            built from config).
    """

    def __init__(self, config: Optional[Config] = None, transport: Optional[Transport] = None):
        self.config = config or get_config()
        self.transport = transport or BridgeTransport(
            self.config.bridge_url,
            token=self.config.bridge_token or None,
            timeout=self.config.bridge_timeout,
        )
        self.running = False
        self._processed_messages = OrderedDict()  # Dedup: message id -> timestamp
        self._tasks: Set[asyncio.Task] = set()

        self.commands = CommandRegistry()
        self.events = EventRegistry()
        self.replies = ContinuationRegistry(ContinuationKind.REPLY, self.config.reply_expire_ms)
        self.reactions = ContinuationRegistry(
            ContinuationKind.REACTION, self.config.reaction_expire_ms,
        )
        self.threads = ThreadStore(self.config.thread_data_path)
        self.permissions = PermissionResolver(self.config)

        # BotContext -- dependency container for commands and plugins
        self.context = BotContext(
            config=self.config,
            transport=self.transport,
            commands=self.commands,
            events=self.events,
            replies=self.replies,
            reactions=self.reactions,
            threads=self.threads,
            permissions=self.permissions,
        )
        for command in builtin_commands(self.context):
            self.commands.register(command.descriptor())

        self.dispatcher = Dispatcher(self.context)

        # Plugin system
        self.plugin_loader = PluginLoader(
            plugins_dir=self.config.plugins_dir,
            settings=self.config.settings,
            bot=self.context,
            data_dir=self.config.thread_data_path.parent / "plugins",
            allowlist=self.config.plugin_allowlist,
        )
        self.context._plugin_loader = self.plugin_loader
        self.plugin_loader.discover_and_load()

        self._subscribe()

    def _subscribe(self) -> None:
        self.transport.on(EVENT_MESSAGES_UPSERT, self._on_messages_upsert)
        self.transport.on(EVENT_GROUP_PARTICIPANTS, self._on_group_participants)
        self.transport.on(EVENT_CALL, self._on_call)
        self.transport.on(EVENT_CONTACTS_UPDATE, self._on_contacts_update)
        self.transport.on(EVENT_GROUPS_INVITE, self._on_group_invite)

    # --- Lifecycle ---

    async def start(self):
        """Connect the transport and start plugins."""
        await self.transport.start()
        self.running = True
        await self.plugin_loader.start_all()
        logger.info(
            "bot_started",
            bot=mask_id(self.transport.bot_id) if self.transport.bot_id else None,
            commands=len(self.commands),
            events=len(self.events),
        )

    async def stop(self):
        """Stop plugins, drop pending continuations and close the transport.

        In-flight dispatch tasks get a short grace period to finish.
        """
        if not self.running:
            return
        self.running = False
        await self.plugin_loader.stop_all()
        self.replies.clear()
        self.reactions.clear()

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in still_pending:
                task.cancel()
            if still_pending:
                logger.warning("dispatch_tasks_cancelled", count=len(still_pending))

        await self.transport.close()
        logger.info("bot_stopped")

    async def run(self):
        """Main run loop: start, consume events, stop on exit."""
        await self.start()

        try:
            await self.transport.poll_events()
        finally:
            await self.stop()

    # --- Inbound messages ---

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run ``coro`` as a tracked background task with exception logging."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(log_task_exception)
        return task

    def _is_duplicate(self, raw: Any) -> bool:
        """Whether this message id was already seen in the last minute."""
        if not isinstance(raw, dict):
            return False
        key = raw.get("key") or {}
        message_id = key.get("id")
        if not message_id:
            return False
        dedup_key = f"{key.get('remoteJid')}:{message_id}"

        now = _time.time()
        cutoff = now - DEDUP_WINDOW_SECONDS
        while self._processed_messages:
            oldest_key, oldest_time = next(iter(self._processed_messages.items()))
            if oldest_time < cutoff:
                self._processed_messages.pop(oldest_key)
            else:
                break

        if dedup_key in self._processed_messages:
            logger.debug("duplicate_message_skipped", message=message_id[:8])
            return True
        self._processed_messages[dedup_key] = now
        return False

    def _on_messages_upsert(self, payload: Any) -> List[asyncio.Task]:
        """Schedule one dispatch task per new message in the batch."""
        if isinstance(payload, dict):
            messages = payload.get("messages") or []
        elif isinstance(payload, list):
            messages = payload
        else:
            logger.warning("upsert_payload_invalid", type=type(payload).__name__)
            return []

        tasks = []
        for raw in messages:
            if self._is_duplicate(raw):
                continue
            tasks.append(self.spawn(self.dispatcher.handle_event(raw)))
        return tasks

    # --- Side events (logged only) ---

    def _on_group_participants(self, update: Any) -> None:
        """Log a membership change without holding up the event stream."""
        if not isinstance(update, dict):
            return
        chat_id, participants, action = update.get("id"), update.get("participants"), update.get("action")
        if not chat_id or not participants or not action:
            return
        # Not returned: the transport awaits awaitables its subscribers return
        self.spawn(self._log_participants_update(chat_id, participants, action))

    async def _log_participants_update(self, chat_id: str, participants: List[Any], action: str) -> None:
        group = await group_name(self.transport, chat_id)
        logger.info(
            "group_participants_update",
            group=group,
            action=action,
            participants=[mask_id(str(p)) for p in participants],
        )

    def _on_call(self, calls: Any) -> None:
        for call in calls if isinstance(calls, list) else [calls]:
            if not isinstance(call, dict):
                continue
            status = call.get("status")
            if status in ("offer", "ringing", "INCOMING", "MISSED", "timeout"):
                logger.info(
                    "call_received",
                    caller=mask_id(str(call.get("from", ""))),
                    status=status,
                    video=bool(call.get("isVideo")),
                )

    def _on_contacts_update(self, contacts: Any) -> None:
        for contact in contacts if isinstance(contacts, list) else [contacts]:
            if isinstance(contact, dict) and contact.get("notify") and contact.get("status") == 200:
                logger.info("contact_joined", contact=mask_id(str(contact.get("id", ""))))

    def _on_group_invite(self, invite: Any) -> None:
        if not isinstance(invite, dict):
            return
        logger.info(
            "group_invite_received",
            group=invite.get("subject") or "Unknown Group",
            invited_by=mask_id(str(invite.get("creator", ""))),
        )
