"""Passive event listeners.

Listeners run on every accepted message after primary handling,
whatever the command path decided, so they can log, count or react
without claiming the message.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional

import structlog

from .exceptions import DuplicateNameConflict, InvalidDescriptor

if TYPE_CHECKING:
    from .commands.base import BotContext, CommandContext

logger = structlog.get_logger("yumi.dispatch")

EventHandler = Callable[["CommandContext"], Awaitable[None]]


@dataclass
class EventListener:
    """A registered passive listener."""

    name: str
    handler: EventHandler
    description: str = ""
    source: str = "builtin"


class BaseEvent(ABC):
    """Base class for passive listeners shipped by plugins.

    Args:
        bot: Shared BotContext dependency container.
    """

    name: str = ""
    description: str = ""

    def __init__(self, bot: "BotContext"):
        self.bot = bot

    @abstractmethod
    async def handle(self, ctx: "CommandContext") -> None:
        ...

    def listener(self, source: str = "builtin") -> EventListener:
        return EventListener(
            name=self.name, handler=self.handle, description=self.description, source=source,
        )


class EventRegistry:
    """Ordered set of passive listeners keyed by name."""

    def __init__(self):
        self._listeners: Dict[str, EventListener] = {}

    def register(self, listener: EventListener, overwrite: bool = True) -> EventListener:
        """Add or replace a listener.

        Raises:
            InvalidDescriptor: Missing name or non-callable handler.
            DuplicateNameConflict: Name taken and ``overwrite`` is False.
        """
        if not listener.name or not isinstance(listener.name, str):
            raise InvalidDescriptor("event listener needs a name", module="events")
        if not callable(listener.handler):
            raise InvalidDescriptor(
                "event handler is not callable", name=listener.name, module="events",
            )
        if listener.name in self._listeners and not overwrite:
            raise DuplicateNameConflict(
                f"event {listener.name!r} already registered", name=listener.name,
                module="events",
            )
        self._listeners[listener.name] = listener
        logger.debug("event_registered", listener=listener.name, source=listener.source)
        return listener

    def unregister(self, name: str) -> Optional[EventListener]:
        listener = self._listeners.pop(name, None)
        if listener is not None:
            logger.info("event_unregistered", listener=name, source=listener.source)
        return listener

    @property
    def names(self) -> List[str]:
        return list(self._listeners)

    def by_source(self, source: str) -> List[EventListener]:
        return [lst for lst in self._listeners.values() if lst.source == source]

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, name: object) -> bool:
        return name in self._listeners

    async def notify_all(self, ctx: "CommandContext") -> List[str]:
        """Run every listener in registration order.

        A failing listener is logged and skipped; the rest still run.

        Returns:
            Names of the listeners that raised.
        """
        failures: List[str] = []
        for listener in list(self._listeners.values()):
            try:
                await listener.handler(ctx)
            except Exception as e:
                failures.append(listener.name)
                logger.error(
                    "event_listener_failed",
                    listener=listener.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return failures
