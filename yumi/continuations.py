"""Reply and reaction continuations for yumi.

A command that sends a message expecting a follow-up registers a
continuation keyed by the id of that outgoing message. When a later
message quotes it (reply) or reacts to it (reaction), the dispatcher
looks the entry up and resumes the command through its callback.

Entries live for ``expire_after_ms`` and are removed by an asyncio
timer, by auto-delete after invocation, or through the DeletionHandle
returned at registration. The registry is the sole owner of entries.

Key classes:
    ContinuationEntry: One pending follow-up.
    ContinuationRegistry: Map of target message id -> entry for one kind.
    DeletionHandle: Capability to cancel a single registered entry.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .config import DEFAULT_REACTION_EXPIRE_MS, DEFAULT_REPLY_EXPIRE_MS
from .exceptions import InvalidDescriptor

logger = structlog.get_logger("yumi.continuations")

ContinuationCallback = Callable[[Any], Awaitable[Optional[str]]]


class ContinuationKind(str, Enum):
    """Which kind of follow-up resumes the continuation."""
    REPLY = "reply"
    REACTION = "reaction"


DEFAULT_EXPIRE_MS = {
    ContinuationKind.REPLY: DEFAULT_REPLY_EXPIRE_MS,
    ContinuationKind.REACTION: DEFAULT_REACTION_EXPIRE_MS,
}


def _valid_lifetime(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass
class ContinuationEntry:
    """A pending follow-up bound to one outgoing message.

    Attributes:
        target_message_id: Id of the bot message the follow-up must
            quote or react to.
        callback: Async callable receiving the CommandContext. Reaction
            entries may leave it None and rely on the originating
            command's reaction handler.
        permission: Tier required of whoever sends the follow-up.
        command_name: Command that registered the entry.
        chat_id: Chat the target message lives in.
        expire_after_ms: Lifetime; None or a non-positive value uses the
            registry default, so every entry expires.
        auto_delete: Remove the entry after the first invocation.
        required_reaction: Reaction entries only -- emoji that must match.
        notify_errors: Tell the user when the callback raises.
        notify_permission_errors: Tell the user when their tier is too low.
        notify_wrong_reaction: Tell the user which emoji is expected.
        state: Object owned by the entry that callbacks may mutate
            (e.g. a poll tally). Invocations are serialized per entry.
    """

    target_message_id: str
    callback: Optional[ContinuationCallback] = None
    kind: ContinuationKind = ContinuationKind.REPLY
    permission: int = 0
    command_name: Optional[str] = None
    chat_id: Optional[str] = None
    expire_after_ms: Optional[int] = None
    auto_delete: bool = True
    required_reaction: Optional[str] = None
    notify_errors: bool = True
    notify_permission_errors: bool = True
    notify_wrong_reaction: bool = True
    state: Any = None
    created_at: float = field(default_factory=time.monotonic)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def expires_at(self) -> Optional[float]:
        if not self.expire_after_ms:
            return None
        return self.created_at + self.expire_after_ms / 1000

    def is_expired(self, now: Optional[float] = None) -> bool:
        deadline = self.expires_at
        if deadline is None:
            return False
        return (now if now is not None else time.monotonic()) >= deadline


class DeletionHandle:
    """Cancels the one entry it was issued for.

    Calling it after the entry is gone (consumed, expired, replaced or
    already deleted) is a no-op and returns False.
    """

    def __init__(self, registry: "ContinuationRegistry", entry: ContinuationEntry):
        self._registry = registry
        self._entry = entry

    @property
    def target_message_id(self) -> str:
        return self._entry.target_message_id

    @property
    def active(self) -> bool:
        return self._registry.lookup(self._entry.target_message_id) is self._entry

    def __call__(self) -> bool:
        return self._registry.delete(self._entry.target_message_id, entry=self._entry)


class ContinuationRegistry:
    """Registry of pending continuations of one kind.

    Args:
        kind: REPLY or REACTION.
        default_expire_ms: Lifetime applied to entries that do not set a positive
            ``expire_after_ms`` of their own.
    """

    def __init__(self, kind: ContinuationKind, default_expire_ms: Optional[int] = None):
        self.kind = ContinuationKind(kind)
        if not _valid_lifetime(default_expire_ms):
            default_expire_ms = DEFAULT_EXPIRE_MS[self.kind]
        self.default_expire_ms = default_expire_ms
        self._entries: Dict[str, ContinuationEntry] = {}
        self._timers: Dict[str, asyncio.Task] = {}

    # --- Registration ---

    def register(self, entry: ContinuationEntry) -> DeletionHandle:
        """Store an entry and start its expiry timer.

        Re-registering the same target id replaces the previous entry.

        Raises:
            InvalidDescriptor: Missing target id, no usable callback,
                or a permission tier outside 0..2.
        """
        target_id = entry.target_message_id
        if not target_id or not isinstance(target_id, str):
            raise InvalidDescriptor("continuation needs a target message id", module="continuations")
        if entry.callback is None and not (
            self.kind is ContinuationKind.REACTION and entry.command_name
        ):
            raise InvalidDescriptor(
                "continuation needs a callback", name=entry.command_name, module="continuations",
            )
        if entry.callback is not None and not callable(entry.callback):
            raise InvalidDescriptor(
                "continuation callback is not callable", name=entry.command_name,
                module="continuations",
            )
        if entry.permission not in (0, 1, 2):
            raise InvalidDescriptor(
                f"invalid permission tier {entry.permission!r}", name=entry.command_name,
                module="continuations",
            )

        entry.kind = self.kind
        if not _valid_lifetime(entry.expire_after_ms):
            entry.expire_after_ms = self.default_expire_ms
        entry.created_at = time.monotonic()

        if target_id in self._entries:
            logger.warning(
                "continuation_replaced", kind=self.kind.value, target=target_id[:8],
            )
            self._remove(target_id, reason="replaced")

        self._entries[target_id] = entry
        self._schedule_expiry(target_id, entry)

        logger.info(
            "continuation_registered",
            kind=self.kind.value,
            target=target_id[:8],
            command=entry.command_name,
            expire_ms=entry.expire_after_ms,
        )
        return DeletionHandle(self, entry)

    # --- Lookup & consumption ---

    def lookup(self, target_id: Optional[str]) -> Optional[ContinuationEntry]:
        """Return the live entry for ``target_id`` without consuming it."""
        if not target_id:
            return None
        entry = self._entries.get(target_id)
        if entry is None:
            return None
        if entry.is_expired():
            self._remove(target_id, reason="expired")
            return None
        return entry

    async def consume(
        self,
        target_id: str,
        invoke: Callable[[ContinuationEntry], Awaitable[Any]],
    ) -> bool:
        """Run ``invoke(entry)`` for the entry bound to ``target_id``.

        Invocations of one entry are serialized. If the entry vanished
        while waiting (auto-deleted by a concurrent follow-up, expired,
        cancelled) nothing runs. Auto-delete entries are removed after
        the invocation whether it succeeded or raised; exceptions from
        ``invoke`` propagate to the caller.

        Returns:
            True if the entry was invoked, False if it was absent.
        """
        entry = self.lookup(target_id)
        if entry is None:
            return False

        async with entry._lock:
            if self._entries.get(target_id) is not entry or entry.is_expired():
                return False
            try:
                await invoke(entry)
            finally:
                if entry.auto_delete:
                    self._remove(target_id, reason="consumed", entry=entry)
        return True

    # --- Removal ---

    def delete(self, target_id: str, entry: Optional[ContinuationEntry] = None) -> bool:
        """Remove an entry. Idempotent: returns False if nothing was removed."""
        return self._remove(target_id, reason="deleted", entry=entry)

    def _remove(
        self,
        target_id: str,
        reason: str,
        entry: Optional[ContinuationEntry] = None,
    ) -> bool:
        current = self._entries.get(target_id)
        if current is None or (entry is not None and current is not entry):
            return False
        del self._entries[target_id]
        timer = self._timers.pop(target_id, None)
        if timer is not None and not timer.done():
            timer.cancel()
        logger.info(
            f"continuation_{reason}", kind=self.kind.value, target=target_id[:8],
            command=current.command_name,
        )
        return True

    def clear(self) -> int:
        """Drop every entry. Returns how many were removed."""
        count = len(self._entries)
        self.cancel_timers()
        self._entries.clear()
        if count:
            logger.warning("continuations_cleared", kind=self.kind.value, count=count)
        return count

    # --- Expiry timers ---

    def _schedule_expiry(self, target_id: str, entry: ContinuationEntry) -> None:
        if not entry.expire_after_ms:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # No running loop; lookup() still honours the deadline
        self._timers[target_id] = loop.create_task(
            self._expire_later(target_id, entry, entry.expire_after_ms / 1000)
        )

    async def _expire_later(self, target_id: str, entry: ContinuationEntry, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            if self._timers.get(target_id) is asyncio.current_task():
                self._timers.pop(target_id, None)
            self._remove(target_id, reason="expired", entry=entry)
        except asyncio.CancelledError:
            pass

    def cancel_timers(self) -> None:
        """Cancel all expiry timers (for shutdown)."""
        for timer in self._timers.values():
            if not timer.done():
                timer.cancel()
        self._timers.clear()

    # --- Introspection ---

    def active(self) -> List[ContinuationEntry]:
        """Live entries, expired ones pruned."""
        for target_id in list(self._entries):
            self.lookup(target_id)
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self.active())

    def __contains__(self, target_id: object) -> bool:
        return isinstance(target_id, str) and self.lookup(target_id) is not None
