"""Message dispatch core.

Takes one raw inbound event and turns it into exactly one of: a
command execution, a reply or reaction continuation, a passive event
notification, or nothing. Owns every control-flow and failure
isolation decision along the way:

    received -> classified -> continuation-check -> command-check
             -> executing -> done

with early exits for dropped/aborted events, consumed or rejected
continuations, use/permission/cooldown rejections and unknown
commands. Passive listeners run after every path except dropped,
aborted and consumed (and, when configured, rejected continuations).

Key classes:
    DispatchOutcome: Terminal state reached for one event.
    Dispatcher: The pipeline itself.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from .commands.base import BotContext, CommandContext, CommandDescriptor
from .continuations import ContinuationEntry, ContinuationKind, ContinuationRegistry, DeletionHandle
from .exceptions import (
    CommandNotFound,
    ContinuationCallbackFailed,
    CooldownActive,
    DispatchRejection,
    HandlerExecutionFailed,
    MetadataFetchFailed,
    PermissionDenied,
    TransportUnavailable,
    UseDenied,
)
from .logging_config import mask_id
from .models import GroupMetadata, NormalizedMessage
from .normalizer import describe_chat, normalize
from .security import sanitize_input, tier_description

logger = structlog.get_logger("yumi.dispatch")

USE_DENIED_NOTICE = "You don't have permission to use bot commands."
PERMISSION_NOTICE = 'You don\'t have permission to use "{command}". It is available to {tier}.'
COOLDOWN_NOTICE = 'You\'re using "{command}" too fast. Wait {remaining}s.'
NOT_FOUND_NOTICE = 'Command "{command}" not found. Try {prefix}help for a list of commands.'
EXECUTION_ERROR_NOTICE = "❌ Error executing command"
CONTINUATION_PERMISSION_NOTICE = "⚠️ You don't have permission for this action. It is available to {tier}."
WRONG_REACTION_NOTICE = "⚠️ Please use {emoji} reaction."
CONTINUATION_ERROR_NOTICE = "❌ Error processing your {kind}: {error}"


class DispatchOutcome(str, Enum):
    """Terminal state of one event."""
    DROPPED = "dropped"
    ABORTED = "aborted"
    NO_OP = "no_op"
    EXECUTED = "executed"
    FAILED = "failed"
    CONSUMED = "consumed"
    CONTINUATION_REJECTED = "continuation_rejected"
    REJECTED_USE = "rejected_use"
    REJECTED_PERMISSION = "rejected_permission"
    REJECTED_COOLDOWN = "rejected_cooldown"
    NOT_FOUND = "not_found"


_REJECTION_OUTCOMES = {
    UseDenied: DispatchOutcome.REJECTED_USE,
    PermissionDenied: DispatchOutcome.REJECTED_PERMISSION,
    CooldownActive: DispatchOutcome.REJECTED_COOLDOWN,
    CommandNotFound: DispatchOutcome.NOT_FOUND,
}


class Dispatcher:
    """Runs the dispatch pipeline for each inbound event.

    Args:
        bot: Shared services (registries, transport, config, permissions).
        metadata_retry_attempts: Group metadata fetch attempts before
            falling back. Defaults to config.
        metadata_retry_base_delay: First retry delay in seconds, doubled
            after each failure. Defaults to config.
    """

    def __init__(
        self,
        bot: BotContext,
        metadata_retry_attempts: Optional[int] = None,
        metadata_retry_base_delay: Optional[float] = None,
    ):
        self.bot = bot
        config = bot.config
        self.metadata_retry_attempts = (
            metadata_retry_attempts
            if metadata_retry_attempts is not None
            else config.metadata_retry_attempts
        )
        self.metadata_retry_base_delay = (
            metadata_retry_base_delay
            if metadata_retry_base_delay is not None
            else config.metadata_retry_base_delay
        )

    # --- Entry points ---

    async def handle_event(self, raw_event: Dict[str, Any]) -> DispatchOutcome:
        """Normalize and dispatch one raw ``messages.upsert`` entry."""
        transport = self.bot.transport
        if not transport.is_connected:
            err = TransportUnavailable("connection not active", module="dispatcher")
            logger.warning("event_aborted", error=str(err))
            return DispatchOutcome.ABORTED

        message = normalize(
            raw_event,
            bot_id=transport.bot_id,
            unwrap_ephemeral=self.bot.config.unwrap_ephemeral,
        )
        if message is None:
            return DispatchOutcome.DROPPED
        return await self.dispatch(message)

    async def dispatch(self, message: NormalizedMessage) -> DispatchOutcome:
        """Run an already-normalized message through the pipeline."""
        config = self.bot.config

        if config.auto_read and not message.is_from_self and message.key:
            await self._mark_read(message)

        metadata = await self.fetch_group_metadata(message.chat_id) if message.is_group else None
        prefix = self.bot.effective_prefix(message.chat_id)

        if config.log_messages:
            logger.info(
                "message_received",
                chat=describe_chat(message, metadata),
                chat_kind=message.chat_kind.value,
                sender=mask_id(message.sender_id),
                content=message.content_kind.value,
                length=len(message.body_text or ""),
            )

        outcome = await self._check_continuations(message, metadata, prefix)
        if outcome is None:
            outcome = await self._check_command(message, metadata, prefix)

        if self._should_notify_events(outcome):
            ctx = CommandContext(
                bot=self.bot,
                message=message,
                args=(message.body_text or "").split(),
                group_metadata=metadata,
                prefix=prefix,
                is_command=False,
            )
            await self.bot.events.notify_all(ctx)

        logger.debug("dispatch_done", outcome=outcome.value, message=message.message_id)
        return outcome

    def _should_notify_events(self, outcome: DispatchOutcome) -> bool:
        if outcome in (DispatchOutcome.DROPPED, DispatchOutcome.ABORTED, DispatchOutcome.CONSUMED):
            return False
        if outcome is DispatchOutcome.CONTINUATION_REJECTED:
            return not self.bot.config.suppress_events_on_rejected
        return True

    # --- Group metadata ---

    async def fetch_group_metadata(self, chat_id: str) -> GroupMetadata:
        """Fetch group metadata with exponential backoff.

        Never raises: after the last failed attempt the fallback
        metadata ("Unknown Group", no participants) is returned.
        """
        attempts = max(1, self.metadata_retry_attempts)
        delay = self.metadata_retry_base_delay
        for attempt in range(1, attempts + 1):
            try:
                metadata = await self.bot.transport.group_metadata(chat_id)
                if isinstance(metadata, dict):
                    metadata = GroupMetadata.model_validate(metadata)
                return metadata
            except Exception as e:
                logger.warning(
                    "group_metadata_fetch_failed",
                    chat=chat_id, attempt=attempt, error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < attempts:
                    await asyncio.sleep(delay)
                    delay *= 2

        err = MetadataFetchFailed("using fallback metadata", chat_id=chat_id, attempts=attempts)
        logger.error("group_metadata_fallback", chat=chat_id, error=str(err))
        return GroupMetadata.fallback(chat_id)

    # --- Continuations ---

    async def _check_continuations(
        self,
        message: NormalizedMessage,
        metadata: Optional[GroupMetadata],
        prefix: str,
    ) -> Optional[DispatchOutcome]:
        """Resume a reply/reaction continuation if the message targets one.

        Reaction data is checked first; when it matches a reaction
        entry the reply registry is not consulted for this message.
        Returns None to continue with the command check.
        """
        reaction = message.reaction
        if reaction.present and reaction.target_message_id:
            if reaction.emoji is None:
                logger.debug("reaction_removal_ignored", target=reaction.target_message_id[:8])
            else:
                entry = self.bot.reactions.lookup(reaction.target_message_id)
                if entry is not None:
                    return await self._run_continuation(
                        self.bot.reactions, entry, message, metadata, prefix,
                    )

        quote = message.quote
        if quote is not None and quote.quoted_message_id:
            entry = self.bot.replies.lookup(quote.quoted_message_id)
            if entry is not None:
                return await self._run_continuation(
                    self.bot.replies, entry, message, metadata, prefix,
                )
        return None

    async def _run_continuation(
        self,
        registry: ContinuationRegistry,
        entry: ContinuationEntry,
        message: NormalizedMessage,
        metadata: Optional[GroupMetadata],
        prefix: str,
    ) -> Optional[DispatchOutcome]:
        kind = registry.kind.value
        target_id = entry.target_message_id

        if not self.bot.permissions.has_permission(message.sender_id, metadata, entry.permission):
            logger.info(
                "continuation_permission_denied",
                kind=kind, target=target_id[:8], sender=mask_id(message.sender_id),
                required=entry.permission,
            )
            if entry.notify_permission_errors:
                await self._notify(
                    message,
                    CONTINUATION_PERMISSION_NOTICE.format(tier=tier_description(entry.permission)),
                )
            return DispatchOutcome.CONTINUATION_REJECTED

        if (
            registry.kind is ContinuationKind.REACTION
            and entry.required_reaction
            and message.reaction.emoji != entry.required_reaction
        ):
            logger.info(
                "continuation_wrong_reaction",
                target=target_id[:8], expected=entry.required_reaction,
                got=message.reaction.emoji,
            )
            if entry.notify_wrong_reaction:
                await self._notify(message, WRONG_REACTION_NOTICE.format(emoji=entry.required_reaction))
            return DispatchOutcome.CONTINUATION_REJECTED

        command = self.bot.commands.get(entry.command_name) if entry.command_name else None
        callback = entry.callback
        if callback is None and command is not None:
            callback = command.reaction_handler
        if callback is None:
            logger.warning(
                "continuation_without_handler", kind=kind, target=target_id[:8],
                command=entry.command_name,
            )
            registry.delete(target_id, entry=entry)
            return None

        ctx = CommandContext(
            bot=self.bot,
            message=message,
            args=sanitize_input(message.body_text or "").split(),
            command=command,
            group_metadata=metadata,
            prefix=prefix,
            is_command=False,
            state=entry.state,
            delete_continuation=DeletionHandle(registry, entry),
        )

        async def invoke(_entry: ContinuationEntry) -> None:
            response = await callback(ctx)
            if response:
                await ctx.reply(response)

        try:
            consumed = await registry.consume(target_id, invoke)
        except Exception as e:
            err = ContinuationCallbackFailed(
                str(e), target_message_id=target_id, kind=kind, command=entry.command_name,
            )
            logger.error(
                "continuation_callback_failed", error=str(err), error_type=type(e).__name__,
                exc_info=True,
            )
            if entry.notify_errors:
                await self._notify(message, CONTINUATION_ERROR_NOTICE.format(kind=kind, error=e))
            return None

        if not consumed:
            return None
        logger.info(
            "continuation_invoked",
            kind=kind, target=target_id[:8], command=entry.command_name,
            sender=mask_id(message.sender_id),
        )
        return DispatchOutcome.CONSUMED

    # --- Commands ---

    async def _check_command(
        self,
        message: NormalizedMessage,
        metadata: Optional[GroupMetadata],
        prefix: str,
    ) -> DispatchOutcome:
        text = sanitize_input(message.body_text or "").strip()
        if not text:
            return DispatchOutcome.NO_OP

        is_command = text.startswith(prefix)
        if is_command:
            body = text[len(prefix):]
        else:
            # Keyword commands fire on their bare name
            first = text.split(maxsplit=1)[0]
            keyword = self.bot.commands.resolve(first)
            if keyword is None or not keyword.no_prefix:
                return DispatchOutcome.NO_OP
            body = text

        tokens = body.split()
        if not tokens:
            return DispatchOutcome.NO_OP
        name, args = tokens[0].lower(), tokens[1:]

        descriptor = self.bot.commands.resolve(name)
        if descriptor is None:
            rejection = CommandNotFound(
                "unknown command", command=name,
                notice=NOT_FOUND_NOTICE.format(command=name, prefix=prefix),
            )
            await self._reject(message, rejection)
            return DispatchOutcome.NOT_FOUND

        ctx = CommandContext(
            bot=self.bot,
            message=message,
            args=args,
            command=descriptor,
            group_metadata=metadata,
            prefix=prefix,
            is_command=is_command,
        )
        return await self._execute(ctx, descriptor)

    def _authorize(self, ctx: CommandContext, descriptor: CommandDescriptor) -> None:
        """Use gate, then tier, then cooldown.

        Raises:
            UseDenied, PermissionDenied, CooldownActive.
        """
        message = ctx.message
        permissions = self.bot.permissions

        if not permissions.can_use_bot(message.sender_id, message.is_from_self):
            raise UseDenied("use denied", command=descriptor.name, notice=USE_DENIED_NOTICE)

        if not permissions.has_permission(message.sender_id, ctx.group_metadata, descriptor.permission):
            raise PermissionDenied(
                "permission denied",
                command=descriptor.name,
                required=descriptor.permission,
                notice=PERMISSION_NOTICE.format(
                    command=descriptor.name, tier=tier_description(descriptor.permission),
                ),
            )

        remaining = self.bot.commands.claim_cooldown(
            descriptor.name, message.sender_number or message.sender_id,
        )
        if remaining is not None:
            raise CooldownActive(
                "cooldown active",
                command=descriptor.name,
                remaining=remaining,
                notice=COOLDOWN_NOTICE.format(command=descriptor.name, remaining=remaining),
            )

    async def _execute(self, ctx: CommandContext, descriptor: CommandDescriptor) -> DispatchOutcome:
        message = ctx.message
        try:
            self._authorize(ctx, descriptor)
        except DispatchRejection as rejection:
            await self._reject(message, rejection)
            return _REJECTION_OUTCOMES[type(rejection)]

        if self.bot.config.log_commands:
            logger.info(
                "command_executed",
                command=descriptor.name,
                args=len(ctx.args),
                sender=mask_id(message.sender_id),
                chat_kind=message.chat_kind.value,
            )

        try:
            response = await descriptor.handler(ctx)
            if response:
                await ctx.reply(response)
            outcome = DispatchOutcome.EXECUTED
        except Exception as e:
            err = HandlerExecutionFailed(
                str(e), command=descriptor.name, error_type=type(e).__name__,
            )
            logger.error("command_failed", error=str(err), exc_info=True)
            await self._notify(message, EXECUTION_ERROR_NOTICE)
            outcome = DispatchOutcome.FAILED

        if self.bot.config.delete_command_messages and ctx.is_command and message.key:
            await self._delete_message(message)
        return outcome

    # --- Outbound side effects (never raise) ---

    async def _reject(self, message: NormalizedMessage, rejection: DispatchRejection) -> None:
        logger.info(
            "command_rejected",
            reason=type(rejection).__name__,
            command=rejection.command,
            sender=mask_id(message.sender_id),
        )
        await self._notify(message, rejection.notice)

    async def _notify(self, message: NormalizedMessage, text: str) -> None:
        options = {"quoted": message.key} if message.key else None
        try:
            await self.bot.transport.send_message(message.chat_id, {"text": text}, options)
        except Exception as e:
            logger.warning("notice_send_failed", chat=message.chat_id, error=str(e))

    async def _mark_read(self, message: NormalizedMessage) -> None:
        try:
            await self.bot.transport.read_messages([message.key])
        except Exception as e:
            logger.warning("mark_read_failed", chat=message.chat_id, error=str(e))

    async def _delete_message(self, message: NormalizedMessage) -> None:
        try:
            await self.bot.transport.send_message(message.chat_id, {"delete": message.key})
        except Exception as e:
            logger.warning("command_message_delete_failed", chat=message.chat_id, error=str(e))
