"""Built-in commands for yumi.

Handles: help, prefix, poll, cmd, ping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from ..exceptions import PluginLoadError, TransportUnavailable
from ..security import Tier, tier_description
from .base import BaseCommand, BotContext, CommandContext, message_id_of

logger = structlog.get_logger("yumi.commands")

PREFIX_CONFIRM_EXPIRE_MS = 60 * 1000
POLL_EXPIRE_MS = 24 * 60 * 60 * 1000


class HelpCommand(BaseCommand):
    """List commands the caller may use, or show details of one."""

    name = "help"
    aliases = ("menu",)
    description = "View command usage and list all available commands"
    category = "info"
    usage = "{prefix}help [command]"

    async def run(self, ctx: CommandContext) -> Optional[str]:
        if ctx.args:
            return self._command_info(ctx, ctx.args[0])

        tier = self.bot.permissions.resolve_tier(ctx.sender_id, ctx.group_metadata)
        categories: Dict[str, List[str]] = {}
        for descriptor in self.bot.commands.descriptors():
            if descriptor.permission > tier:
                continue
            categories.setdefault(descriptor.category or "general", []).append(descriptor.name)

        lines = ["📖 *Commands*"]
        for category in sorted(categories):
            lines.append(f"\n*{category.upper()}*")
            lines.extend(f"  {ctx.prefix}{name}" for name in categories[category])
        lines.append(
            f"\n{sum(len(v) for v in categories.values())} commands available. "
            f"Type {ctx.prefix}help <command> for details."
        )
        return "\n".join(lines)

    def _command_info(self, ctx: CommandContext, name: str) -> str:
        descriptor = self.bot.commands.resolve(name)
        if descriptor is None:
            return f'⚠️ Command "{name.lower()}" not found.'

        usage = descriptor.usage.replace("{prefix}", ctx.prefix) if descriptor.usage else (
            f"{ctx.prefix}{descriptor.name}"
        )
        lines = [
            f"*Name:* {descriptor.name}",
            f"*Description:* {descriptor.description or 'No description available.'}",
            f"*Usage:* {usage}",
            f"*Available to:* {tier_description(descriptor.permission)}",
        ]
        if descriptor.aliases:
            lines.append(f"*Aliases:* {', '.join(sorted(descriptor.aliases))}")
        if descriptor.cooldown_seconds:
            lines.append(f"*Cooldown:* {descriptor.cooldown_seconds}s")
        return "\n".join(lines)


@dataclass
class PrefixChange:
    """Pending prefix change awaiting the requester's reaction."""
    new_prefix: str
    is_global: bool
    requester: str


class PrefixCommand(BaseCommand):
    """Show or change the command prefix.

    Usage::

        prefix              show system and chat prefix (works without prefix)
        !prefix #           change this chat's prefix, confirmed by reaction
        !prefix # -g        change the global prefix (bot admins)
        !prefix reset       drop this chat's override
    """

    name = "prefix"
    cooldown = 5
    description = "Change the command prefix for this chat or for the entire bot"
    category = "config"
    usage = "prefix | {prefix}prefix <new> [-g] | {prefix}prefix reset"
    no_prefix = True

    async def run(self, ctx: CommandContext) -> Optional[str]:
        global_prefix = self.bot.config.prefix
        chat_prefix = self.bot.effective_prefix(ctx.chat_id)

        if not ctx.args:
            return f"🌐 System prefix: {global_prefix}\n🛸 Current chat prefix: {chat_prefix}"
        if not ctx.is_command:
            # Changing the prefix needs the prefixed form
            return None

        if ctx.args[0].lower() == "reset":
            self.bot.threads.reset_prefix(ctx.chat_id)
            return f"✅ Your prefix has been reset to default: {global_prefix}"

        new_prefix = ctx.args[0]
        is_global = len(ctx.args) > 1 and ctx.args[1] == "-g"

        if is_global and not self.bot.permissions.has_permission(
            ctx.sender_id, ctx.group_metadata, Tier.BOT_ADMIN,
        ):
            return "⚠️ Only bot admins can change the global prefix."

        if is_global:
            confirm = (
                f'Please react to this message to confirm changing the global bot prefix to "{new_prefix}"'
                f"\n\nUsing {ctx.prefix}prefix {new_prefix} -g changes the prefix for the entire system."
            )
        else:
            confirm = (
                f'Please react to this message to confirm changing the prefix for this chat to "{new_prefix}"'
                f"\n\nUsing {ctx.prefix}prefix {new_prefix} changes the prefix only for this specific chat."
            )

        sent = await ctx.reply(confirm)
        ctx.register_reaction(
            sent,
            state=PrefixChange(new_prefix, is_global, ctx.sender_number),
            expire_after_ms=PREFIX_CONFIRM_EXPIRE_MS,
            auto_delete=False,
        )
        return None

    async def handle_reaction(self, ctx: CommandContext) -> Optional[str]:
        change: PrefixChange = ctx.state
        if ctx.sender_number != change.requester:
            logger.debug("prefix_reaction_ignored", reason="not_requester")
            return None

        if ctx.delete_continuation is not None:
            ctx.delete_continuation()

        if change.is_global:
            self.bot.config.set_prefix(change.new_prefix)
            return f"✅ Changed global bot prefix to: {change.new_prefix}"
        self.bot.threads.set_prefix(ctx.chat_id, change.new_prefix)
        return f"✅ Changed prefix for this chat to: {change.new_prefix}"


VOTE_OPTIONS = ("👍 Yes", "👎 No", "🤔 Maybe")
VOTE_ALIASES = {
    "yes": "👍 Yes", "y": "👍 Yes",
    "no": "👎 No", "n": "👎 No",
    "maybe": "🤔 Maybe", "m": "🤔 Maybe",
}


@dataclass
class PollTally:
    """Votes of one poll: option -> {voter number: display name}."""

    question: str
    creator: str
    message_id: Optional[str] = None
    closed: bool = False
    votes: Dict[str, Dict[str, str]] = field(
        default_factory=lambda: {option: {} for option in VOTE_OPTIONS}
    )

    def vote(self, voter: str, name: str, option: str) -> None:
        for voters in self.votes.values():
            voters.pop(voter, None)
        self.votes[option][voter] = name

    def render(self) -> str:
        lines = [f"📊 *POLL*: {self.question}", ""]
        for option, voters in self.votes.items():
            lines.append(f"{option}: {len(voters)} vote(s)")
            lines.extend(f"  - {name}" for name in voters.values())
            lines.append("")
        if self.closed:
            lines.append("This poll is closed.")
        else:
            lines.append("Reply to this message with 'yes', 'no', or 'maybe' to vote!")
        return "\n".join(lines)


class PollCommand(BaseCommand):
    """Yes/no/maybe poll tallied from replies to the poll message.

    The creator can reply "close" to end it early.
    """

    name = "poll"
    aliases = ("vote", "survey")
    permission = 1
    cooldown = 10
    description = "Create a simple poll"
    category = "group"
    usage = "{prefix}poll <question>"

    async def run(self, ctx: CommandContext) -> Optional[str]:
        if not ctx.args:
            return "❌ Please provide a question for the poll."

        tally = PollTally(question=ctx.text, creator=ctx.sender_number)
        sent = await ctx.reply(tally.render())
        tally.message_id = message_id_of(sent)
        ctx.register_reply(
            sent,
            self.handle_vote,
            state=tally,
            expire_after_ms=POLL_EXPIRE_MS,
            auto_delete=False,
        )
        return None

    async def handle_vote(self, ctx: CommandContext) -> Optional[str]:
        tally: PollTally = ctx.state
        answer = (ctx.message.body_text or "").strip().lower()

        if answer == "close" and ctx.sender_number == tally.creator:
            tally.closed = True
            if ctx.delete_continuation is not None:
                ctx.delete_continuation()
            await self._refresh(ctx, tally)
            return "📊 Poll closed."

        option = VOTE_ALIASES.get(answer)
        if option is None:
            return "Please reply with 'yes', 'no', or 'maybe' to vote."

        voter_name = ctx.message.display_name
        tally.vote(ctx.sender_number, voter_name, option)
        await self._refresh(ctx, tally)
        return f"Thanks for voting, {voter_name}!"

    async def _refresh(self, ctx: CommandContext, tally: PollTally) -> None:
        try:
            await ctx.edit(tally.message_id, tally.render())
        except TransportUnavailable as e:
            logger.warning("poll_edit_failed", error=str(e))
            await ctx.send(f"{tally.render()}\n\n[Updated poll - couldn't edit original message]")


class CmdCommand(BaseCommand):
    """Manage plugins on the running bot."""

    name = "cmd"
    permission = 2
    description = "List, load, unload or reload plugins"
    category = "owner"
    usage = "{prefix}cmd list | {prefix}cmd load <plugin> | {prefix}cmd unload <plugin> | {prefix}cmd reload <plugin>"

    async def run(self, ctx: CommandContext) -> Optional[str]:
        usage = self.usage.replace("{prefix}", ctx.prefix)
        if not ctx.args:
            return f"Usage: {usage}"

        loader = self.bot.plugin_loader
        action = ctx.args[0].lower()

        if action == "list":
            loaded = sorted(loader.plugins)
            idle = [name for name in loader.available() if name not in loader.plugins]
            lines = [f"🧩 Loaded plugins ({len(loaded)}):"]
            for name in loaded:
                commands = [d.name for d in self.bot.commands.by_source(name)]
                lines.append(f"  {name}: {', '.join(commands) or 'no commands'}")
            if idle:
                lines.append(f"Available: {', '.join(idle)}")
            return "\n".join(lines)

        if action not in ("load", "unload", "reload"):
            return f"Usage: {usage}"
        if len(ctx.args) < 2:
            return f"Usage: {ctx.prefix}cmd {action} <plugin>"
        plugin_name = ctx.args[1]

        if action == "unload":
            if await loader.unload(plugin_name):
                return f'✅ Unloaded plugin "{plugin_name}".'
            return f'⚠️ Plugin "{plugin_name}" is not loaded.'

        try:
            if action == "reload":
                await loader.reload(plugin_name)
            else:
                await loader.load(plugin_name)
        except PluginLoadError as e:
            logger.warning("plugin_command_failed", action=action, plugin=plugin_name, error=str(e))
            return f'❌ Failed to {action} "{plugin_name}": {e.message}'

        commands = [d.name for d in self.bot.commands.by_source(plugin_name)]
        verb = "Reloaded" if action == "reload" else "Loaded"
        return f'✅ {verb} plugin "{plugin_name}" ({", ".join(commands) or "no commands"}).'


class PingCommand(BaseCommand):
    name = "ping"
    description = "Check that the bot is responding"
    category = "info"

    async def run(self, ctx: CommandContext) -> Optional[str]:
        latency = max(0.0, (datetime.now() - ctx.message.timestamp).total_seconds())
        return f"🏓 Pong! ({latency:.1f}s)"


def builtin_commands(bot: BotContext) -> List[BaseCommand]:
    """Instances of every built-in command, ready to register."""
    return [
        HelpCommand(bot),
        PrefixCommand(bot),
        PollCommand(bot),
        CmdCommand(bot),
        PingCommand(bot),
    ]
