"""Command framework for yumi.

Provides the BaseCommand ABC, BotContext dependency container,
CommandContext and the CommandRegistry.
"""

from .base import (
    BUILTIN_COMMANDS,
    BaseCommand,
    BotContext,
    CommandContext,
    CommandDescriptor,
    CommandRegistry,
)

__all__ = [
    "BaseCommand",
    "BotContext",
    "CommandContext",
    "CommandDescriptor",
    "CommandRegistry",
    "BUILTIN_COMMANDS",
]
