"""Access control for yumi.

Provides the permission tier resolver (everyone / group admin /
bot admin), the coarse use gate (admin-only and whitelist modes) and
input sanitization for message text.
"""

import re
import unicodedata
from enum import IntEnum
from typing import Iterable, Optional

import structlog

from .logging_config import mask_id
from .models import GroupMetadata

logger = structlog.get_logger("yumi.security")

MAX_INPUT_LENGTH = 10000

_BIDI_CHARS = set('\u202a\u202b\u202c\u202d\u202e\u2066\u2067\u2068\u2069')


class Tier(IntEnum):
    """Permission tiers, ordered so a higher tier satisfies a lower one."""
    EVERYONE = 0
    GROUP_ADMIN = 1
    BOT_ADMIN = 2


TIER_DESCRIPTIONS = {
    Tier.EVERYONE: "everyone",
    Tier.GROUP_ADMIN: "group admins or bot admins",
    Tier.BOT_ADMIN: "bot admins only",
}


def tier_description(tier: int) -> str:
    """User-facing wording for a permission tier."""
    try:
        return TIER_DESCRIPTIONS[Tier(tier)]
    except ValueError:
        return "unknown"


def normalize_number(user_id: str) -> str:
    """Reduce a JID or phone number to its digits ("15551234567")."""
    user = user_id.split("@", 1)[0].split(":", 1)[0]
    return re.sub(r"[^\d]", "", user)


class PermissionResolver:
    """Maps a user plus optional group metadata to a permission tier.

    Bot-admin status comes from a static allow-list of numbers. Group
    admin status requires metadata naming the user as admin/superadmin
    of the current group; callers pass None outside group chats so a
    tier-1 request falls back to the bot-admin check alone.

    Args:
        config: Config providing bot_admins, admin_only,
            whitelist_enabled and whitelist_numbers.
    """

    def __init__(self, config):
        self.config = config

    def _bot_admins(self) -> Iterable[str]:
        return self.config.bot_admins

    def is_bot_admin(self, user_id: str) -> bool:
        number = normalize_number(user_id)
        return bool(number) and number in self._bot_admins()

    def is_group_admin(self, user_id: str, group_metadata: Optional[GroupMetadata]) -> bool:
        if group_metadata is None:
            return False
        number = normalize_number(user_id)
        if not number:
            return False
        for participant in group_metadata.participants:
            if normalize_number(participant.id) == number:
                return participant.is_admin
        return False

    def resolve_tier(self, user_id: str, group_metadata: Optional[GroupMetadata] = None) -> Tier:
        """Highest tier the user holds in this context."""
        if self.is_bot_admin(user_id):
            return Tier.BOT_ADMIN
        if self.is_group_admin(user_id, group_metadata):
            return Tier.GROUP_ADMIN
        return Tier.EVERYONE

    def has_permission(
        self,
        user_id: str,
        group_metadata: Optional[GroupMetadata],
        required: int,
    ) -> bool:
        """Check whether the user meets ``required``.

        Tier 0 needs no lookups at all.
        """
        if required <= Tier.EVERYONE:
            return True
        return self.resolve_tier(user_id, group_metadata) >= required

    def can_use_bot(self, user_id: str, is_from_self: bool = False) -> bool:
        """Coarse allow/deny evaluated before any tier check.

        Admin-only mode admits bot admins. Whitelist mode admits
        whitelisted numbers and bot admins. The bot's own messages
        always pass.
        """
        if is_from_self:
            return True
        number = normalize_number(user_id)
        if self.config.admin_only and not self.is_bot_admin(user_id):
            logger.info("use_denied", sender=mask_id(user_id), mode="admin_only")
            return False
        if (
            self.config.whitelist_enabled
            and number not in self.config.whitelist_numbers
            and not self.is_bot_admin(user_id)
        ):
            logger.info("use_denied", sender=mask_id(user_id), mode="whitelist")
            return False
        return True


def sanitize_input(text: str) -> str:
    """Sanitize user input: strip control characters and enforce length limit."""
    # Keep newline, tab, carriage return
    text = ''.join(
        ch for ch in text
        if ch in ('\n', '\r', '\t') or not unicodedata.category(ch).startswith('C')
    )
    text = ''.join(ch for ch in text if ch not in _BIDI_CHARS)
    if len(text) > MAX_INPUT_LENGTH:
        text = text[:MAX_INPUT_LENGTH]
    return text
