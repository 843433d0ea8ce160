"""Inbound event normalization for yumi.

Turns a raw ``messages.upsert`` entry from the bridge (a WhatsApp
message dict with ``key``, ``message``, ``messageTimestamp`` and
``pushName``) into an immutable NormalizedMessage, or None when the
event carries nothing the dispatcher can act on.

Key functions:
    normalize: Raw event -> NormalizedMessage | None.
    extract_text: Canonical body text of a message payload.
    canonical_jid / user_number: Identifier clean-up.
    describe_chat / group_name: Display name of a chat for logging.
"""

import re
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from .exceptions import NormalizationFailed
from .models import (
    Attachment,
    ContentKind,
    GroupMetadata,
    NormalizedMessage,
    Quote,
    Reaction,
)

logger = structlog.get_logger("yumi.dispatch")

STATUS_BROADCAST = "status@broadcast"
GROUP_SUFFIX = "@g.us"
CHANNEL_SUFFIX = "@newsletter"

WRAPPER_KEYS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2")
# Keys that ride along with real content and never are the content
METADATA_KEYS = frozenset({"messageContextInfo", "senderKeyDistributionMessage"})
CONTEXT_KEYS = frozenset({"contextInfo", "messageContextInfo"})

CONTENT_KINDS: Dict[str, ContentKind] = {
    "conversation": ContentKind.TEXT,
    "extendedTextMessage": ContentKind.EXTENDED_TEXT,
    "imageMessage": ContentKind.IMAGE,
    "videoMessage": ContentKind.VIDEO,
    "audioMessage": ContentKind.AUDIO,
    "documentMessage": ContentKind.DOCUMENT,
    "stickerMessage": ContentKind.STICKER,
    "reactionMessage": ContentKind.REACTION,
}

MEDIA_KEYS = ("imageMessage", "videoMessage", "audioMessage", "documentMessage", "stickerMessage")
CAPTION_KEYS = ("imageMessage", "videoMessage", "documentMessage")


def canonical_jid(jid: Optional[str]) -> str:
    """Strip the device suffix from a JID ("123:7@s.whatsapp.net" -> "123@s.whatsapp.net")."""
    if not jid:
        return ""
    if "@" not in jid:
        return jid.split(":", 1)[0]
    user, server = jid.split("@", 1)
    return f"{user.split(':', 1)[0]}@{server}"


def user_number(jid: Optional[str]) -> str:
    """Digits of the user part of a JID, used for permission checks."""
    if not jid:
        return ""
    return re.sub(r"[^\d]", "", canonical_jid(jid).split("@", 1)[0])


def content_type(message: Dict[str, Any]) -> Optional[str]:
    """The transport's content key for a message payload."""
    for key in message:
        if key not in METADATA_KEYS:
            return key
    return None


def classify_content(key: Optional[str]) -> ContentKind:
    return CONTENT_KINDS.get(key or "", ContentKind.UNKNOWN)


def extract_text(message: Optional[Dict[str, Any]]) -> Optional[str]:
    """Return the canonical body text of a message payload.

    Order: plain conversation text, extended text, media caption,
    then the first nested object exposing ``text`` or ``caption``
    (skipping context keys and reaction payloads).
    """
    if not message:
        return None

    if message.get("conversation"):
        return message["conversation"]
    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"]
    for key in CAPTION_KEYS:
        caption = (message.get(key) or {}).get("caption")
        if caption:
            return caption

    for key, content in message.items():
        if key in CONTEXT_KEYS or key == "reactionMessage":
            continue
        if isinstance(content, dict):
            if content.get("text"):
                return content["text"]
            if content.get("caption"):
                return content["caption"]
    return None


def _unwrap(message: Dict[str, Any], unwrap_ephemeral: bool) -> Optional[Dict[str, Any]]:
    """Peel one disappearing/view-once wrapper. None if nothing is inside."""
    kind = content_type(message)
    if kind not in WRAPPER_KEYS:
        return message
    if not unwrap_ephemeral:
        return None
    inner = (message.get(kind) or {}).get("message")
    return inner or None


def _context_info(message: Dict[str, Any], kind: Optional[str]) -> Dict[str, Any]:
    content = message.get(kind) if kind else None
    if isinstance(content, dict):
        return content.get("contextInfo") or {}
    return {}


def _attachment(message: Dict[str, Any], kind: Optional[str], context: Dict[str, Any]) -> Attachment:
    if kind in MEDIA_KEYS:
        return Attachment(present=True, kind=kind.replace("Message", ""))
    quoted = context.get("quotedMessage")
    if isinstance(quoted, dict):
        quoted_kind = content_type(quoted)
        if quoted_kind in MEDIA_KEYS:
            return Attachment(
                present=True,
                kind=f"quoted-{quoted_kind.replace('Message', '')}",
                is_quoted=True,
            )
    return Attachment()


def _reaction(message: Dict[str, Any], kind: Optional[str], context: Dict[str, Any]) -> Reaction:
    if kind == "reactionMessage":
        payload = message.get("reactionMessage") or {}
        return Reaction(
            present=True,
            emoji=payload.get("text") or None,
            target_message_id=(payload.get("key") or {}).get("id"),
        )
    if "reactionMessage" in context:
        payload = context.get("reactionMessage") or {}
        return Reaction(
            present=True,
            emoji=payload.get("text") or None,
            target_message_id=(payload.get("key") or {}).get("id") or context.get("stanzaId"),
        )
    return Reaction()


def _quote(context: Dict[str, Any]) -> Optional[Quote]:
    quoted = context.get("quotedMessage")
    if not quoted:
        return None
    participant = context.get("participant")
    return Quote(
        present=True,
        quoted_sender_id=canonical_jid(participant) or None,
        quoted_text=extract_text(quoted),
        quoted_message_id=context.get("stanzaId"),
    )


def _timestamp(raw_ts: Any) -> datetime:
    if isinstance(raw_ts, dict):
        raw_ts = raw_ts.get("low")
    try:
        return datetime.fromtimestamp(int(raw_ts))
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now()


def _build(raw_event: Dict[str, Any], bot_id: Optional[str], unwrap_ephemeral: bool) -> Optional[NormalizedMessage]:
    key = raw_event.get("key") or {}
    chat_id = key.get("remoteJid")
    if not chat_id or chat_id == STATUS_BROADCAST:
        return None

    message = raw_event.get("message")
    if not isinstance(message, dict) or not message:
        return None
    message = _unwrap(message, unwrap_ephemeral)
    if not message:
        return None

    kind = content_type(message)
    context = _context_info(message, kind)

    from_self = bool(key.get("fromMe"))
    if from_self and bot_id:
        sender = canonical_jid(bot_id)
    else:
        sender = canonical_jid(key.get("participant") or chat_id)

    body_text = extract_text(message)
    attachment = _attachment(message, kind, context)
    reaction = _reaction(message, kind, context)
    quote = _quote(context)

    if body_text is None and not attachment.present and not reaction.present and quote is None:
        return None

    return NormalizedMessage(
        chat_id=chat_id,
        sender_id=sender,
        sender_number=user_number(sender),
        message_id=key.get("id"),
        key=dict(key),
        is_from_self=from_self,
        is_group=chat_id.endswith(GROUP_SUFFIX),
        is_channel=chat_id.endswith(CHANNEL_SUFFIX),
        body_text=body_text,
        raw_content_kind=kind or "",
        content_kind=classify_content(kind),
        attachment=attachment,
        quote=quote,
        reaction=reaction,
        is_forwarded=bool(context.get("isForwarded", False)),
        push_name=raw_event.get("pushName"),
        timestamp=_timestamp(raw_event.get("messageTimestamp")),
    )


def normalize(
    raw_event: Dict[str, Any],
    bot_id: Optional[str] = None,
    unwrap_ephemeral: bool = True,
) -> Optional[NormalizedMessage]:
    """Convert a raw inbound event into a NormalizedMessage.

    Args:
        raw_event: One entry of a ``messages.upsert`` payload.
        bot_id: The bot's own JID, used as sender for ``fromMe`` events.
        unwrap_ephemeral: Peel one disappearing/view-once wrapper
            instead of dropping the event.

    Returns:
        The normalized message, or None if the event has no usable
        content, targets the status broadcast, or is malformed.
    """
    try:
        return _build(raw_event, bot_id, unwrap_ephemeral)
    except (AttributeError, TypeError, ValueError) as e:
        err = NormalizationFailed(str(e), error_type=type(e).__name__)
        logger.debug("normalization_failed", error=str(err))
        return None


async def group_name(transport, chat_id: str) -> str:
    """Subject of a group for logs. Never raises."""
    try:
        metadata = await transport.group_metadata(chat_id)
        return metadata.subject
    except Exception as e:
        logger.debug("chat_name_lookup_failed", chat=chat_id, error=str(e))
        return "Unknown Group"


def describe_chat(message: NormalizedMessage, metadata: Optional[GroupMetadata] = None) -> str:
    """Human-readable chat name for message logs."""
    if message.is_group:
        return metadata.subject if metadata else "Unknown Group"
    if message.is_channel:
        return "Unknown Channel"
    return message.display_name
