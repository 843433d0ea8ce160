"""Pydantic models for inbound messages, group metadata and chat state.

NormalizedMessage is the canonical, immutable view of one inbound event
that every later stage of the dispatch pipeline works from.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatKind(str, Enum):
    """Where a message was posted. Exactly one applies per message."""
    PRIVATE = "private"
    GROUP = "group"
    CHANNEL = "channel"


class ContentKind(str, Enum):
    """Known message content kinds plus a catch-all.

    Maps the transport's content keys ("conversation",
    "imageMessage", ...) onto a closed set so extraction can be total.
    """
    TEXT = "text"
    EXTENDED_TEXT = "extended_text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    REACTION = "reaction"
    UNKNOWN = "unknown"


class Attachment(BaseModel):
    """Media carried by the message or by the message it quotes."""

    model_config = ConfigDict(frozen=True)

    present: bool = False
    kind: Optional[str] = Field(default=None, description="'image', 'quoted-video', ...")
    is_quoted: bool = False


class Quote(BaseModel):
    """Reply linkage to an earlier message."""

    model_config = ConfigDict(frozen=True)

    present: bool = True
    quoted_sender_id: Optional[str] = None
    quoted_text: Optional[str] = None
    quoted_message_id: Optional[str] = None


class Reaction(BaseModel):
    """Emoji reaction payload. ``emoji`` is None when a reaction was removed."""

    model_config = ConfigDict(frozen=True)

    present: bool = False
    emoji: Optional[str] = None
    target_message_id: Optional[str] = None


class NormalizedMessage(BaseModel):
    """Canonical view of one inbound message event."""

    model_config = ConfigDict(frozen=True)

    chat_id: str
    sender_id: str = Field(..., description="Canonical JID, device suffix stripped")
    sender_number: str = Field(..., description="Digits of the sender JID")
    message_id: Optional[str] = None
    key: dict[str, Any] = Field(default_factory=dict)
    is_from_self: bool = False
    is_group: bool = False
    is_channel: bool = False
    body_text: Optional[str] = None
    raw_content_kind: str = ""
    content_kind: ContentKind = ContentKind.UNKNOWN
    attachment: Attachment = Field(default_factory=Attachment)
    quote: Optional[Quote] = None
    reaction: Reaction = Field(default_factory=Reaction)
    is_forwarded: bool = False
    push_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def chat_kind(self) -> ChatKind:
        if self.is_group:
            return ChatKind.GROUP
        if self.is_channel:
            return ChatKind.CHANNEL
        return ChatKind.PRIVATE

    @property
    def display_name(self) -> str:
        return self.push_name or self.sender_number


class Participant(BaseModel):
    """Group member as reported by the bridge."""

    id: str
    admin: Optional[str] = Field(default=None, description="'admin', 'superadmin' or None")

    @property
    def is_admin(self) -> bool:
        return self.admin in ("admin", "superadmin")


class GroupMetadata(BaseModel):
    """Subject and membership of a group chat."""

    id: Optional[str] = None
    subject: str = "Unknown Group"
    participants: List[Participant] = Field(default_factory=list)

    @classmethod
    def fallback(cls, chat_id: Optional[str] = None) -> "GroupMetadata":
        """Value used when the bridge cannot tell us about the group."""
        return cls(id=chat_id, subject="Unknown Group", participants=[])


class ThreadConfig(BaseModel):
    """Per-chat overrides persisted to the thread data file."""

    prefix: Optional[str] = None
