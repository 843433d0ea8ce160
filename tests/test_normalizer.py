"""Tests for inbound event normalization."""

from unittest.mock import AsyncMock

import pytest

from helpers import BOT, CHANNEL, GROUP, OTHER, USER, raw_event, reaction_event, text_event
from yumi.exceptions import TransportUnavailable
from yumi.models import ChatKind, ContentKind, GroupMetadata
from yumi.normalizer import (
    canonical_jid,
    describe_chat,
    extract_text,
    group_name,
    normalize,
    user_number,
)


class TestExtractText:

    def test_conversation(self):
        assert extract_text({"conversation": "hi"}) == "hi"

    def test_extended_text(self):
        assert extract_text({"extendedTextMessage": {"text": "hello"}}) == "hello"

    def test_media_caption(self):
        assert extract_text({"imageMessage": {"caption": "look", "mimetype": "image/jpeg"}}) == "look"

    def test_nested_fallback(self):
        """Unknown message types still expose their text field."""
        assert extract_text({"buttonsResponseMessage": {"text": "Option A"}}) == "Option A"

    def test_reaction_text_is_not_body(self):
        """A reaction emoji is never treated as body text."""
        assert extract_text({"reactionMessage": {"text": "👍", "key": {"id": "X"}}}) is None

    def test_empty(self):
        """Empty or missing payloads have no text."""
        assert extract_text({}) is None
        assert extract_text(None) is None


class TestNormalize:

    def test_private_text(self):
        """A private text message normalizes with all fields set."""
        msg = normalize(text_event("!ping", msg_id="M1"), bot_id=BOT)

        assert msg.chat_id == USER
        assert msg.sender_id == USER
        assert msg.sender_number == "15552222222"
        assert msg.message_id == "M1"
        assert msg.body_text == "!ping"
        assert msg.content_kind is ContentKind.TEXT
        assert msg.raw_content_kind == "conversation"
        assert msg.chat_kind is ChatKind.PRIVATE
        assert msg.quote is None
        assert msg.reaction.present is False
        assert msg.push_name == "Tester"

    def test_group_sender_from_participant(self):
        """In groups the sender comes from key.participant."""
        msg = normalize(text_event("hi", chat=GROUP, sender=OTHER))

        assert msg.is_group is True
        assert msg.chat_kind is ChatKind.GROUP
        assert msg.sender_id == OTHER

    def test_channel(self):
        """Newsletter JIDs are channels."""
        msg = normalize(text_event("news", chat=CHANNEL))
        assert msg.chat_kind is ChatKind.CHANNEL

    def test_device_suffix_stripped(self):
        """Device suffixes are stripped from sender JIDs."""
        event = text_event("hi", chat=GROUP, sender="15553333333:12@s.whatsapp.net")
        msg = normalize(event)
        assert msg.sender_id == OTHER
        assert msg.sender_number == "15553333333"

    def test_from_self_uses_bot_id(self):
        """Own messages use the bot's canonical JID as sender."""
        msg = normalize(text_event("hi", from_me=True), bot_id="15550000000:3@s.whatsapp.net")
        assert msg.is_from_self is True
        assert msg.sender_id == BOT

    def test_quote(self):
        """Quoted replies expose the quoted id, sender and text."""
        msg = normalize(text_event("yes", quoted_id="Q1", quoted_text="Vote now"))

        assert msg.quote.present is True
        assert msg.quote.quoted_message_id == "Q1"
        assert msg.quote.quoted_text == "Vote now"
        assert msg.quote.quoted_sender_id == BOT
        assert msg.content_kind is ContentKind.EXTENDED_TEXT

    def test_top_level_reaction(self):
        """A reactionMessage becomes reaction data."""
        msg = normalize(reaction_event("👍", "TARGET1"))

        assert msg.reaction.present is True
        assert msg.reaction.emoji == "👍"
        assert msg.reaction.target_message_id == "TARGET1"
        assert msg.body_text is None
        assert msg.content_kind is ContentKind.REACTION

    def test_reaction_removal_has_no_emoji(self):
        """Reaction removal keeps the target but has no emoji."""
        msg = normalize(reaction_event("", "TARGET1"))
        assert msg.reaction.present is True
        assert msg.reaction.emoji is None

    def test_image_attachment(self):
        """Images carry an attachment and their caption as text."""
        msg = normalize(raw_event({"imageMessage": {"caption": "pic"}}))

        assert msg.attachment.present is True
        assert msg.attachment.kind == "image"
        assert msg.attachment.is_quoted is False
        assert msg.body_text == "pic"

    def test_quoted_media_attachment(self):
        """Media inside the quote is flagged as a quoted attachment."""
        event = raw_event({
            "extendedTextMessage": {
                "text": "what is this",
                "contextInfo": {"stanzaId": "Q9", "quotedMessage": {"videoMessage": {}}},
            }
        })
        msg = normalize(event)

        assert msg.attachment.present is True
        assert msg.attachment.kind == "quoted-video"
        assert msg.attachment.is_quoted is True

    def test_forwarded_flag(self):
        """Forwarded messages are flagged."""
        event = raw_event({
            "extendedTextMessage": {"text": "fwd", "contextInfo": {"isForwarded": True}}
        })
        assert normalize(event).is_forwarded is True

    def test_ephemeral_unwrapped(self):
        """Disappearing messages are unwrapped once."""
        event = raw_event({"ephemeralMessage": {"message": {"conversation": "secret"}}})
        assert normalize(event).body_text == "secret"

    def test_ephemeral_dropped_when_unwrap_disabled(self):
        """With unwrapping off, wrapped messages are dropped."""
        event = raw_event({"ephemeralMessage": {"message": {"conversation": "secret"}}})
        assert normalize(event, unwrap_ephemeral=False) is None

    def test_metadata_keys_skipped_for_content_kind(self):
        """messageContextInfo does not decide the content kind."""
        event = raw_event({"messageContextInfo": {}, "conversation": "hi"})
        assert normalize(event).raw_content_kind == "conversation"

    def test_unknown_content_kind(self):
        """Unrecognized payloads are classified as UNKNOWN."""
        msg = normalize(raw_event({"pollCreationMessage": {"name": "Lunch?", "text": "Lunch?"}}))
        assert msg.content_kind is ContentKind.UNKNOWN

    @pytest.mark.parametrize("event", [
        text_event("hi", chat="status@broadcast"),
        raw_event({}),
        raw_event({"protocolMessage": {"type": 0}}),
        {"key": {"id": "X"}, "message": {"conversation": "no chat"}},
        {"key": {"remoteJid": USER, "id": "X"}, "message": "not a dict"},
        {},
    ])
    def test_dropped_events(self, event):
        """Events with nothing to act on normalize to None."""
        assert normalize(event) is None

    def test_malformed_key_dropped(self):
        """A malformed key drops the event instead of raising."""
        assert normalize({"key": "garbage", "message": {"conversation": "x"}}) is None

    def test_timestamp_low_high_form(self):
        """Long-style {"low": ...} timestamps are accepted."""
        event = text_event("hi")
        event["messageTimestamp"] = {"low": 1700000000, "high": 0}
        assert normalize(event).timestamp.year == 2023

    def test_display_name_falls_back_to_number(self):
        """Without a push name the display name is the number."""
        msg = normalize(text_event("hi", push_name=None))
        assert msg.display_name == "15552222222"


class TestHelpers:

    def test_canonical_jid(self):
        assert canonical_jid("123:4@s.whatsapp.net") == "123@s.whatsapp.net"
        assert canonical_jid("123:4") == "123"
        assert canonical_jid(None) == ""

    def test_user_number(self):
        assert user_number("+1-555@s.whatsapp.net") == "1555"
        assert user_number("") == ""
    def test_describe_chat(self):
        """Chat names come from metadata, then fixed fallbacks."""
        metadata = GroupMetadata(id=GROUP, subject="Team")

        assert describe_chat(normalize(text_event("x", chat=GROUP)), metadata) == "Team"
        assert describe_chat(normalize(text_event("x", chat=GROUP))) == "Unknown Group"
        assert describe_chat(normalize(text_event("x", chat=CHANNEL))) == "Unknown Channel"
        assert describe_chat(normalize(text_event("x"))) == "Tester"

    @pytest.mark.asyncio
    async def test_group_name(self):
        """group_name returns the group's subject."""
        transport = AsyncMock()
        transport.group_metadata.return_value = GroupMetadata(id=GROUP, subject="Team")
        assert await group_name(transport, GROUP) == "Team"

    @pytest.mark.asyncio
    async def test_group_name_lookup_failure(self):
        """Lookup failures give "Unknown Group" instead of raising."""
        transport = AsyncMock()
        transport.group_metadata.side_effect = TransportUnavailable("down")

        assert await group_name(transport, GROUP) == "Unknown Group"
