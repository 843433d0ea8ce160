"""Raw bridge event builders shared by the tests."""

import itertools
import time

BOT = "15550000000@s.whatsapp.net"
ADMIN = "15551111111@s.whatsapp.net"
USER = "15552222222@s.whatsapp.net"
OTHER = "15553333333@s.whatsapp.net"
GROUP = "120363000000000001@g.us"
CHANNEL = "120363000000000002@newsletter"

_ids = itertools.count(1)


def next_id() -> str:
    return f"MSG{next(_ids):05d}"


def _key(chat, sender, from_me, msg_id):
    key = {"remoteJid": chat, "fromMe": from_me, "id": msg_id or next_id()}
    if chat.endswith("@g.us"):
        key["participant"] = sender or USER
    return key


def raw_event(message, chat=USER, sender=None, from_me=False, msg_id=None, push_name="Tester"):
    return {
        "key": _key(chat, sender, from_me, msg_id),
        "message": message,
        "messageTimestamp": int(time.time()),
        "pushName": push_name,
    }


def text_event(text, chat=USER, sender=None, quoted_id=None, quoted_text="earlier", **kwargs):
    """Plain text message, or a reply to ``quoted_id`` when given."""
    if quoted_id:
        message = {
            "extendedTextMessage": {
                "text": text,
                "contextInfo": {
                    "stanzaId": quoted_id,
                    "participant": BOT,
                    "quotedMessage": {"conversation": quoted_text},
                },
            }
        }
    else:
        message = {"conversation": text}
    return raw_event(message, chat=chat, sender=sender, **kwargs)


def reaction_event(emoji, target_id, chat=USER, sender=None, **kwargs):
    message = {
        "reactionMessage": {
            "key": {"remoteJid": chat, "id": target_id, "fromMe": True},
            "text": emoji,
        }
    }
    return raw_event(message, chat=chat, sender=sender, **kwargs)


def reaction_and_reply_event(emoji, reaction_target, quoted_id, text="yes", chat=USER, sender=None):
    """A reply whose context also carries a reaction payload."""
    message = {
        "extendedTextMessage": {
            "text": text,
            "contextInfo": {
                "stanzaId": quoted_id,
                "participant": BOT,
                "quotedMessage": {"conversation": "earlier"},
                "reactionMessage": {"key": {"id": reaction_target}, "text": emoji},
            },
        }
    }
    return raw_event(message, chat=chat, sender=sender)
