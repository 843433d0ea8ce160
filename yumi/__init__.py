"""yumi - WhatsApp bot front-end with pluggable commands and reply/reaction continuations."""

__version__ = "1.0.0"
