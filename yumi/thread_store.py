"""Per-chat configuration overrides.

Holds a ThreadConfig per chat id (currently the command prefix) and
persists the whole mapping to a JSON file on every mutation.
"""

import json
from pathlib import Path
from typing import Dict, Optional

import structlog
from pydantic import ValidationError

from .models import ThreadConfig

logger = structlog.get_logger("yumi.bot")


class ThreadStore:
    """chat_id -> ThreadConfig, backed by a JSON file written wholesale.

    Args:
        path: JSON file location. None keeps the store in memory only.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._threads: Dict[str, ThreadConfig] = {}
        self.load()

    def load(self) -> None:
        """(Re)read the file. A missing or corrupt file yields an empty store."""
        self._threads = {}
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("thread_data_load_failed", path=str(self.path), error=str(e))
            return
        if not isinstance(raw, dict):
            logger.error("thread_data_invalid", path=str(self.path), type=type(raw).__name__)
            return
        for chat_id, data in raw.items():
            try:
                self._threads[chat_id] = ThreadConfig.model_validate(data or {})
            except ValidationError as e:
                logger.warning("thread_data_entry_skipped", chat=chat_id, error=str(e))
        logger.info("thread_data_loaded", chats=len(self._threads))

    def save(self) -> None:
        """Write the whole mapping. Failures are logged, state is kept in memory."""
        if self.path is None:
            return
        data = {chat_id: cfg.model_dump() for chat_id, cfg in self._threads.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            tmp.replace(self.path)
        except OSError as e:
            logger.error("thread_data_save_failed", path=str(self.path), error=str(e))

    def get(self, chat_id: str) -> ThreadConfig:
        return self._threads.get(chat_id) or ThreadConfig()

    def get_prefix(self, chat_id: str) -> Optional[str]:
        return self.get(chat_id).prefix

    def set_prefix(self, chat_id: str, prefix: Optional[str]) -> None:
        """Set (or with None, clear) the chat-local prefix and persist."""
        current = self._threads.get(chat_id) or ThreadConfig()
        self._threads[chat_id] = current.model_copy(update={"prefix": prefix})
        self.save()
        logger.info("thread_prefix_updated", chat=chat_id, prefix=prefix)

    def reset_prefix(self, chat_id: str) -> None:
        self.set_prefix(chat_id, None)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._threads

    def __len__(self) -> int:
        return len(self._threads)
