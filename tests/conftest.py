"""Shared fixtures: an in-memory transport, a temp config and a wired bot."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pytest
import yaml

from helpers import BOT
from yumi.bot import YumiBot
from yumi.config import Config
from yumi.models import GroupMetadata


@dataclass
class SentMessage:
    chat_id: str
    content: Dict[str, Any]
    options: Optional[Dict[str, Any]]
    message_id: str

    @property
    def text(self) -> Optional[str]:
        return self.content.get("text")


class FakeTransport:
    """Records outbound calls and serves canned group metadata."""

    def __init__(self, bot_id: str = BOT, connected: bool = True):
        self.bot_id = bot_id
        self.connected = connected
        self.sent: List[SentMessage] = []
        self.read: List[dict] = []
        self.metadata: Dict[str, GroupMetadata] = {}
        self.metadata_error: Optional[Exception] = None
        self.metadata_calls = 0
        self.listeners: Dict[str, list] = {}
        self.started = False
        self.closed = False
        self._counter = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def send_message(self, chat_id, content, options=None):
        self._counter += 1
        message_id = f"BOT{self._counter:04d}"
        self.sent.append(SentMessage(chat_id, content, options, message_id))
        return {"key": {"remoteJid": chat_id, "id": message_id, "fromMe": True}}

    async def group_metadata(self, chat_id):
        self.metadata_calls += 1
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.metadata.get(chat_id) or GroupMetadata(id=chat_id, subject="Test Group")

    async def read_messages(self, keys):
        self.read.extend(keys)

    def on(self, event, callback):
        self.listeners.setdefault(event, []).append(callback)

    async def start(self):
        self.started = True

    async def poll_events(self):
        return None

    async def close(self):
        self.closed = True

    @property
    def texts(self) -> List[str]:
        return [m.text for m in self.sent if m.text is not None]


@pytest.fixture
def make_config(tmp_path):
    """Factory writing settings.yaml into a temp config dir."""

    def _make(**overrides) -> Config:
        config_dir = tmp_path / "config"
        config_dir.mkdir(exist_ok=True)
        settings = {
            "prefix": "!",
            "bot_admins": ["+1 555 111 1111"],
            "group_metadata": {"retry_attempts": 3, "retry_base_delay": 0},
            "thread_data_path": str(tmp_path / "data" / "thread_data.json"),
            "plugins_dir": str(tmp_path / "plugins"),
            "log_dir": str(tmp_path / "logs"),
        }
        settings.update(overrides)
        with open(config_dir / "settings.yaml", "w") as f:
            yaml.dump(settings, f)
        return Config(config_dir)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def bot(config, transport):
    return YumiBot(config, transport)
