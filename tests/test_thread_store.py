"""Tests for per-chat prefix persistence."""

import json

from yumi.thread_store import ThreadStore


class TestThreadStore:

    def test_missing_file_is_empty(self, tmp_path):
        """A missing file gives an empty store."""
        store = ThreadStore(tmp_path / "threads.json")
        assert len(store) == 0
        assert store.get_prefix("chat@g.us") is None

    def test_set_prefix_persists(self, tmp_path):
        """set_prefix writes the whole file and leaves no temp file behind."""
        path = tmp_path / "data" / "threads.json"
        store = ThreadStore(path)

        store.set_prefix("chat@g.us", "#")

        assert store.get_prefix("chat@g.us") == "#"
        assert json.loads(path.read_text()) == {"chat@g.us": {"prefix": "#"}}
        assert not path.with_suffix(".json.tmp").exists()
        assert ThreadStore(path).get_prefix("chat@g.us") == "#"

    def test_reset_prefix(self, tmp_path):
        """Clearing a prefix removes the chat's entry."""
        store = ThreadStore(tmp_path / "threads.json")
        store.set_prefix("chat@g.us", "#")
        store.reset_prefix("chat@g.us")

        assert store.get_prefix("chat@g.us") is None
        assert "chat@g.us" in store

    def test_corrupt_file_yields_empty_store(self, tmp_path):
        """Invalid JSON loads as an empty store."""
        path = tmp_path / "threads.json"
        path.write_text("{not json")
        assert len(ThreadStore(path)) == 0

    def test_non_mapping_file_yields_empty_store(self, tmp_path):
        """A JSON list loads as an empty store."""
        path = tmp_path / "threads.json"
        path.write_text("[1, 2, 3]")
        assert len(ThreadStore(path)) == 0

    def test_invalid_entries_skipped(self, tmp_path):
        """Entries that fail validation are skipped."""
        path = tmp_path / "threads.json"
        path.write_text(json.dumps({"good@g.us": {"prefix": "."}, "bad@g.us": {"prefix": [1]}}))

        store = ThreadStore(path)

        assert store.get_prefix("good@g.us") == "."
        assert "bad@g.us" not in store

    def test_in_memory_store(self):
        """Without a path the store lives in memory."""
        store = ThreadStore()
        store.set_prefix("chat@g.us", "$")
        assert store.get_prefix("chat@g.us") == "$"

    def test_save_failure_keeps_memory_state(self, tmp_path):
        """A failed write keeps the change in memory."""
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        store = ThreadStore(blocker / "threads.json")

        store.set_prefix("chat@g.us", "#")

        assert store.get_prefix("chat@g.us") == "#"
