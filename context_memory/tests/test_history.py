"""Tests for the bounded context history."""

from unittest.mock import Mock

import pytest

from context_memory.core.history import ContextHistory
from context_memory.models.schemas import (
    ContextItem,
    ContextType,
    HistorySnapshot,
    now_ms,
)

HOUR_MS = 60 * 60 * 1000


def clip(content: str) -> ContextItem:
    return ContextItem(type=ContextType.CLIPBOARD, content=content)


class TestContextHistory:
    """Test the bounded newest-first context history."""

    @pytest.fixture
    def history(self):
        """Create a history holding five items."""
        return ContextHistory(max_items=5)

    def test_keeps_most_recent_items(self, history):
        """Test the oldest item falls off at capacity."""
        for i in range(6):
            history.add_item(clip(f"entry number {i}"))

        items = history.get_all()
        assert len(items) == 5
        assert items[0].content == "entry number 5"
        assert "entry number 0" not in [item.content for item in items]

    def test_rejects_exact_duplicate(self, history):
        """Test the same content and type is added once."""
        assert history.add_item(clip("same text"))
        assert not history.add_item(clip("same text"))
        assert history.size() == 1

    def test_same_content_different_type_is_kept(self, history):
        """Test identical content of another type is kept."""
        history.add_item(clip("same text"))
        history.add_item(ContextItem(type=ContextType.HIGHLIGHT, content="same text"))
        assert len(history) == 2

    def test_accepts_dict_items(self, history):
        """Test plain dicts are validated into items."""
        assert history.add_item({"type": "highlight", "content": "from a dict"})
        assert history.get_recent()[0].type == ContextType.HIGHLIGHT

    def test_similarity_uses_configured_threshold(self, history):
        """Test near-duplicates are rejected at the threshold."""
        history.add_item(ContextItem(type=ContextType.HIGHLIGHT, content="I like apple"))

        assert history.is_similar_to_existing("I like apples", ContextType.HIGHLIGHT)
        assert not history.is_similar_to_existing("I like apples", ContextType.CLIPBOARD)

    def test_delete_and_clear(self, history):
        """Test deleting one item and clearing all."""
        item = clip("to be deleted")
        history.add_item(item)
        history.add_item(clip("to be kept"))

        assert history.delete_item(item.id)
        assert not history.delete_item(item.id)
        assert [i.content for i in history.get_all()] == ["to be kept"]

        history.clear()
        assert history.size() == 0

    def test_listeners(self, history):
        """Test listeners hear every mutation."""
        listener = Mock()
        remove = history.add_listener(listener)

        history.add_item(clip("first entry"))
        listener.assert_called_once_with("add")

        remove()
        history.add_item(clip("second entry"))
        listener.assert_called_once()

    def test_failing_listener_does_not_break_mutation(self, history):
        """Test a raising listener does not undo the add."""
        history.add_listener(Mock(side_effect=RuntimeError("boom")))
        assert history.add_item(clip("still added"))
        assert history.size() == 1

    def test_content_is_immutable(self):
        """Test item content cannot be reassigned."""
        item = clip("fixed")
        with pytest.raises(Exception):
            item.content = "changed"


class TestHistoryImport:
    """Test history export and import."""

    @pytest.fixture
    def history(self):
        """Create a history holding one entry."""
        history = ContextHistory(max_items=5)
        history.add_item(clip("existing entry"))
        return history

    def test_export_snapshot(self, history):
        """Test export captures items and a timestamp."""
        snapshot = history.export_history()
        assert isinstance(snapshot, HistorySnapshot)
        assert [item.content for item in snapshot.history] == ["existing entry"]
        assert snapshot.timestamp <= now_ms()

    def test_rejects_stale_payload(self, history):
        """Test payloads older than the limit are rejected."""
        payload = {
            "history": [{"type": "clipboard", "content": "old entry"}],
            "timestamp": now_ms() - 25 * HOUR_MS,
        }

        assert not history.import_history(payload, max_age_hours=24)
        assert [item.content for item in history.get_all()] == ["existing entry"]

    def test_fresh_payload_replaces_history(self, history):
        """Test a fresh payload replaces current items."""
        payload = {
            "history": [
                {"type": "clipboard", "content": "imported one"},
                {"type": "highlight", "content": "imported two"},
            ],
            "timestamp": now_ms() - HOUR_MS,
        }

        assert history.import_history(payload, max_age_hours=24)
        assert [item.content for item in history.get_all()] == [
            "imported one",
            "imported two",
        ]

    def test_import_truncates_to_capacity(self, history):
        """Test imports keep only as many items as fit."""
        payload = {
            "history": [{"type": "clipboard", "content": f"item {i}"} for i in range(8)],
            "timestamp": now_ms(),
        }

        assert history.import_history(payload)
        assert history.size() == 5

    @pytest.mark.parametrize(
        "payload",
        [None, {}, {"history": "not a list", "timestamp": 0}, {"timestamp": 1}],
    )
    def test_rejects_malformed_payload(self, history, payload):
        """Test malformed payloads are rejected."""
        assert not history.import_history(payload)
        assert history.size() == 1

    def test_round_trip_through_export(self, history):
        """Test an exported snapshot imports into another history."""
        other = ContextHistory(max_items=5)
        assert other.import_history(history.export_history())
        assert other.get_all()[0].id == history.get_all()[0].id
