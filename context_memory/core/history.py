"""Bounded history of recent clipboard and highlight context."""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from context_memory.core.similarity import is_similar_to_existing_context
from context_memory.models.schemas import (
    ContextItem,
    ContextType,
    HistorySnapshot,
    now_ms,
)

logger = logging.getLogger(__name__)

HistoryListener = Callable[[str], None]


class ContextHistory:
    """Newest-first list of context items with dedup-on-insert.

    Mutations never await, so on a single event loop each one is atomic.
    Listeners are called synchronously after every mutation with the name
    of the operation ("add", "delete", "clear", "import").
    """

    def __init__(self, max_items: int = 5, similarity_threshold: float = 0.8):
        self.max_items = max_items
        self.similarity_threshold = similarity_threshold
        self._items: List[ContextItem] = []
        self._listeners: List[HistoryListener] = []

    def add_listener(self, listener: HistoryListener) -> Callable[[], None]:
        """Register a mutation listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, operation: str):
        for listener in list(self._listeners):
            try:
                listener(operation)
            except Exception as e:
                logger.error(f"History listener failed on {operation}: {e}")

    def add_item(self, item: Union[ContextItem, Dict[str, Any]]) -> bool:
        """Prepend an item unless the same (type, content) is already stored.

        Returns True when the item was added.
        """
        if not isinstance(item, ContextItem):
            item = ContextItem(**item)

        if any(
            existing.type == item.type and existing.content == item.content
            for existing in self._items
        ):
            return False

        self._items.insert(0, item)
        del self._items[self.max_items :]

        logger.debug(f"Added {item.type.value} item {item.id}, size {len(self._items)}")
        self._notify("add")
        return True

    def is_similar_to_existing(
        self,
        content: str,
        type: ContextType,
        threshold: Optional[float] = None,
    ) -> bool:
        if threshold is None:
            threshold = self.similarity_threshold
        return is_similar_to_existing_context(self._items, content, type, threshold)

    def get_all(self) -> List[ContextItem]:
        return list(self._items)

    def get_recent(self, count: int = 1) -> List[ContextItem]:
        return self._items[:count]

    def delete_item(self, item_id: str) -> bool:
        remaining = [item for item in self._items if item.id != item_id]
        if len(remaining) == len(self._items):
            return False

        self._items = remaining
        self._notify("delete")
        return True

    def clear(self):
        self._items = []
        logger.info("Context history cleared")
        self._notify("clear")

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def export_history(self) -> HistorySnapshot:
        """Snapshot the history for persistence, stamped with the export time."""
        return HistorySnapshot(history=list(self._items), timestamp=now_ms())

    def import_history(
        self,
        data: Union[HistorySnapshot, Dict[str, Any], None],
        max_age_hours: float = 24,
    ) -> bool:
        """Replace the history with a previously exported snapshot.

        The whole payload is rejected if it is malformed or older than
        ``max_age_hours``; nothing is merged.
        """
        if not data:
            return False

        try:
            snapshot = (
                data
                if isinstance(data, HistorySnapshot)
                else HistorySnapshot.model_validate(data)
            )
        except ValidationError as e:
            logger.warning(f"Rejected malformed history payload: {e}")
            return False

        age_ms = now_ms() - snapshot.timestamp
        if age_ms > max_age_hours * 60 * 60 * 1000:
            logger.info("Imported history is too old, ignoring")
            return False

        self._items = list(snapshot.history[: self.max_items])
        logger.info(f"Imported context history, size {len(self._items)}")
        self._notify("import")
        return True
