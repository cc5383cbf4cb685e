"""Saving and loading the long-term memory tier."""

import logging
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError

from context_memory.core.errors import MemoryStorageError
from context_memory.core.storage import KeyValueStore
from context_memory.models.schemas import LongTermSnapshot, MemoryItem

logger = logging.getLogger(__name__)

LONG_TERM_KEY = "long_term_memory"
BACKUP_SUFFIX = ".backup"


class MemoryPersistence:
    """Stores the long-term tier as a ``LongTermSnapshot`` in a key-value store.

    The previous snapshot is kept under a backup key. Loading never raises:
    missing data gives an empty list and corrupt data falls back to the
    backup, then to an empty list.
    """

    def __init__(self, store: KeyValueStore, key: str = LONG_TERM_KEY):
        self.store = store
        self.key = key
        self.backup_key = f"{key}{BACKUP_SUFFIX}"

    @staticmethod
    def _parse(raw: Any) -> List[MemoryItem]:
        # Older payloads were a bare list of items
        if isinstance(raw, list):
            raw = {"items": raw}
        return LongTermSnapshot.model_validate(raw).items

    async def _load_key(self, key: str) -> Optional[List[MemoryItem]]:
        """Items under ``key``; None if absent or unusable."""
        try:
            raw = await self.store.get(key)
        except MemoryStorageError as e:
            logger.error(f"Failed to read {key}: {e.message}: {e.__cause__}")
            return None

        if raw is None:
            return None

        try:
            return self._parse(raw)
        except ValidationError as e:
            logger.error(f"Corrupt long-term memory payload under {key}: {e}")
            return None

    async def load_long_term(self) -> List[MemoryItem]:
        items = await self._load_key(self.key)
        if items is None:
            items = await self._load_key(self.backup_key)
            if items is not None:
                logger.warning(f"Recovered {len(items)} long-term items from backup")

        if items is None:
            logger.info("No long-term memory found, starting empty")
            return []

        logger.info(f"Loaded {len(items)} long-term memory items")
        return items

    async def save_long_term(self, items: Sequence[MemoryItem]) -> bool:
        """Write a new snapshot, keeping the previous one as backup."""
        snapshot = LongTermSnapshot(items=list(items))
        payload = snapshot.model_dump(mode="json")

        try:
            previous = await self.store.get(self.key)
        except MemoryStorageError as e:
            logger.warning(f"Could not read previous snapshot for backup: {e.message}")
            previous = None

        try:
            if previous is not None:
                await self.store.set(self.backup_key, previous)
            await self.store.set(self.key, payload)
        except MemoryStorageError as e:
            logger.error(f"Failed to save long-term memory: {e.message}: {e.__cause__}")
            return False

        logger.info(f"Saved {len(snapshot.items)} long-term memory items")
        return True
