"""Three-tier memory store: working, short-term and long-term."""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from context_memory.core.errors import MemoryTierError
from context_memory.core.scoring import RelevanceScorer
from context_memory.models.schemas import (
    TIER_ORDER,
    ContextType,
    MemoryItem,
    MemoryTier,
    new_context_id,
    now_ms,
)

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

DEFAULT_EXPIRATION_MS: Dict[MemoryTier, Optional[int]] = {
    MemoryTier.WORKING: 5 * MINUTE_MS,
    MemoryTier.SHORT_TERM: 24 * HOUR_MS,
    MemoryTier.LONG_TERM: None,
}

DEFAULT_MAX_ITEMS: Dict[MemoryTier, int] = {
    MemoryTier.WORKING: 50,
    MemoryTier.SHORT_TERM: 100,
    MemoryTier.LONG_TERM: 500,
}

LONG_TERM_IDLE_MS = 30 * DAY_MS

StoreListener = Callable[[str], None]


def _tier(name: Union[str, MemoryTier]) -> MemoryTier:
    try:
        return MemoryTier(name)
    except ValueError:
        raise MemoryTierError(f"Invalid memory tier: {name}", tier=str(name))


class MemoryTierStore:
    """Holds memory items in exactly one tier each.

    Every public operation runs under one ``asyncio.Lock`` and does not
    await while it holds it, so an item is never visible in two tiers or
    in none. Each tier is an insertion-ordered dict and ``_index`` maps an
    id to its tier, which keeps promotion and demotion O(1).
    """

    def __init__(
        self,
        scorer: Optional[RelevanceScorer] = None,
        max_items: Optional[Dict[MemoryTier, int]] = None,
        expiration_ms: Optional[Dict[MemoryTier, Optional[int]]] = None,
    ):
        self.scorer = scorer or RelevanceScorer()
        self.max_items = {**DEFAULT_MAX_ITEMS, **(max_items or {})}
        self.expiration_ms = {**DEFAULT_EXPIRATION_MS, **(expiration_ms or {})}

        self._tiers: Dict[MemoryTier, Dict[str, MemoryItem]] = {
            tier: {} for tier in TIER_ORDER
        }
        self._index: Dict[str, MemoryTier] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[StoreListener] = []

        self.operations: Dict[str, int] = {
            "adds": 0,
            "accesses": 0,
            "deletions": 0,
            "promotions": 0,
            "demotions": 0,
            "expirations": 0,
            "evictions": 0,
        }

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
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
                logger.error(f"Memory store listener failed on {operation}: {e}")

    def _expiry_for(self, tier: MemoryTier, now: int) -> Optional[int]:
        ttl = self.expiration_ms.get(tier)
        return now + ttl if ttl else None

    def _place(self, item: MemoryItem, tier: MemoryTier, now: int):
        """Put ``item`` into ``tier``; caller must hold the lock."""
        item.tier = tier
        item.expires_at = self._expiry_for(tier, now)
        self._tiers[tier][item.id] = item
        self._index[item.id] = tier
        self._enforce_capacity(tier, now)

    def _remove(self, item_id: str) -> Optional[MemoryItem]:
        tier = self._index.pop(item_id, None)
        if tier is None:
            return None
        return self._tiers[tier].pop(item_id, None)

    def _enforce_capacity(self, tier: MemoryTier, now: int):
        # Least relevant item goes first; min() keeps the oldest on ties
        items = self._tiers[tier]
        while len(items) > self.max_items[tier]:
            for item in items.values():
                item.relevance_score = self.scorer.base_score(item, now)
            victim = min(items.values(), key=lambda item: item.relevance_score)
            items.pop(victim.id)
            self._index.pop(victim.id, None)
            self.operations["evictions"] += 1
            logger.debug(
                f"Evicted {victim.id} from {tier.value} memory "
                f"(relevance {victim.relevance_score:.3f})"
            )

    def _move(self, item_id: str, step: int) -> Optional[MemoryItem]:
        tier = self._index.get(item_id)
        if tier is None:
            return None

        position = TIER_ORDER.index(tier)
        target_position = max(0, min(len(TIER_ORDER) - 1, position + step))
        if target_position == position:
            return self._tiers[tier][item_id]

        target = TIER_ORDER[target_position]
        item = self._tiers[tier].pop(item_id)
        self._place(item, target, now_ms())
        logger.info(f"Moved memory item {item_id} from {tier.value} to {target.value}")
        return item

    async def add_to_memory(
        self, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> MemoryItem:
        """Insert new content into the working tier."""
        if not isinstance(content, str) or not content.strip():
            raise MemoryTierError("Invalid memory item: missing content")

        metadata = dict(metadata or {})
        now = now_ms()
        item = MemoryItem(
            id=metadata.pop("id", None) or new_context_id("mem"),
            content=content,
            type=ContextType(metadata.pop("type", ContextType.MEMORY)),
            source=metadata.pop("source", "memory"),
            application=metadata.pop("application", None),
            timestamp=metadata.pop("timestamp", now),
            usefulness=metadata.pop("usefulness", 0.0),
            created_at=now,
            last_accessed=now,
            metadata=metadata,
        )
        item.relevance_score = self.scorer.base_score(item, now)

        async with self._lock:
            if item.id in self._index:
                raise MemoryTierError(f"Duplicate memory id: {item.id}", item_id=item.id)
            self._place(item, MemoryTier.WORKING, now)
            self.operations["adds"] += 1

        logger.info(f"Added item to working memory: {item.id}")
        self._notify("add")
        return item

    async def find_by_id(self, item_id: str) -> Optional[MemoryItem]:
        async with self._lock:
            tier = self._index.get(item_id)
            return self._tiers[tier].get(item_id) if tier else None

    async def access_item(self, item_id: str) -> Optional[MemoryItem]:
        """Look up an item and record the access for recency scoring."""
        async with self._lock:
            tier = self._index.get(item_id)
            if tier is None:
                return None

            item = self._tiers[tier][item_id]
            item.last_accessed = now_ms()
            item.access_count += 1
            self.operations["accesses"] += 1
            return item

    async def record_usage(
        self, item_id: str, usefulness: float
    ) -> Optional[MemoryItem]:
        """Record that an item was used and how useful it was (0-10)."""
        async with self._lock:
            tier = self._index.get(item_id)
            if tier is None:
                return None

            now = now_ms()
            item = self._tiers[tier][item_id]
            item.last_accessed = now
            item.access_count += 1
            item.usefulness = max(item.usefulness, float(usefulness))
            item.relevance_score = self.scorer.base_score(item, now)
            self.operations["accesses"] += 1

        self._notify("usage")
        return item

    async def delete_item(self, item_id: str) -> bool:
        async with self._lock:
            removed = self._remove(item_id)
            if removed is not None:
                self.operations["deletions"] += 1

        if removed is None:
            return False

        logger.info(f"Deleted memory item: {item_id}")
        self._notify("delete")
        return True

    async def get_all_items(self) -> List[MemoryItem]:
        async with self._lock:
            return [item for tier in TIER_ORDER for item in self._tiers[tier].values()]

    async def get_tier(self, name: Union[str, MemoryTier]) -> List[MemoryItem]:
        tier = _tier(name)
        async with self._lock:
            return list(self._tiers[tier].values())

    async def promote_item(self, item_id: str) -> Optional[MemoryItem]:
        """Move an item one tier up; items already long-term stay put."""
        async with self._lock:
            before = self._index.get(item_id)
            item = self._move(item_id, 1)
            moved = item is not None and item.tier != before
            if moved:
                self.operations["promotions"] += 1

        if moved:
            self._notify("promote")
        return item

    async def demote_item(self, item_id: str) -> Optional[MemoryItem]:
        """Move an item one tier down; working items stay put."""
        async with self._lock:
            before = self._index.get(item_id)
            item = self._move(item_id, -1)
            moved = item is not None and item.tier != before
            if moved:
                self.operations["demotions"] += 1

        if moved:
            self._notify("demote")
        return item

    async def clear_tier(self, name: Union[str, MemoryTier]):
        tier = _tier(name)
        async with self._lock:
            for item_id in self._tiers[tier]:
                self._index.pop(item_id, None)
            self._tiers[tier] = {}

        logger.info(f"Cleared {tier.value} memory")
        self._notify("clear")

    async def clear_all(self):
        async with self._lock:
            for tier in TIER_ORDER:
                self._tiers[tier] = {}
            self._index.clear()

        logger.info("Cleared all memory")
        self._notify("clear")

    async def load_long_term(self, items: Iterable[Union[MemoryItem, Dict[str, Any]]]) -> int:
        """Replace the long-term tier with persisted items. Returns the count loaded."""
        loaded = 0
        async with self._lock:
            for item_id in self._tiers[MemoryTier.LONG_TERM]:
                self._index.pop(item_id, None)
            self._tiers[MemoryTier.LONG_TERM] = {}

            now = now_ms()
            for raw in items:
                item = raw if isinstance(raw, MemoryItem) else MemoryItem.model_validate(raw)
                if item.id in self._index:
                    continue
                self._place(item, MemoryTier.LONG_TERM, now)
                loaded += 1

        logger.info(f"Loaded {loaded} long-term memory items")
        self._notify("load")
        return loaded

    async def get_long_term(self) -> List[MemoryItem]:
        return await self.get_tier(MemoryTier.LONG_TERM)

    async def manage_tiers(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Expire, promote and demote items based on age and usage.

        Frequently used or useful working items move to short-term, and
        short-term items that keep proving useful move to long-term.
        Expired short-term items that are still somewhat relevant fall back
        to working memory. Long-term items unused for 30 days with low
        relevance drop to short-term.
        """
        if now is None:
            now = now_ms()

        changes = {
            "expired": 0,
            "promoted_to_short_term": 0,
            "promoted_to_long_term": 0,
            "demoted_from_short_term": 0,
            "demoted_from_long_term": 0,
            "long_term_changed": False,
        }

        async with self._lock:
            moves = []

            for item in list(self._tiers[MemoryTier.WORKING].values()):
                if item.expires_at is not None and item.expires_at < now:
                    self._remove(item.id)
                    changes["expired"] += 1
                    continue
                item.relevance_score = self.scorer.base_score(item, now)
                if (
                    item.access_count >= 3
                    or item.usefulness >= 7
                    or item.relevance_score >= 0.7
                ):
                    moves.append((item, MemoryTier.SHORT_TERM))
                    changes["promoted_to_short_term"] += 1

            for item in list(self._tiers[MemoryTier.SHORT_TERM].values()):
                item.relevance_score = self.scorer.base_score(item, now)
                if item.expires_at is not None and item.expires_at < now:
                    if item.relevance_score >= 0.3:
                        moves.append((item, MemoryTier.WORKING))
                        changes["demoted_from_short_term"] += 1
                    else:
                        self._remove(item.id)
                        changes["expired"] += 1
                    continue
                if (
                    item.access_count >= 5
                    or item.usefulness >= 8
                    or item.relevance_score >= 0.8
                ):
                    moves.append((item, MemoryTier.LONG_TERM))
                    changes["promoted_to_long_term"] += 1

            for item in list(self._tiers[MemoryTier.LONG_TERM].values()):
                item.relevance_score = self.scorer.base_score(item, now)
                if (
                    item.relevance_score < 0.5
                    and now - item.last_accessed > LONG_TERM_IDLE_MS
                ):
                    moves.append((item, MemoryTier.SHORT_TERM))
                    changes["demoted_from_long_term"] += 1

            for item, target in moves:
                current = self._index.get(item.id)
                if current is None:
                    # evicted by an earlier move in this pass
                    continue
                self._tiers[current].pop(item.id)
                self._place(item, target, now)

            changes["long_term_changed"] = bool(
                changes["promoted_to_long_term"] or changes["demoted_from_long_term"]
            )
            self.operations["expirations"] += changes["expired"]
            self.operations["promotions"] += (
                changes["promoted_to_short_term"] + changes["promoted_to_long_term"]
            )
            self.operations["demotions"] += (
                changes["demoted_from_short_term"] + changes["demoted_from_long_term"]
            )

        logger.info(f"Memory tier management complete: {changes}")
        if any(changes[key] for key in changes if key != "long_term_changed"):
            self._notify("manage")
        return changes

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            items_by_tier = {tier.value: len(self._tiers[tier]) for tier in TIER_ORDER}
            average_scores = {}
            for tier in TIER_ORDER:
                scores = [item.relevance_score or 0 for item in self._tiers[tier].values()]
                average_scores[tier.value] = (
                    round(sum(scores) / len(scores), 3) if scores else 0
                )

            return {
                "total_items": len(self._index),
                "items_by_tier": items_by_tier,
                "average_scores": average_scores,
                "operations": dict(self.operations),
                "max_items": {tier.value: self.max_items[tier] for tier in TIER_ORDER},
            }

    def __len__(self) -> int:
        return len(self._index)
