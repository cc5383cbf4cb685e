"""Usefulness feedback and AI call statistics."""

import logging
import time
from datetime import date
from typing import Any, Dict, Optional

from pydantic import ValidationError

from context_memory.core.errors import MemoryStorageError
from context_memory.core.storage import KeyValueStore
from context_memory.core.tiers import MemoryTierStore
from context_memory.models.schemas import AIUsageRecord, MemoryTier, now_ms

logger = logging.getLogger(__name__)

STATS_KEY = "ai_usage_stats"


class UsageTracker:
    """Feeds usefulness scores back into the tier store and tracks AI calls.

    A score at or above ``promote_threshold`` promotes the item one tier, a
    score at or below ``demote_threshold`` demotes it, anything between only
    updates its usage stats. A higher score therefore never moves an item
    lower than a smaller score would.
    """

    def __init__(
        self,
        memory: Optional[MemoryTierStore] = None,
        store: Optional[KeyValueStore] = None,
        promote_threshold: float = 7,
        demote_threshold: float = 3,
    ):
        if demote_threshold >= promote_threshold:
            raise ValueError("demote_threshold must be below promote_threshold")

        self.memory = memory
        self.store = store
        self.promote_threshold = promote_threshold
        self.demote_threshold = demote_threshold
        self.record = AIUsageRecord()
        self._request_started: Optional[float] = None

    async def record_usage(self, item_id: str, usefulness_score: float) -> Optional[MemoryTier]:
        """Apply usefulness feedback (0-10) for one item.

        Returns the item's tier afterwards, or None if the id is unknown.
        """
        if self.memory is None:
            return None

        score = max(0.0, min(10.0, float(usefulness_score)))
        item = await self.memory.record_usage(item_id, score)
        if item is None:
            logger.debug(f"Usage recorded for unknown memory item {item_id}")
            return None

        if score >= self.promote_threshold:
            item = await self.memory.promote_item(item_id) or item
        elif score <= self.demote_threshold:
            item = await self.memory.demote_item(item_id) or item

        return item.tier

    def track_ai_call(self, start: Optional[float] = None):
        """Mark the start of a model request. ``start`` is a ``time.monotonic()`` value."""
        self._request_started = time.monotonic() if start is None else start
        self.record.total_requests += 1
        self.record.last_request_timestamp = now_ms()
        self.record.last_updated = now_ms()

    def record_success(self) -> float:
        """Close the current request as successful. Returns its latency in ms."""
        if self._request_started is None:
            logger.warning("record_success called without track_ai_call")
            latency = 0.0
        else:
            latency = (time.monotonic() - self._request_started) * 1000
        self._request_started = None

        record = self.record
        record.successful_requests += 1
        record.last_response_time = latency
        n = record.successful_requests
        record.average_response_time = (
            record.average_response_time * (n - 1) + latency
        ) / n
        record.last_updated = now_ms()

        logger.debug(
            f"AI request succeeded in {latency:.0f}ms "
            f"(average {record.average_response_time:.0f}ms)"
        )
        return latency

    def record_failure(self):
        self._request_started = None
        self.record.failed_requests += 1
        self.record.last_updated = now_ms()
        logger.debug("AI request failed")

    def success_rate(self) -> float:
        """Successful requests as a percentage of all tracked requests."""
        if self.record.total_requests == 0:
            return 0.0
        return self.record.successful_requests / self.record.total_requests * 100

    def track_tokens(
        self,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        model: str = "unknown",
    ):
        prompt_tokens = max(0, int(prompt_tokens or 0))
        completion_tokens = max(0, int(completion_tokens or 0))
        total = prompt_tokens + completion_tokens

        record = self.record
        record.total_prompt_tokens += prompt_tokens
        record.total_completion_tokens += completion_tokens
        record.total_tokens += total
        record.session_prompt_tokens += prompt_tokens
        record.session_completion_tokens += completion_tokens
        record.session_tokens += total

        for bucket in (
            record.daily_usage.setdefault(date.today().isoformat(), {}),
            record.model_usage.setdefault(model or "unknown", {}),
        ):
            bucket["prompt_tokens"] = bucket.get("prompt_tokens", 0) + prompt_tokens
            bucket["completion_tokens"] = (
                bucket.get("completion_tokens", 0) + completion_tokens
            )
            bucket["total_tokens"] = bucket.get("total_tokens", 0) + total

        record.last_updated = now_ms()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.record.model_dump()
        stats["success_rate"] = round(self.success_rate(), 2)
        return stats

    def reset(self):
        self.record = AIUsageRecord()
        self._request_started = None
        logger.info("Reset AI usage statistics")

    async def load_stats(self) -> bool:
        """Restore persisted totals; session counters always start at zero."""
        if self.store is None:
            return False

        try:
            raw = await self.store.get(STATS_KEY)
            if raw is None:
                return False
            loaded = AIUsageRecord.model_validate(raw)
        except (MemoryStorageError, ValidationError) as e:
            logger.error(f"Failed to load AI usage stats, starting fresh: {e}")
            return False

        self.record = loaded.model_copy(
            update={
                "session_prompt_tokens": 0,
                "session_completion_tokens": 0,
                "session_tokens": 0,
            }
        )
        logger.info("Loaded AI usage stats")
        return True

    async def save_stats(self) -> bool:
        if self.store is None:
            return False

        self.record.last_updated = now_ms()
        try:
            await self.store.set(STATS_KEY, self.record.model_dump(mode="json"))
        except MemoryStorageError as e:
            logger.error(f"Failed to save AI usage stats: {e.message}")
            return False
        return True
