"""Relevance scoring of memory items against a user command."""

import logging
from typing import List, Optional, Sequence, Tuple

from context_memory.core.errors import MemoryScoringError
from context_memory.models.schemas import MemoryItem, now_ms

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000

# Final score = 100 * (TEXT_WEIGHT * overlap + BASE_WEIGHT * base_score)
TEXT_WEIGHT = 0.7
BASE_WEIGHT = 0.3

# Components of the command-independent base score
RECENCY_WEIGHT = 0.4
USEFULNESS_WEIGHT = 0.4
ACCESS_WEIGHT = 0.2

# Only words longer than this count towards overlap
MIN_WORD_LENGTH = 3
MAX_COUNTED_WORDS = 5


class RelevanceScorer:
    """Ranks memory items for a command.

    Scores are in [0, 100] and deterministic for a given ``now``. The
    scorer only orders items; it never drops any.
    """

    def __init__(self, recency_window_hours: float = 24):
        self.recency_window_hours = recency_window_hours

    @staticmethod
    def _command_words(command: str) -> List[str]:
        words = command.lower().split()
        significant = [w for w in words if len(w) > MIN_WORD_LENGTH]
        return significant or words

    def text_overlap(self, content: str, command: str) -> float:
        """Fraction of command words (up to five) that appear in ``content``."""
        words = self._command_words(command or "")
        if not words:
            return 0.0

        content_lower = (content or "").lower()
        matched = sum(1 for word in words if word in content_lower)
        return min(1.0, matched / min(MAX_COUNTED_WORDS, len(words)))

    def base_score(self, item: MemoryItem, now: Optional[int] = None) -> float:
        """Recency, usefulness and access frequency blended into 0-1."""
        if now is None:
            now = now_ms()

        last_seen = item.last_accessed or item.created_at or now
        hours_since = max(0, now - last_seen) / HOUR_MS
        recency = 1 / (1 + hours_since / self.recency_window_hours)

        usefulness = max(0.0, min(1.0, item.usefulness / 10))
        access = min(1.0, item.access_count / 10)

        score = (
            RECENCY_WEIGHT * recency
            + USEFULNESS_WEIGHT * usefulness
            + ACCESS_WEIGHT * access
        )
        return max(0.0, min(1.0, score))

    def score(self, item: MemoryItem, command: str, now: Optional[int] = None) -> float:
        """Relevance of ``item`` to ``command`` in [0, 100]."""
        if now is None:
            now = now_ms()

        overlap = self.text_overlap(item.content, command)
        base = self.base_score(item, now)
        score = 100 * (TEXT_WEIGHT * overlap + BASE_WEIGHT * base)
        return round(max(0.0, min(100.0, score)), 4)

    def rank(
        self,
        items: Sequence[MemoryItem],
        command: str,
        limit: int = 5,
        now: Optional[int] = None,
    ) -> List[Tuple[MemoryItem, float]]:
        """Top ``limit`` items by score; ties go to the most recent item."""
        if now is None:
            now = now_ms()

        scored = []
        for item in items:
            try:
                scored.append((item, self.score(item, command, now)))
            except (AttributeError, TypeError, ValueError) as e:
                raise MemoryScoringError(
                    "Failed to score memory item", cause=e, item_id=getattr(item, "id", None)
                )
        scored.sort(key=lambda pair: (pair[1], pair[0].timestamp), reverse=True)
        return scored[:limit]
