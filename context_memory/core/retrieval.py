"""Selecting the context handed to the language model for a command."""

import logging
from typing import List, Optional

from context_memory.core.cache import ContextCache, Debouncer
from context_memory.core.clipboard import ClipboardMonitor
from context_memory.core.errors import MemoryAccessError, MemoryScoringError
from context_memory.core.history import ContextHistory
from context_memory.core.scoring import RelevanceScorer
from context_memory.core.tiers import MemoryTierStore
from context_memory.models.schemas import (
    ApplicationContext,
    ContextEntry,
    ContextItem,
    ContextResult,
    ContextType,
    now_ms,
)

logger = logging.getLogger(__name__)

# Highlights shorter than this are not worth remembering
MIN_MEMORY_HIGHLIGHT_LENGTH = 10


class ContextRetrieval:
    """Builds a ``ContextResult`` from memory, history and the clipboard.

    With a memory store and a command, items are ranked by relevance to the
    command ("intelligent" retrieval). Otherwise the most direct signals win
    in a fixed order ("legacy" retrieval). Both paths return at most
    ``top_k`` entries. Results are cached briefly; any call that brings new
    highlighted text or a command bypasses the cache.
    """

    def __init__(
        self,
        clipboard: ClipboardMonitor,
        history: ContextHistory,
        memory: Optional[MemoryTierStore] = None,
        scorer: Optional[RelevanceScorer] = None,
        cache_ttl_ms: int = 2000,
        debounce_ms: int = 500,
        top_k: int = 5,
        clipboard_max_age_ms: int = 30000,
    ):
        self.clipboard = clipboard
        self.history = history
        self.memory = memory
        self.scorer = scorer or (memory.scorer if memory else RelevanceScorer())
        self.cache = ContextCache(cache_ttl_ms)
        self.debouncer = Debouncer(debounce_ms)
        self.top_k = top_k
        self.clipboard_max_age_ms = clipboard_max_age_ms
        self.active_application = ""

    def set_active_application(self, app_name: str):
        self.active_application = app_name or ""

    def invalidate(self, *_):
        """Drop the cached result so the next call recomputes."""
        self.cache.invalidate()

    def _application_context(self) -> Optional[ApplicationContext]:
        if not self.active_application:
            return None
        return ApplicationContext(name=self.active_application)

    def _fresh_clipboard(self, recording_start_time: Optional[int]) -> Optional[ContextEntry]:
        if not self.clipboard.is_fresh(self.clipboard_max_age_ms, recording_start_time):
            return None
        return ContextEntry(
            type=ContextType.CLIPBOARD.value,
            content=self.clipboard.state.current_value,
            application=self.clipboard.state.active_application or None,
        )

    @staticmethod
    def _entry(item: ContextItem, score: Optional[float] = None) -> ContextEntry:
        return ContextEntry(
            id=item.id,
            type=item.type.value,
            content=item.content,
            relevance_score=score if score is not None else item.relevance_score,
            application=item.application,
        )

    async def get_context(
        self,
        current_highlighted_text: Optional[str] = None,
        command: Optional[str] = None,
        recording_highlighted_text: Optional[str] = None,
        recording_start_time: Optional[int] = None,
    ) -> ContextResult:
        """Context for the current command. Never raises."""
        try:
            if not current_highlighted_text and not command:
                cached = self.cache.get()
                if cached is not None:
                    logger.debug("Using cached context")
                    return cached

            if self.memory is not None and command:
                context = await self._intelligent_context(
                    current_highlighted_text,
                    command,
                    recording_highlighted_text,
                    recording_start_time,
                )
            else:
                context = self._legacy_context(
                    current_highlighted_text,
                    recording_highlighted_text,
                    recording_start_time,
                )

            self.cache.set(context)
            return context
        except Exception as e:
            logger.error(f"Error getting context: {e}", exc_info=True)
            return ContextResult(primary_context=None, secondary_context=None)

    async def get_context_async(
        self,
        current_highlighted_text: Optional[str] = None,
        command: Optional[str] = None,
        recording_highlighted_text: Optional[str] = None,
        recording_start_time: Optional[int] = None,
    ) -> ContextResult:
        """Debounced ``get_context``; rapid calls collapse into the last one."""
        return await self.debouncer.call(
            lambda: self.get_context(
                current_highlighted_text,
                command,
                recording_highlighted_text,
                recording_start_time,
            )
        )

    async def _intelligent_context(
        self,
        current_highlighted_text: Optional[str],
        command: str,
        recording_highlighted_text: Optional[str],
        recording_start_time: Optional[int],
    ) -> ContextResult:
        if current_highlighted_text and len(current_highlighted_text) > MIN_MEMORY_HIGHLIGHT_LENGTH:
            try:
                await self.memory.add_to_memory(
                    current_highlighted_text,
                    {
                        "type": ContextType.HIGHLIGHT,
                        "source": "highlighted_text",
                        "application": self.active_application or None,
                        "timestamp": now_ms(),
                    },
                )
            except Exception as e:
                logger.error(f"Error adding highlighted text to memory: {e}")

        try:
            items = await self.memory.get_all_items()
        except Exception as e:
            raise MemoryAccessError("Failed to read memory items", cause=e)

        ranked = []
        try:
            ranked = self.scorer.rank(items, command, limit=self.top_k)
        except MemoryScoringError as e:
            logger.error(f"Error ranking memory items: {e.message}: {e.__cause__}")

        context = ContextResult(
            application_context=self._application_context(),
            memory_stats=await self.memory.get_stats(),
        )

        entries = [self._entry(item, score) for item, score in ranked]
        if entries:
            context.primary_context = entries[0]
            context.secondary_context = entries[1] if len(entries) > 1 else None
            context.history_context = entries[2:]
        elif current_highlighted_text:
            context.primary_context = ContextEntry(
                type=ContextType.HIGHLIGHT.value, content=current_highlighted_text
            )
        elif recording_highlighted_text:
            context.primary_context = ContextEntry(
                type=ContextType.HIGHLIGHT.value, content=recording_highlighted_text
            )
        else:
            context.primary_context = self._fresh_clipboard(recording_start_time)

        logger.info(
            f"Generated context from memory: primary={self._describe(context.primary_context)}, "
            f"secondary={self._describe(context.secondary_context)}, "
            f"extra={len(context.history_context)}"
        )
        return context

    def _legacy_context(
        self,
        current_highlighted_text: Optional[str],
        recording_highlighted_text: Optional[str],
        recording_start_time: Optional[int],
    ) -> ContextResult:
        context = ContextResult(application_context=self._application_context())

        if recording_highlighted_text:
            context.primary_context = ContextEntry(
                type=ContextType.HIGHLIGHT.value, content=recording_highlighted_text
            )
        elif current_highlighted_text and current_highlighted_text != recording_highlighted_text:
            context.primary_context = ContextEntry(
                type=ContextType.HIGHLIGHT.value, content=current_highlighted_text
            )
            if not self.history.is_similar_to_existing(
                current_highlighted_text, ContextType.HIGHLIGHT
            ):
                self.history.add_item(
                    ContextItem(
                        type=ContextType.HIGHLIGHT,
                        content=current_highlighted_text,
                        application=self.active_application or None,
                    )
                )
        else:
            context.primary_context = self._fresh_clipboard(recording_start_time)

        history_items = self.history.get_all()
        remaining: List[ContextItem] = []
        for item in history_items:
            if context.primary_context is None:
                context.primary_context = self._entry(item)
            elif item.content == context.primary_context.content:
                continue
            elif context.secondary_context is None:
                context.secondary_context = self._entry(item)
            elif item.content != context.secondary_context.content:
                remaining.append(item)

        context.history_context = [
            self._entry(item) for item in remaining[: max(0, self.top_k - 2)]
        ]

        logger.info(
            f"Generated legacy context: primary={self._describe(context.primary_context)}, "
            f"secondary={self._describe(context.secondary_context)}, "
            f"history={len(context.history_context)}"
        )
        return context

    @staticmethod
    def _describe(entry: Optional[ContextEntry]) -> str:
        if entry is None:
            return "none"
        return f"{entry.type}({len(entry.content)} chars)"
