"""ContextEngine: owns the context components and their background tasks."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set, Union

from context_memory.core.clipboard import ClipboardAccessor, ClipboardMonitor
from context_memory.core.config import EngineConfig
from context_memory.core.history import ContextHistory
from context_memory.core.persistence import MemoryPersistence
from context_memory.core.retrieval import ContextRetrieval
from context_memory.core.scoring import RelevanceScorer
from context_memory.core.storage import KeyValueStore
from context_memory.core.system import ActiveApplicationResolver
from context_memory.core.tiers import MemoryTierStore
from context_memory.core.usage import UsageTracker
from context_memory.models.schemas import (
    ClipboardChangeEvent,
    ContextItem,
    ContextResult,
    ContextType,
    HistorySnapshot,
    MemoryItem,
    MemoryTier,
    now_ms,
)

logger = logging.getLogger(__name__)


class ContextEngine:
    """Public entry point of the context and memory engine.

    All components are built once here and shared by reference. ``start``
    launches the clipboard poll, the active-application refresh and the
    tier maintenance tasks; ``stop`` cancels every one of them, persists
    the long-term tier and can be called any number of times.
    """

    def __init__(
        self,
        clipboard: ClipboardAccessor,
        app_resolver: Optional[ActiveApplicationResolver] = None,
        store: Optional[KeyValueStore] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.app_resolver = app_resolver
        self.store = store

        self.monitor = ClipboardMonitor(clipboard, self.config.poll_interval_ms)
        self.history = ContextHistory(
            self.config.history_size, self.config.similarity_threshold
        )
        self.scorer = RelevanceScorer()
        self.memory = MemoryTierStore(self.scorer) if self.config.use_memory else None
        self.persistence = (
            MemoryPersistence(store) if store is not None and self.memory else None
        )
        self.usage = UsageTracker(self.memory, store)
        self.retrieval = ContextRetrieval(
            self.monitor,
            self.history,
            memory=self.memory,
            scorer=self.scorer,
            cache_ttl_ms=self.config.cache_ttl_ms,
            debounce_ms=self.config.debounce_ms,
            top_k=self.config.top_k,
            clipboard_max_age_ms=self.config.clipboard_max_age_ms,
        )

        self.monitor.on_change(self._handle_clipboard_change)
        self.monitor.on_error(self._handle_clipboard_error)
        self.history.add_listener(self.retrieval.invalidate)
        if self.memory is not None:
            self.memory.add_listener(self.retrieval.invalidate)

        self.recording_start_time: Optional[int] = None
        self.is_recording = False
        self.highlighted_text = ""
        self.active_application = ""

        self._running = False
        self._tasks: Set[asyncio.Task] = set()
        self._background: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "ContextEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self):
        if self._running:
            return
        self._running = True
        logger.info("Starting context engine")

        if self.persistence is not None:
            items = await self.persistence.load_long_term()
            if items:
                await self.memory.load_long_term(items)
        await self.usage.load_stats()

        self.monitor.start_monitoring()
        await self.update_active_application()

        self._spawn_loop(self.update_active_application, self.config.app_refresh_ms)
        if self.memory is not None:
            self._spawn_loop(self.manage_memory, self.config.maintenance_interval_ms)

    async def stop(self):
        if not self._running:
            return
        self._running = False
        logger.info("Stopping context engine")

        self.monitor.stop_monitoring()
        self.retrieval.debouncer.cancel()

        tasks = list(self._tasks | self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._background.clear()

        await self.save_long_term()
        await self.usage.save_stats()

    def _spawn_loop(self, func, interval_ms: int):
        async def loop():
            while True:
                await asyncio.sleep(interval_ms / 1000)
                try:
                    await func()
                except Exception as e:
                    logger.error(f"Background task {func.__name__} failed: {e}")

        task = asyncio.create_task(loop())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _handle_clipboard_change(self, event: ClipboardChangeEvent):
        content = event.content
        if len(content) <= self.config.min_history_length or self.history.is_similar_to_existing(
            content, ContextType.CLIPBOARD
        ):
            logger.debug("Clipboard content not added: too short or similar to existing content")
            return

        self.history.add_item(
            ContextItem(
                type=ContextType.CLIPBOARD,
                content=content,
                timestamp=event.timestamp,
                application=event.application or None,
            )
        )

        if self.memory is not None:
            self._spawn(self._remember_clipboard(event))

    async def _remember_clipboard(self, event: ClipboardChangeEvent):
        try:
            await self.memory.add_to_memory(
                event.content,
                {
                    "type": ContextType.CLIPBOARD,
                    "source": "clipboard",
                    "application": event.application or None,
                    "timestamp": event.timestamp,
                },
            )
        except Exception as e:
            logger.error(f"Error adding clipboard content to memory: {e}")

    def _handle_clipboard_error(self, error: Exception):
        logger.warning(f"Clipboard monitor reported an error: {error}")

    async def update_active_application(self):
        """Refresh the frontmost application name; failures keep the old value."""
        if self.app_resolver is None:
            return

        try:
            name = await asyncio.to_thread(self.app_resolver.get_active_application_name)
        except Exception as e:
            logger.error(f"Error updating active application: {e}")
            return

        name = name or ""
        if name != self.active_application:
            self.active_application = name
            self.monitor.set_active_application(name)
            self.retrieval.set_active_application(name)

    async def manage_memory(self) -> Dict[str, Any]:
        changes = await self.memory.manage_tiers()
        if changes.get("long_term_changed"):
            await self.save_long_term()
        return changes

    async def save_long_term(self) -> bool:
        if self.persistence is None:
            return False
        return await self.persistence.save_long_term(await self.memory.get_long_term())

    async def start_recording(self, highlighted_text: Optional[str] = None):
        """Begin a dictation session, remembering any highlighted text."""
        self.recording_start_time = now_ms()
        self.is_recording = True
        self.highlighted_text = highlighted_text or ""

        await self.update_active_application()
        logger.info(f"Recording started at {self.recording_start_time}")

        if self.highlighted_text and not self.history.is_similar_to_existing(
            self.highlighted_text, ContextType.HIGHLIGHT
        ):
            self.history.add_item(
                ContextItem(
                    type=ContextType.HIGHLIGHT,
                    content=self.highlighted_text,
                    timestamp=self.recording_start_time,
                    application=self.active_application or None,
                )
            )
        self.retrieval.invalidate()

    def stop_recording(self):
        self.recording_start_time = None
        self.is_recording = False
        self.highlighted_text = ""
        logger.info("Recording stopped")
        self.retrieval.invalidate()

    async def get_context(
        self,
        current_highlighted_text: Optional[str] = None,
        command: Optional[str] = None,
    ) -> ContextResult:
        return await self.retrieval.get_context(
            current_highlighted_text,
            command,
            self.highlighted_text or None,
            self.recording_start_time,
        )

    async def get_context_async(
        self,
        current_highlighted_text: Optional[str] = None,
        command: Optional[str] = None,
    ) -> ContextResult:
        return await self.retrieval.get_context_async(
            current_highlighted_text,
            command,
            self.highlighted_text or None,
            self.recording_start_time,
        )

    async def record_usage(self, item_id: str, usefulness_score: float) -> Optional[MemoryTier]:
        tier = await self.usage.record_usage(item_id, usefulness_score)
        if tier == MemoryTier.LONG_TERM:
            await self.save_long_term()
        return tier

    def track_ai_call(self, start: Optional[float] = None):
        self.usage.track_ai_call(start)

    def record_success(self) -> float:
        return self.usage.record_success()

    def record_failure(self):
        self.usage.record_failure()

    async def add_memory(
        self, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[MemoryItem]:
        if self.memory is None:
            return None
        return await self.memory.add_to_memory(content, metadata)

    async def delete_item(self, item_id: str) -> bool:
        """Delete by id from history and memory. False if neither held it."""
        deleted = self.history.delete_item(item_id)
        if self.memory is not None:
            deleted = await self.memory.delete_item(item_id) or deleted
        return deleted

    async def clear_memory(self, tier: Union[str, MemoryTier, None] = None) -> bool:
        """Clear one memory tier, or history plus every tier when ``tier`` is None."""
        if tier is None:
            self.history.clear()
            if self.memory is not None:
                await self.memory.clear_all()
        elif self.memory is not None:
            await self.memory.clear_tier(tier)
        else:
            return False

        self.retrieval.invalidate()
        if tier is None or MemoryTier(tier) == MemoryTier.LONG_TERM:
            await self.save_long_term()
        return True

    async def get_memory_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "context_history_size": self.history.size(),
            "history": [item.model_dump(mode="json") for item in self.history.get_all()],
            "cache": self.retrieval.cache.get_stats(),
            "ai_usage": self.usage.get_stats(),
        }
        if self.memory is not None:
            stats["memory"] = await self.memory.get_stats()
        return stats

    def export_context_history(self) -> HistorySnapshot:
        return self.history.export_history()

    def import_context_history(
        self, data: Union[HistorySnapshot, Dict[str, Any], None], max_age_hours: float = 24
    ) -> bool:
        return self.history.import_history(data, max_age_hours)

    def start_internal_operation(self):
        self.monitor.start_internal_operation()

    async def end_internal_operation(self):
        await self.monitor.end_internal_operation()

    @asynccontextmanager
    async def internal_operation(self):
        async with self.monitor.internal_operation() as clipboard:
            yield clipboard
