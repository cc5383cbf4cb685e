"""Clipboard monitoring: detects copies made by the user, not by the engine."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Protocol

from context_memory.core.errors import ClipboardError
from context_memory.models.schemas import (
    ClipboardChangeEvent,
    ClipboardState,
    now_ms,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ClipboardChangeEvent], None]
ErrorCallback = Callable[[Exception], None]


class ClipboardAccessor(Protocol):
    """Read/write access to the system clipboard."""

    def read_text(self) -> str: ...

    def write_text(self, text: str) -> None: ...


class ClipboardMonitor:
    """Polls the clipboard and reports genuine external changes.

    Writes the engine performs itself are bracketed with
    ``start_internal_operation``/``end_internal_operation`` so they never
    look like fresh user content.
    """

    def __init__(self, clipboard: ClipboardAccessor, check_interval_ms: int = 1000):
        self.clipboard = clipboard
        self.check_interval_ms = check_interval_ms
        self.state = ClipboardState()
        self._internal_depth = 0
        self._task: Optional[asyncio.Task] = None
        self._change_callbacks: List[ChangeCallback] = []
        self._error_callbacks: List[ErrorCallback] = []

        # Whatever is on the clipboard at startup is not a fresh change
        initial = self._read_safely()
        if initial is not None:
            self.state.last_system_value = initial
            self.state.current_value = initial

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_internal_operation(self) -> bool:
        return self._internal_depth > 0

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change observer; returns an unsubscribe function."""
        self._change_callbacks.append(callback)
        return lambda: self._discard(self._change_callbacks, callback)

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        """Register an error observer; returns an unsubscribe function."""
        self._error_callbacks.append(callback)
        return lambda: self._discard(self._error_callbacks, callback)

    @staticmethod
    def _discard(callbacks: List[Any], callback: Any):
        if callback in callbacks:
            callbacks.remove(callback)

    def start_monitoring(self):
        """Start the polling task on the running event loop."""
        if self.is_monitoring:
            self.stop_monitoring()

        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info(f"Started clipboard monitoring every {self.check_interval_ms}ms")

    def stop_monitoring(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Stopped clipboard monitoring")

    async def _poll_loop(self):
        interval = self.check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            await self.check_clipboard_change()

    def set_active_application(self, app_name: str):
        self.state.active_application = app_name or ""

    async def check_clipboard_change(self) -> Optional[ClipboardChangeEvent]:
        """Poll once. Returns the emitted event, if any."""
        if self.in_internal_operation:
            return None

        current = await self._read_async()
        if current is None:
            return None

        # An internal write may have started while the read was in flight
        if self.in_internal_operation:
            return None

        if current == self.state.last_system_value or not current.strip():
            return None

        timestamp = now_ms()
        self.state.last_system_value = current
        self.state.current_value = current
        self.state.timestamp = timestamp

        event = ClipboardChangeEvent(
            content=current,
            timestamp=timestamp,
            application=self.state.active_application,
        )
        logger.debug(f"Clipboard change detected at {timestamp}")

        for callback in list(self._change_callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Clipboard change observer failed: {e}")

        return event

    def start_internal_operation(self):
        self._internal_depth += 1

    async def end_internal_operation(self):
        """Close an internal bracket and resync without touching the timestamp.

        The outermost bracket stays open until the resync read finishes, so
        a poll running meanwhile cannot mistake the engine's write for a
        user copy.
        """
        if self._internal_depth == 0:
            logger.warning("end_internal_operation called without a matching start")
            return

        try:
            if self._internal_depth == 1:
                current = await self._read_async()
                if current is not None:
                    self.state.last_system_value = current
                    self.state.current_value = current
        finally:
            self._internal_depth -= 1

    @asynccontextmanager
    async def internal_operation(self):
        """Bracket engine-initiated clipboard writes."""
        self.start_internal_operation()
        try:
            yield self.clipboard
        finally:
            await self.end_internal_operation()

    async def sync_clipboard_content(self):
        """Pick up the current clipboard value without marking it fresh."""
        current = await self._read_async()
        if current is not None and current != self.state.current_value:
            self.state.current_value = current
            self.state.last_system_value = current
            logger.debug("Clipboard content synced without updating timestamp")

    def is_fresh(
        self,
        max_age_ms: int = 30000,
        recording_start_time: Optional[int] = None,
    ) -> bool:
        """True if the clipboard changed recently or during the current recording."""
        timestamp = self.state.timestamp
        if timestamp is None:
            return False
        if not self.state.current_value.strip():
            return False

        within_max_age = now_ms() - timestamp <= max_age_ms
        during_recording = (
            recording_start_time is not None and timestamp >= recording_start_time
        )
        return within_max_age or during_recording

    def get_current_content(self, max_age_ms: int = 30000) -> Dict[str, Any]:
        return {
            "content": self.state.current_value,
            "timestamp": self.state.timestamp,
            "application": self.state.active_application,
            "is_fresh": self.is_fresh(max_age_ms),
        }

    def _read_safely(self) -> Optional[str]:
        try:
            return self.clipboard.read_text() or ""
        except Exception as e:
            self._report_error(ClipboardError("Failed to read clipboard", cause=e))
            return None

    async def _read_async(self) -> Optional[str]:
        """Read off the event loop; clipboard tools can take seconds."""
        try:
            current = await asyncio.to_thread(self.clipboard.read_text)
        except Exception as e:
            self._report_error(ClipboardError("Failed to read clipboard", cause=e))
            return None
        return current or ""

    def _report_error(self, error: ClipboardError):
        logger.error(f"Clipboard error: {error.message}: {error.__cause__}")
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Clipboard error observer failed: {e}")

    def cleanup(self):
        self.stop_monitoring()
        self._change_callbacks.clear()
        self._error_callbacks.clear()
