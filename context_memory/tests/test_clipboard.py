"""Tests for clipboard change detection."""

import asyncio
from unittest.mock import Mock

import pytest

from context_memory.core.clipboard import ClipboardMonitor
from context_memory.core.errors import ClipboardError
from context_memory.models.schemas import now_ms


async def _max_tick_gap(awaitable, interval: float = 0.05) -> float:
    """Run a ticker alongside ``awaitable`` and return the longest gap between ticks."""
    loop = asyncio.get_running_loop()
    gaps = []

    async def ticker():
        last = loop.time()
        while True:
            await asyncio.sleep(interval)
            now = loop.time()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    try:
        await awaitable
        await asyncio.sleep(interval * 2)
    finally:
        task.cancel()
    return max(gaps)


class TestClipboardMonitor:
    """Test clipboard polling and internal-operation brackets."""

    @pytest.fixture
    def monitor(self, fake_clipboard):
        """Create a monitor over a clipboard that already holds text."""
        fake_clipboard.value = "already there"
        return ClipboardMonitor(fake_clipboard, check_interval_ms=10)

    def test_initial_content_is_not_fresh(self, monitor):
        """Test startup content is adopted without a timestamp."""
        assert monitor.state.current_value == "already there"
        assert monitor.state.timestamp is None
        assert not monitor.is_fresh()

    @pytest.mark.asyncio
    async def test_external_change_emits_event(self, monitor, fake_clipboard):
        """Test a user copy emits one change event."""
        callback = Mock()
        monitor.on_change(callback)

        fake_clipboard.value = "copied by the user"
        event = await monitor.check_clipboard_change()

        assert event is not None
        assert event.content == "copied by the user"
        assert monitor.state.timestamp == event.timestamp
        assert monitor.is_fresh()
        callback.assert_called_once_with(event)

    @pytest.mark.asyncio
    async def test_unchanged_or_blank_content_is_ignored(self, monitor, fake_clipboard):
        """Test unchanged and whitespace-only values emit nothing."""
        assert await monitor.check_clipboard_change() is None

        fake_clipboard.value = "   \n"
        assert await monitor.check_clipboard_change() is None
        assert monitor.state.timestamp is None

    @pytest.mark.asyncio
    async def test_internal_write_is_not_a_change(self, monitor, fake_clipboard):
        """Test engine writes are resynced but never reported."""
        callback = Mock()
        monitor.on_change(callback)

        async with monitor.internal_operation() as clipboard:
            clipboard.write_text("written by the engine")
            assert await monitor.check_clipboard_change() is None

        assert monitor.state.current_value == "written by the engine"
        assert monitor.state.timestamp is None
        assert await monitor.check_clipboard_change() is None
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_nested_internal_operations(self, monitor, fake_clipboard):
        """Test only the outermost end resyncs and reopens polling."""
        monitor.start_internal_operation()
        monitor.start_internal_operation()
        fake_clipboard.value = "nested write"

        await monitor.end_internal_operation()
        assert monitor.in_internal_operation
        assert await monitor.check_clipboard_change() is None

        await monitor.end_internal_operation()
        assert not monitor.in_internal_operation
        assert monitor.state.last_system_value == "nested write"

    @pytest.mark.asyncio
    async def test_unbalanced_end_is_ignored(self, monitor):
        """Test an end without a start leaves the depth at zero."""
        await monitor.end_internal_operation()
        assert not monitor.in_internal_operation

        monitor.start_internal_operation()
        assert monitor.in_internal_operation

    @pytest.mark.asyncio
    async def test_read_failure_reports_error(self, monitor, fake_clipboard):
        """Test read failures reach error observers as ClipboardError."""
        errors = Mock()
        monitor.on_error(errors)
        fake_clipboard.fail_reads = True

        assert await monitor.check_clipboard_change() is None

        errors.assert_called_once()
        error = errors.call_args[0][0]
        assert isinstance(error, ClipboardError)
        assert isinstance(error.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, monitor, fake_clipboard):
        """Test an unsubscribed observer is not called."""
        callback = Mock()
        unsubscribe = monitor.on_change(callback)
        unsubscribe()

        fake_clipboard.value = "new content"
        await monitor.check_clipboard_change()
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_stop_others(self, monitor, fake_clipboard):
        """Test one raising observer does not block the rest."""
        monitor.on_change(Mock(side_effect=RuntimeError("boom")))
        second = Mock()
        monitor.on_change(second)

        fake_clipboard.value = "new content"
        await monitor.check_clipboard_change()
        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_sync_does_not_mark_fresh(self, monitor, fake_clipboard):
        """Test syncing adopts the value without a timestamp."""
        fake_clipboard.value = "synced value"
        await monitor.sync_clipboard_content()

        assert monitor.state.current_value == "synced value"
        assert monitor.state.timestamp is None

    def test_freshness_window(self, monitor):
        """Test freshness by age and by recording start."""
        monitor.state.current_value = "something"
        monitor.state.timestamp = now_ms() - 60_000

        assert not monitor.is_fresh(max_age_ms=30_000)
        assert monitor.is_fresh(max_age_ms=120_000)
        # copied after the recording started
        assert monitor.is_fresh(30_000, recording_start_time=now_ms() - 120_000)
        assert not monitor.is_fresh(30_000, recording_start_time=now_ms())

    def test_current_content(self, monitor):
        """Test the current content snapshot."""
        monitor.set_active_application("Terminal")
        content = monitor.get_current_content()

        assert content["content"] == "already there"
        assert content["application"] == "Terminal"
        assert content["is_fresh"] is False

    @pytest.mark.asyncio
    async def test_polling_task(self, monitor, fake_clipboard):
        """Test the background task picks up a change."""
        events = []
        monitor.on_change(events.append)

        monitor.start_monitoring()
        assert monitor.is_monitoring
        fake_clipboard.value = "polled content"
        await asyncio.sleep(0.1)
        monitor.cleanup()

        assert not monitor.is_monitoring
        assert [event.content for event in events] == ["polled content"]


class TestSlowClipboard:
    """Test that slow clipboard reads never stall the event loop."""

    @pytest.fixture
    def monitor(self, fake_clipboard):
        """Create a monitor whose later reads each take half a second."""
        fake_clipboard.value = "already there"
        monitor = ClipboardMonitor(fake_clipboard, check_interval_ms=10)
        fake_clipboard.read_delay = 0.5
        return monitor

    @pytest.mark.asyncio
    async def test_poll_keeps_loop_responsive(self, monitor, fake_clipboard):
        """Test a slow poll read leaves other timers running."""
        fake_clipboard.value = "copied by the user"

        gap = await _max_tick_gap(monitor.check_clipboard_change())

        assert gap < 0.2
        assert monitor.state.current_value == "copied by the user"

    @pytest.mark.asyncio
    async def test_resync_keeps_loop_responsive(self, monitor, fake_clipboard):
        """Test the resync after an internal write leaves other timers running."""

        async def write():
            async with monitor.internal_operation() as clipboard:
                clipboard.write_text("written by the engine")

        gap = await _max_tick_gap(write())

        assert gap < 0.2
        assert monitor.state.last_system_value == "written by the engine"
        assert not monitor.in_internal_operation

    @pytest.mark.asyncio
    async def test_sync_keeps_loop_responsive(self, monitor, fake_clipboard):
        """Test a slow sync read leaves other timers running."""
        fake_clipboard.value = "synced value"

        gap = await _max_tick_gap(monitor.sync_clipboard_content())

        assert gap < 0.2
        assert monitor.state.current_value == "synced value"

    @pytest.mark.asyncio
    async def test_poll_during_resync_sees_no_change(self, monitor, fake_clipboard):
        """Test a poll racing the resync does not report the engine's write."""
        callback = Mock()
        monitor.on_change(callback)

        monitor.start_internal_operation()
        fake_clipboard.write_text("written by the engine")
        resync = asyncio.create_task(monitor.end_internal_operation())
        await asyncio.sleep(0.05)

        assert monitor.in_internal_operation
        assert await monitor.check_clipboard_change() is None

        await resync
        assert not monitor.in_internal_operation
        fake_clipboard.read_delay = 0.0
        assert await monitor.check_clipboard_change() is None
        callback.assert_not_called()
