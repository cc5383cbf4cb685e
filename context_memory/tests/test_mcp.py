"""Tests for MCP server functionality."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from context_memory.core.config import EngineConfig
from context_memory.core.engine import ContextEngine
from context_memory.mcp_server import ContextMemoryMCPServer


class TestContextMemoryMCPServer:
    """Test the tool handlers against a real engine with fake OS access."""

    @pytest.fixture
    def server(self, fake_clipboard, fake_app, memory_store):
        """Create a server over a real engine with fake OS access."""
        config = EngineConfig(debounce_ms=10)
        engine = ContextEngine(
            fake_clipboard, app_resolver=fake_app, store=memory_store, config=config
        )
        return ContextMemoryMCPServer(engine=engine, config=config)

    def test_tool_list(self, server):
        """Test all nine tools are advertised."""
        names = [tool.name for tool in server.tools()]
        assert names == [
            "context_get",
            "memory_add",
            "memory_list",
            "memory_remove",
            "memory_clear",
            "memory_feedback",
            "recording_start",
            "recording_stop",
            "context_stats",
        ]

    @pytest.mark.asyncio
    async def test_add_and_list(self, server):
        """Test memory_add stores an item memory_list returns."""
        added = await server.handle_call(
            "memory_add", {"content": "the staging password rotates monthly"}
        )
        assert added["status"] == "stored"
        assert added["tier"] == "working"

        listed = await server.handle_call("memory_list", {"tier": "working"})
        assert listed["count"] == 1
        assert listed["items"][0]["id"] == added["id"]
        assert listed["items"][0]["source"] == "manual"

    @pytest.mark.asyncio
    async def test_list_respects_limit(self, server):
        """Test memory_list honours its limit."""
        for i in range(3):
            await server.handle_call("memory_add", {"content": f"note {i}"})

        listed = await server.handle_call("memory_list", {"limit": 2})
        assert listed["count"] == 2

    @pytest.mark.asyncio
    async def test_context_get(self, server):
        """Test context_get ranks memory for a command."""
        await server.handle_call("memory_add", {"content": "release checklist for friday"})

        result = await server.handle_call("context_get", {"command": "release checklist"})

        assert result["primary_context"]["content"] == "release checklist for friday"
        assert result["memory_stats"]["total_items"] == 1
        json.dumps(result)

    @pytest.mark.asyncio
    async def test_context_get_debounced(self, server):
        """Test context_get through the debouncer."""
        result = await server.handle_call(
            "context_get", {"highlighted_text": "selected", "debounce": True}
        )
        assert result["primary_context"]["content"] == "selected"

    @pytest.mark.asyncio
    async def test_feedback_promotes(self, server):
        """Test a high feedback score promotes the item."""
        added = await server.handle_call("memory_add", {"content": "useful answer"})

        result = await server.handle_call(
            "memory_feedback", {"item_id": added["id"], "score": 9}
        )
        assert result == {"id": added["id"], "status": "recorded", "tier": "short-term"}

    @pytest.mark.asyncio
    async def test_feedback_unknown_item(self, server):
        """Test feedback for a missing item reports not_found."""
        result = await server.handle_call("memory_feedback", {"item_id": "nope", "score": 9})
        assert result["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_remove(self, server):
        """Test memory_remove deletes once."""
        added = await server.handle_call("memory_add", {"content": "temporary"})

        assert (await server.handle_call("memory_remove", {"item_id": added["id"]}))[
            "status"
        ] == "removed"
        assert (await server.handle_call("memory_remove", {"item_id": added["id"]}))[
            "status"
        ] == "not_found"

    @pytest.mark.asyncio
    async def test_clear(self, server):
        """Test memory_clear empties memory."""
        await server.handle_call("memory_add", {"content": "to be cleared"})

        result = await server.handle_call("memory_clear", {})
        assert result == {"tier": "all", "status": "cleared"}
        assert (await server.handle_call("memory_list", {}))["count"] == 0

    @pytest.mark.asyncio
    async def test_recording(self, server):
        """Test recording_start and recording_stop."""
        started = await server.handle_call(
            "recording_start", {"highlighted_text": "paragraph to rewrite"}
        )
        assert started["status"] == "recording"
        assert started["started_at"] is not None

        context = await server.handle_call("context_get", {})
        assert context["primary_context"]["content"] == "paragraph to rewrite"

        stopped = await server.handle_call("recording_stop", {})
        assert stopped == {"status": "stopped"}
        assert server.engine.recording_start_time is None

    @pytest.mark.asyncio
    async def test_stats(self, server):
        """Test context_stats returns engine statistics."""
        stats = await server.handle_call("context_stats", None)
        assert {"context_history_size", "cache", "ai_usage", "memory"} <= set(stats)

    @pytest.mark.asyncio
    async def test_unknown_tool(self, server):
        """Test an unknown tool name comes back as an error."""
        result = await server.handle_call("clip_add", {})
        assert result["error"] == "Unknown tool: clip_add"
        assert result["tool"] == "clip_add"

    @pytest.mark.asyncio
    async def test_engine_error_payload(self, server):
        """Test engine errors come back as structured payloads."""
        result = await server.handle_call("memory_add", {"content": "   "})

        assert result["name"] == "MemoryTierError"
        assert "missing content" in result["error"]

    @pytest.mark.asyncio
    async def test_invalid_tier(self, server):
        """Test an unknown tier name comes back as an error."""
        result = await server.handle_call("memory_clear", {"tier": "forever"})
        assert "Invalid memory tier" in result["error"]

    @pytest.mark.asyncio
    async def test_run_starts_and_stops_engine(self, server):
        """Test run wraps the stdio session in the engine lifecycle."""
        server.app.run = AsyncMock()

        class FakeStdio:
            async def __aenter__(self):
                return ("read", "write")

            async def __aexit__(self, *exc):
                return False

        with patch("context_memory.mcp_server.stdio_server", return_value=FakeStdio()):
            await server.run()

        server.app.run.assert_awaited_once()
        options = server.app.run.call_args[0][2]
        assert options.server_name == "context-memory"
        assert not server.engine.running
