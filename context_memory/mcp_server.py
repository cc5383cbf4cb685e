#!/usr/bin/env python3
"""Context Memory MCP Server."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent
from mcp.server.models import InitializationOptions
from mcp.server.lowlevel import NotificationOptions

from context_memory.core.config import EngineConfig
from context_memory.core.engine import ContextEngine
from context_memory.core.errors import ContextEngineError
from context_memory.core.storage import create_store
from context_memory.core.system import SystemActiveApplication, SystemClipboard
from context_memory.models.schemas import TIER_ORDER

logger = logging.getLogger(__name__)

TIER_NAMES = [tier.value for tier in TIER_ORDER]


class ContextMemoryMCPServer:
    """MCP server exposing the context engine as tools."""

    def __init__(
        self,
        engine: Optional[ContextEngine] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig.from_env()
        if engine is None:
            engine = ContextEngine(
                SystemClipboard(),
                app_resolver=SystemActiveApplication(),
                store=create_store(self.config.data_dir, self.config.redis_url),
                config=self.config,
            )
        self.engine = engine

        self.app = Server("context-memory")
        self._register_handlers()

    def _register_handlers(self):
        """Register MCP protocol handlers."""

        @self.app.list_tools()
        async def list_tools() -> List[Tool]:
            return self.tools()

        @self.app.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            result = await self.handle_call(name, arguments)
            return [
                TextContent(
                    type="text",
                    text=json.dumps(result, indent=2, ensure_ascii=False),
                )
            ]

    @staticmethod
    def tools() -> List[Tool]:
        return [
            Tool(
                name="context_get",
                description="Get the most relevant context for a dictated command",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "command": {
                            "type": "string",
                            "description": "The transcribed command; enables relevance ranking",
                        },
                        "highlighted_text": {
                            "type": "string",
                            "description": "Text currently highlighted by the user",
                        },
                        "debounce": {
                            "type": "boolean",
                            "description": "Collapse rapid repeated requests into one",
                            "default": False,
                        },
                    },
                },
            ),
            Tool(
                name="memory_add",
                description="Store content in working memory",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "content": {
                            "type": "string",
                            "description": "Content to remember",
                        },
                        "type": {
                            "type": "string",
                            "enum": ["clipboard", "highlight", "memory", "conversation"],
                            "default": "memory",
                        },
                        "source": {
                            "type": "string",
                            "description": "Source identifier",
                            "default": "manual",
                        },
                        "application": {"type": "string"},
                    },
                    "required": ["content"],
                },
            ),
            Tool(
                name="memory_list",
                description="List memory items, optionally from one tier",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "tier": {"type": "string", "enum": TIER_NAMES},
                        "limit": {
                            "type": "integer",
                            "description": "Number of items to return",
                            "default": 20,
                            "minimum": 1,
                            "maximum": 500,
                        },
                    },
                },
            ),
            Tool(
                name="memory_remove",
                description="Remove a history or memory item by ID",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "item_id": {
                            "type": "string",
                            "description": "Item identifier",
                        }
                    },
                    "required": ["item_id"],
                },
            ),
            Tool(
                name="memory_clear",
                description="Clear one memory tier, or history and all tiers",
                inputSchema={
                    "type": "object",
                    "properties": {"tier": {"type": "string", "enum": TIER_NAMES}},
                },
            ),
            Tool(
                name="memory_feedback",
                description="Report how useful a memory item was (0-10)",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "item_id": {"type": "string"},
                        "score": {"type": "number", "minimum": 0, "maximum": 10},
                    },
                    "required": ["item_id", "score"],
                },
            ),
            Tool(
                name="recording_start",
                description="Mark the start of a dictation session",
                inputSchema={
                    "type": "object",
                    "properties": {"highlighted_text": {"type": "string"}},
                },
            ),
            Tool(
                name="recording_stop",
                description="Mark the end of a dictation session",
                inputSchema={"type": "object", "properties": {}},
            ),
            Tool(
                name="context_stats",
                description="Get history, memory, cache and AI usage statistics",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    async def handle_call(self, name: str, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Run a tool; failures come back as an error payload."""
        arguments = arguments or {}
        try:
            return await self._dispatch_tool_call(name, arguments)
        except ContextEngineError as e:
            logger.warning(f"Tool {name} failed: {e.message}")
            return {"error": e.message, "tool": name, **e.to_dict()}
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return {"error": str(e), "tool": name, "arguments": arguments}

    async def _dispatch_tool_call(
        self, name: str, arguments: Dict[str, Any]
    ) -> Dict[str, Any]:
        handlers = {
            "context_get": self._handle_context_get,
            "memory_add": self._handle_memory_add,
            "memory_list": self._handle_memory_list,
            "memory_remove": self._handle_memory_remove,
            "memory_clear": self._handle_memory_clear,
            "memory_feedback": self._handle_memory_feedback,
            "recording_start": self._handle_recording_start,
            "recording_stop": self._handle_recording_stop,
            "context_stats": self._handle_context_stats,
        }

        handler = handlers.get(name)
        if not handler:
            raise ValueError(f"Unknown tool: {name}")

        return await handler(arguments)

    async def _handle_context_get(self, args: Dict[str, Any]) -> Dict[str, Any]:
        get = self.engine.get_context_async if args.get("debounce") else self.engine.get_context
        context = await get(args.get("highlighted_text"), args.get("command"))
        return context.model_dump(mode="json")

    async def _handle_memory_add(self, args: Dict[str, Any]) -> Dict[str, Any]:
        metadata = {
            "type": args.get("type", "memory"),
            "source": args.get("source", "manual"),
        }
        if args.get("application"):
            metadata["application"] = args["application"]

        item = await self.engine.add_memory(args["content"], metadata)
        if item is None:
            return {"status": "disabled", "message": "Memory is disabled"}
        return {"id": item.id, "status": "stored", "tier": item.tier.value}

    async def _handle_memory_list(self, args: Dict[str, Any]) -> Dict[str, Any]:
        memory = self.engine.memory
        if memory is None:
            return {"items": [], "count": 0}

        limit = args.get("limit", 20)
        tier = args.get("tier")
        items = await memory.get_tier(tier) if tier else await memory.get_all_items()
        items = sorted(items, key=lambda item: item.timestamp, reverse=True)[:limit]
        return {
            "items": [item.model_dump(mode="json") for item in items],
            "count": len(items),
            "limit": limit,
        }

    async def _handle_memory_remove(self, args: Dict[str, Any]) -> Dict[str, Any]:
        item_id = args["item_id"]
        if await self.engine.delete_item(item_id):
            return {"id": item_id, "status": "removed"}
        return {"id": item_id, "status": "not_found"}

    async def _handle_memory_clear(self, args: Dict[str, Any]) -> Dict[str, Any]:
        tier = args.get("tier")
        cleared = await self.engine.clear_memory(tier)
        return {"tier": tier or "all", "status": "cleared" if cleared else "disabled"}

    async def _handle_memory_feedback(self, args: Dict[str, Any]) -> Dict[str, Any]:
        item_id = args["item_id"]
        tier = await self.engine.record_usage(item_id, args["score"])
        if tier is None:
            return {"id": item_id, "status": "not_found"}
        return {"id": item_id, "status": "recorded", "tier": tier.value}

    async def _handle_recording_start(self, args: Dict[str, Any]) -> Dict[str, Any]:
        await self.engine.start_recording(args.get("highlighted_text"))
        return {"status": "recording", "started_at": self.engine.recording_start_time}

    async def _handle_recording_stop(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.engine.stop_recording()
        return {"status": "stopped"}

    async def _handle_context_stats(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.engine.get_memory_stats()

    async def run(self):
        """Run the engine and serve MCP over stdio until the client disconnects."""
        async with self.engine:
            async with stdio_server() as (read_stream, write_stream):
                await self.app.run(
                    read_stream,
                    write_stream,
                    InitializationOptions(
                        server_name="context-memory",
                        server_version="0.1.0",
                        capabilities=self.app.get_capabilities(
                            notification_options=NotificationOptions(),
                            experimental_capabilities={},
                        ),
                    ),
                )


async def async_main():
    config = EngineConfig.from_env()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # construction reads the clipboard through OS tools
    server = await asyncio.to_thread(ContextMemoryMCPServer, config=config)
    await server.run()


def main():
    """Synchronous entry point for console script."""
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Context Memory MCP Server stopped")


if __name__ == "__main__":
    main()
