"""
Tool registry: name -> handler map for the model's function calls.
Reads the tools: block of config.yaml to decide which tools are enabled.
Adding a tool means registering a handler here plus a declaration in
chatgate/prompts.py. ModelGateway never branches on tool names.

Handlers are ``async (args: dict, context: dict) -> str``. ``context``
holds the calling user_id and conversation_id.
"""

import logging

from chatgate.tools.datetime_tool import DateTimeTool
from chatgate.tools.google_search import GoogleSearchTool
from chatgate.tools.memory import MemoryTool
from chatgate.tools.web_search import WebSearchTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Manages available tools based on configuration."""

    def __init__(self, cfg: dict, vector_memory=None):
        self.tools: dict[str, object] = {}
        self.handlers: dict = {}
        tools_cfg = cfg.get("tools") or {}

        def enabled(name: str) -> bool:
            return (tools_cfg.get(name) or {}).get("enabled", True)

        # --- Web Search (DuckDuckGo) ---
        if enabled("search_web"):
            ws = WebSearchTool(max_results=(tools_cfg.get("search_web") or {}).get("max_results", 5))
            self.register("search_web", ws, ws.handle)

        # --- Stock + weather via Google Custom Search ---
        gs_cfg = tools_cfg.get("google_search") or {}
        google = GoogleSearchTool(
            api_key=gs_cfg.get("api_key", ""),
            cse_id=gs_cfg.get("cse_id", ""),
            max_results=gs_cfg.get("max_results", 3),
        )
        if enabled("get_stock_price"):
            self.register("get_stock_price", google, google.get_stock_price)
        if enabled("get_weather"):
            self.register("get_weather", google, google.get_weather)

        # --- Time ---
        if enabled("get_time"):
            dt = DateTimeTool(default_zone=(tools_cfg.get("get_time") or {}).get("default_zone", "UTC"))
            self.register("get_time", dt, dt.handle)

        # --- Memory (conversation recall) ---
        if enabled("search_chat_history") and vector_memory is not None:
            mem = MemoryTool(
                vector_memory=vector_memory,
                max_results=(tools_cfg.get("search_chat_history") or {}).get("max_results", 5),
            )
            self.register("search_chat_history", mem, mem.handle)

        logger.info("Tool registry loaded: %s", self.list_tools())

    def register(self, name: str, tool: object, handler) -> None:
        self.tools[name] = tool
        self.handlers[name] = handler

    def get(self, name: str):
        """Get a tool by name, or None if not registered."""
        return self.tools.get(name)

    def list_tools(self) -> list[str]:
        """Return names of all registered tools."""
        return list(self.handlers.keys())
