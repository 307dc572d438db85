"""Tool registry: the tools offered to the model during a turn."""

import logging
import time
from typing import Any

from .base import Tool, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Named tools plus schema export and dispatch."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add a tool. Names must be unique."""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """Registered names in registration order."""
        return list(self._tools)

    def get_tools_schema(self) -> list[dict[str, Any]]:
        """Function-calling schemas for the chat completions request."""
        return [tool.get_schema() for tool in self._tools.values()]

    async def dispatch(self, tool_name: str, args: dict[str, Any]) -> ToolResult:
        """Run a tool call.

        Unknown tools, invalid arguments and tool exceptions all come back
        as failed results so the model can see and recover from them.
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            logger.warning("Model called unknown tool %s", tool_name)
            return ToolResult(success=False, output="", error=f"Unknown tool: {tool_name}")

        valid, error = tool.validate_args(args)
        if not valid:
            return ToolResult(success=False, output="", error=error)

        start_time = time.time()
        try:
            result = await tool.execute(**args)
        except Exception as e:
            logger.warning("Tool %s raised: %s", tool_name, e)
            result = ToolResult(success=False, output="", error=f"Tool execution failed: {e}")

        logger.info(
            "Tool %s %s in %.0fms",
            tool_name,
            "succeeded" if result.success else "failed",
            (time.time() - start_time) * 1000,
        )
        return result
