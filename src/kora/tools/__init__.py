"""Tools the assistant can call during a turn."""

from .base import Tool, ToolResult
from .registry import ToolRegistry

__all__ = ["Tool", "ToolRegistry", "ToolResult"]
