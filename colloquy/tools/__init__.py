"""Tools package for Colloquy."""

from colloquy.tools.registry import (
    ToolDefinition,
    ToolExecutor,
    ToolHandler,
    ToolRegistry,
    ToolResult,
)

__all__ = [
    "ToolDefinition",
    "ToolExecutor",
    "ToolHandler",
    "ToolRegistry",
    "ToolResult",
]
