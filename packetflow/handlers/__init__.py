"""Handler plugin system for PacketFlow."""

from .base import Handler, ToolDefinition, ToolParameter
from .loader import HandlerLoader
from .registry import HandlerRegistry

__all__ = ["Handler", "ToolDefinition", "ToolParameter", "HandlerLoader", "HandlerRegistry"]
