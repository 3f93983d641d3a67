"""Base Handler class - the plugin interface."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional
import logging

from pydantic import BaseModel, Field

from ..models import StepType

if TYPE_CHECKING:
    from ..engine.context import ExecutionContext

logger = logging.getLogger(__name__)


class ToolParameter(BaseModel):
    """Schema of one tool parameter."""

    type: str = "string"
    required: bool = False
    description: str = ""


class ToolDefinition(BaseModel):
    """A named, parameterized operation a flow step can invoke on a handler."""

    name: str
    description: str = ""
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)

    def required_parameters(self) -> list[str]:
        return [name for name, p in self.parameters.items() if p.required]

    def missing_parameters(self, parameters: dict[str, Any]) -> list[str]:
        """Required parameters absent (or empty) in ``parameters``."""
        return [
            name for name in self.required_parameters()
            if parameters.get(name) in (None, "")
        ]


class Handler(ABC):
    """
    Base class for all handlers.

    A handler implements one capability (input, ai, update or output) and
    exposes it as one or more tools. The engine only ever calls
    ``handle_tool_call``; handlers never see the packet array directly, only
    the parameters resolved from its latest entry.

    Handlers are shared across jobs, so keep per-call state out of ``self``.

    Result contract for ``handle_tool_call``:
        {"success": bool, "data": ..., "error": str}
    Input handlers add ``items`` (feed-style sources) or return the new
    content in ``data``; returning neither means there was nothing new.

    Example:
        class EchoHandler(Handler):
            slug = "echo"
            handler_type = StepType.OUTPUT
            tools = [ToolDefinition(name="echo", parameters={
                "title": ToolParameter(required=True),
            })]

            async def handle_tool_call(self, tool_name, parameters, ctx):
                ctx.logger.info(parameters["title"])
                return {"success": True, "data": {"echoed": parameters["title"]}}
    """

    # -------------------------------------------------------------------------
    # Metadata (must be defined by subclasses)
    # -------------------------------------------------------------------------

    slug: str = ""
    """Unique identifier, referenced by flow step bindings."""

    handler_type: StepType | str = ""
    """Step type this handler serves."""

    display_name: str = ""
    """Human-readable name for UI display."""

    description: str = ""

    version: str = "1.0.0"

    tools: list[ToolDefinition] = []
    """Declared tools. The first one is the default for a step."""

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    default_config: dict[str, Any] = {}
    """Default settings, overridden by manifest defaults and flow step settings."""

    def __init__(self, config: Optional[dict[str, Any]] = None):
        self._config = {**self.default_config, **(config or {})}

    @property
    def config(self) -> dict[str, Any]:
        return self._config

    def get_config(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def setting(self, parameters: dict[str, Any], key: str, default: Any = None) -> Any:
        """Read a setting from the call parameters, falling back to handler config."""
        if parameters.get(key) is not None:
            return parameters[key]
        return self._config.get(key, default)

    # -------------------------------------------------------------------------
    # Tool calling
    # -------------------------------------------------------------------------

    @abstractmethod
    async def handle_tool_call(
        self,
        tool_name: str,
        parameters: dict[str, Any],
        ctx: "ExecutionContext",
    ) -> dict[str, Any]:
        """
        Execute a declared tool.

        Args:
            tool_name: One of ``self.tools``
            parameters: Values resolved from the latest packet, merged with step settings
            ctx: Execution context (logger, de-duplication, tracked file writes)

        Returns:
            Result dict, see the class docstring
        """

    def get_tool(self, name: Optional[str] = None) -> Optional[ToolDefinition]:
        """Get a tool by name, or the first declared tool when ``name`` is None."""
        if name is None:
            return self.tools[0] if self.tools else None
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    async def on_load(self) -> None:
        """Called when the handler is loaded."""

    async def on_unload(self) -> None:
        """Called when the handler is unloaded."""

    def describe(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "type": StepType(self.handler_type).value,
            "class": f"{type(self).__module__}.{type(self).__name__}",
            "display_name": self.display_name or self.slug,
            "description": self.description,
            "version": self.version,
            "tools": [t.model_dump() for t in self.tools],
        }

    def __repr__(self) -> str:
        return f"<Handler {self.slug} ({getattr(self.handler_type, 'value', self.handler_type)})>"
