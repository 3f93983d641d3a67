"""Handler dispatch - the uniform tool-calling path every step goes through."""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
import logging

from ..errors import ConfigurationError, HandlerExecutionError, PacketFlowError
from ..handlers import Handler, HandlerRegistry, ToolDefinition
from ..models import DataPacket, HandlerBinding, StepType, latest_packet
from .context import ExecutionContext

logger = logging.getLogger(__name__)

# AI-derived content keys forwarded to handlers besides ``ai_*`` ones.
AI_PARAMETER_ALLOWLIST = frozenset({
    "content_type",
    "audience_level",
    "skill_prerequisites",
    "content_characteristics",
    "primary_intent",
    "actionability",
    "complexity_score",
    "estimated_completion_time",
})


@dataclass
class ToolCall:
    """A resolved, ready-to-invoke tool call."""

    handler: Handler
    tool: ToolDefinition
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_request(self) -> dict[str, Any]:
        """Trace form of the call."""
        return {
            "handler": self.handler.slug,
            "tool": self.tool.name,
            "parameters": self.parameters,
        }


def resolve_parameters(packets: Sequence[DataPacket]) -> dict[str, Any]:
    """
    Flatten the latest packet into tool parameters.

    Picks title, content (from body), original_id, source_url and any AI
    annotation whose key is allow-listed or starts with ``ai_``.
    """
    packet = latest_packet(packets)
    if packet is None:
        return {}

    parameters: dict[str, Any] = {}
    if packet.content.get("title"):
        parameters["title"] = packet.content["title"]
    if packet.content.get("body"):
        parameters["content"] = packet.content["body"]
    if packet.original_id:
        parameters["original_id"] = packet.original_id
    if packet.source_url:
        parameters["source_url"] = packet.source_url

    for key, value in packet.content.items():
        if key in AI_PARAMETER_ALLOWLIST or key.startswith("ai_"):
            parameters[key] = value

    return parameters


def output_parameters(packets: Sequence[DataPacket]) -> dict[str, Any]:
    """Publishable extras for output handlers: summary, tags and attachments."""
    packet = latest_packet(packets)
    if packet is None:
        return {}
    fields = packet.content_for_output()
    return {k: fields[k] for k in ("summary", "tags", "attachments") if fields[k]}


class HandlerDispatcher:
    """
    Looks up the handler bound to a step and invokes it through its tool.

    There is no direct-call fallback: a handler without a matching tool
    cannot be executed.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)

    def prepare(
        self,
        step_type: StepType | str,
        binding: HandlerBinding,
        packets: Sequence[DataPacket],
        extra: Optional[dict[str, Any]] = None,
        flow_step_id: Optional[str] = None,
    ) -> ToolCall:
        """
        Resolve handler, tool and parameters for a step.

        Args:
            step_type: Type the handler must serve
            binding: Step's handler binding
            packets: Current packet array (index 0 is read)
            extra: Step-level parameters (e.g. an AI prompt); settings override them
            flow_step_id: For error reporting

        Raises:
            ConfigurationError: No handler slug configured
            HandlerNotFound: Slug not registered for this step type
            HandlerExecutionError: No matching tool, or required parameters missing
        """
        if not binding.slug:
            raise ConfigurationError(
                f"No handler configured for {StepType(step_type).value} step",
                flow_step_id,
            )

        try:
            handler = self.registry.require(binding.slug, step_type)
        except PacketFlowError as e:
            e.flow_step_id = flow_step_id
            raise

        tool = handler.get_tool(binding.tool)
        if tool is None:
            wanted = f"'{binding.tool}'" if binding.tool else "any"
            raise HandlerExecutionError(
                f"Handler '{handler.slug}' exposes no tool matching {wanted}",
                slug=handler.slug,
                tool=binding.tool,
                flow_step_id=flow_step_id,
            )

        parameters = resolve_parameters(packets)
        if StepType(step_type) == StepType.OUTPUT:
            parameters.update(output_parameters(packets))
        parameters.update({k: v for k, v in (extra or {}).items() if v is not None})
        parameters.update(binding.public_settings())

        missing = tool.missing_parameters(parameters)
        if missing:
            raise HandlerExecutionError(
                f"Tool '{tool.name}' of handler '{handler.slug}' is missing "
                f"required parameters: {', '.join(missing)}",
                slug=handler.slug,
                tool=tool.name,
                flow_step_id=flow_step_id,
            )

        return ToolCall(handler=handler, tool=tool, parameters=parameters)

    async def invoke(self, call: ToolCall, ctx: ExecutionContext) -> dict[str, Any]:
        """
        Invoke a prepared tool call inside the execution context.

        Raises:
            HandlerExecutionError: The handler raised or returned a non-dict
        """
        self.logger.debug(
            f"Invoking {call.handler.slug}.{call.tool.name} for job {ctx.job_id}"
        )
        try:
            async with ctx:
                result = await call.handler.handle_tool_call(call.tool.name, call.parameters, ctx)
        except PacketFlowError:
            raise
        except Exception as e:
            raise HandlerExecutionError(
                f"Handler '{call.handler.slug}' tool '{call.tool.name}' raised "
                f"{type(e).__name__}: {e}",
                slug=call.handler.slug,
                tool=call.tool.name,
                flow_step_id=ctx.flow_step_id,
            ) from e

        if not isinstance(result, dict):
            raise HandlerExecutionError(
                f"Handler '{call.handler.slug}' returned {type(result).__name__}, expected dict",
                slug=call.handler.slug,
                tool=call.tool.name,
                flow_step_id=ctx.flow_step_id,
            )
        return result

    async def dispatch(
        self,
        step_type: StepType | str,
        binding: HandlerBinding,
        packets: Sequence[DataPacket],
        ctx: ExecutionContext,
        extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Prepare and invoke in one go."""
        call = self.prepare(step_type, binding, packets, extra, ctx.flow_step_id)
        return await self.invoke(call, ctx)
