"""Step executors - one per step type, all sharing the same contract."""

from abc import ABC, abstractmethod
from typing import Any, Optional
import logging

from ..errors import (
    DataValidationError,
    HandlerExecutionError,
    PacketFlowError,
)
from ..models import (
    DataPacket,
    FlowStep,
    StepOutcome,
    StepType,
    latest_packet,
    prepend_packet,
)
from .context import ExecutionContext
from .dispatch import HandlerDispatcher, ToolCall

logger = logging.getLogger(__name__)


def _failure_message(result: dict[str, Any], slug: str) -> str:
    return str(result.get("error") or result.get("message") or f"Handler '{slug}' reported failure")


class StepExecutor(ABC):
    """
    Executes one flow step against the packet array.

    Executors never raise: every failure comes back as a ``StepOutcome``
    carrying a ``StepError``. Packets are only ever prepended, so the array
    returned is at least as long as the one received.
    """

    step_type: StepType

    def __init__(
        self,
        dispatcher: HandlerDispatcher,
        logger: Optional[logging.Logger] = None,
    ):
        self.dispatcher = dispatcher
        self.logger = logger or logging.getLogger(__name__)

    @abstractmethod
    async def execute(
        self,
        job_id: str,
        flow_step: FlowStep,
        packets: list[DataPacket],
        ctx: ExecutionContext,
    ) -> StepOutcome:
        """
        Execute the step.

        Args:
            job_id: Job being run
            flow_step: The step's typed configuration
            packets: Packet array so far (newest first)
            ctx: Execution context handed to the handler

        Returns:
            The outcome, whose ``packets`` feed the next step
        """

    def _prepare(
        self,
        flow_step: FlowStep,
        packets: list[DataPacket],
        extra: Optional[dict[str, Any]] = None,
    ) -> ToolCall:
        return self.dispatcher.prepare(
            self.step_type, flow_step.handler, packets, extra, flow_step.flow_step_id
        )


class InputStepExecutor(StepExecutor):
    """
    Pulls new content from the bound input handler.

    A handler answering with ``items`` is treated as a feed; one answering
    with ``data`` as a single piece of content. Neither means nothing new,
    which leaves the array unchanged.
    """

    step_type = StepType.INPUT

    async def execute(self, job_id, flow_step, packets, ctx):
        try:
            call = self._prepare(flow_step, packets)
        except PacketFlowError as e:
            self.logger.error(f"Job {job_id}: input step {flow_step.flow_step_id}: {e.message}")
            return StepOutcome.failure(packets, e)

        request = call.to_request()
        try:
            result = await self.dispatcher.invoke(call, ctx)
        except PacketFlowError as e:
            self.logger.error(f"Job {job_id}: input handler '{call.handler.slug}' failed: {e.message}")
            return StepOutcome.failure(packets, e, request=request)

        response = {k: v for k, v in result.items() if k != "items"}
        if result.get("success") is False:
            error = HandlerExecutionError(
                _failure_message(result, call.handler.slug),
                slug=call.handler.slug,
                tool=call.tool.name,
                flow_step_id=flow_step.flow_step_id,
            )
            return StepOutcome.failure(packets, error, request=request, response=response)

        try:
            if "items" in result:
                response["item_count"] = len(result["items"] or [])
                packet = DataPacket.from_rss_items(
                    result["items"] or [],
                    handler=call.handler.slug,
                    flow_step_id=flow_step.flow_step_id,
                    feed_url=result.get("feed_url"),
                )
            elif result.get("data"):
                packet = DataPacket.from_handler_output(
                    result["data"],
                    handler=call.handler.slug,
                    flow_step_id=flow_step.flow_step_id,
                    source_type=result.get("source_type", call.handler.slug),
                )
            else:
                self.logger.info(
                    f"Job {job_id}: input handler '{call.handler.slug}' returned no new content"
                )
                return StepOutcome(packets=packets, request=request, response=response)
        except DataValidationError as e:
            self.logger.error(f"Job {job_id}: {e.message}")
            return StepOutcome.failure(packets, e, request=request, response=response)

        return StepOutcome(
            packets=prepend_packet(packets, packet),
            request=request,
            response=response,
        )


class AIStepExecutor(StepExecutor):
    """
    Annotates the latest packet through the bound AI handler.

    Handler failures are recorded as a ``success=False`` entry and reported
    as non-fatal, so downstream steps still run on the preserved history.
    Configuration problems (no slug, unknown handler) stay fatal.
    """

    step_type = StepType.AI

    async def execute(self, job_id, flow_step, packets, ctx):
        source = latest_packet(packets)
        extra = {"prompt": flow_step.prompt}
        if source is not None:
            extra["packet_text"] = source.content_for_ai()

        try:
            call = self._prepare(flow_step, packets, extra)
        except PacketFlowError as e:
            self.logger.error(f"Job {job_id}: AI step {flow_step.flow_step_id}: {e.message}")
            return StepOutcome.failure(packets, e)

        request = call.to_request()
        slug = call.handler.slug
        try:
            result = await self.dispatcher.invoke(call, ctx)
        except PacketFlowError as e:
            return self._recorded_failure(job_id, flow_step, packets, source, slug, e, request, {})

        if result.get("success") is False:
            error = HandlerExecutionError(
                _failure_message(result, slug), slug=slug, tool=call.tool.name,
                flow_step_id=flow_step.flow_step_id,
            )
            return self._recorded_failure(job_id, flow_step, packets, source, slug, error, request, result)

        annotations = result.get("data") or {}
        if not isinstance(annotations, dict):
            annotations = {"ai_output": annotations}

        entry = DataPacket.from_ai_output(annotations, source, slug, flow_step.flow_step_id)
        return StepOutcome(
            packets=prepend_packet(packets, entry),
            request=request,
            response=result,
        )

    def _recorded_failure(self, job_id, flow_step, packets, source, slug, error, request, response):
        self.logger.warning(
            f"Job {job_id}: AI handler '{slug}' failed, continuing: {error.message}"
        )
        entry = DataPacket.ai_failure(error.message, source, slug, flow_step.flow_step_id)
        return StepOutcome.failure(
            prepend_packet(packets, entry), error, fatal=False,
            request=request, response=response,
        )


class UpdateStepExecutor(StepExecutor):
    """
    Updates existing content addressed by the latest packet's ``original_id``.

    Without ``original_id`` nothing is dispatched: the array comes back
    unchanged with a fatal error.
    """

    step_type = StepType.UPDATE

    async def execute(self, job_id, flow_step, packets, ctx):
        source = latest_packet(packets)
        if source is None or source.original_id is None:
            error = DataValidationError(
                "Update step requires original_id on the latest packet",
                flow_step.flow_step_id,
            )
            self.logger.error(f"Job {job_id}: {error.message}")
            return StepOutcome.failure(packets, error)

        try:
            call = self._prepare(flow_step, packets)
        except PacketFlowError as e:
            self.logger.error(f"Job {job_id}: update step {flow_step.flow_step_id}: {e.message}")
            return StepOutcome.failure(packets, e)

        request = call.to_request()
        slug = call.handler.slug
        try:
            result = await self.dispatcher.invoke(call, ctx)
        except PacketFlowError as e:
            self.logger.error(f"Job {job_id}: update handler '{slug}' failed: {e.message}")
            return StepOutcome.failure(packets, e, request=request)

        if result.get("success") is False:
            message = _failure_message(result, slug)
            entry = DataPacket.update_result(
                result.get("data"), source, slug, flow_step.flow_step_id,
                success=False, error=message,
            )
            error = HandlerExecutionError(message, slug=slug, tool=call.tool.name,
                                          flow_step_id=flow_step.flow_step_id)
            self.logger.error(f"Job {job_id}: update of {source.original_id} failed: {message}")
            return StepOutcome.failure(
                prepend_packet(packets, entry), error, request=request, response=result,
            )

        entry = DataPacket.update_result(
            result.get("data", result), source, slug, flow_step.flow_step_id,
        )
        self.logger.info(f"Job {job_id}: updated {source.original_id} via '{slug}'")
        return StepOutcome(
            packets=prepend_packet(packets, entry),
            request=request,
            response=result,
        )


class OutputStepExecutor(StepExecutor):
    """
    Delivers the latest packet through the bound output handler.

    Every delivery attempt that reaches the handler is recorded as an entry
    with ``success``; a failed delivery is fatal.
    """

    step_type = StepType.OUTPUT

    async def execute(self, job_id, flow_step, packets, ctx):
        source = latest_packet(packets)
        try:
            call = self._prepare(flow_step, packets)
        except PacketFlowError as e:
            self.logger.error(f"Job {job_id}: output step {flow_step.flow_step_id}: {e.message}")
            return StepOutcome.failure(packets, e)

        request = call.to_request()
        slug = call.handler.slug
        try:
            result = await self.dispatcher.invoke(call, ctx)
        except PacketFlowError as e:
            result = {"success": False, "error": e.message}
            error: Optional[PacketFlowError] = e
        else:
            error = None
            if result.get("success") is False:
                error = HandlerExecutionError(
                    _failure_message(result, slug), slug=slug, tool=call.tool.name,
                    flow_step_id=flow_step.flow_step_id,
                )

        entry = DataPacket.output_result(
            result.get("data"), source, slug, flow_step.flow_step_id,
            success=error is None,
            error=error.message if error else None,
        )
        packets = prepend_packet(packets, entry)

        if error is not None:
            self.logger.error(f"Job {job_id}: output handler '{slug}' failed: {error.message}")
            return StepOutcome.failure(packets, error, request=request, response=result)

        return StepOutcome(packets=packets, request=request, response=result)


EXECUTOR_CLASSES: dict[StepType, type[StepExecutor]] = {
    StepType.INPUT: InputStepExecutor,
    StepType.AI: AIStepExecutor,
    StepType.UPDATE: UpdateStepExecutor,
    StepType.OUTPUT: OutputStepExecutor,
}
