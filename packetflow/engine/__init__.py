"""Flow execution engine for PacketFlow."""

from .context import ExecutionContext
from .dispatch import HandlerDispatcher, ToolCall
from .steps import (
    AIStepExecutor,
    InputStepExecutor,
    OutputStepExecutor,
    StepExecutor,
    UpdateStepExecutor,
)
from .step_types import FlowValidation, StepTypeDefinition, StepTypeRegistry, create_step_types
from .orchestrator import JobOrchestrator
from .status import StatusPoller
from .pipeline import Pipeline

__all__ = [
    "ExecutionContext",
    "HandlerDispatcher",
    "ToolCall",
    "StepExecutor",
    "InputStepExecutor",
    "AIStepExecutor",
    "UpdateStepExecutor",
    "OutputStepExecutor",
    "FlowValidation",
    "StepTypeDefinition",
    "StepTypeRegistry",
    "create_step_types",
    "JobOrchestrator",
    "StatusPoller",
    "Pipeline",
]
