"""Step type registry - declares step types and which may follow which."""

from dataclasses import dataclass, field
from typing import Optional
import logging

from pydantic import BaseModel, Field

from ..handlers import HandlerRegistry
from ..models import Flow, StepType
from .dispatch import HandlerDispatcher
from .steps import EXECUTOR_CLASSES, StepExecutor

logger = logging.getLogger(__name__)


@dataclass
class StepTypeDefinition:
    """One step type and its transition rules."""

    step_type: StepType
    label: str
    allowed_next: frozenset[StepType]
    terminal: bool = False
    """Whether a flow may end on this type without a warning."""
    executor: Optional[StepExecutor] = field(default=None, repr=False)

    def describe(self) -> dict:
        return {
            "type": self.step_type.value,
            "label": self.label,
            "allowed_next": sorted(t.value for t in self.allowed_next),
            "terminal": self.terminal,
        }


class FlowValidation(BaseModel):
    """Result of checking a flow against the step type rules."""

    valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# Forward-only: once past the input stage nothing leads back to input.
DEFAULT_TRANSITIONS: dict[StepType, frozenset[StepType]] = {
    StepType.INPUT: frozenset({StepType.INPUT, StepType.AI, StepType.OUTPUT}),
    StepType.AI: frozenset({StepType.AI, StepType.OUTPUT, StepType.UPDATE}),
    StepType.UPDATE: frozenset({StepType.UPDATE, StepType.OUTPUT}),
    StepType.OUTPUT: frozenset({StepType.OUTPUT}),
}

DEFAULT_LABELS = {
    StepType.INPUT: "Input",
    StepType.AI: "AI",
    StepType.UPDATE: "Update",
    StepType.OUTPUT: "Output",
}


class StepTypeRegistry:
    """
    Registry of step types.

    Validates flows both when they are authored and, again, right before a
    job runs them, since stored flows are external input.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._definitions: dict[StepType, StepTypeDefinition] = {}
        self.logger = logger or logging.getLogger(__name__)

    def register(self, definition: StepTypeDefinition) -> None:
        if definition.step_type in self._definitions:
            raise ValueError(f"Step type '{definition.step_type.value}' is already registered")
        self._definitions[definition.step_type] = definition

    def get(self, step_type: StepType | str) -> Optional[StepTypeDefinition]:
        try:
            return self._definitions.get(StepType(step_type))
        except ValueError:
            return None

    def get_executor(self, step_type: StepType | str) -> Optional[StepExecutor]:
        definition = self.get(step_type)
        return definition.executor if definition else None

    def can_follow(self, previous: StepType | str, following: StepType | str) -> bool:
        """Check whether ``following`` may come right after ``previous``."""
        definition = self.get(previous)
        if definition is None:
            return False
        return StepType(following) in definition.allowed_next

    def describe(self) -> list[dict]:
        return [d.describe() for d in self._definitions.values()]

    def validate_flow(
        self,
        flow: Flow,
        handlers: Optional[HandlerRegistry] = None,
    ) -> FlowValidation:
        """
        Check a flow's step sequence.

        Errors (the flow must not run): unknown step types, illegal
        transitions. Warnings: ending on a non-terminal type, steps without a
        handler, and handler slugs not registered (when ``handlers`` is given);
        those surface as step failures at run time instead.

        Args:
            flow: Flow to check
            handlers: Registry used to flag unknown handler slugs

        Returns:
            FlowValidation with ``valid`` False when any error was found
        """
        result = FlowValidation()
        steps = flow.ordered_steps()

        if not steps:
            result.warnings.append("Flow has no steps; jobs will complete with an empty result")
            return result

        for index, step in enumerate(steps):
            definition = self.get(step.step_type)
            if definition is None:
                result.errors.append(
                    f"Step {step.flow_step_id} has unknown type '{step.step_type}'"
                )
                continue

            if index > 0:
                previous = steps[index - 1]
                if self.get(previous.step_type) and not self.can_follow(previous.step_type, step.step_type):
                    result.errors.append(
                        f"Illegal transition {previous.step_type} -> {step.step_type} "
                        f"at position {step.position} (step {step.flow_step_id})"
                    )

            if not step.handler.slug:
                result.warnings.append(f"Step {step.flow_step_id} has no handler configured")
            elif handlers is not None:
                if step.handler.slug not in handlers.get_by_type(step.step_type):
                    result.warnings.append(
                        f"Step {step.flow_step_id} uses unregistered {step.step_type} "
                        f"handler '{step.handler.slug}'"
                    )

        last = self.get(steps[-1].step_type)
        if last is not None and not last.terminal:
            result.warnings.append(
                f"Flow ends on a {last.step_type.value} step; its output is not delivered anywhere"
            )

        result.valid = not result.errors
        return result


def create_step_types(
    dispatcher: HandlerDispatcher,
    logger: Optional[logging.Logger] = None,
) -> StepTypeRegistry:
    """Build the registry with the four built-in step types and their executors."""
    registry = StepTypeRegistry(logger=logger)
    for step_type, allowed in DEFAULT_TRANSITIONS.items():
        registry.register(StepTypeDefinition(
            step_type=step_type,
            label=DEFAULT_LABELS[step_type],
            allowed_next=allowed,
            terminal=step_type in (StepType.UPDATE, StepType.OUTPUT),
            executor=EXECUTOR_CLASSES[step_type](dispatcher, logger=logger),
        ))
    return registry
