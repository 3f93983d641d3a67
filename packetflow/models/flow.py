"""Flow models - the ordered, typed steps a job walks."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Settings keys never forwarded to a handler tool call.
INTERNAL_SETTING_KEYS = frozenset({"handler_slug", "auth_config", "internal_config"})


class HandlerBinding(BaseModel):
    """The handler a flow step is bound to."""

    model_config = ConfigDict(extra="forbid")

    slug: str = ""
    """Registered handler slug. Empty means the step is not configured yet."""

    settings: dict[str, Any] = Field(default_factory=dict)
    """Handler-specific settings merged into every tool call."""

    tool: Optional[str] = None
    """Tool to invoke. Defaults to the handler's first declared tool."""

    def public_settings(self) -> dict[str, Any]:
        """Settings with internal and auth-only keys removed."""
        return {k: v for k, v in self.settings.items() if k not in INTERNAL_SETTING_KEYS}


class _FlowStepBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    flow_step_id: str = Field(default_factory=lambda: str(uuid4()))
    """Stable identity of the step, independent of its position."""

    position: int = 0
    """Execution order within the flow (ascending)."""

    label: Optional[str] = None
    """Optional display name."""

    handler: HandlerBinding = Field(default_factory=HandlerBinding)
    """Bound handler and its settings."""

    @property
    def name(self) -> str:
        """Trace name, e.g. ``input:rss``."""
        return self.label or f"{self.step_type}:{self.handler.slug or '-'}"


class InputStepConfig(_FlowStepBase):
    """Pulls content from a source."""

    step_type: Literal["input"] = "input"


class AIStepConfig(_FlowStepBase):
    """Annotates the latest packet."""

    step_type: Literal["ai"] = "ai"

    prompt: Optional[str] = None
    """Instruction forwarded to the AI handler as the ``prompt`` parameter."""


class UpdateStepConfig(_FlowStepBase):
    """Updates existing content addressed by the packet's ``original_id``."""

    step_type: Literal["update"] = "update"


class OutputStepConfig(_FlowStepBase):
    """Publishes or exports the result."""

    step_type: Literal["output"] = "output"


FlowStep = Annotated[
    Union[InputStepConfig, AIStepConfig, UpdateStepConfig, OutputStepConfig],
    Field(discriminator="step_type"),
]


class Flow(BaseModel):
    """
    An ordered list of flow steps belonging to one project.

    Structural checks (unique ids and positions) run when the model is built;
    step-type adjacency is checked by the step type registry, both when the
    flow is authored and again before a job runs it.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    """Unique identifier for this flow."""

    project_id: str = "default"
    """Project that owns the flow."""

    name: str
    """Human-readable name."""

    description: str = ""

    steps: list[FlowStep] = Field(default_factory=list)
    """Configured steps, in any order; ``ordered_steps`` sorts by position."""

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _check_unique_steps(self) -> "Flow":
        ids = [s.flow_step_id for s in self.steps]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Flow '{self.name}' has duplicate flow_step_id values")
        positions = [s.position for s in self.steps]
        if len(positions) != len(set(positions)):
            raise ValueError(f"Flow '{self.name}' has duplicate step positions")
        return self

    def ordered_steps(self) -> list[FlowStep]:
        """Steps sorted by position."""
        return sorted(self.steps, key=lambda s: s.position)

    def get_step(self, flow_step_id: str) -> Optional[FlowStep]:
        for step in self.steps:
            if step.flow_step_id == flow_step_id:
                return step
        return None

    @property
    def step_types(self) -> list[str]:
        return [s.step_type for s in self.ordered_steps()]
