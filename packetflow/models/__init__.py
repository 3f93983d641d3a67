"""Core data models for PacketFlow."""

from .enums import JobStatus, JobTrigger, StepType, TERMINAL_STATUSES
from .packet import DataPacket, prepend_packet, latest_packet
from .flow import (
    Flow,
    FlowStep,
    HandlerBinding,
    InputStepConfig,
    AIStepConfig,
    UpdateStepConfig,
    OutputStepConfig,
)
from .result import StepError, StepOutcome
from .job import Job, JobStepTrace

__all__ = [
    "JobStatus",
    "JobTrigger",
    "StepType",
    "TERMINAL_STATUSES",
    "DataPacket",
    "prepend_packet",
    "latest_packet",
    "Flow",
    "FlowStep",
    "HandlerBinding",
    "InputStepConfig",
    "AIStepConfig",
    "UpdateStepConfig",
    "OutputStepConfig",
    "StepError",
    "StepOutcome",
    "Job",
    "JobStepTrace",
]
