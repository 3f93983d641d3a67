"""Enumerations for PacketFlow."""

from enum import Enum


class JobStatus(str, Enum):
    """Status of a job."""

    PENDING = "pending"
    """Job is queued and waiting for a worker."""

    PROCESSING = "processing"
    """Job is walking its flow's steps."""

    COMPLETE = "complete"
    """Every step ran; the result holds the final packet array."""

    FAILED = "failed"
    """Job stopped on an error; the result holds the error and partial packets."""


TERMINAL_STATUSES = (JobStatus.COMPLETE, JobStatus.FAILED)


class StepType(str, Enum):
    """
    Type of a flow step.

    Also the capability a handler declares, since every handler serves
    exactly one step type.
    """

    INPUT = "input"
    """Pulls one unit of content from a source."""

    AI = "ai"
    """Annotates the latest packet. Always passes through to the next step."""

    UPDATE = "update"
    """Mutates existing content identified by ``original_id``."""

    OUTPUT = "output"
    """Delivers the result (publish, export)."""


class JobTrigger(str, Enum):
    """What created a job."""

    MANUAL = "manual"
    """A user asked to run the flow now."""

    SCHEDULED = "scheduled"
    """An external scheduler fired."""

    API = "api"
    """Created through the HTTP API."""
