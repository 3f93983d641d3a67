"""Job model - one execution of a flow."""

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import JobStateError
from .enums import JobStatus, JobTrigger, TERMINAL_STATUSES
from .packet import DataPacket


class JobStepTrace(BaseModel):
    """One entry of a job's append-only execution trace."""

    step: str
    """Step name, e.g. ``input:rss``."""

    flow_step_id: str
    step_type: str
    handler: Optional[str] = None

    success: bool = True
    """False when the step reported an error (fatal or not)."""

    error: Optional[str] = None

    packets_after: int = 0
    """Length of the packet array after the step."""

    timestamp: datetime = Field(default_factory=datetime.utcnow)

    request: dict[str, Any] = Field(default_factory=dict)
    response: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """
    One execution instance of a flow.

    Status only moves forward:

        pending -> processing -> complete | failed

    (pending may also go straight to failed when a stale job is swept).
    Terminal jobs refuse every further mutation, which keeps ``result`` stable
    across polls.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    """Unique identifier for this job."""

    flow_id: str
    """Flow this job executes."""

    status: JobStatus = JobStatus.PENDING
    """Current status of this job."""

    trigger: JobTrigger = JobTrigger.MANUAL
    """What created the job."""

    job_steps: list[JobStepTrace] = Field(default_factory=list)
    """Ordered, append-only trace of executed steps."""

    packets: list[DataPacket] = Field(default_factory=list)
    """Packet array accumulated so far (newest first)."""

    result: Optional[dict[str, Any]] = None
    """
    Final outcome, set once terminal:
    - complete: ``{"success": True, "packets": [...]}``
    - failed: ``{"success": False, "error", "error_type", "failed_step", "packets"}``
    """

    error_message: Optional[str] = None
    """Error message if the job failed."""

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    timeout_seconds: Optional[int] = None
    """Run budget; the deadline is ``created_at + timeout_seconds``."""

    deadline_at: Optional[datetime] = None
    """After this instant the job is failed instead of run further."""

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @classmethod
    def for_flow(
        cls,
        flow_id: str,
        trigger: JobTrigger | str = JobTrigger.MANUAL,
        timeout_seconds: Optional[int] = None,
    ) -> "Job":
        """Create a pending job with its deadline computed from the timeout."""
        job = cls(flow_id=flow_id, trigger=trigger, timeout_seconds=timeout_seconds)
        if timeout_seconds:
            job.deadline_at = job.created_at + timedelta(seconds=timeout_seconds)
        return job

    # State transitions

    def start(self) -> None:
        """Mark the job as processing."""
        if self.status != JobStatus.PENDING:
            raise JobStateError(self.id, self.status, JobStatus.PROCESSING.value)
        self.status = JobStatus.PROCESSING
        self.started_at = datetime.utcnow()
        self.updated_at = self.started_at

    def complete(self, packets: list[DataPacket]) -> None:
        """Mark the job as successfully completed with the final packet array."""
        if self.status != JobStatus.PROCESSING:
            raise JobStateError(self.id, self.status, JobStatus.COMPLETE.value)
        self.packets = list(packets)
        self.status = JobStatus.COMPLETE
        self.result = {
            "success": True,
            "packets": [p.model_dump(mode="json") for p in packets],
        }
        self.completed_at = datetime.utcnow()
        self.updated_at = self.completed_at

    def fail(
        self,
        error: str,
        error_type: str = "PacketFlowError",
        failed_step: Optional[str] = None,
    ) -> None:
        """Mark the job as failed, keeping the packets accumulated so far."""
        if self.is_terminal:
            raise JobStateError(self.id, self.status, JobStatus.FAILED.value)
        self.status = JobStatus.FAILED
        self.error_message = error
        self.result = {
            "success": False,
            "error": error,
            "error_type": error_type,
            "failed_step": failed_step,
            "packets": [p.model_dump(mode="json") for p in self.packets],
        }
        self.completed_at = datetime.utcnow()
        self.updated_at = self.completed_at

    # Trace

    def add_step_trace(self, trace: JobStepTrace, packets: list[DataPacket]) -> None:
        """Append a trace entry and record the packet array the step returned."""
        if self.is_terminal:
            raise JobStateError(self.id, self.status, "add_step_trace")
        self.job_steps.append(trace)
        self.packets = list(packets)
        self.updated_at = datetime.utcnow()

    # Computed properties

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the deadline has passed."""
        if self.deadline_at is None:
            return False
        return (now or datetime.utcnow()) >= self.deadline_at

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate total processing time."""
        if self.started_at:
            end = self.completed_at or datetime.utcnow()
            return (end - self.started_at).total_seconds()
        return None
