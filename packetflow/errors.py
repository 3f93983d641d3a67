"""Error taxonomy for the pipeline engine."""

from typing import Optional


class PacketFlowError(Exception):
    """
    Base class for all engine errors.

    Attributes:
        kind: Stable error type name, stored in job results as ``error_type``
        flow_step_id: Flow step the error was raised for, if known
    """

    kind = "PacketFlowError"

    def __init__(self, message: str, flow_step_id: Optional[str] = None):
        self.message = message
        self.flow_step_id = flow_step_id
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, flow_step_id={self.flow_step_id!r})"


class ConfigurationError(PacketFlowError):
    """
    Missing or empty flow step configuration, or an illegal step-type
    transition found at execution time. Never retried.
    """

    kind = "ConfigurationError"


class HandlerNotFound(PacketFlowError):  # noqa: N818
    """
    A flow step is bound to a handler slug with no registered implementation.

    Attributes:
        slug: The unknown handler slug
        handler_type: Step type the handler was looked up for
    """

    kind = "HandlerNotFound"

    def __init__(
        self,
        slug: str,
        handler_type: Optional[str] = None,
        flow_step_id: Optional[str] = None,
    ):
        self.slug = slug
        self.handler_type = handler_type
        where = f" of type '{handler_type}'" if handler_type else ""
        super().__init__(f"Handler '{slug}'{where} is not registered", flow_step_id)


class HandlerExecutionError(PacketFlowError):
    """
    A handler tool invocation raised, returned a failure, or no tool matched.

    Attributes:
        slug: Handler that failed
        tool: Tool name that was invoked (None when no tool matched)
    """

    kind = "HandlerExecutionError"

    def __init__(
        self,
        message: str,
        slug: Optional[str] = None,
        tool: Optional[str] = None,
        flow_step_id: Optional[str] = None,
    ):
        self.slug = slug
        self.tool = tool
        super().__init__(message, flow_step_id)


class DataValidationError(PacketFlowError):
    """A data packet could not be constructed from handler output."""

    kind = "DataValidationError"


InvalidInput = DataValidationError


class JobTimeout(PacketFlowError):  # noqa: N818
    """A job ran past its deadline (or was found stale by the sweep)."""

    kind = "JobTimeout"


class JobStateError(ValueError):
    """Raised on an illegal job status transition (e.g. touching a terminal job)."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(
            f"Job {job_id} cannot move from '{current}' to '{target}'"
        )


class RegistryError(ValueError):
    """Raised on invalid handler registration (duplicate slug, frozen registry)."""
