"""Step outcome - what a step executor hands back to the orchestrator."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..errors import PacketFlowError
from .packet import DataPacket


class StepError(BaseModel):
    """An error reported by a step executor."""

    kind: str
    """Error type name (ConfigurationError, HandlerNotFound, ...)."""

    message: str

    fatal: bool = True
    """Fatal errors stop the job; non-fatal ones are logged and the job continues."""

    @classmethod
    def from_exception(cls, exc: Exception, fatal: bool = True) -> "StepError":
        if isinstance(exc, PacketFlowError):
            return cls(kind=exc.kind, message=exc.message, fatal=fatal)
        return cls(kind=type(exc).__name__, message=str(exc), fatal=fatal)


class StepOutcome(BaseModel):
    """
    Result of executing one flow step.

    ``packets`` is always the array to thread into the next step; when the
    step failed before producing anything it is the input array unchanged.
    """

    packets: list[DataPacket] = Field(default_factory=list)

    error: Optional[StepError] = None

    request: dict[str, Any] = Field(default_factory=dict)
    """Tool call recorded in the job trace (handler, tool, parameters)."""

    response: dict[str, Any] = Field(default_factory=dict)
    """Handler response recorded in the job trace."""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def fatal(self) -> bool:
        return self.error is not None and self.error.fatal

    @classmethod
    def failure(
        cls,
        packets: list[DataPacket],
        exc: Exception,
        fatal: bool = True,
        request: Optional[dict[str, Any]] = None,
        response: Optional[dict[str, Any]] = None,
    ) -> "StepOutcome":
        return cls(
            packets=packets,
            error=StepError.from_exception(exc, fatal=fatal),
            request=request or {},
            response=response or {},
        )
