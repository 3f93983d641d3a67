"""Job orchestrator - walks a flow's steps for one job."""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional
import logging
import traceback

from ..errors import ConfigurationError, DataValidationError, JobStateError, JobTimeout, PacketFlowError
from ..models import DataPacket, FlowStep, Job, JobStatus, JobStepTrace, StepOutcome
from ..storage import FlowStore, JobStore, ProcessedItemStore
from .context import ExecutionContext
from .step_types import StepTypeRegistry

logger = logging.getLogger(__name__)

StepCallback = Callable[[Job, JobStepTrace], Awaitable[None]]


class JobOrchestrator:
    """
    Runs one job to a terminal state.

    Steps execute strictly in position order, each receiving the packet
    array the previous one returned. After every step a trace entry is
    appended and the job row is saved, so pollers see progress as it happens.
    A fatal step error, an unchanged array, or any unexpected exception
    fails the job; the packets accumulated so far are kept in its result.
    A step still running at the job deadline is cancelled and fails the job
    with ``JobTimeout``. If another worker finalized the job first, its stored
    result wins and this run stops.
    """

    def __init__(
        self,
        job_store: JobStore,
        flow_store: FlowStore,
        step_types: StepTypeRegistry,
        processed_items: Optional[ProcessedItemStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_store = job_store
        self.flow_store = flow_store
        self.step_types = step_types
        self.processed_items = processed_items
        self.logger = logger or logging.getLogger(__name__)

        self._on_step_complete: Optional[StepCallback] = None

    def on_step_complete(self, callback: StepCallback) -> None:
        """Register callback for when a step completes."""
        self._on_step_complete = callback

    async def run(self, job: Job) -> Job:
        """
        Execute a job.

        A ``pending`` job is claimed first; if another worker claimed it, it is
        left alone. A ``processing`` job is taken as already claimed by the
        caller (see ``JobStore.claim``).

        Args:
            job: Job in ``pending`` or claimed ``processing`` status

        Returns:
            The job, now ``complete`` or ``failed``
        """
        if job.is_terminal:
            self.logger.warning(f"Job {job.id} is already {job.status}; not running it")
            return job

        if job.status == JobStatus.PENDING and not await self.job_store.claim(job):
            self.logger.warning(f"Job {job.id} was claimed by another worker; not running it")
            return await self.job_store.get(job.id) or job

        current_step: Optional[FlowStep] = None
        try:
            flow = await self.flow_store.get(job.flow_id)
            if flow is None:
                raise ConfigurationError(f"Flow {job.flow_id} not found")

            steps = flow.ordered_steps()
            if not steps:
                self.logger.info(f"Job {job.id}: flow {flow.id} has no steps, completing")
                job.complete([])
                return await self._finish(job)

            validation = self.step_types.validate_flow(flow)
            if not validation.valid:
                raise ConfigurationError("; ".join(validation.errors))

            self.logger.info(f"Job {job.id}: running flow '{flow.name}' ({len(steps)} steps)")
            packets = list(job.packets)

            for step in steps:
                current_step = step
                if job.is_expired():
                    raise JobTimeout(
                        f"Job exceeded its deadline ({job.deadline_at.isoformat()})",
                        step.flow_step_id,
                    )

                outcome = await self._execute_step(job, step, packets)
                trace = JobStepTrace(
                    step=step.name,
                    flow_step_id=step.flow_step_id,
                    step_type=step.step_type,
                    handler=step.handler.slug or None,
                    success=outcome.ok,
                    error=outcome.error.message if outcome.error else None,
                    packets_after=len(outcome.packets),
                    timestamp=datetime.utcnow(),
                    request=outcome.request,
                    response=outcome.response,
                )
                job.add_step_trace(trace, outcome.packets)
                await self._save_progress(job)

                if self._on_step_complete:
                    await self._on_step_complete(job, trace)

                if outcome.error is not None:
                    if outcome.error.fatal:
                        self._fail(job, outcome.error.message, outcome.error.kind, step.flow_step_id)
                        return await self._finish(job)
                    self.logger.warning(
                        f"Job {job.id}: step {step.name} reported a non-fatal "
                        f"{outcome.error.kind}: {outcome.error.message}"
                    )
                elif len(outcome.packets) == len(packets):
                    error = DataValidationError(f"Step {step.name} produced no data", step.flow_step_id)
                    self._fail(job, error.message, error.kind, step.flow_step_id)
                    return await self._finish(job)

                packets = outcome.packets

            job.complete(packets)
            job = await self._finish(job)
            if job.status == JobStatus.COMPLETE:
                self.logger.info(f"Job {job.id} completed with {len(packets)} packets")
            return job

        except JobStateError as e:
            self.logger.warning(f"Job {job.id} stopped: {e}")
            return await self.job_store.get(job.id) or job

        except PacketFlowError as e:
            self._fail(job, e.message, e.kind, e.flow_step_id or _step_id(current_step))

        except Exception as e:
            self.logger.error(
                f"Unexpected error running job {job.id}: {e}\n"
                f"{traceback.format_exc()}"
            )
            self._fail(job, str(e), type(e).__name__, _step_id(current_step))

        return await self._finish(job)

    async def _save_progress(self, job: Job) -> None:
        """
        Persist a running job.

        Raises:
            JobStateError: If the stored job was already finalized elsewhere
                (for example failed by a stale-job sweep)
        """
        if not await self.job_store.save(job):
            stored = await self.job_store.get(job.id)
            raise JobStateError(job.id, stored.status if stored else "missing", job.status)

    async def _finish(self, job: Job) -> Job:
        """Persist a terminal job, deferring to a result that was stored first."""
        if await self.job_store.save(job):
            return job
        stored = await self.job_store.get(job.id)
        self.logger.warning(
            f"Job {job.id} was already finalized as {stored.status if stored else 'missing'}; "
            f"discarding this run's {job.status} result"
        )
        return stored or job

    async def _execute_step(
        self,
        job: Job,
        step: FlowStep,
        packets: list[DataPacket],
    ) -> StepOutcome:
        executor = self.step_types.get_executor(step.step_type)
        if executor is None:
            return StepOutcome.failure(
                packets,
                ConfigurationError(f"No executor for step type '{step.step_type}'", step.flow_step_id),
            )

        ctx = ExecutionContext(
            job.id,
            step.flow_step_id,
            handler_slug=step.handler.slug,
            processed_items=self.processed_items,
            logger=self.logger,
        )
        timeout = None
        if job.deadline_at is not None:
            timeout = max((job.deadline_at - datetime.utcnow()).total_seconds(), 0.0)

        self.logger.debug(f"Job {job.id}: executing step {step.name}")
        try:
            return await asyncio.wait_for(executor.execute(job.id, step, packets, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            return StepOutcome.failure(
                packets,
                JobTimeout(
                    f"Step {step.name} was still running at the job deadline "
                    f"({job.deadline_at.isoformat()})",
                    step.flow_step_id,
                ),
            )
        except Exception as e:
            self.logger.error(
                f"Executor for {step.name} raised in job {job.id}: {e}\n"
                f"{traceback.format_exc()}"
            )
            return StepOutcome.failure(packets, e)

    def _fail(self, job: Job, message: str, kind: str, failed_step: Optional[str]) -> None:
        if job.is_terminal:
            return
        job.fail(message, error_type=kind, failed_step=failed_step)
        self.logger.error(f"Job {job.id} failed ({kind}): {message}")


def _step_id(step: Optional[FlowStep]) -> Optional[str]:
    return step.flow_step_id if step else None
