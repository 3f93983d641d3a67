"""Pipeline - the service that owns storage, handlers, and the job worker."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional
import logging

from ..config import Settings
from ..errors import ConfigurationError, JobStateError, JobTimeout
from ..flows import FlowConfigWatcher, load_flows_from_yaml
from ..handlers import HandlerLoader, HandlerRegistry
from ..models import Flow, Job, JobStatus, JobStepTrace, JobTrigger
from ..storage import Database, FlowStore, JobStore, ProcessedItemStore
from .dispatch import HandlerDispatcher
from .orchestrator import JobOrchestrator
from .status import StatusPoller
from .step_types import FlowValidation, StepTypeRegistry, create_step_types

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Main entry point for running flows.

    Manages:
    - Handler plugin loading
    - Flow storage (API and YAML config)
    - Job creation, background execution and status polling
    - Stale job sweeping
    - Event callbacks for UI integration

    Usage:
        pipeline = Pipeline(Settings(db_path="packetflow.db", plugins_dir="plugins"))
        await pipeline.start()

        queued = await pipeline.trigger_flow("feed-digest")
        await pipeline.process_job(queued["job_id"])
        status = await pipeline.get_status(queued["job_id"])

        await pipeline.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[HandlerRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings or Settings()
        self.logger = logger or logging.getLogger(__name__)
        self.max_concurrent_jobs = max(1, self.settings.max_concurrent_jobs)

        # Core components
        self.database = Database(self.settings.db_path)
        self.registry = registry or HandlerRegistry(logger=self.logger)
        self.loader = HandlerLoader(self.settings.plugins_dir, self.registry, logger=self.logger)
        self.job_store: Optional[JobStore] = None
        self.flow_store: Optional[FlowStore] = None
        self.processed_items: Optional[ProcessedItemStore] = None
        self.dispatcher: Optional[HandlerDispatcher] = None
        self.step_types: Optional[StepTypeRegistry] = None
        self.orchestrator: Optional[JobOrchestrator] = None
        self.poller: Optional[StatusPoller] = None
        self.flow_watcher: Optional[FlowConfigWatcher] = None

        # State
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._active_jobs: set[str] = set()
        self._job_tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._last_sweep = 0.0

        # Callbacks
        self._callbacks: dict[str, list[Callable]] = {
            "job_queued": [],
            "job_started": [],
            "step_completed": [],
            "job_completed": [],
            "job_failed": [],
            "flows_reloaded": [],
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Connect storage, load handlers and flows, sweep stale jobs."""
        if self._running:
            self.logger.warning("Pipeline already running")
            return

        self.logger.info("Starting pipeline...")

        await self.database.connect()
        self.job_store = JobStore(self.database)
        self.flow_store = FlowStore(self.database)
        self.processed_items = ProcessedItemStore(self.database)

        if not self.registry.frozen:
            await self.loader.load_all()
            self.registry.freeze()

        self.dispatcher = HandlerDispatcher(self.registry, logger=self.logger)
        self.step_types = create_step_types(self.dispatcher, logger=self.logger)
        self.orchestrator = JobOrchestrator(
            self.job_store,
            self.flow_store,
            self.step_types,
            processed_items=self.processed_items,
            logger=self.logger,
        )
        self.orchestrator.on_step_complete(self._handle_step_complete)
        self.poller = StatusPoller(self.job_store)

        config_path = self.settings.flows_config
        if config_path is not None and config_path.exists():
            await self._store_flows(load_flows_from_yaml(config_path))

        self._running = True
        await self.sweep_stale_jobs()

        if self.settings.watch_flows:
            await self.start_flow_watcher()

        self.logger.info(f"Pipeline started with {len(self.registry)} handlers")

    async def stop(self) -> None:
        """Stop the worker and watcher, unload handlers, close the database."""
        if not self._running:
            return

        self.logger.info("Stopping pipeline...")
        self._running = False

        await self.stop_flow_watcher()
        await self.stop_background_worker()

        if self._job_tasks:
            await asyncio.gather(*self._job_tasks, return_exceptions=True)

        await self.loader.unload_all()
        await self.database.close()

        self.logger.info("Pipeline stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def start_background_worker(self) -> None:
        """Start the background worker that processes pending jobs."""
        if self._worker_task and not self._worker_task.done():
            self.logger.warning("Background worker already running")
            return

        self._worker_task = asyncio.create_task(self._worker_loop())
        self.logger.info("Background worker started")

    async def stop_background_worker(self) -> None:
        """Stop the background worker."""
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
            self.logger.info("Background worker stopped")

    async def _worker_loop(self) -> None:
        """Background worker that processes pending jobs."""
        while self._running:
            try:
                if time.monotonic() - self._last_sweep >= self.settings.sweep_interval:
                    await self.sweep_stale_jobs()
                await self._process_pending_jobs()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.settings.poll_interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in worker loop: {e}")
                await asyncio.sleep(5)  # Back off on error

    async def _process_pending_jobs(self) -> None:
        """Start pending jobs up to the concurrency limit."""
        if len(self._active_jobs) >= self.max_concurrent_jobs:
            return

        pending = await self.job_store.list_pending(
            limit=self.max_concurrent_jobs - len(self._active_jobs)
        )

        for job in pending:
            if await self._claim(job):
                task = asyncio.create_task(self._run_job(job))
                self._job_tasks.add(task)
                task.add_done_callback(self._job_tasks.discard)

    async def _claim(self, job: Job) -> bool:
        """
        Take ownership of a pending job.

        The store's conditional update decides between workers, including
        workers in other processes; ``_active_jobs`` tracks what runs here.
        """
        async with self._lock:
            if job.id in self._active_jobs:
                return False
            if not await self.job_store.claim(job):
                return False
            self._active_jobs.add(job.id)
            return True

    async def _run_job(self, job: Job) -> Job:
        """Run a claimed job to completion and emit its terminal event."""
        try:
            await self._emit("job_started", job)
            job = await self.orchestrator.run(job)

            if job.status == JobStatus.COMPLETE:
                await self._emit("job_completed", job)
            elif job.status == JobStatus.FAILED:
                await self._emit("job_failed", job)
            return job
        finally:
            async with self._lock:
                self._active_jobs.discard(job.id)
            self._wake.set()

    # -------------------------------------------------------------------------
    # Flows
    # -------------------------------------------------------------------------

    def validate_flow(self, flow: Flow) -> FlowValidation:
        """Check a flow's step sequence and handler bindings."""
        return self.step_types.validate_flow(flow, handlers=self.registry)

    async def save_flow(self, flow: Flow) -> FlowValidation:
        """
        Validate and store a flow.

        Raises:
            ConfigurationError: If the flow has an illegal step sequence
        """
        validation = self.validate_flow(flow)
        if not validation.valid:
            raise ConfigurationError(f"Flow '{flow.name}' is invalid: {'; '.join(validation.errors)}")
        for warning in validation.warnings:
            self.logger.warning(f"Flow '{flow.name}': {warning}")
        await self.flow_store.save(flow)
        self.logger.info(f"Saved flow {flow.id}: {flow.name}")
        return validation

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        return await self.flow_store.get(flow_id)

    async def list_flows(self, project_id: Optional[str] = None) -> list[Flow]:
        return await self.flow_store.list_all(project_id=project_id)

    async def delete_flow(self, flow_id: str) -> bool:
        return await self.flow_store.delete(flow_id)

    async def _store_flows(self, flows: list[Flow]) -> int:
        """Save flows from config, skipping invalid ones."""
        saved = 0
        for flow in flows:
            try:
                await self.save_flow(flow)
                saved += 1
            except ConfigurationError as e:
                self.logger.error(str(e))
        await self._emit("flows_reloaded", saved)
        return saved

    async def start_flow_watcher(self) -> None:
        """Reload ``settings.flows_config`` into the store whenever it changes."""
        config_path = self.settings.flows_config
        if config_path is None:
            return
        if self.flow_watcher is None:
            self.flow_watcher = FlowConfigWatcher(config_path, on_flows_loaded=self._store_flows)
        await self.flow_watcher.start()

    async def stop_flow_watcher(self) -> None:
        if self.flow_watcher is not None:
            await self.flow_watcher.stop()

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def create_job(
        self,
        flow_id: str,
        trigger: JobTrigger | str = JobTrigger.MANUAL,
    ) -> Job:
        """
        Create a pending job for a flow.

        Raises:
            ConfigurationError: If the flow does not exist
        """
        flow = await self.flow_store.get(flow_id)
        if flow is None:
            raise ConfigurationError(f"Flow {flow_id} not found")

        job = Job.for_flow(
            flow_id,
            trigger=trigger,
            timeout_seconds=self.settings.job_timeout_seconds,
        )
        await self.job_store.save(job)
        await self._emit("job_queued", job)

        self.logger.info(f"Created job {job.id} for flow '{flow.name}' ({job.trigger})")
        return job

    async def trigger_flow(
        self,
        flow_id: str,
        trigger: JobTrigger | str = JobTrigger.MANUAL,
    ) -> dict[str, Any]:
        """
        Queue a flow for background execution and return immediately.

        Returns:
            ``{"status": "processing_queued", "job_id": ...}`` or
            ``{"status": "error", "message": ...}``
        """
        try:
            job = await self.create_job(flow_id, trigger=trigger)
        except ConfigurationError as e:
            self.logger.error(f"Could not trigger flow {flow_id}: {e.message}")
            return {"status": "error", "message": e.message}

        self._wake.set()
        return {"status": "processing_queued", "job_id": job.id}

    async def process_job(self, job_id: str) -> Job:
        """
        Run a pending job now and wait for it (blocking).

        Raises:
            ValueError: If the job does not exist
            JobStateError: If the job is no longer pending (running or finished)
        """
        job = await self.job_store.get(job_id)
        if not job:
            raise ValueError(f"Job {job_id} not found")
        if not await self._claim(job):
            current = await self.job_store.get(job_id)
            raise JobStateError(job_id, current.status, JobStatus.PROCESSING.value)
        return await self._run_job(job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.job_store.get(job_id)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        flow_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs with optional filtering."""
        return await self.job_store.list_all(
            status=status,
            flow_id=flow_id,
            limit=limit,
            offset=offset,
        )

    async def get_status(self, job_id: str) -> Optional[dict[str, Any]]:
        """Poll a job: ``{job_id, status, job_steps, result}``."""
        return await self.poller.get_status(job_id)

    async def sweep_stale_jobs(self) -> list[str]:
        """
        Fail pending/processing jobs whose deadline plus grace period passed.

        Jobs currently running in this process are left to the orchestrator,
        which enforces the deadline itself. A job that another worker
        finalized in the meantime keeps its stored result.

        Returns:
            IDs of the jobs marked failed
        """
        self._last_sweep = time.monotonic()
        stale = await self.job_store.list_stale(grace_seconds=self.settings.stale_grace_seconds)

        failed = []
        for job in stale:
            if job.id in self._active_jobs:
                continue
            error = JobTimeout(
                f"Job marked as failed: no progress past its deadline "
                f"({job.deadline_at.isoformat()}) plus {self.settings.stale_grace_seconds}s grace"
            )
            job.fail(error.message, error_type=error.kind)
            if not await self.job_store.save(job):
                continue
            await self._emit("job_failed", job)
            failed.append(job.id)
            self.logger.warning(f"Marked stale job as failed: {job.id} (flow={job.flow_id})")

        return failed

    # -------------------------------------------------------------------------
    # Handlers and step types
    # -------------------------------------------------------------------------

    def get_handlers(self) -> list[dict]:
        """Descriptors of all loaded handlers."""
        return self.registry.describe()

    def get_step_types(self) -> list[dict]:
        return self.step_types.describe()

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def on(self, event: str, callback: Callable[..., Awaitable[None]]) -> None:
        """Register an event callback."""
        if event in self._callbacks:
            self._callbacks[event].append(callback)

    def off(self, event: str, callback: Callable) -> None:
        """Unregister an event callback."""
        if event in self._callbacks and callback in self._callbacks[event]:
            self._callbacks[event].remove(callback)

    async def _emit(self, event: str, *args) -> None:
        """Emit an event to all registered callbacks."""
        for callback in self._callbacks.get(event, []):
            try:
                await callback(*args)
            except Exception as e:
                self.logger.error(f"Error in callback for event '{event}': {e}")

    async def _handle_step_complete(self, job: Job, trace: JobStepTrace) -> None:
        await self._emit("step_completed", job, trace)

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def get_stats(self) -> dict:
        """Get pipeline statistics."""
        counts = await self.job_store.count_by_status()
        flows = await self.flow_store.list_all()

        return {
            "running": self._running,
            "worker_running": self._worker_task is not None and not self._worker_task.done(),
            "active_jobs": len(self._active_jobs),
            "max_concurrent": self.max_concurrent_jobs,
            "handlers_loaded": len(self.registry),
            "flows": len(flows),
            "jobs_by_status": counts,
            "watching_flows": self.flow_watcher is not None and self.flow_watcher.is_running,
        }
