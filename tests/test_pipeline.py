"""Tests for the pipeline service."""

import asyncio
from datetime import datetime, timedelta

import pytest

from packetflow.config import Settings
from packetflow.engine import Pipeline
from packetflow.errors import ConfigurationError, JobStateError
from packetflow.flows import write_example_config
from packetflow.models import Job, JobStatus

from conftest import make_flow


@pytest.fixture
async def pipeline(tmp_path, registry):
    """A started pipeline over the in-memory test handlers."""
    settings = Settings(
        db_path=tmp_path / "test.db",
        plugins_dir=tmp_path / "no-plugins",
        flows_config=None,
        watch_flows=False,
        poll_interval=0.05,
    )
    p = Pipeline(settings, registry=registry)
    await p.start()
    yield p
    await p.stop()


class TestPipelineFlows:
    """Flow management through the pipeline."""

    async def test_save_and_list(self, pipeline):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))

        validation = await pipeline.save_flow(flow)

        assert validation.valid
        assert [f.id for f in await pipeline.list_flows()] == [flow.id]
        assert (await pipeline.get_flow(flow.id)).name == flow.name

    async def test_illegal_flow_is_not_saved(self, pipeline):
        flow = make_flow(("output", "recorder"), ("ai", "upper_ai"))

        with pytest.raises(ConfigurationError):
            await pipeline.save_flow(flow)
        assert await pipeline.get_flow(flow.id) is None

    async def test_registry_is_frozen_after_start(self, pipeline):
        assert pipeline.registry.frozen
        assert {h["slug"] for h in pipeline.get_handlers()} >= {"static_feed", "recorder"}
        assert len(pipeline.get_step_types()) == 4

    async def test_flows_loaded_from_config(self, tmp_path):
        config = tmp_path / "flows.yaml"
        write_example_config(config)
        settings = Settings(
            db_path=tmp_path / "cfg.db",
            plugins_dir=tmp_path / "no-plugins",
            flows_config=config,
            watch_flows=False,
        )
        p = Pipeline(settings)
        await p.start()
        try:
            assert {f.id for f in await p.list_flows()} == {"feed-digest", "document-refresh"}
        finally:
            await p.stop()


class TestPipelineJobs:
    """Triggering, running and polling jobs."""

    async def test_trigger_and_process(self, pipeline):
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("output", "recorder"))
        await pipeline.save_flow(flow)
        events = []

        async def on_event(job, *args):
            events.append(job.status)

        pipeline.on("job_completed", on_event)

        queued = await pipeline.trigger_flow(flow.id)
        assert queued["status"] == "processing_queued"

        status = await pipeline.get_status(queued["job_id"])
        assert status["status"] == "pending"
        assert status["result"] is None

        job = await pipeline.process_job(queued["job_id"])

        assert job.status == JobStatus.COMPLETE
        status = await pipeline.get_status(job.id)
        assert status["status"] == "complete"
        assert len(status["job_steps"]) == 3
        assert len(status["result"]["packets"]) == 3
        assert events == ["complete"]

    async def test_trigger_unknown_flow(self, pipeline):
        queued = await pipeline.trigger_flow("ghost")
        assert queued["status"] == "error"
        assert "ghost" in queued["message"]

    async def test_status_of_unknown_job(self, pipeline):
        assert await pipeline.get_status("nope") is None
        with pytest.raises(ValueError):
            await pipeline.process_job("nope")

    async def test_background_worker_runs_queued_jobs(self, pipeline):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        await pipeline.save_flow(flow)
        done = asyncio.Event()

        async def on_completed(job):
            done.set()

        pipeline.on("job_completed", on_completed)
        await pipeline.start_background_worker()

        queued = await pipeline.trigger_flow(flow.id)
        await asyncio.wait_for(done.wait(), timeout=5)

        job = await pipeline.get_job(queued["job_id"])
        assert job.status == JobStatus.COMPLETE
        await pipeline.stop_background_worker()

    async def test_sweep_fails_stale_jobs(self, pipeline):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        await pipeline.save_flow(flow)
        stale = Job.for_flow(flow.id, timeout_seconds=60)
        stale.deadline_at = datetime.utcnow() - timedelta(hours=1)
        fresh = await pipeline.create_job(flow.id)
        await pipeline.job_store.save(stale)

        failed = await pipeline.sweep_stale_jobs()

        assert failed == [stale.id]
        swept = await pipeline.get_job(stale.id)
        assert swept.status == JobStatus.FAILED
        assert swept.result["error_type"] == "JobTimeout"
        assert (await pipeline.get_job(fresh.id)).status == JobStatus.PENDING

    async def test_stats(self, pipeline):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        await pipeline.save_flow(flow)
        await pipeline.create_job(flow.id)

        stats = await pipeline.get_stats()

        assert stats["running"] is True
        assert stats["flows"] == 1
        assert stats["jobs_by_status"] == {"pending": 1}
        assert stats["handlers_loaded"] == len(pipeline.registry)


class TestSharedDatabase:
    """Several pipelines working off one database."""

    def _settings(self, tmp_path, **overrides):
        return Settings(
            db_path=tmp_path / "shared.db",
            plugins_dir=tmp_path / "no-plugins",
            flows_config=None,
            watch_flows=False,
            poll_interval=0.05,
            **overrides,
        )

    async def test_two_workers_run_a_job_once(self, tmp_path, registry):
        first = Pipeline(self._settings(tmp_path), registry=registry)
        second = Pipeline(self._settings(tmp_path), registry=registry)
        await first.start()
        await second.start()
        try:
            flow = make_flow(("input", "static_feed"), ("output", "slow_output", {"settings": {"delay": 0.3}}))
            await first.save_flow(flow)
            job = await first.create_job(flow.id)

            results = await asyncio.gather(
                first.process_job(job.id),
                second.process_job(job.id),
                return_exceptions=True,
            )
        finally:
            await second.stop()
            await first.stop()

        assert registry.get("slow_output").calls == [job.id]
        finished = [r for r in results if isinstance(r, Job)]
        refused = [r for r in results if isinstance(r, JobStateError)]
        assert len(finished) == 1
        assert len(refused) == 1
        assert finished[0].status == JobStatus.COMPLETE

    async def test_process_finished_job_is_refused(self, pipeline):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        await pipeline.save_flow(flow)
        job = await pipeline.create_job(flow.id)
        await pipeline.process_job(job.id)

        with pytest.raises(JobStateError):
            await pipeline.process_job(job.id)

    async def test_hung_step_is_failed_at_the_deadline(self, tmp_path, registry):
        p = Pipeline(self._settings(tmp_path, job_timeout_seconds=1), registry=registry)
        await p.start()
        try:
            flow = make_flow(("input", "static_feed"), ("output", "slow_output", {"settings": {"delay": 30}}))
            await p.save_flow(flow)
            job = await p.create_job(flow.id)

            job = await asyncio.wait_for(p.process_job(job.id), timeout=5)
            status = await p.get_status(job.id)
        finally:
            await p.stop()

        assert job.status == JobStatus.FAILED
        assert status["status"] == "failed"
        assert status["result"]["error_type"] == "JobTimeout"
