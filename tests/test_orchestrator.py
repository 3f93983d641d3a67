"""Tests for the job orchestrator."""

import asyncio
from datetime import datetime, timedelta

from packetflow.engine import StatusPoller
from packetflow.models import Job, JobStatus
from packetflow.storage import Database, JobStore

from conftest import make_flow


async def _run(stores, orchestrator, flow, job=None):
    _, flow_store, _ = stores
    await flow_store.save(flow)
    job = job or Job.for_flow(flow.id)
    return await orchestrator.run(job)


class TestScenarios:
    """End-to-end runs over the in-memory handlers."""

    async def test_input_ai_output(self, stores, orchestrator, registry):
        """A one-item feed through AI and output ends with three packets."""
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("output", "recorder"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.COMPLETE
        assert job.result["success"] is True
        assert len(job.result["packets"]) == 3
        assert [p["metadata"]["step_type"] for p in job.result["packets"]] == ["output", "ai", "input"]
        assert registry.get("recorder").delivered[0]["ai_title"] == "HELLO"

    async def test_empty_feed_fails_job(self, stores, orchestrator):
        flow = make_flow(("input", "static_feed", {"settings": {"items": []}}), ("output", "recorder"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "DataValidationError"
        assert job.result["failed_step"] == "input-0"
        assert job.result["packets"] == []
        assert len(job.job_steps) == 1

    async def test_unregistered_update_handler(self, stores, orchestrator):
        """The AI entry survives when the update step cannot find its handler."""
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("update", "nonexistent"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "HandlerNotFound"
        assert job.result["failed_step"] == "update-2"
        packets = job.result["packets"]
        assert len(packets) == 2
        assert packets[0]["metadata"]["step_type"] == "ai"
        assert packets[0]["content"]["ai_title"] == "HELLO"

    async def test_update_flow_completes(self, stores, orchestrator, registry):
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("update", "update_recorder"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.COMPLETE
        assert registry.get("update_recorder").updated == ["post-1"]
        assert [p.step_type for p in job.packets] == ["update", "ai", "input"]
        assert job.packets[0].original_id == "post-1"


class TestExecutionRules:
    """Ordering, tracing and failure handling."""

    async def test_packets_only_grow(self, stores, orchestrator):
        """Each step sees the array the previous one returned, newest first."""
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("ai", "upper_ai"), ("output", "recorder"))

        job = await _run(stores, orchestrator, flow)

        assert [t.packets_after for t in job.job_steps] == [1, 2, 3, 4]
        assert [p.metadata["flow_step_id"] for p in job.packets] == ["output-3", "ai-2", "ai-1", "input-0"]

    async def test_trace_per_step_is_persisted(self, stores, orchestrator):
        job_store, _, _ = stores
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("output", "recorder"))

        job = await _run(stores, orchestrator, flow)
        stored = await job_store.get(job.id)

        assert [t.step for t in stored.job_steps] == ["input:static_feed", "ai:upper_ai", "output:recorder"]
        assert all(t.success for t in stored.job_steps)
        assert stored.job_steps[2].request["tool"] == "deliver"
        assert stored.status == JobStatus.COMPLETE

    async def test_ai_failure_does_not_stop_the_flow(self, stores, orchestrator, registry):
        flow = make_flow(("input", "static_feed"), ("ai", "broken_ai"), ("output", "recorder"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.COMPLETE
        assert job.job_steps[1].success is False
        assert "provider unavailable" in job.job_steps[1].error
        assert job.packets[1].success is False
        assert registry.get("recorder").delivered[0]["title"] == "Hello"

    async def test_step_without_new_data_fails_job(self, stores, orchestrator):
        flow = make_flow(("input", "nothing_new"), ("output", "recorder"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "DataValidationError"
        assert "produced no data" in job.error_message
        assert len(job.job_steps) == 1

    async def test_step_callback(self, stores, orchestrator):
        seen = []

        async def on_step(job, trace):
            seen.append((job.id, trace.flow_step_id))

        orchestrator.on_step_complete(on_step)
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        job = await _run(stores, orchestrator, flow)

        assert seen == [(job.id, "input-0"), (job.id, "output-1")]


class TestJobLifecycle:
    """Jobs that never reach a step."""

    async def test_missing_flow(self, orchestrator):
        job = await orchestrator.run(Job(flow_id="ghost"))

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "ConfigurationError"
        assert "ghost" in job.error_message

    async def test_flow_without_steps_completes_empty(self, stores, orchestrator):
        job = await _run(stores, orchestrator, make_flow())

        assert job.status == JobStatus.COMPLETE
        assert job.result == {"success": True, "packets": []}

    async def test_illegal_flow_is_refused(self, stores, orchestrator):
        flow = make_flow(("output", "recorder"), ("input", "static_feed"))

        job = await _run(stores, orchestrator, flow)

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "ConfigurationError"
        assert "output -> input" in job.error_message
        assert job.job_steps == []

    async def test_expired_job_times_out(self, stores, orchestrator):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        job = Job.for_flow(flow.id, timeout_seconds=60)
        job.deadline_at = datetime.utcnow() - timedelta(seconds=1)

        job = await _run(stores, orchestrator, flow, job)

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "JobTimeout"
        assert job.result["failed_step"] == "input-0"

    async def test_terminal_job_is_not_rerun(self, stores, orchestrator):
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        job = await _run(stores, orchestrator, flow)
        first_result = job.result

        again = await orchestrator.run(job)

        assert again.result == first_result
        assert len(again.job_steps) == 2


class TestOwnershipAndDeadlines:
    """Claiming, deadlines, and results finalized by another worker."""

    async def test_polls_during_run_only_grow(self, stores, orchestrator):
        job_store, _, _ = stores
        poller = StatusPoller(job_store)
        flow = make_flow(("input", "static_feed"), ("ai", "upper_ai"), ("output", "recorder"))
        polls = []

        async def poll(job, trace):
            polls.append(await poller.get_status(job.id))

        orchestrator.on_step_complete(poll)
        job = await _run(stores, orchestrator, flow)

        assert [len(p["job_steps"]) for p in polls] == [1, 2, 3]
        assert all(p["status"] == "processing" and p["result"] is None for p in polls)

        first = await poller.get_status(job.id)
        second = await poller.get_status(job.id)
        assert first == second
        assert first["result"]["success"] is True

    async def test_job_claimed_elsewhere_is_not_run(self, stores, orchestrator, registry):
        job_store, flow_store, _ = stores
        flow = make_flow(("input", "static_feed"), ("output", "recorder"))
        await flow_store.save(flow)
        job = Job.for_flow(flow.id)
        await job_store.save(job)
        assert await job_store.claim(await job_store.get(job.id))

        result = await orchestrator.run(job)

        assert result.status == JobStatus.PROCESSING
        assert result.job_steps == []
        assert registry.get("recorder").delivered == []

    async def test_hung_step_fails_at_the_deadline(self, stores, orchestrator):
        flow = make_flow(("input", "static_feed"), ("output", "slow_output", {"settings": {"delay": 30}}))
        job = Job.for_flow(flow.id, timeout_seconds=60)
        job.deadline_at = datetime.utcnow() + timedelta(seconds=0.3)

        job = await asyncio.wait_for(_run(stores, orchestrator, flow, job), timeout=5)

        assert job.status == JobStatus.FAILED
        assert job.result["error_type"] == "JobTimeout"
        assert job.result["failed_step"] == "output-1"
        assert job.job_steps[-1].success is False

    async def test_result_finalized_elsewhere_is_kept(self, stores, orchestrator, registry, temp_db):
        """A sweep from another connection wins over the still-running worker."""
        job_store, _, _ = stores
        flow = make_flow(("input", "static_feed"), ("output", "slow_output", {"settings": {"delay": 1.0}}))
        job = Job.for_flow(flow.id)
        await job_store.save(job)

        other_db = Database(temp_db.db_path)
        await other_db.connect()
        other_store = JobStore(other_db)

        async def sweep_elsewhere():
            await asyncio.sleep(0.3)
            stale = await other_store.get(job.id)
            stale.fail("Swept by another worker", error_type="JobTimeout")
            assert await other_store.save(stale)

        try:
            finished, _ = await asyncio.gather(_run(stores, orchestrator, flow, job), sweep_elsewhere())
        finally:
            await other_db.close()

        assert registry.get("slow_output").calls == [job.id]
        assert finished.status == JobStatus.FAILED
        assert finished.result["error"] == "Swept by another worker"

        first = await job_store.get(job.id)
        second = await job_store.get(job.id)
        assert first.result == second.result == finished.result
        assert len(first.job_steps) == 1
