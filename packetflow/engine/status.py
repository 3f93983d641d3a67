"""Status poller - read-only job progress queries."""

from typing import Any, Optional

from ..storage import JobStore


class StatusPoller:
    """
    Reports job progress from the persisted job row.

    Never blocks on or synchronizes with a running job: it reads whatever
    the orchestrator last saved, which may lag by at most one step.
    """

    def __init__(self, job_store: JobStore):
        self.job_store = job_store

    async def get_status(self, job_id: str) -> Optional[dict[str, Any]]:
        """
        Get ``{job_id, status, job_steps, result}`` for a job.

        ``result`` stays None until the job is complete or failed.

        Returns:
            The status dict, or None for an unknown job
        """
        job = await self.job_store.get(job_id)
        if job is None:
            return None

        return {
            "job_id": job.id,
            "status": job.status,
            "job_steps": [t.model_dump(mode="json") for t in job.job_steps],
            "result": job.result if job.is_terminal else None,
        }
