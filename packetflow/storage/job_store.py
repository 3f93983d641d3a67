"""Job storage layer."""

from datetime import datetime, timedelta
from typing import Optional

from .database import Database, serialize_json, deserialize_json, parse_datetime
from ..models import Job, JobStatus, JobStepTrace, DataPacket


class JobStore:
    """
    Persistent storage for jobs.

    Jobs are written whole after every step, so a status poll reading the
    row sees a consistent trace and packet array.
    """

    def __init__(self, database: Database):
        self.db = database

    _INSERT = """
        INSERT INTO jobs (
            id, flow_id, status, trigger, job_steps, packets, result,
            error_message, timeout_seconds, deadline_at,
            created_at, started_at, completed_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    async def save(self, job: Job) -> bool:
        """
        Save a job (insert or update).

        A row that is already ``complete`` or ``failed`` is never overwritten,
        so a terminal result stays the same for every later poll.

        Returns:
            False if the write was refused because the stored job is terminal
        """
        sql = self._INSERT + """
        ON CONFLICT(id) DO UPDATE SET
            status = excluded.status,
            job_steps = excluded.job_steps,
            packets = excluded.packets,
            result = excluded.result,
            error_message = excluded.error_message,
            deadline_at = excluded.deadline_at,
            started_at = excluded.started_at,
            completed_at = excluded.completed_at,
            updated_at = excluded.updated_at
        WHERE jobs.status NOT IN ('complete', 'failed')
        """
        cursor = await self.db.execute(sql, self._values(job))
        return cursor.rowcount > 0

    async def claim(self, job: Job) -> bool:
        """
        Atomically move a pending job to ``processing``.

        The conditional UPDATE lets exactly one caller win, even when several
        processes share the database. A job that was never saved is inserted
        first and then claimed the same way.

        Returns:
            True if the caller now owns the job; ``job`` is updated to match
        """
        await self.db.execute(self._INSERT + " ON CONFLICT(id) DO NOTHING", self._values(job))

        started = datetime.utcnow()
        cursor = await self.db.execute(
            """
            UPDATE jobs SET status = ?, started_at = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                JobStatus.PROCESSING.value,
                started.isoformat(),
                started.isoformat(),
                job.id,
                JobStatus.PENDING.value,
            ),
        )
        if cursor.rowcount != 1:
            return False

        job.start()
        job.started_at = started
        job.updated_at = started
        return True

    def _values(self, job: Job) -> tuple:
        return (
            job.id,
            job.flow_id,
            job.status,
            job.trigger,
            serialize_json([t.model_dump(mode="json") for t in job.job_steps]),
            serialize_json([p.model_dump(mode="json") for p in job.packets]),
            serialize_json(job.result) if job.result is not None else None,
            job.error_message,
            job.timeout_seconds,
            job.deadline_at.isoformat() if job.deadline_at else None,
            job.created_at.isoformat(),
            job.started_at.isoformat() if job.started_at else None,
            job.completed_at.isoformat() if job.completed_at else None,
            job.updated_at.isoformat(),
        )

    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        row = await self.db.fetch_one(
            "SELECT * FROM jobs WHERE id = ?",
            (job_id,)
        )
        if row:
            return self._row_to_job(row)
        return None

    async def list_all(
        self,
        limit: int = 100,
        offset: int = 0,
        status: Optional[JobStatus | str] = None,
        flow_id: Optional[str] = None,
        order_by: str = "created_at",
        order_dir: str = "DESC",
    ) -> list[Job]:
        """List jobs with optional filtering."""
        sql = "SELECT * FROM jobs"
        clauses = []
        params: list = []

        if status:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if flow_id:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        # Validate order_by to prevent SQL injection
        valid_columns = ["created_at", "updated_at", "status"]
        if order_by not in valid_columns:
            order_by = "created_at"

        order_dir = "DESC" if order_dir.upper() == "DESC" else "ASC"
        sql += f" ORDER BY {order_by} {order_dir}"
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        rows = await self.db.fetch_all(sql, tuple(params))
        return [self._row_to_job(row) for row in rows]

    async def list_pending(self, limit: int = 50) -> list[Job]:
        """Get pending jobs, oldest first."""
        rows = await self.db.fetch_all(
            """
            SELECT * FROM jobs
            WHERE status = 'pending'
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (limit,)
        )
        return [self._row_to_job(row) for row in rows]

    async def list_stale(
        self,
        grace_seconds: int = 600,
        now: Optional[datetime] = None,
    ) -> list[Job]:
        """
        Get non-terminal jobs whose deadline passed more than ``grace_seconds`` ago.

        Args:
            grace_seconds: Slack granted beyond the deadline
            now: Reference time (defaults to utcnow)
        """
        cutoff = (now or datetime.utcnow()) - timedelta(seconds=grace_seconds)
        rows = await self.db.fetch_all(
            """
            SELECT * FROM jobs
            WHERE status IN ('pending', 'processing')
            AND deadline_at IS NOT NULL
            AND deadline_at < ?
            ORDER BY created_at ASC
            """,
            (cutoff.isoformat(),)
        )
        return [self._row_to_job(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        """Get count of jobs by status."""
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) as count FROM jobs GROUP BY status"
        )
        return {
            (row["status"] or "unknown"): row["count"]
            for row in rows
        }

    def _row_to_job(self, row: dict) -> Job:
        """Convert a database row to a Job object."""
        return Job(
            id=row["id"],
            flow_id=row["flow_id"],
            status=row["status"],
            trigger=row["trigger"],
            job_steps=[
                JobStepTrace(**step)
                for step in deserialize_json(row.get("job_steps"), [])
            ],
            packets=[
                DataPacket(**packet)
                for packet in deserialize_json(row.get("packets"), [])
            ],
            result=deserialize_json(row.get("result")),
            error_message=row.get("error_message"),
            timeout_seconds=row.get("timeout_seconds"),
            deadline_at=parse_datetime(row.get("deadline_at")),
            created_at=parse_datetime(row.get("created_at")) or datetime.utcnow(),
            started_at=parse_datetime(row.get("started_at")),
            completed_at=parse_datetime(row.get("completed_at")),
            updated_at=parse_datetime(row.get("updated_at")) or datetime.utcnow(),
        )
