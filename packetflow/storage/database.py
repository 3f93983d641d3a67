"""SQLite database connection and schema management."""

import aiosqlite
from datetime import datetime
from pathlib import Path
from typing import Optional
import json
import logging

logger = logging.getLogger(__name__)


# SQL schema for jobs table
JOBS_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    trigger TEXT NOT NULL DEFAULT 'manual',
    job_steps TEXT DEFAULT '[]',
    packets TEXT DEFAULT '[]',
    result TEXT,
    error_message TEXT,
    timeout_seconds INTEGER,
    deadline_at TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_flow_id ON jobs(flow_id);
CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at);
"""

# SQL schema for flows table
FLOWS_SCHEMA = """
CREATE TABLE IF NOT EXISTS flows (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    name TEXT NOT NULL,
    definition TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_flows_project_id ON flows(project_id);
"""

# SQL schema for processed_items table (input de-duplication)
PROCESSED_ITEMS_SCHEMA = """
CREATE TABLE IF NOT EXISTS processed_items (
    flow_step_id TEXT NOT NULL,
    source_type TEXT NOT NULL,
    item_identifier TEXT NOT NULL,
    job_id TEXT,
    processed_at TEXT NOT NULL,
    PRIMARY KEY (flow_step_id, source_type, item_identifier)
);
"""


class Database:
    """
    Async SQLite database connection manager.

    Runs in autocommit + WAL mode so status polls always read the last
    row the orchestrator wrote.
    """

    def __init__(self, db_path: Path | str = "packetflow.db"):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Establish database connection and initialize schema."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Connecting to database: {self.db_path}")
        self._connection = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,  # Autocommit mode
        )
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()

        logger.info("Database connected and schema initialized")

    async def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        for schema in (JOBS_SCHEMA, FLOWS_SCHEMA, PROCESSED_ITEMS_SCHEMA):
            await self._connection.executescript(schema)

    async def close(self) -> None:
        """Close database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def connection(self) -> aiosqlite.Connection:
        """Get the current connection (raises if not connected)."""
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        return await self.connection.execute(sql, params)

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        """Fetch a single row as a dictionary."""
        async with self.connection.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Fetch all rows as dictionaries."""
        async with self.connection.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]


# Utility functions for JSON serialization in SQLite

def serialize_json(data) -> str:
    """Serialize data to JSON string for storage."""
    return json.dumps(data, default=str)


def deserialize_json(data: Optional[str], default=None):
    """Deserialize JSON string from storage."""
    if data is None:
        return default
    try:
        return json.loads(data)
    except json.JSONDecodeError:
        return default


def parse_datetime(value):
    """Parse an ISO timestamp column (None passes through)."""
    if value:
        return datetime.fromisoformat(value)
    return None
