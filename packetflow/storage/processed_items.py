"""Processed-items store - remembers which source items a flow step already ingested."""

from datetime import datetime
from typing import Optional
import logging

from .database import Database

logger = logging.getLogger(__name__)


class ProcessedItemStore:
    """
    Input de-duplication keyed by ``(flow_step_id, source_type, item_identifier)``.

    Input handlers reach this through their execution context so the same
    feed item is turned into a job only once per flow step.
    """

    def __init__(self, database: Database):
        self.db = database

    async def has_processed(
        self,
        flow_step_id: str,
        source_type: str,
        item_identifier: str,
    ) -> bool:
        row = await self.db.fetch_one(
            """
            SELECT 1 FROM processed_items
            WHERE flow_step_id = ? AND source_type = ? AND item_identifier = ?
            """,
            (flow_step_id, source_type, item_identifier),
        )
        return row is not None

    async def mark_processed(
        self,
        flow_step_id: str,
        source_type: str,
        item_identifier: str,
        job_id: Optional[str] = None,
    ) -> bool:
        """
        Record an item as processed.

        Returns:
            True if newly recorded, False if it was already known
        """
        cursor = await self.db.execute(
            """
            INSERT OR IGNORE INTO processed_items
                (flow_step_id, source_type, item_identifier, job_id, processed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (flow_step_id, source_type, item_identifier, job_id, datetime.utcnow().isoformat()),
        )
        recorded = cursor.rowcount > 0
        if recorded:
            logger.debug(f"Marked {source_type} item processed for step {flow_step_id}: {item_identifier}")
        return recorded

    async def count(self, flow_step_id: Optional[str] = None) -> int:
        if flow_step_id:
            row = await self.db.fetch_one(
                "SELECT COUNT(*) AS n FROM processed_items WHERE flow_step_id = ?",
                (flow_step_id,),
            )
        else:
            row = await self.db.fetch_one("SELECT COUNT(*) AS n FROM processed_items")
        return row["n"] if row else 0

    async def clear(self, flow_step_id: str) -> int:
        """Forget every item recorded for a flow step. Returns rows removed."""
        cursor = await self.db.execute(
            "DELETE FROM processed_items WHERE flow_step_id = ?",
            (flow_step_id,),
        )
        return cursor.rowcount
