"""Flow storage layer."""

from datetime import datetime
from typing import Optional

from .database import Database, serialize_json, deserialize_json
from ..models import Flow


class FlowStore:
    """Persistent storage for flow definitions (stored as one JSON document per flow)."""

    def __init__(self, database: Database):
        self.db = database

    async def save(self, flow: Flow) -> None:
        """Save a flow (insert or update)."""
        flow.updated_at = datetime.utcnow()
        await self.db.execute(
            """
            INSERT INTO flows (id, project_id, name, definition, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                name = excluded.name,
                definition = excluded.definition,
                updated_at = excluded.updated_at
            """,
            (
                flow.id,
                flow.project_id,
                flow.name,
                serialize_json(flow.model_dump(mode="json")),
                flow.created_at.isoformat(),
                flow.updated_at.isoformat(),
            ),
        )

    async def get(self, flow_id: str) -> Optional[Flow]:
        """Get a flow by ID."""
        row = await self.db.fetch_one(
            "SELECT definition FROM flows WHERE id = ?",
            (flow_id,)
        )
        if row:
            return Flow.model_validate(deserialize_json(row["definition"], {}))
        return None

    async def list_all(self, project_id: Optional[str] = None) -> list[Flow]:
        """List flows, optionally restricted to one project."""
        if project_id:
            rows = await self.db.fetch_all(
                "SELECT definition FROM flows WHERE project_id = ? ORDER BY name",
                (project_id,)
            )
        else:
            rows = await self.db.fetch_all("SELECT definition FROM flows ORDER BY name")
        return [Flow.model_validate(deserialize_json(r["definition"], {})) for r in rows]

    async def delete(self, flow_id: str) -> bool:
        """Delete a flow by ID. Returns True if deleted."""
        cursor = await self.db.execute(
            "DELETE FROM flows WHERE id = ?",
            (flow_id,)
        )
        return cursor.rowcount > 0
