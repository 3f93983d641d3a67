"""
JSON Update Handler

An update handler: the document lives at ``<documents_dir>/<original_id>.json``
and the packet's annotations are merged into it.
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from packetflow.handlers import Handler, ToolDefinition, ToolParameter
from packetflow.models import StepType

logger = logging.getLogger(__name__)

SETTING_KEYS = {"documents_dir", "create_missing"}


class JsonUpdateHandler(Handler):
    """Merges packet fields into stored JSON documents."""

    slug = "json_update"
    handler_type = StepType.UPDATE
    display_name = "JSON Document Update"

    tools = [
        ToolDefinition(
            name="update_document",
            description="Merge packet fields into the document addressed by original_id",
            parameters={
                "original_id": ToolParameter(required=True, description="Document identifier"),
                "documents_dir": ToolParameter(description="Directory of JSON documents"),
                "create_missing": ToolParameter(type="boolean"),
            },
        ),
    ]

    default_config = {"documents_dir": "data/documents", "create_missing": False}

    @staticmethod
    def document_path(documents_dir: Path, original_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", original_id).strip("._") or "document"
        return documents_dir / f"{safe}.json"

    async def handle_tool_call(self, tool_name, parameters, ctx):
        original_id = str(parameters["original_id"])
        documents_dir = Path(self.setting(parameters, "documents_dir", "data/documents"))
        path = self.document_path(documents_dir, original_id)

        if path.exists():
            try:
                document = json.loads(await ctx.read_file(path))
            except json.JSONDecodeError as e:
                return {"success": False, "error": f"Document {path} is not valid JSON: {e}"}
            created = False
        elif self.setting(parameters, "create_missing", False):
            document = {"original_id": original_id}
            created = True
        else:
            return {"success": False, "error": "Document not found", "data": {"path": str(path)}}

        changes = {k: v for k, v in parameters.items() if k not in SETTING_KEYS}
        updated_fields = sorted(k for k, v in changes.items() if document.get(k) != v)
        document.update(changes)
        document["updated_at"] = datetime.utcnow().isoformat()

        await ctx.write_file(path, json.dumps(document, indent=2, default=str))
        ctx.logger.info(f"{'Created' if created else 'Updated'} document {path}")

        return {
            "success": True,
            "data": {
                "path": str(path),
                "original_id": original_id,
                "created": created,
                "updated_fields": updated_fields,
            },
        }


def register(registry, config):
    registry.register(JsonUpdateHandler(config))
